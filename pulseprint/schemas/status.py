import re
import time
from enum import Enum
from typing import ClassVar, Dict, Optional, Tuple, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

# Status fields shared by fragments and the merged device state
STATUS_FIELDS: Tuple[str, ...] = (
    "print_state",
    "progress",
    "remaining_time",
    "nozzle_temp",
    "nozzle_target_temp",
    "bed_temp",
    "bed_target_temp",
    "layer",
    "total_layers",
    "wifi_signal",
    "subtask_name",
    "fail_reason",
    "print_error",
    "eta",
    "total_time",
)

SequenceId = Union[str, int]

NUMERIC_SEQUENCE = re.compile(r"-?[0-9]+")


def sequence_number(sequence_id: Optional[SequenceId]) -> Optional[int]:
    """
    Orderable form of a sequence identifier.
    Numeric ids (int or digit string) order numerically, anything else is unordered (None).
    """
    if sequence_id is None or isinstance(sequence_id, bool):
        return None
    if isinstance(sequence_id, int):
        return sequence_id
    text = sequence_id.strip()
    if NUMERIC_SEQUENCE.fullmatch(text):
        return int(text)
    return None


class PrintState(str, Enum):
    IDLE = "IDLE"
    PREPARING = "PREPARING"
    PRINTING = "PRINTING"
    PAUSED = "PAUSED"
    FINISHED = "FINISHED"
    FAILED = "FAILED"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def from_label(cls, label: Optional[str]) -> "PrintState":
        if not label:
            return cls.UNKNOWN
        return PRINT_STATE_MAP.get(label.strip().upper(), cls.UNKNOWN)


# Vendor gcode_state labels plus the lowercase "state" variants
PRINT_STATE_MAP = {
    "IDLE": PrintState.IDLE,
    "PREPARE": PrintState.PREPARING,
    "SLICING": PrintState.PREPARING,
    "RUNNING": PrintState.PRINTING,
    "PRINTING": PrintState.PRINTING,
    "PAUSE": PrintState.PAUSED,
    "PAUSED": PrintState.PAUSED,
    "FINISH": PrintState.FINISHED,
    "FINISHED": PrintState.FINISHED,
    "FAILED": PrintState.FAILED,
}


class PrintReport(BaseModel):
    """
    Incremental print-status report, the body of a top-level "print" object.
    Every field is optional: the device only sends what changed.
    """
    model_config = ConfigDict(strict=True, frozen=True, extra="ignore", populate_by_name=True)

    kind: ClassVar[str] = "print"

    command: Optional[str] = None
    msg: Optional[int] = None
    sequence_id: Optional[SequenceId] = None

    print_state: Optional[str] = Field(default=None, validation_alias=AliasChoices("gcode_state", "state", "print_state"))
    progress: Optional[float] = Field(default=None, validation_alias=AliasChoices("mc_percent", "percent", "progress"))
    remaining_time: Optional[float] = Field(
        default=None, validation_alias=AliasChoices("mc_remaining_time", "remaining_time")
    )
    nozzle_temp: Optional[float] = Field(default=None, validation_alias=AliasChoices("nozzle_temper", "nozzle_temp"))
    nozzle_target_temp: Optional[float] = Field(
        default=None, validation_alias=AliasChoices("nozzle_target_temper", "nozzle_target_temp")
    )
    bed_temp: Optional[float] = Field(default=None, validation_alias=AliasChoices("bed_temper", "bed_temp"))
    bed_target_temp: Optional[float] = Field(
        default=None, validation_alias=AliasChoices("bed_target_temper", "bed_target_temp")
    )
    layer: Optional[int] = Field(default=None, validation_alias=AliasChoices("layer_num", "layer"))
    total_layers: Optional[int] = Field(default=None, validation_alias=AliasChoices("total_layer_num", "total_layers"))
    wifi_signal: Optional[str] = None
    subtask_name: Optional[str] = None
    fail_reason: Optional[str] = None
    print_error: Optional[int] = None
    eta: Optional[str] = None
    total_time: Optional[float] = None

    @property
    def sequence_number(self) -> Optional[int]:
        return sequence_number(self.sequence_id)

    @property
    def is_full_report(self) -> bool:
        """push_status with msg == 0 carries the complete state (answer to a pushall request)."""
        return self.command == "push_status" and self.msg == 0

    def reported_fields(self) -> Dict[str, object]:
        """Status fields present in this fragment. JSON null counts as not reported."""
        return {name: getattr(self, name) for name in STATUS_FIELDS if getattr(self, name) is not None}


class SystemReport(BaseModel):
    """
    Full-state / housekeeping report ("pushing", "system" or "info" section).
    Carries no status fields of its own; applying it refreshes liveness only.
    """
    model_config = ConfigDict(strict=True, frozen=True, extra="ignore")

    kind: ClassVar[str] = "system"

    section: Optional[str] = None
    command: Optional[str] = None
    version: Optional[int] = None
    sequence_id: Optional[SequenceId] = None

    @property
    def sequence_number(self) -> Optional[int]:
        return sequence_number(self.sequence_id)

    @property
    def is_pushall(self) -> bool:
        return self.command == "pushall"

    def reported_fields(self) -> Dict[str, object]:
        return {}


StatusFragment = Union[PrintReport, SystemReport]


class DeviceState(BaseModel):
    """
    Authoritative merged view of the device. Each status field holds the last
    known value or None. field_sequences records which sequence number wrote
    each field (None when it came from an unordered fragment).
    """
    model_config = ConfigDict(frozen=True)

    print_state: Optional[str] = None
    progress: Optional[float] = None
    remaining_time: Optional[float] = None
    nozzle_temp: Optional[float] = None
    nozzle_target_temp: Optional[float] = None
    bed_temp: Optional[float] = None
    bed_target_temp: Optional[float] = None
    layer: Optional[int] = None
    total_layers: Optional[int] = None
    wifi_signal: Optional[str] = None
    subtask_name: Optional[str] = None
    fail_reason: Optional[str] = None
    print_error: Optional[int] = None
    eta: Optional[str] = None
    total_time: Optional[float] = None

    sequence_id: Optional[SequenceId] = None
    field_sequences: Dict[str, Optional[int]] = Field(default_factory=dict)
    last_updated_at: Optional[float] = None
    staleness_window: float = 60.0

    @property
    def status(self) -> PrintState:
        return PrintState.from_label(self.print_state)

    @property
    def has_data(self) -> bool:
        return self.last_updated_at is not None

    def age(self, now: Optional[float] = None) -> Optional[float]:
        if self.last_updated_at is None:
            return None
        return (now if now is not None else time.time()) - self.last_updated_at

    def is_stale_at(self, now: float) -> bool:
        """Stale when nothing arrived within the staleness window. Never-updated state is stale."""
        age = self.age(now)
        return age is None or age > self.staleness_window

    @property
    def is_stale(self) -> bool:
        return self.is_stale_at(time.time())
