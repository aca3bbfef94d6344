from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

DEFAULT_MQTT_PORT = 8883
REPORT_TOPIC_TEMPLATE = "device/{device_id}/report"
REQUEST_TOPIC_TEMPLATE = "device/{device_id}/request"


class ConnectionParams(BaseModel):
    """
    Immutable connection parameters for one device.
    Supplied once at engine construction and never mutated.
    """
    model_config = ConfigDict(frozen=True)

    host: str = Field(min_length=1)
    device_id: str = Field(min_length=1)
    access_code: str = Field(repr=False)
    port: int = Field(default=DEFAULT_MQTT_PORT, ge=1, le=65535)
    tls_required: bool = True

    def report_topic(self) -> str:
        return REPORT_TOPIC_TEMPLATE.format(device_id=self.device_id)

    def request_topic(self) -> str:
        return REQUEST_TOPIC_TEMPLATE.format(device_id=self.device_id)


class EngineConfig(BaseModel):
    """Tunables for the subscription engine. All durations are in seconds."""
    model_config = ConfigDict(frozen=True)

    keep_alive_interval: float = Field(default=30.0, gt=0)
    connect_timeout: float = Field(default=10.0, gt=0)
    max_reconnect_attempts: Optional[int] = Field(default=None, ge=0)
    base_backoff: float = Field(default=5.0, gt=0)
    max_backoff: float = Field(default=60.0, gt=0)
    backoff_jitter: float = Field(default=0.1, ge=0, lt=1)
    queue_capacity: int = Field(default=100, ge=1)
    staleness_window: float = Field(default=60.0, gt=0)
    shutdown_timeout: float = Field(default=5.0, gt=0)
    request_full_report: bool = True

    @model_validator(mode="after")
    def _check_backoff_bounds(self) -> "EngineConfig":
        if self.max_backoff < self.base_backoff:
            raise ValueError("max_backoff must be >= base_backoff")
        return self


class SessionStatus(str, Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    RECONNECTING = "RECONNECTING"
    SHUTTING_DOWN = "SHUTTING_DOWN"


class SessionState(BaseModel):
    """Supervisor-owned session state. attempt/next_delay only mean something while RECONNECTING."""
    model_config = ConfigDict(frozen=True)

    status: SessionStatus = SessionStatus.DISCONNECTED
    attempt: int = 0
    next_delay: Optional[float] = None

    @classmethod
    def reconnecting(cls, attempt: int, next_delay: float) -> "SessionState":
        return cls(status=SessionStatus.RECONNECTING, attempt=attempt, next_delay=next_delay)

    def __str__(self) -> str:
        if self.status == SessionStatus.RECONNECTING:
            return f"{self.status.value}(attempt={self.attempt}, next_delay={self.next_delay:.2f}s)"
        return self.status.value
