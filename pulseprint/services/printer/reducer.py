import time
from typing import Any, Dict, Optional

from pulseprint.schemas.status import DeviceState, StatusFragment, sequence_number


def initial_state(staleness_window: float = 60.0) -> DeviceState:
    return DeviceState(staleness_window=staleness_window)


def apply(current: DeviceState, fragment: StatusFragment, received_at: Optional[float] = None) -> DeviceState:
    """
    Folds one fragment into the device state and returns the new state.

    Monotonic-write rule: a reported field is overwritten unless the fragment's
    sequence number is strictly older than the one that produced the field's
    current value. Older fragments may still fill fields that are unset.
    Equal sequence numbers: last applied wins. Fragments without an ordered
    sequence id always write.

    last_updated_at moves on every call. Staleness is computed at read time.
    """
    incoming = fragment.sequence_number
    field_sequences: Dict[str, Optional[int]] = dict(current.field_sequences)
    updates: Dict[str, Any] = {}

    for name, value in fragment.reported_fields().items():
        if getattr(current, name) is not None and _is_older(incoming, field_sequences.get(name)):
            continue
        updates[name] = value
        field_sequences[name] = incoming

    if fragment.sequence_id is not None and not _is_older(incoming, sequence_number(current.sequence_id)):
        updates["sequence_id"] = fragment.sequence_id

    updates["field_sequences"] = field_sequences
    updates["last_updated_at"] = received_at if received_at is not None else time.time()
    return current.model_copy(update=updates)


def _is_older(incoming: Optional[int], existing: Optional[int]) -> bool:
    # Unordered ids on either side never count as older
    if incoming is None or existing is None:
        return False
    return incoming < existing
