from .connection import ConnectionParams, EngineConfig, SessionState, SessionStatus
from .events import ConnectionEstablished, ConnectionLost, InboundEvent, RawStatusFragment
from .status import (
    STATUS_FIELDS,
    DeviceState,
    PrintReport,
    PrintState,
    StatusFragment,
    SystemReport,
)

__all__ = [
    "ConnectionParams",
    "EngineConfig",
    "SessionState",
    "SessionStatus",
    "ConnectionEstablished",
    "ConnectionLost",
    "InboundEvent",
    "RawStatusFragment",
    "STATUS_FIELDS",
    "DeviceState",
    "PrintReport",
    "PrintState",
    "StatusFragment",
    "SystemReport",
]
