import time
from typing import Literal, Union

from pydantic import BaseModel, ConfigDict, Field


class RawStatusFragment(BaseModel):
    """One undecoded report payload as received from the transport."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["status"] = "status"
    payload: bytes
    received_at: float = Field(default_factory=time.time)


class ConnectionLost(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["connection_lost"] = "connection_lost"
    reason: str


class ConnectionEstablished(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["connection_established"] = "connection_established"


# Produced by the supervisor, owned by the queue once pushed
InboundEvent = Union[RawStatusFragment, ConnectionLost, ConnectionEstablished]
