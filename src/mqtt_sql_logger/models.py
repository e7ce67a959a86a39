"""Domain types shared by the transport, lifecycle manager and pipeline."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple


class ConnectionState(Enum):
    """Broker session states."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECT_PENDING = "reconnect_pending"
    SHUTTING_DOWN = "shutting_down"


class DisconnectReason(Enum):
    """Classified reason for a broker-initiated disconnect."""
    NORMAL = "normal"
    SERVER_BUSY = "server_busy"
    PROTOCOL_ERROR = "protocol_error"
    ADMINISTRATIVE_ACTION = "administrative_action"
    UNSPECIFIED_ERROR = "unspecified_error"
    OTHER = "other"


def decode_payload(payload: bytes) -> Optional[str]:
    """Return the UTF-8 text of payload, or None if it is not valid UTF-8."""
    if not payload:
        return ""
    try:
        return payload.decode("utf-8")
    except UnicodeDecodeError:
        return None


@dataclass(frozen=True)
class InboundMessage:
    """A single delivery from the broker."""
    topic: str
    qos: int
    retained: bool
    client_id: str
    payload: bytes = b""
    user_properties: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)

    @property
    def payload_text(self) -> Optional[str]:
        return decode_payload(self.payload)


@dataclass(frozen=True)
class StoredRow:
    """Persisted representation of one InboundMessage."""
    received_at: datetime
    topic: str
    qos: int
    retained: bool
    client_id: Optional[str]
    payload_text: Optional[str]
    payload_bytes: Optional[bytes]
    user_properties_json: str = "{}"
