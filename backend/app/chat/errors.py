"""Error taxonomy for the message core.

Each error carries the ``code`` sent to clients in ``error`` protocol
messages and, where one exists, a suggested ``remediation``.
"""
from typing import Optional


class ChatError(Exception):
    """Base class for all message core errors."""

    code = "ChatError"
    remediation: Optional[str] = None

    def to_wire(self) -> dict:
        payload = {"type": "error", "code": self.code, "error": str(self)}
        if self.remediation:
            payload["remediation"] = self.remediation
        return payload


class DuplicateHandshake(ChatError):
    """The same transport connection tried to register twice."""

    code = "DuplicateHandshake"


class UnknownConnection(ChatError):
    """A handle was used after the connection was unregistered."""

    code = "UnknownConnection"


class SequenceTooOld(ChatError):
    """The requested sequence lies before the oldest retained message."""

    code = "SequenceTooOld"
    remediation = "snapshot"

    def __init__(self, room_id: str, sequence: int, oldest: int) -> None:
        super().__init__(
            f"Sequence {sequence} in room {room_id} is older than retained history "
            f"(oldest retained: {oldest})"
        )
        self.room_id = room_id
        self.sequence = sequence
        self.oldest = oldest


class StorageUnavailable(ChatError):
    """The durable write did not complete in time or failed."""

    code = "StorageUnavailable"
    remediation = "retry"


class RoomNotFound(ChatError):
    """The room does not exist (direct rooms must be opened first)."""

    code = "RoomNotFound"
    remediation = "openDirect"

    def __init__(self, room_id: str) -> None:
        super().__init__(f"Room not found: {room_id}")
        self.room_id = room_id


class QueueOverflowClosed(ChatError):
    """A connection's outbound queue overflowed and the connection was closed."""

    code = "QueueOverflowClosed"
    remediation = "reconnect"


class NotJoined(ChatError):
    """A protocol message arrived before ``join``."""

    code = "NotJoined"
    remediation = "join"


class InvalidMessage(ChatError):
    """A protocol message failed validation."""

    code = "InvalidMessage"


class Forbidden(ChatError):
    """The identity may not act on this room."""

    code = "Forbidden"
