"""Data models and wire protocol for the message core.

Wire-facing models use camelCase field names, matching the JSON the
browser client sends and receives.

Client -> server messages (``type`` field):
    join, subscribe, unsubscribe, send, heartbeat, typing, profile, openDirect

Server -> client messages (``type`` field):
    joined, presenceSnapshot, presenceChanged, messageAppended, catchupGap,
    subscribed, typing, sendAck, directOpened, identityUpdated, heartbeatAck,
    error
"""
import re
import time
import uuid
from enum import Enum
from typing import Dict, List, Optional, Type

from pydantic import BaseModel, Field, field_validator

# =============================================================================
# Constants
# =============================================================================

IDENTITY_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.-]{1,64}$")

DIRECT_ROOM_PREFIX = "dm:"

MAX_DISPLAY_NAME_LENGTH = 64

MAX_PROFILE_REF_LENGTH = 512

DEFAULT_DISPLAY_NAME = "Guest"


def direct_room_id(a: str, b: str) -> str:
    """Canonical room id for the unordered identity pair ``{a, b}``."""
    first, second = sorted((a, b))
    return f"{DIRECT_ROOM_PREFIX}{first}:{second}"


def parse_direct_room_id(room_id: str) -> Optional[List[str]]:
    """Return the two member ids of a direct room id, or None if malformed."""
    if not room_id.startswith(DIRECT_ROOM_PREFIX):
        return None
    parts = room_id[len(DIRECT_ROOM_PREFIX):].split(":")
    if len(parts) != 2 or not all(IDENTITY_ID_PATTERN.match(p) for p in parts):
        return None
    if parts[0] >= parts[1]:
        return None
    return parts


def is_valid_room_id(room_id: str) -> bool:
    if room_id.startswith(DIRECT_ROOM_PREFIX):
        return parse_direct_room_id(room_id) is not None
    return bool(IDENTITY_ID_PATTERN.match(room_id))


# =============================================================================
# Data Models
# =============================================================================


class Identity(BaseModel):
    """A long-lived client identity.

    Attributes:
        id: Stable opaque id generated and persisted client-side.
        displayName: Mutable human-readable name.
        profileRef: Blob-store URL of the profile picture, if any.
    """
    id: str = Field(..., description="Stable identity id")
    displayName: str = Field(default=DEFAULT_DISPLAY_NAME, description="Display name")
    profileRef: Optional[str] = Field(default=None, description="Profile picture URL")

    @field_validator("id")
    @classmethod
    def _check_id(cls, value: str) -> str:
        if not IDENTITY_ID_PATTERN.match(value):
            raise ValueError("identity id must be 1-64 characters of [A-Za-z0-9_.-]")
        return value

    @field_validator("displayName", mode="before")
    @classmethod
    def _clean_name(cls, value: Optional[str]) -> str:
        name = str(value or "").replace("<", "").replace(">", "").strip()
        return name[:MAX_DISPLAY_NAME_LENGTH] or DEFAULT_DISPLAY_NAME

    @field_validator("profileRef", mode="before")
    @classmethod
    def _clip_profile_ref(cls, value: Optional[str]) -> Optional[str]:
        if not value:
            return None
        return str(value)[:MAX_PROFILE_REF_LENGTH]


class MessageBody(BaseModel):
    """Message payload: text, an attachment URL, or both."""
    text: str = Field(default="", description="Message text")
    attachmentUrl: Optional[str] = Field(default=None, description="Blob-store URL")

    def is_empty(self) -> bool:
        return not self.text and not self.attachmentUrl

    def cleaned(self, max_text_length: int) -> "MessageBody":
        """Return a copy with stripped, length-limited text."""
        return MessageBody(
            text=self.text.strip()[:max_text_length],
            attachmentUrl=(self.attachmentUrl or None),
        )


class Message(BaseModel):
    """An appended, immutable room message.

    Attributes:
        roomId: Room this message belongs to.
        sequence: Per-room position, assigned at durable append.
        authorId: Identity id of the sender.
        body: Text and/or attachment reference.
        createdAt: Unix timestamp (seconds since epoch).
        messageId: Globally unique id.
    """
    roomId: str
    sequence: int = Field(..., ge=1)
    authorId: str
    body: MessageBody
    createdAt: float = Field(default_factory=time.time)
    messageId: str = Field(default_factory=lambda: str(uuid.uuid4()))


class RoomKind(str, Enum):
    """Kind of room.

    Attributes:
        BROADCAST: Open room, anyone may subscribe and post.
        DIRECT: One-to-one room between exactly two identities.
    """
    BROADCAST = "broadcast"
    DIRECT = "direct"


class Room(BaseModel):
    roomId: str
    kind: RoomKind = RoomKind.BROADCAST
    members: List[str] = Field(default_factory=list)
    retentionLimit: int = Field(..., ge=1)


class PresenceState(str, Enum):
    """Presence state machine states.

    GRACE is internal: clients see it as ONLINE.
    """
    ONLINE = "online"
    GRACE = "grace"
    OFFLINE = "offline"

    @property
    def public(self) -> "PresenceState":
        return PresenceState.ONLINE if self is PresenceState.GRACE else self


class PresenceRecord(BaseModel):
    identity: Identity
    state: PresenceState = PresenceState.OFFLINE
    lastSeenAt: float = Field(default_factory=time.time)
    activeConnectionCount: int = 0

    def to_wire(self) -> dict:
        return {
            "identity": self.identity.model_dump(),
            "state": self.state.public.value,
            "lastSeenAt": self.lastSeenAt,
        }


# =============================================================================
# Client -> server messages
# =============================================================================


class JoinRequest(BaseModel):
    identity: Identity


class SubscribeRequest(BaseModel):
    roomId: str
    lastSeenSequence: Optional[int] = Field(default=None, ge=0)


class UnsubscribeRequest(BaseModel):
    roomId: str


class SendRequest(BaseModel):
    roomId: str
    body: MessageBody
    requestId: Optional[str] = None


class HeartbeatRequest(BaseModel):
    pass


class TypingRequest(BaseModel):
    roomId: str
    isTyping: bool = True


class ProfileRequest(BaseModel):
    displayName: Optional[str] = None
    profileRef: Optional[str] = None


class OpenDirectRequest(BaseModel):
    peerId: str


CLIENT_MESSAGES: Dict[str, Type[BaseModel]] = {
    "join": JoinRequest,
    "subscribe": SubscribeRequest,
    "unsubscribe": UnsubscribeRequest,
    "send": SendRequest,
    "heartbeat": HeartbeatRequest,
    "typing": TypingRequest,
    "profile": ProfileRequest,
    "openDirect": OpenDirectRequest,
}


# =============================================================================
# Server -> client messages
# =============================================================================


def joined_event(connection_id: str, identity: Identity) -> dict:
    return {"type": "joined", "connectionId": connection_id, "identity": identity.model_dump()}


def presence_snapshot_event(records: List[PresenceRecord]) -> dict:
    return {"type": "presenceSnapshot", "presence": [r.to_wire() for r in records]}


def presence_changed_event(record: PresenceRecord) -> dict:
    return {"type": "presenceChanged", **record.to_wire()}


def message_appended_event(message: Message) -> dict:
    return {"type": "messageAppended", "message": message.model_dump()}


def catchup_gap_event(room_id: str, oldest_sequence: int) -> dict:
    return {"type": "catchupGap", "roomId": room_id, "oldestSequence": oldest_sequence}


def subscribed_event(room_id: str, head_sequence: int) -> dict:
    return {"type": "subscribed", "roomId": room_id, "headSequence": head_sequence}


def typing_event(identity: Identity, room_id: str, is_typing: bool) -> dict:
    return {
        "type": "typing",
        "identity": identity.model_dump(),
        "roomId": room_id,
        "isTyping": is_typing,
    }


def send_ack_event(
    request_id: Optional[str],
    message: Optional[Message] = None,
    error: Optional[str] = None,
) -> dict:
    payload = {"type": "sendAck", "requestId": request_id, "ok": message is not None}
    if message is not None:
        payload["messageId"] = message.messageId
        payload["sequence"] = message.sequence
    if error is not None:
        payload["error"] = error
    return payload


def direct_opened_event(room: Room) -> dict:
    return {"type": "directOpened", "room": room.model_dump()}


def identity_updated_event(identity: Identity) -> dict:
    return {"type": "identityUpdated", "identity": identity.model_dump()}


def heartbeat_ack_event() -> dict:
    return {"type": "heartbeatAck"}
