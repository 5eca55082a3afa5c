"""Per-room ordered message log with bounded retention.

The room store is the only component that assigns sequence numbers.
Appends to the same room are serialized by a per-room ``asyncio.Lock``:
sequence assignment and the durable write happen inside one critical
section, so concurrent appends to one room queue behind each other while
different rooms proceed in parallel.

Retention is lazy: after an append pushes a room past its retention limit,
the floor (oldest readable sequence) moves up and the excess rows are
deleted. Sequences are never renumbered or reused.

Failure handling:
    A durable write that times out or fails raises StorageUnavailable and
    leaves the head untouched. The room is marked dirty and its head is
    re-read from storage before the next assignment, so a write that landed
    after its timeout is adopted (and published) instead of being
    overwritten or leaving a gap.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from .errors import InvalidMessage, RoomNotFound, SequenceTooOld, StorageUnavailable
from .repository import MessageRepository
from .schemas import (
    Identity,
    Message,
    MessageBody,
    Room,
    RoomKind,
    direct_room_id,
    is_valid_room_id,
    parse_direct_room_id,
)

logger = logging.getLogger(__name__)

AppendListener = Callable[[Message], None]


@dataclass
class _RoomLog:
    room: Room
    head: int = 0
    floor: int = 1
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    dirty: bool = False
    adopted: Dict[str, Message] = field(default_factory=dict)


class RoomStore:
    """Durable, strictly ordered append-only log per room.

    Args:
        repository: Storage backend.
        retention_limit: Default number of messages retained per room.
        append_timeout: Seconds to wait for a durable write.
        on_appended: Called synchronously, inside the room's critical
            section, with every newly durable message.
    """

    def __init__(
        self,
        repository: MessageRepository,
        retention_limit: int = 1000,
        append_timeout: float = 5.0,
        on_appended: Optional[AppendListener] = None,
    ) -> None:
        self._repository = repository
        self._retention_limit = retention_limit
        self._append_timeout = append_timeout
        self._rooms: Dict[str, _RoomLog] = {}
        self.on_appended = on_appended

    @property
    def repository(self) -> MessageRepository:
        return self._repository

    # =========================================================================
    # Rooms
    # =========================================================================

    def _new_room(self, room_id: str) -> Room:
        members = parse_direct_room_id(room_id)
        if members is not None:
            return Room(
                roomId=room_id,
                kind=RoomKind.DIRECT,
                members=members,
                retentionLimit=self._retention_limit,
            )
        return Room(roomId=room_id, retentionLimit=self._retention_limit)

    async def _load(self, room_id: str, create: bool) -> _RoomLog:
        log = self._rooms.get(room_id)
        if log is not None:
            return log
        if not is_valid_room_id(room_id):
            raise RoomNotFound(room_id)

        try:
            oldest, newest = await asyncio.to_thread(self._repository.bounds, room_id)
        except Exception as exc:
            raise StorageUnavailable(f"Could not load room {room_id}: {exc}") from exc

        # Another coroutine may have loaded the room while we were reading.
        log = self._rooms.get(room_id)
        if log is not None:
            return log
        if newest == 0 and not create:
            raise RoomNotFound(room_id)

        log = _RoomLog(room=self._new_room(room_id), head=newest, floor=oldest or 1)
        self._rooms[room_id] = log
        logger.info(f"[Store] Loaded room {room_id} (head={log.head}, floor={log.floor})")
        return log

    async def ensure_room(self, room_id: str) -> Room:
        """Return a room, creating broadcast rooms lazily.

        Raises:
            RoomNotFound: For malformed ids and direct rooms never opened.
        """
        is_direct = parse_direct_room_id(room_id) is not None
        log = await self._load(room_id, create=not is_direct)
        return log.room

    async def open_direct(self, a: str, b: str) -> Room:
        """Open (idempotently) the direct room for the pair ``{a, b}``."""
        if a == b:
            raise InvalidMessage("Cannot open a direct room with yourself")
        room_id = direct_room_id(a, b)
        log = await self._load(room_id, create=True)
        return log.room

    async def recover(self) -> int:
        """Load every room that has stored messages. Returns the room count."""
        room_ids = await asyncio.to_thread(self._repository.room_ids)
        for room_id in room_ids:
            await self._load(room_id, create=False)
        return len(room_ids)

    def rooms(self) -> List[Room]:
        return [log.room for log in self._rooms.values()]

    def head(self, room_id: str) -> int:
        """Current head sequence (0 for an empty or unknown room)."""
        log = self._rooms.get(room_id)
        return log.head if log else 0

    def floor(self, room_id: str) -> int:
        """Oldest retained sequence (1 for an empty or unknown room)."""
        log = self._rooms.get(room_id)
        return log.floor if log else 1

    # =========================================================================
    # Append
    # =========================================================================

    async def append(
        self,
        room_id: str,
        author_id: str,
        body: MessageBody,
        message_id: Optional[str] = None,
    ) -> Message:
        """Assign the next sequence and durably append a message.

        Retries of the same send pass the same ``message_id``. If an earlier
        attempt timed out but its row landed anyway, that row is returned
        instead of appending a second copy.

        Raises:
            RoomNotFound: If ``room_id`` is malformed or an unopened direct room.
            StorageUnavailable: If the durable write failed or timed out.
        """
        log = await self._load(room_id, create=parse_direct_room_id(room_id) is None)

        async with log.lock:
            if log.dirty:
                log.adopted = {m.messageId: m for m in await self._resync(log)}

            landed = log.adopted.pop(message_id, None) if message_id else None
            if landed is not None:
                logger.info(f"[Store] Late write {message_id} in {room_id} settled the retry")
                message = landed
            else:
                fields = {"messageId": message_id} if message_id else {}
                message = Message(
                    roomId=room_id,
                    sequence=log.head + 1,
                    authorId=author_id,
                    body=body,
                    createdAt=time.time(),
                    **fields,
                )
                await self._insert(log, message)
                log.head = message.sequence
                self._notify(message)
            new_floor = self._advance_floor(log)

        if new_floor is not None:
            await self._truncate(room_id, new_floor)
        return message

    async def _insert(self, log: _RoomLog, message: Message) -> None:
        room_id = log.room.roomId
        try:
            await asyncio.wait_for(
                asyncio.to_thread(self._repository.insert_message, message),
                timeout=self._append_timeout,
            )
        except asyncio.TimeoutError as exc:
            log.dirty = True
            logger.warning(
                f"[Store] Append to {room_id} timed out after {self._append_timeout}s"
            )
            raise StorageUnavailable(f"Durable write to {room_id} timed out") from exc
        except Exception as exc:
            log.dirty = True
            logger.error(f"[Store] Append to {room_id} failed: {exc}")
            raise StorageUnavailable(f"Durable write to {room_id} failed: {exc}") from exc

    def _notify(self, message: Message) -> None:
        if self.on_appended is not None:
            self.on_appended(message)

    def _advance_floor(self, log: _RoomLog) -> Optional[int]:
        retained = log.head - log.floor + 1
        if retained <= log.room.retentionLimit:
            return None
        log.floor = log.head - log.room.retentionLimit + 1
        return log.floor

    async def _truncate(self, room_id: str, floor: int) -> None:
        try:
            dropped = await asyncio.to_thread(self._repository.delete_before, room_id, floor)
        except Exception as exc:
            # Rows below the floor are unreadable anyway; the next append retries.
            logger.warning(f"[Store] Truncation of {room_id} below {floor} failed: {exc}")
            return
        if dropped:
            logger.debug(f"[Store] Truncated {dropped} messages from {room_id} (floor={floor})")

    async def _resync(self, log: _RoomLog) -> List[Message]:
        """Adopt rows written by timed-out appends. Returns the adopted messages."""
        room_id = log.room.roomId
        try:
            _, newest = await asyncio.to_thread(self._repository.bounds, room_id)
            adopted: List[Message] = []
            if newest > log.head:
                adopted = await asyncio.to_thread(
                    self._repository.read_range, room_id, log.head, newest
                )
        except Exception as exc:
            raise StorageUnavailable(f"Could not resync room {room_id}: {exc}") from exc

        if adopted:
            logger.warning(
                f"[Store] Adopting {len(adopted)} late writes in {room_id} "
                f"(head {log.head} -> {newest})"
            )
        for message in adopted:
            log.head = message.sequence
            self._notify(message)
        log.dirty = False
        return adopted

    # =========================================================================
    # Reads
    # =========================================================================

    async def read_since(
        self, room_id: str, sequence: int, through: Optional[int] = None
    ) -> List[Message]:
        """Messages with a sequence greater than ``sequence``, ascending.

        Raises:
            RoomNotFound: If the room does not exist.
            SequenceTooOld: If messages after ``sequence`` were truncated.
        """
        log = await self._load(room_id, create=False)
        if sequence + 1 < log.floor:
            raise SequenceTooOld(room_id, sequence, log.floor)

        try:
            messages = await asyncio.to_thread(
                self._repository.read_range, room_id, sequence, through
            )
        except Exception as exc:
            raise StorageUnavailable(f"Read from {room_id} failed: {exc}") from exc

        # Truncation may have run while we were reading.
        if sequence + 1 < log.floor or (messages and messages[0].sequence != sequence + 1):
            raise SequenceTooOld(room_id, sequence, log.floor)
        return messages

    async def snapshot(self, room_id: str, limit: int) -> List[Message]:
        """The last ``limit`` retained messages in ascending order."""
        log = await self._load(room_id, create=False)
        try:
            messages = await asyncio.to_thread(self._repository.read_last, room_id, limit)
        except Exception as exc:
            raise StorageUnavailable(f"Read from {room_id} failed: {exc}") from exc
        return [m for m in messages if m.sequence >= log.floor]

    # =========================================================================
    # Identities
    # =========================================================================

    async def save_identity(self, identity: Identity) -> None:
        try:
            await asyncio.to_thread(self._repository.upsert_identity, identity, time.time())
        except Exception as exc:
            logger.warning(f"[Store] Could not persist identity {identity.id}: {exc}")

    async def record_last_seen(self, identity_id: str, last_seen_at: float) -> None:
        try:
            await asyncio.to_thread(self._repository.touch_identity, identity_id, last_seen_at)
        except Exception as exc:
            logger.warning(f"[Store] Could not record last seen for {identity_id}: {exc}")

    async def load_identity(self, identity_id: str) -> Optional[Identity]:
        """Stored identity, or None if unknown or storage is unreachable."""
        try:
            stored = await asyncio.to_thread(self._repository.get_identity, identity_id)
        except Exception as exc:
            logger.warning(f"[Store] Could not load identity {identity_id}: {exc}")
            return None
        return stored[0] if stored else None
