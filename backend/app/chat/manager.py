"""Chat manager: wires the message core together for WebSocket clients.

This module owns the component graph and the per-connection lifecycle:

    transport connect -> join (register, presence online)
    subscribe -> catch-up -> live fan-out
    send -> durable append -> broadcast -> sendAck
    disconnect -> unregister -> presence grace period

Key features:
    - Single-writer-per-room appends with retried StorageUnavailable
    - Per-connection bounded outbound queues drained by sender tasks
    - Debounced presence with persisted last-seen timestamps
    - Heartbeat reaper closing silent connections
    - Direct (one-to-one) rooms restricted to their two members
    - Per-connection send rate limit

Thread Safety:
    This implementation is designed for async/await usage with a single event loop.
    It is NOT thread-safe for concurrent access from multiple threads.
"""
import asyncio
import logging
import time
import uuid
from typing import Any, Dict, Optional

from app.config import ChatSettings

from .broadcast import BroadcastRouter
from .catchup import CatchupCoordinator, CatchupResult
from .errors import (
    ChatError,
    Forbidden,
    InvalidMessage,
    QueueOverflowClosed,
    StorageUnavailable,
)
from .outbound import QueueClosed
from .presence import PresenceTracker
from .registry import ConnectionHandle, ConnectionRegistry
from .repository import MessageRepository
from .schemas import (
    Identity,
    Message,
    MessageBody,
    PresenceRecord,
    Room,
    direct_opened_event,
    heartbeat_ack_event,
    identity_updated_event,
    joined_event,
    parse_direct_room_id,
    presence_snapshot_event,
    send_ack_event,
    typing_event,
)
from .store import RoomStore

logger = logging.getLogger(__name__)

# WebSocket close codes
CLOSE_GOING_AWAY = 1001
CLOSE_TRY_AGAIN_LATER = 1013


class ChatManager:
    """Coordinates registry, store, presence, router and catch-up.

    Args:
        repository: Durable storage backend.
        settings: Chat tuning settings.
    """

    def __init__(self, repository: MessageRepository, settings: Optional[ChatSettings] = None) -> None:
        self.settings = settings or ChatSettings()

        self.registry = ConnectionRegistry(queue_capacity=self.settings.outbound_queue_size)
        self.router = BroadcastRouter(self.registry, on_overflow=self._close_overflowed)
        self.store = RoomStore(
            repository,
            retention_limit=self.settings.retention_limit,
            append_timeout=self.settings.append_timeout_seconds,
            on_appended=self.router.publish_message,
        )
        self.presence = PresenceTracker(
            grace_period=self.settings.grace_period_seconds,
            emit=self.router.broadcast_presence,
            on_offline=self._persist_last_seen,
        )
        self.registry.listener = self.presence
        self.catchup = CatchupCoordinator(
            self.store,
            self.registry,
            self.router,
            snapshot_limit=self.settings.snapshot_limit,
            put_timeout=self.settings.catchup_put_timeout_seconds,
        )

        self._senders: Dict[ConnectionHandle, asyncio.Task] = {}
        self._background: set = set()
        self._reaper: Optional[asyncio.Task] = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Recover rooms from storage and start the heartbeat reaper."""
        recovered = await self.store.recover()
        logger.info(f"[Manager] Recovered {recovered} rooms from storage")
        if self._reaper is None:
            self._reaper = asyncio.create_task(self._reap_stale_connections())

    async def stop(self) -> None:
        """Stop background work and close every connection."""
        if self._reaper is not None:
            self._reaper.cancel()
            self._reaper = None
        for handle in self.registry.all_handles():
            await self.disconnect(handle)
        self.presence.close()
        self.store.repository.close()

    # =========================================================================
    # Protocol operations
    # =========================================================================

    async def join(self, transport: Any, identity: Identity) -> ConnectionHandle:
        """Register a transport under an identity and start its sender.

        Queues ``joined`` and ``presenceSnapshot`` for the new connection,
        then auto-subscribes the configured default rooms.

        Raises:
            DuplicateHandshake: If the transport already joined.
        """
        known = await self.store.load_identity(identity.id)
        handle = self.registry.register(transport, identity)
        connection = self.registry.require(handle)

        connection.outbound.offer(joined_event(handle, identity))
        connection.outbound.offer(presence_snapshot_event(self.presence.current_snapshot()))
        connection.ready = True
        self._senders[handle] = asyncio.create_task(self._run_sender(handle))

        if known != identity:
            self._spawn(self.store.save_identity(identity))

        for room_id in self.settings.default_rooms:
            try:
                await self.subscribe(handle, room_id, None)
            except ChatError as exc:
                logger.warning(f"[Manager] Default room {room_id} unavailable for {handle}: {exc}")
        return handle

    async def subscribe(
        self, handle: ConnectionHandle, room_id: str, last_seen: Optional[int]
    ) -> CatchupResult:
        """Subscribe to a room, catching up from ``last_seen``.

        Raises:
            Forbidden: For a direct room the identity is not a member of.
        """
        connection = self.registry.require(handle)
        self._check_member(connection.identity.id, room_id)
        self.registry.touch(handle)
        return await self.catchup.subscribe(handle, room_id, last_seen)

    def unsubscribe(self, handle: ConnectionHandle, room_id: str) -> None:
        self.registry.unsubscribe(handle, room_id)

    async def send(
        self,
        handle: ConnectionHandle,
        room_id: str,
        body: MessageBody,
        request_id: Optional[str] = None,
    ) -> Optional[Message]:
        """Append a message and report the outcome with ``sendAck``.

        StorageUnavailable is retried with exponential backoff; the final
        failure is acknowledged to the sender, never silently dropped.

        Returns:
            The appended message, or None if the send was rejected.
        """
        connection = self.registry.require(handle)
        self.registry.touch(handle)

        now = time.monotonic()
        last = connection.last_send_at
        if last is not None and now - last < self.settings.min_send_interval_seconds:
            self.router.send_to(handle, send_ack_event(request_id, error="slow down"))
            return None
        connection.last_send_at = now

        body = body.cleaned(self.settings.max_text_length)
        if body.is_empty():
            self.router.send_to(handle, send_ack_event(request_id, error="empty"))
            return None

        self._check_member(connection.identity.id, room_id)
        if room_id not in connection.subscriptions:
            await self.store.ensure_room(room_id)
            await self.catchup.subscribe(handle, room_id, self.store.head(room_id))

        message = await self._append_with_retry(room_id, connection.identity.id, body)
        if message is None:
            self.router.send_to(
                handle, send_ack_event(request_id, error=StorageUnavailable.code)
            )
            return None

        self.router.send_to(handle, send_ack_event(request_id, message))
        return message

    async def _append_with_retry(
        self, room_id: str, author_id: str, body: MessageBody
    ) -> Optional[Message]:
        # Every attempt carries the same id so a late write is not stored twice.
        message_id = str(uuid.uuid4())
        attempts = self.settings.append_retries + 1
        delay = self.settings.append_backoff_seconds
        for attempt in range(1, attempts + 1):
            try:
                return await self.store.append(room_id, author_id, body, message_id=message_id)
            except StorageUnavailable as exc:
                logger.warning(
                    f"[Manager] Append to {room_id} failed (attempt {attempt}/{attempts}): {exc}"
                )
                if attempt == attempts:
                    break
                await asyncio.sleep(delay)
                delay *= 2
        logger.error(f"[Manager] Giving up on append to {room_id} by {author_id}")
        return None

    def heartbeat(self, handle: ConnectionHandle) -> None:
        connection = self.registry.require(handle)
        self.registry.touch(handle)
        self.presence.heartbeat(connection.identity.id)
        self.router.send_to(handle, heartbeat_ack_event())

    def typing(self, handle: ConnectionHandle, room_id: str, is_typing: bool) -> int:
        """Relay a typing indicator to the room's other live subscribers."""
        connection = self.registry.require(handle)
        self.registry.touch(handle)
        if room_id not in connection.subscriptions:
            raise InvalidMessage(f"Not subscribed to {room_id}")
        return self.router.publish_typing(
            room_id,
            typing_event(connection.identity, room_id, is_typing),
            exclude=handle,
        )

    async def update_profile(
        self,
        handle: ConnectionHandle,
        display_name: Optional[str] = None,
        profile_ref: Optional[str] = None,
    ) -> Identity:
        """Change display name and/or profile picture for an identity.

        Every connection of the identity sees the new profile; all ready
        connections receive ``identityUpdated``.
        """
        connection = self.registry.require(handle)
        self.registry.touch(handle)
        updates = {}
        if display_name is not None:
            updates["displayName"] = display_name
        if profile_ref is not None:
            updates["profileRef"] = profile_ref
        identity = Identity.model_validate({**connection.identity.model_dump(), **updates})

        for other in self.registry.handles_for_identity(identity.id):
            other_connection = self.registry.get(other)
            if other_connection is not None:
                other_connection.identity = identity
        self.presence.update_identity(identity)
        await self.store.save_identity(identity)
        self.router.broadcast(identity_updated_event(identity))
        return identity

    async def open_direct(self, handle: ConnectionHandle, peer_id: str) -> Room:
        """Open the direct room between this identity and ``peer_id``."""
        connection = self.registry.require(handle)
        self.registry.touch(handle)
        try:
            peer = Identity(id=peer_id)
        except ValueError as exc:
            raise InvalidMessage(f"Invalid peer id: {peer_id}") from exc
        room = await self.store.open_direct(connection.identity.id, peer.id)
        self.router.send_to(handle, direct_opened_event(room))
        return room

    async def disconnect(self, handle: ConnectionHandle) -> None:
        """Unregister a connection and cancel its pending sends (idempotent)."""
        sender = self._senders.pop(handle, None)
        connection = self.registry.unregister(handle)
        if sender is not None and sender is not asyncio.current_task():
            sender.cancel()
        if connection is not None:
            logger.info(f"[Manager] Connection {handle} ({connection.identity.id}) disconnected")

    def presence_snapshot(self) -> list:
        return self.presence.current_snapshot()

    def get_presence(self, identity_id: str) -> Optional[PresenceRecord]:
        return self.presence.get(identity_id)

    # =========================================================================
    # Internals
    # =========================================================================

    def _check_member(self, identity_id: str, room_id: str) -> None:
        members = parse_direct_room_id(room_id)
        if members is not None and identity_id not in members:
            raise Forbidden(f"Not a member of {room_id}")

    async def _run_sender(self, handle: ConnectionHandle) -> None:
        """Drain a connection's outbound queue onto its transport."""
        connection = self.registry.get(handle)
        if connection is None:
            return
        try:
            while True:
                payload = await connection.outbound.get()
                await connection.transport.send_json(payload)
        except QueueClosed:
            pass
        except Exception as exc:
            logger.debug(f"[Manager] Send to {handle} failed: {exc}")
            self._senders.pop(handle, None)
            self.registry.unregister(handle)

    def _close_overflowed(self, handle: ConnectionHandle) -> None:
        connection = self.registry.unregister(handle)
        sender = self._senders.pop(handle, None)
        if sender is not None:
            sender.cancel()
        if connection is None:
            return
        logger.warning(
            f"[Manager] {QueueOverflowClosed.code}: closing {handle} ({connection.identity.id})"
        )
        self._spawn(self._close_transport(connection.transport, CLOSE_TRY_AGAIN_LATER))

    async def _close_transport(self, transport: Any, code: int) -> None:
        try:
            await transport.close(code=code)
        except Exception as exc:
            logger.debug(f"[Manager] Transport already closed: {exc}")

    def _persist_last_seen(self, identity_id: str, last_seen_at: float) -> None:
        self._spawn(self.store.record_last_seen(identity_id, last_seen_at))

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _reap_stale_connections(self) -> None:
        timeout = self.settings.heartbeat_timeout_seconds
        while True:
            await asyncio.sleep(self.settings.reaper_interval_seconds)
            for handle in self.registry.stale_handles(timeout):
                connection = self.registry.get(handle)
                if connection is None:
                    continue
                logger.info(f"[Manager] No heartbeat from {handle} for {timeout}s; closing")
                await self.disconnect(handle)
                self._spawn(self._close_transport(connection.transport, CLOSE_GOING_AWAY))


# =============================================================================
# Process-wide instance
# =============================================================================

_manager: Optional[ChatManager] = None


def get_manager() -> Optional[ChatManager]:
    """Return the active ChatManager (set during application startup)."""
    return _manager


def set_manager(manager: Optional[ChatManager]) -> None:
    global _manager
    _manager = manager
