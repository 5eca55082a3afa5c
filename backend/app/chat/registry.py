"""Connection registry: the authoritative map of live connections.

Every live transport connection is registered once, under a generated
connection id (its handle). Other components hold handles and resolve them
through the registry; nothing else mutates the connection map.

Thread Safety:
    Designed for a single asyncio event loop. No method awaits, so each
    call is atomic with respect to other coroutines.
"""
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Protocol

from .errors import DuplicateHandshake, UnknownConnection
from .outbound import OutboundQueue
from .schemas import Identity

logger = logging.getLogger(__name__)

ConnectionHandle = str


class SubscriptionState(str, Enum):
    """Per (connection, room) catch-up state."""
    SUBSCRIBING = "subscribing"
    CATCHING_UP = "catching_up"
    LIVE = "live"


@dataclass
class Subscription:
    """Delivery state of one room on one connection.

    Attributes:
        live_from: Head sequence captured when live delivery was wired in.
            Live message events at or below it are left to catch-up.
        delivered_through: Highest sequence queued for this connection.
        pending: Live events buffered while catching up.
    """
    room_id: str
    state: SubscriptionState = SubscriptionState.SUBSCRIBING
    live_from: int = 0
    delivered_through: int = 0
    pending: List[dict] = field(default_factory=list)


@dataclass
class Connection:
    connection_id: ConnectionHandle
    transport: Any
    identity: Identity
    outbound: OutboundQueue
    subscriptions: Dict[str, Subscription] = field(default_factory=dict)
    last_activity_at: float = field(default_factory=time.monotonic)
    last_send_at: Optional[float] = None
    # Receives presence broadcasts once the presence snapshot has been queued.
    ready: bool = False

    @property
    def subscribed_rooms(self) -> List[str]:
        return list(self.subscriptions)


class ConnectionListener(Protocol):
    def on_connection_added(self, identity: Identity) -> None: ...

    def on_connection_removed(self, identity: Identity) -> None: ...


class ConnectionRegistry:
    """Live connections, their identities and room subscriptions."""

    def __init__(
        self,
        queue_capacity: int = 256,
        listener: Optional[ConnectionListener] = None,
    ) -> None:
        self._queue_capacity = queue_capacity
        self._connections: Dict[ConnectionHandle, Connection] = {}
        # id(transport) -> handle, for duplicate handshake detection
        self._transports: Dict[int, ConnectionHandle] = {}
        # room_id -> handles, in subscription order
        self._rooms: Dict[str, Dict[ConnectionHandle, None]] = {}
        self.listener = listener

    def __len__(self) -> int:
        return len(self._connections)

    def register(self, transport: Any, identity: Identity) -> ConnectionHandle:
        """Register a transport connection under an identity.

        Raises:
            DuplicateHandshake: If the transport is already registered.
        """
        if id(transport) in self._transports:
            raise DuplicateHandshake("Connection already joined")

        handle = str(uuid.uuid4())
        self._connections[handle] = Connection(
            connection_id=handle,
            transport=transport,
            identity=identity,
            outbound=OutboundQueue(self._queue_capacity),
        )
        self._transports[id(transport)] = handle
        logger.info(f"[Registry] Registered {handle} for identity {identity.id}")

        if self.listener is not None:
            self.listener.on_connection_added(identity)
        return handle

    def get(self, handle: ConnectionHandle) -> Optional[Connection]:
        return self._connections.get(handle)

    def require(self, handle: ConnectionHandle) -> Connection:
        connection = self._connections.get(handle)
        if connection is None:
            raise UnknownConnection(f"Unknown connection: {handle}")
        return connection

    def subscribe(self, handle: ConnectionHandle, room_id: str) -> Subscription:
        """Subscribe a connection to a room (idempotent).

        Returns:
            The connection's subscription for the room, new or existing.

        Raises:
            UnknownConnection: If the handle was already unregistered.
        """
        connection = self.require(handle)
        subscription = connection.subscriptions.get(room_id)
        if subscription is None:
            subscription = Subscription(room_id=room_id)
            connection.subscriptions[room_id] = subscription
            self._rooms.setdefault(room_id, {})[handle] = None
        return subscription

    def unsubscribe(self, handle: ConnectionHandle, room_id: str) -> None:
        connection = self._connections.get(handle)
        if connection is None:
            return
        connection.subscriptions.pop(room_id, None)
        self._drop_room_member(room_id, handle)

    def unregister(self, handle: ConnectionHandle) -> Optional[Connection]:
        """Remove a connection. A second call for the same handle is a no-op.

        Returns:
            The removed connection, or None if it was already gone.
        """
        connection = self._connections.pop(handle, None)
        if connection is None:
            return None

        self._transports.pop(id(connection.transport), None)
        for room_id in list(connection.subscriptions):
            self._drop_room_member(room_id, handle)
        connection.outbound.close()
        logger.info(
            f"[Registry] Unregistered {handle} (identity {connection.identity.id}); "
            f"{len(self._connections)} connections remain"
        )

        if self.listener is not None:
            self.listener.on_connection_removed(connection.identity)
        return connection

    def connections_for(self, room_id: str) -> Iterator[ConnectionHandle]:
        """Handles subscribed to a room, snapshotted at call time."""
        snapshot = list(self._rooms.get(room_id, ()))
        return iter(snapshot)

    def all_handles(self) -> List[ConnectionHandle]:
        return list(self._connections)

    def handles_for_identity(self, identity_id: str) -> List[ConnectionHandle]:
        return [
            handle for handle, conn in self._connections.items()
            if conn.identity.id == identity_id
        ]

    def touch(self, handle: ConnectionHandle) -> None:
        connection = self._connections.get(handle)
        if connection is not None:
            connection.last_activity_at = time.monotonic()

    def stale_handles(self, timeout: float) -> List[ConnectionHandle]:
        """Handles with no activity for more than ``timeout`` seconds."""
        cutoff = time.monotonic() - timeout
        return [
            handle for handle, conn in self._connections.items()
            if conn.last_activity_at < cutoff
        ]

    def _drop_room_member(self, room_id: str, handle: ConnectionHandle) -> None:
        members = self._rooms.get(room_id)
        if members is None:
            return
        members.pop(handle, None)
        if not members:
            del self._rooms[room_id]
