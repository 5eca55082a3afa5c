"""Reconnect / catch-up protocol.

Per (connection, room)::

    SUBSCRIBING --(lastSeenSequence declared)--> CATCHING_UP --(backlog drained)--> LIVE

A client declares the last sequence it saw and receives every later
message exactly once. The ordering that makes this race-free:

    1. capture the room head H and wire the subscription into live fan-out
       in one atomic step (no await in between);
    2. stream ``read_since(lastSeen)`` up to and including H; live events
       with a sequence above H are buffered on the subscription meanwhile;
    3. flush the buffer (sequence > H, in order) and switch to LIVE.

When the declared sequence predates retained history the client gets a
``catchupGap`` marker followed by a snapshot, never a silent hole.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from .broadcast import BroadcastRouter
from .errors import ChatError, QueueOverflowClosed, SequenceTooOld
from .outbound import QueueClosed
from .registry import ConnectionHandle, ConnectionRegistry, SubscriptionState
from .schemas import catchup_gap_event, message_appended_event, subscribed_event
from .store import RoomStore

logger = logging.getLogger(__name__)


@dataclass
class CatchupResult:
    room_id: str
    head: int
    delivered: int = 0
    gap: bool = False
    completed: bool = True


class CatchupCoordinator:
    """Runs the catch-up protocol for new room subscriptions.

    Args:
        store: Room store to read backlog from.
        registry: Connection registry holding subscriptions.
        router: Broadcast router used for live delivery.
        snapshot_limit: Messages sent for a fresh subscription or after a gap.
        put_timeout: Seconds to wait for outbound space while streaming
            backlog before the connection is treated as overflowed.
    """

    def __init__(
        self,
        store: RoomStore,
        registry: ConnectionRegistry,
        router: BroadcastRouter,
        snapshot_limit: int = 200,
        put_timeout: float = 10.0,
    ) -> None:
        self.store = store
        self.registry = registry
        self.router = router
        self.snapshot_limit = snapshot_limit
        self.put_timeout = put_timeout

    async def subscribe(
        self,
        handle: ConnectionHandle,
        room_id: str,
        last_seen: Optional[int] = None,
    ) -> CatchupResult:
        """Subscribe a connection to a room and bring it up to date.

        Args:
            handle: The subscribing connection.
            room_id: Room to subscribe to.
            last_seen: Last sequence the client holds; None for a fresh
                subscription (sends a snapshot).

        Raises:
            UnknownConnection: If the connection is gone.
            RoomNotFound: If the room does not exist.
            StorageUnavailable: If the backlog could not be read.
            QueueOverflowClosed: If the backlog could not be queued in time.
        """
        await self.store.ensure_room(room_id)
        connection = self.registry.require(handle)

        existing = connection.subscriptions.get(room_id)
        if existing is not None and existing.state != SubscriptionState.SUBSCRIBING:
            logger.debug(f"[Catchup] {handle} already subscribed to {room_id}")
            head = self.store.head(room_id)
            if existing.state == SubscriptionState.LIVE:
                self.router.send_to(handle, subscribed_event(room_id, head))
            return CatchupResult(room_id=room_id, head=head, completed=False)

        # Step 1: capture H and wire live delivery atomically.
        subscription = self.registry.subscribe(handle, room_id)
        head = self.store.head(room_id)
        subscription.state = SubscriptionState.CATCHING_UP
        subscription.live_from = head
        subscription.delivered_through = min(last_seen or 0, head)
        subscription.pending = []
        result = CatchupResult(room_id=room_id, head=head)
        # Headroom for live events on other rooms while the backlog streams.
        reserve = max(1, connection.outbound.capacity // 4)

        try:
            # Step 2: drain the backlog up to H.
            if last_seen is None:
                backlog = await self.store.snapshot(room_id, self.snapshot_limit)
            else:
                try:
                    backlog = await self.store.read_since(room_id, last_seen, through=head)
                except SequenceTooOld as exc:
                    logger.info(
                        f"[Catchup] {handle} gap in {room_id}: last seen {last_seen}, "
                        f"oldest retained {exc.oldest}"
                    )
                    result.gap = True
                    await connection.outbound.put(
                        catchup_gap_event(room_id, exc.oldest), self.put_timeout, reserve
                    )
                    backlog = await self.store.snapshot(room_id, self.snapshot_limit)

            for message in backlog:
                if message.sequence > head:
                    break
                if message.sequence <= subscription.delivered_through:
                    continue
                await connection.outbound.put(
                    message_appended_event(message), self.put_timeout, reserve
                )
                subscription.delivered_through = message.sequence
                result.delivered += 1
        except QueueClosed:
            result.completed = False
            return result
        except asyncio.TimeoutError as exc:
            self.router.close_overflowed(handle)
            raise QueueOverflowClosed(f"Catch-up for {room_id} could not be queued") from exc
        except ChatError:
            self.registry.unsubscribe(handle, room_id)
            raise

        if connection.subscriptions.get(room_id) is not subscription:
            # Unsubscribed or disconnected while catching up.
            result.completed = False
            return result

        # Step 3: flush events buffered above H, then go live.
        pending, subscription.pending = subscription.pending, []
        for payload in pending:
            sequence = payload["message"]["sequence"]
            self.router.deliver_message(connection, subscription, sequence, payload)
        subscription.state = SubscriptionState.LIVE
        self.router.send_to(
            handle, subscribed_event(room_id, max(head, subscription.delivered_through))
        )
        logger.info(
            f"[Catchup] {handle} live in {room_id} (head={head}, "
            f"replayed={result.delivered}, buffered={len(pending)}, gap={result.gap})"
        )
        return result
