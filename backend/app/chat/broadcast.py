"""Broadcast router: fans events out to subscribed connections.

Publishing only enqueues onto per-connection outbound queues, so a slow
consumer never blocks the producer or other subscribers. Each connection's
queue is drained by its own sender task.

Delivery rules:
    - Message events are critical. They are never dropped; a connection
      whose queue cannot take one is closed (QueueOverflowClosed) and must
      recover through catch-up.
    - Typing events are best-effort. They are only queued for live
      subscriptions with free queue space, otherwise dropped.
    - Message events reach a subscription at most once, in sequence order,
      guarded by its ``live_from`` and ``delivered_through`` watermarks.
      Subscriptions still catching up buffer live events instead.
"""
import logging
from typing import Callable, Optional

from .registry import (
    Connection,
    ConnectionHandle,
    ConnectionRegistry,
    Subscription,
    SubscriptionState,
)
from .schemas import Message, PresenceRecord, message_appended_event, presence_changed_event

logger = logging.getLogger(__name__)

OverflowHandler = Callable[[ConnectionHandle], None]


class BroadcastRouter:
    """Routes events from producers to connection outbound queues.

    Args:
        registry: Source of subscriptions and outbound queues.
        on_overflow: Called with the handle of a connection whose queue
            overflowed. It is expected to close and unregister it.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        on_overflow: Optional[OverflowHandler] = None,
    ) -> None:
        self.registry = registry
        self.on_overflow = on_overflow

    # =========================================================================
    # Room events
    # =========================================================================

    def publish_message(self, message: Message) -> int:
        """Fan a newly appended message out to the room's subscribers.

        Returns:
            Number of connections the event was queued or buffered for.
        """
        payload = message_appended_event(message)
        routed = 0
        for handle in self.registry.connections_for(message.roomId):
            connection = self.registry.get(handle)
            if connection is None:
                continue
            subscription = connection.subscriptions.get(message.roomId)
            if subscription is None or message.sequence <= subscription.live_from:
                continue

            if subscription.state != SubscriptionState.LIVE:
                if len(subscription.pending) >= connection.outbound.capacity:
                    self.close_overflowed(handle)
                    continue
                subscription.pending.append(payload)
                routed += 1
                continue

            if self.deliver_message(connection, subscription, message.sequence, payload):
                routed += 1
        return routed

    def publish_typing(
        self,
        room_id: str,
        payload: dict,
        exclude: Optional[ConnectionHandle] = None,
    ) -> int:
        """Best-effort typing indicator; never queued behind a full queue."""
        routed = 0
        for handle in self.registry.connections_for(room_id):
            if handle == exclude:
                continue
            connection = self.registry.get(handle)
            if connection is None or connection.outbound.is_full():
                continue
            subscription = connection.subscriptions.get(room_id)
            if subscription is None or subscription.state != SubscriptionState.LIVE:
                continue
            connection.outbound.offer(payload, critical=False)
            routed += 1
        return routed

    def deliver_message(
        self,
        connection: Connection,
        subscription: Subscription,
        sequence: int,
        payload: dict,
    ) -> bool:
        """Queue one message event for a subscription, skipping duplicates."""
        if sequence <= subscription.delivered_through:
            return False
        if not self._enqueue(connection, payload, critical=True):
            return False
        subscription.delivered_through = sequence
        return True

    # =========================================================================
    # Connection-wide events
    # =========================================================================

    def broadcast_presence(self, record: PresenceRecord) -> int:
        return self.broadcast(presence_changed_event(record))

    def broadcast(self, payload: dict) -> int:
        """Queue an event for every ready connection."""
        routed = 0
        for handle in self.registry.all_handles():
            connection = self.registry.get(handle)
            if connection is None or not connection.ready:
                continue
            if self._enqueue(connection, payload, critical=True):
                routed += 1
        return routed

    def send_to(self, handle: ConnectionHandle, payload: dict, critical: bool = True) -> bool:
        """Queue a reply for a single connection."""
        connection = self.registry.get(handle)
        if connection is None:
            return False
        return self._enqueue(connection, payload, critical)

    def _enqueue(self, connection: Connection, payload: dict, critical: bool) -> bool:
        if connection.outbound.offer(payload, critical):
            return True
        self.close_overflowed(connection.connection_id)
        return False

    def close_overflowed(self, handle: ConnectionHandle) -> None:
        logger.warning(f"[Broadcast] Outbound queue overflow on {handle}; closing connection")
        if self.on_overflow is not None:
            self.on_overflow(handle)
        else:
            self.registry.unregister(handle)
