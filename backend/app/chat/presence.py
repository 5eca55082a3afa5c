"""Debounced presence state machine.

Per identity::

    OFFLINE --(connection added)--> ONLINE
    ONLINE --(last connection removed)--> GRACE
    GRACE --(grace period elapses)--> OFFLINE
    GRACE --(connection added)--> ONLINE   (no event emitted)

Only transitions into ONLINE from OFFLINE and into OFFLINE emit a presence
event, so a reconnect inside the grace period (e.g. a mobile network
handoff) is invisible to other clients.

Thread Safety:
    Designed for a single asyncio event loop. Transitions never await, so
    they are serialized per identity and events are emitted in transition
    order.
"""
import asyncio
import logging
import time
from typing import Callable, Dict, List, Optional

from .schemas import Identity, PresenceRecord, PresenceState

logger = logging.getLogger(__name__)

PresenceEmitter = Callable[[PresenceRecord], None]
OfflineHook = Callable[[str, float], None]


class PresenceTracker:
    """Derives online/offline state from connection lifecycle events.

    Args:
        grace_period: Seconds an identity stays online after its last
            connection closes.
        emit: Receives a copy of the record on every Online/Offline transition.
        on_offline: Called with (identity_id, last_seen_at) when an identity
            goes offline.
    """

    def __init__(
        self,
        grace_period: float = 45.0,
        emit: Optional[PresenceEmitter] = None,
        on_offline: Optional[OfflineHook] = None,
    ) -> None:
        self.grace_period = grace_period
        self.emit = emit
        self.on_offline = on_offline
        self._records: Dict[str, PresenceRecord] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._generations: Dict[str, int] = {}

    def on_connection_added(self, identity: Identity) -> None:
        record = self._records.get(identity.id)
        if record is None:
            record = PresenceRecord(identity=identity)
            self._records[identity.id] = record
        else:
            record.identity = identity

        record.activeConnectionCount += 1
        record.lastSeenAt = time.time()

        if record.state == PresenceState.GRACE:
            self._cancel_timer(identity.id)
            record.state = PresenceState.ONLINE
            logger.debug(f"[Presence] {identity.id} reconnected within grace period")
        elif record.state == PresenceState.OFFLINE:
            record.state = PresenceState.ONLINE
            logger.info(f"[Presence] {identity.id} is online")
            self._emit(record)

    def on_connection_removed(self, identity: Identity) -> None:
        record = self._records.get(identity.id)
        if record is None:
            return

        record.activeConnectionCount = max(0, record.activeConnectionCount - 1)
        record.lastSeenAt = time.time()

        if record.activeConnectionCount == 0 and record.state == PresenceState.ONLINE:
            record.state = PresenceState.GRACE
            self._start_timer(identity.id)
            logger.debug(
                f"[Presence] {identity.id} entered grace period ({self.grace_period}s)"
            )

    def heartbeat(self, identity_id: str) -> bool:
        """Refresh ``lastSeenAt``. Never changes state.

        Returns:
            True if the identity is known.
        """
        record = self._records.get(identity_id)
        if record is None:
            return False
        record.lastSeenAt = time.time()
        return True

    def update_identity(self, identity: Identity) -> None:
        record = self._records.get(identity.id)
        if record is not None:
            record.identity = identity

    def get(self, identity_id: str) -> Optional[PresenceRecord]:
        record = self._records.get(identity_id)
        return record.model_copy() if record else None

    def current_snapshot(self) -> List[PresenceRecord]:
        return [record.model_copy() for record in self._records.values()]

    def close(self) -> None:
        """Cancel all pending grace timers."""
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

    def _start_timer(self, identity_id: str) -> None:
        self._cancel_timer(identity_id)
        generation = self._generations.get(identity_id, 0) + 1
        self._generations[identity_id] = generation
        loop = asyncio.get_running_loop()
        self._timers[identity_id] = loop.call_later(
            self.grace_period, self._expire, identity_id, generation
        )

    def _cancel_timer(self, identity_id: str) -> None:
        handle = self._timers.pop(identity_id, None)
        if handle is not None:
            handle.cancel()
        # Invalidate a callback that is already scheduled to run.
        self._generations[identity_id] = self._generations.get(identity_id, 0) + 1

    def _expire(self, identity_id: str, generation: int) -> None:
        if self._generations.get(identity_id) != generation:
            return
        self._timers.pop(identity_id, None)
        record = self._records.get(identity_id)
        if (
            record is None
            or record.state != PresenceState.GRACE
            or record.activeConnectionCount > 0
        ):
            return

        record.state = PresenceState.OFFLINE
        logger.info(f"[Presence] {identity_id} is offline")
        self._emit(record)
        if self.on_offline is not None:
            self.on_offline(identity_id, record.lastSeenAt)

    def _emit(self, record: PresenceRecord) -> None:
        if self.emit is not None:
            self.emit(record.model_copy())
