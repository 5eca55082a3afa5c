"""Tests for the reconnect / catch-up protocol."""
import asyncio
import time

import pytest

from app.chat.broadcast import BroadcastRouter
from app.chat.catchup import CatchupCoordinator
from app.chat.errors import QueueOverflowClosed, RoomNotFound
from app.chat.outbound import QueueClosed
from app.chat.registry import ConnectionRegistry, SubscriptionState
from app.chat.repository import InMemoryMessageRepository
from app.chat.schemas import Identity, MessageBody
from app.chat.store import RoomStore


class SlowReadRepository(InMemoryMessageRepository):
    """Delays range reads so appends can race a catch-up."""

    def read_range(self, room_id, after, through=None):
        time.sleep(0.05)
        return super().read_range(room_id, after, through)


def drain(connection) -> list:
    payloads = []
    while True:
        payload = connection.outbound.get_nowait()
        if payload is None:
            return payloads
        payloads.append(payload)


def sequences(payloads) -> list:
    return [p["message"]["sequence"] for p in payloads if p["type"] == "messageAppended"]


def build(repository=None, retention_limit=1000, queue_capacity=64, put_timeout=1.0):
    registry = ConnectionRegistry(queue_capacity=queue_capacity)
    router = BroadcastRouter(registry)
    store = RoomStore(
        repository or InMemoryMessageRepository(),
        retention_limit=retention_limit,
        on_appended=router.publish_message,
    )
    catchup = CatchupCoordinator(
        store, registry, router, snapshot_limit=50, put_timeout=put_timeout
    )
    return registry, store, catchup


async def fill(store, count, room_id="global"):
    for i in range(count):
        await store.append(room_id, "u1", MessageBody(text=str(i)))


class TestCatchup:
    """Tests for exactly-once delivery across reconnects."""

    @pytest.mark.asyncio
    async def test_replays_messages_after_last_seen(self):
        registry, store, catchup = build()
        await fill(store, 5)
        handle = registry.register(object(), Identity(id="u2"))

        result = await catchup.subscribe(handle, "global", last_seen=2)
        payloads = drain(registry.require(handle))

        assert sequences(payloads) == [3, 4, 5]
        assert payloads[-1] == {"type": "subscribed", "roomId": "global", "headSequence": 5}
        assert result.delivered == 3
        assert result.gap is False
        assert registry.require(handle).subscriptions["global"].state == SubscriptionState.LIVE

    @pytest.mark.asyncio
    async def test_fresh_subscription_gets_snapshot(self):
        registry, store, catchup = build()
        await fill(store, 3)
        handle = registry.register(object(), Identity(id="u2"))

        await catchup.subscribe(handle, "global", last_seen=None)

        assert sequences(drain(registry.require(handle))) == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_gap_marker_then_retained_messages(self):
        registry, store, catchup = build(retention_limit=3)
        await fill(store, 5)
        handle = registry.register(object(), Identity(id="u2"))

        result = await catchup.subscribe(handle, "global", last_seen=1)
        payloads = drain(registry.require(handle))

        assert payloads[0] == {"type": "catchupGap", "roomId": "global", "oldestSequence": 3}
        assert sequences(payloads) == [3, 4, 5]
        assert result.gap is True

    @pytest.mark.asyncio
    async def test_appends_during_catchup_neither_lost_nor_duplicated(self):
        registry, store, catchup = build(repository=SlowReadRepository())
        await fill(store, 5)
        handle = registry.register(object(), Identity(id="u2"))

        task = asyncio.create_task(catchup.subscribe(handle, "global", last_seen=0))
        await asyncio.sleep(0.01)
        await fill(store, 3)
        await task

        payloads = drain(registry.require(handle))
        assert sequences(payloads) == list(range(1, 9))
        assert payloads[-1]["headSequence"] == 8

    @pytest.mark.asyncio
    async def test_live_after_catchup(self):
        registry, store, catchup = build()
        await fill(store, 2)
        handle = registry.register(object(), Identity(id="u2"))
        await catchup.subscribe(handle, "global", last_seen=2)
        drain(registry.require(handle))

        await fill(store, 1)

        assert sequences(drain(registry.require(handle))) == [3]

    @pytest.mark.asyncio
    async def test_last_seen_at_head_delivers_nothing(self):
        registry, store, catchup = build()
        await fill(store, 4)
        handle = registry.register(object(), Identity(id="u2"))

        await catchup.subscribe(handle, "global", last_seen=4)

        assert sequences(drain(registry.require(handle))) == []

    @pytest.mark.asyncio
    async def test_resubscribe_while_live_is_idempotent(self):
        registry, store, catchup = build()
        await fill(store, 2)
        handle = registry.register(object(), Identity(id="u2"))
        await catchup.subscribe(handle, "global", last_seen=0)
        drain(registry.require(handle))

        result = await catchup.subscribe(handle, "global", last_seen=0)

        assert result.completed is False
        assert drain(registry.require(handle)) == [
            {"type": "subscribed", "roomId": "global", "headSequence": 2}
        ]

    @pytest.mark.asyncio
    async def test_unopened_direct_room(self):
        registry, _, catchup = build()
        handle = registry.register(object(), Identity(id="a"))

        with pytest.raises(RoomNotFound):
            await catchup.subscribe(handle, "dm:a:b", last_seen=0)
        assert registry.require(handle).subscriptions == {}

    @pytest.mark.asyncio
    async def test_backlog_larger_than_queue_overflows(self):
        registry, store, catchup = build(queue_capacity=2, put_timeout=0.05)
        await fill(store, 5)
        handle = registry.register(object(), Identity(id="u2"))

        with pytest.raises(QueueOverflowClosed):
            await catchup.subscribe(handle, "global", last_seen=0)
        assert registry.get(handle) is None

    @pytest.mark.asyncio
    async def test_live_events_fit_while_backlog_streams(self):
        registry, store, catchup = build(queue_capacity=4, put_timeout=1.0)
        await fill(store, 10)
        handle = registry.register(object(), Identity(id="u2"))
        await catchup.subscribe(handle, "other", last_seen=0)
        connection = registry.require(handle)
        drain(connection)

        received = []

        async def consume():
            while True:
                try:
                    received.append(await connection.outbound.get())
                except QueueClosed:
                    return
                await asyncio.sleep(0.005)

        consumer = asyncio.create_task(consume())
        subscribing = asyncio.create_task(catchup.subscribe(handle, "global", last_seen=0))
        await asyncio.sleep(0.02)
        await store.append("other", "u1", MessageBody(text="ping"))
        await subscribing
        await asyncio.sleep(0.1)
        consumer.cancel()

        def in_room(room_id):
            return [p for p in received if p.get("message", {}).get("roomId") == room_id]

        assert registry.get(handle) is not None
        assert sequences(in_room("global")) == list(range(1, 11))
        assert [p["message"]["body"]["text"] for p in in_room("other")] == ["ping"]
