"""Tests for the bounded outbound queue and its overflow policy."""
import asyncio

import pytest

from app.chat.outbound import OutboundQueue, QueueClosed


class TestOffer:
    """Tests for non-blocking enqueue."""

    def test_rejects_non_positive_capacity(self):
        with pytest.raises(ValueError):
            OutboundQueue(0)

    def test_fifo_order(self):
        queue = OutboundQueue(4)
        for i in range(3):
            assert queue.offer({"n": i})

        assert [queue.get_nowait()["n"] for _ in range(3)] == [0, 1, 2]
        assert queue.get_nowait() is None

    def test_full_queue_drops_new_typing_event(self):
        queue = OutboundQueue(2)
        queue.offer({"n": 1})
        queue.offer({"n": 2})

        assert queue.offer({"type": "typing"}, critical=False) is True
        assert len(queue) == 2
        assert queue.dropped == 1

    def test_critical_event_evicts_oldest_typing_event(self):
        queue = OutboundQueue(3)
        queue.offer({"n": 1})
        queue.offer({"type": "typing", "n": 2}, critical=False)
        queue.offer({"type": "typing", "n": 3}, critical=False)

        assert queue.offer({"n": 4}) is True
        assert [queue.get_nowait()["n"] for _ in range(3)] == [1, 3, 4]

    def test_critical_event_without_victim_fails(self):
        queue = OutboundQueue(2)
        queue.offer({"n": 1})
        queue.offer({"n": 2})

        assert queue.offer({"n": 3}) is False
        assert len(queue) == 2

    def test_offer_after_close_fails(self):
        queue = OutboundQueue(2)
        queue.close()

        assert queue.offer({"n": 1}) is False


class TestWaiting:
    """Tests for the awaitable get/put paths."""

    @pytest.mark.asyncio
    async def test_get_waits_for_offer(self):
        queue = OutboundQueue(2)
        getter = asyncio.create_task(queue.get())
        await asyncio.sleep(0)
        assert not getter.done()

        queue.offer({"n": 1})
        assert await asyncio.wait_for(getter, 1) == {"n": 1}

    @pytest.mark.asyncio
    async def test_put_waits_for_space(self):
        queue = OutboundQueue(1)
        queue.offer({"n": 1})
        putter = asyncio.create_task(queue.put({"n": 2}, timeout=1))
        await asyncio.sleep(0)
        assert not putter.done()

        assert await queue.get() == {"n": 1}
        await asyncio.wait_for(putter, 1)
        assert await queue.get() == {"n": 2}

    @pytest.mark.asyncio
    async def test_put_times_out(self):
        queue = OutboundQueue(1)
        queue.offer({"n": 1})

        with pytest.raises(asyncio.TimeoutError):
            await queue.put({"n": 2}, timeout=0.01)

    @pytest.mark.asyncio
    async def test_close_wakes_waiters(self):
        queue = OutboundQueue(1)
        getter = asyncio.create_task(queue.get())
        await asyncio.sleep(0)

        queue.close()
        with pytest.raises(QueueClosed):
            await asyncio.wait_for(getter, 1)

    @pytest.mark.asyncio
    async def test_close_discards_pending(self):
        queue = OutboundQueue(2)
        queue.offer({"n": 1})
        queue.close()

        assert len(queue) == 0
        with pytest.raises(QueueClosed):
            await queue.get()

    @pytest.mark.asyncio
    async def test_put_leaves_reserved_slots_for_offer(self):
        queue = OutboundQueue(4)
        for n in range(3):
            await queue.put({"n": n}, timeout=1, reserve=1)

        with pytest.raises(asyncio.TimeoutError):
            await queue.put({"n": 3}, timeout=0.01, reserve=1)
        assert queue.offer({"live": True})
        assert len(queue) == 4

    @pytest.mark.asyncio
    async def test_reserve_never_blocks_an_empty_queue(self):
        queue = OutboundQueue(1)

        await queue.put({"n": 1}, timeout=0.01, reserve=5)
        assert len(queue) == 1
