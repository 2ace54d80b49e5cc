"""
tests/unit/test_mode_queue.py — ModeQueue + ModeChangeRequest

Covers:
  - FIFO order across many enqueues
  - dequeue() suspends while empty and resumes on enqueue
  - cancelling a waiting dequeue() never loses a later item
  - identical requests are not coalesced
  - clear() drops everything and reports the count
  - wait_nonempty() does not consume
"""

from __future__ import annotations

import asyncio
from dataclasses import FrozenInstanceError

import pytest

from agent.mode_queue import ModeChangeRequest, ModeQueue


def _req(mode="default", prompt=None, **kw) -> ModeChangeRequest:
    return ModeChangeRequest(permission_mode=mode, prompt=prompt, **kw)


# ── ModeChangeRequest ─────────────────────────────────────────────────────────

class TestModeChangeRequest:
    def test_frozen(self):
        req = _req()
        with pytest.raises(FrozenInstanceError):
            req.permission_mode = "plan"  # type: ignore[misc]

    def test_with_prompt_returns_copy(self):
        req = _req("plan", model="opus")
        other = req.with_prompt("hello")
        assert other.prompt == "hello"
        assert other.model == "opus"
        assert req.prompt is None


# ── ModeQueue ─────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestModeQueueAsync:
    async def test_fifo_order(self):
        q = ModeQueue()
        for i in range(5):
            q.enqueue(_req(prompt=str(i)))
        got = [(await q.dequeue()).prompt for _ in range(5)]
        assert got == ["0", "1", "2", "3", "4"]

    async def test_dequeue_suspends_until_enqueue(self):
        q = ModeQueue()
        waiter = asyncio.create_task(q.dequeue())
        await asyncio.sleep(0)
        assert not waiter.done()

        q.enqueue(_req("yolo"))
        result = await asyncio.wait_for(waiter, timeout=1)
        assert result.permission_mode == "yolo"

    async def test_identical_requests_not_coalesced(self):
        q = ModeQueue()
        q.enqueue(_req("plan"))
        q.enqueue(_req("plan"))
        assert q.size() == 2
        assert await q.dequeue() == await q.dequeue()
        assert q.empty()

    async def test_cancelled_dequeue_does_not_lose_item(self):
        q = ModeQueue()
        waiter = asyncio.create_task(q.dequeue())
        await asyncio.sleep(0)
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter

        q.enqueue(_req(prompt="kept"))
        assert (await q.dequeue()).prompt == "kept"

    async def test_wait_nonempty_does_not_consume(self):
        q = ModeQueue()
        waiter = asyncio.create_task(q.wait_nonempty())
        await asyncio.sleep(0)
        assert not waiter.done()

        q.enqueue(_req(prompt="x"))
        await asyncio.wait_for(waiter, timeout=1)
        assert q.size() == 1

    async def test_enqueue_during_wait_with_many_producers(self):
        q = ModeQueue()

        async def produce(tag: str) -> None:
            for i in range(3):
                q.enqueue(_req(prompt=f"{tag}{i}"))
                await asyncio.sleep(0)

        await asyncio.gather(produce("a"), produce("b"))
        got = [(await q.dequeue()).prompt for _ in range(6)]
        assert sorted(got) == ["a0", "a1", "a2", "b0", "b1", "b2"]
        assert [p for p in got if p.startswith("a")] == ["a0", "a1", "a2"]


class TestModeQueueSync:
    def test_clear_returns_count(self):
        q = ModeQueue()
        q.enqueue(_req())
        q.enqueue(_req())
        assert q.clear() == 2
        assert q.empty()
        assert q.clear() == 0

    def test_dequeue_nowait(self):
        q = ModeQueue()
        assert q.dequeue_nowait() is None
        q.enqueue(_req(prompt="1"))
        assert q.dequeue_nowait().prompt == "1"
        assert q.empty()
