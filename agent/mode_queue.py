"""
agent/mode_queue.py — Ordered Mode/Configuration Queue

Serializes configuration and mode-change requests so exactly one is applied
at a time, no matter how many producers (mobile client, local keyboard,
internal model-switch logic) enqueue concurrently.

Ordering is strict FIFO. There is no priority and no coalescing: two
identical requests produce two dequeues.

Usage:
    queue = ModeQueue()
    queue.enqueue(ModeChangeRequest(permission_mode="plan", prompt="refactor utils"))
    request = await queue.dequeue()     # suspends while empty
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from typing import Optional

from observability.logger import get_logger

log = get_logger(__name__)


@dataclass(frozen=True)
class ModeChangeRequest:
    """
    One unit of configuration work. Immutable once enqueued.

    prompt carries the user text that arrived together with this
    configuration (None for a configuration-only change).
    """
    permission_mode: str = "default"
    model: Optional[str] = None
    fallback_model: Optional[str] = None
    custom_system_prompt: Optional[str] = None
    append_system_prompt: Optional[str] = None
    allowed_tools: Optional[tuple[str, ...]] = None
    disallowed_tools: Optional[tuple[str, ...]] = None
    prompt: Optional[str] = None

    def with_prompt(self, prompt: Optional[str]) -> "ModeChangeRequest":
        return replace(self, prompt=prompt)


class ModeQueue:
    """Unbounded single-consumer FIFO of ModeChangeRequest."""

    def __init__(self) -> None:
        # asyncio.Queue keeps an item in place when a waiting get() is cancelled
        self._queue: asyncio.Queue[ModeChangeRequest] = asyncio.Queue()
        self._nonempty = asyncio.Event()

    def enqueue(self, request: ModeChangeRequest) -> None:
        """Append a request. Never blocks, never fails."""
        self._queue.put_nowait(request)
        self._nonempty.set()
        log.debug(
            "mode_queue.enqueued",
            permission_mode=request.permission_mode,
            model=request.model,
            has_prompt=request.prompt is not None,
            size=self._queue.qsize(),
        )

    async def dequeue(self) -> ModeChangeRequest:
        """Return the oldest request, suspending until one is available."""
        request = await self._queue.get()
        if self._queue.empty():
            self._nonempty.clear()
        log.debug("mode_queue.dequeued", remaining=self._queue.qsize())
        return request

    def dequeue_nowait(self) -> Optional[ModeChangeRequest]:
        """Return the oldest request, or None when empty."""
        try:
            request = self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None
        if self._queue.empty():
            self._nonempty.clear()
        log.debug("mode_queue.dequeued", remaining=self._queue.qsize())
        return request

    async def wait_nonempty(self) -> None:
        """Suspend until at least one request is pending, without consuming it."""
        while self._queue.empty():
            self._nonempty.clear()
            await self._nonempty.wait()

    def clear(self) -> int:
        """Drop every pending request. Returns how many were dropped."""
        dropped = 0
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            dropped += 1
        self._nonempty.clear()
        if dropped:
            log.info("mode_queue.cleared", dropped=dropped)
        return dropped

    def size(self) -> int:
        return self._queue.qsize()

    def empty(self) -> bool:
        return self._queue.empty()
