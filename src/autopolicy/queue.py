from __future__ import annotations

import asyncio

import structlog

from autopolicy.models import ObjectRef

logger = structlog.get_logger()


class WorkQueue:
    """
    Deduplicating asyncio work queue keyed by object identity.

    - a key already waiting in the queue is not added twice
    - a key is handed to at most one worker at a time
    - a key added while a worker holds it is queued once more on ``done``
    - ``add_after`` re-adds a key after a fixed delay
    """

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop
        self._queue: asyncio.Queue[ObjectRef | None] = asyncio.Queue()
        self._pending: set[ObjectRef] = set()
        self._processing: set[ObjectRef] = set()
        self._dirty: set[ObjectRef] = set()
        self._timers: dict[ObjectRef, asyncio.TimerHandle] = {}
        self._shutting_down = False

    def add(self, ref: ObjectRef) -> None:
        if self._shutting_down:
            return
        if ref in self._processing:
            self._dirty.add(ref)
            return
        if ref in self._pending:
            return
        self._pending.add(ref)
        self._queue.put_nowait(ref)

    def add_threadsafe(self, ref: ObjectRef) -> None:
        """Add from a non-event-loop thread (watch threads)."""
        if self._loop is None:
            raise RuntimeError("WorkQueue was created without an event loop")
        self._loop.call_soon_threadsafe(self.add, ref)

    def add_after(self, ref: ObjectRef, delay: float) -> None:
        if self._shutting_down:
            return
        loop = self._loop or asyncio.get_running_loop()
        existing = self._timers.pop(ref, None)
        if existing is not None:
            existing.cancel()
        self._timers[ref] = loop.call_later(delay, self._fire, ref)

    def _fire(self, ref: ObjectRef) -> None:
        self._timers.pop(ref, None)
        self.add(ref)

    async def get(self) -> ObjectRef | None:
        """Wait for the next key; None means the queue is shutting down."""
        ref = await self._queue.get()
        if ref is None:
            # Wake the next waiting worker too.
            self._queue.put_nowait(None)
            return None
        self._pending.discard(ref)
        self._processing.add(ref)
        return ref

    def done(self, ref: ObjectRef) -> None:
        self._processing.discard(ref)
        if ref in self._dirty:
            self._dirty.discard(ref)
            self.add(ref)

    def shutdown(self) -> None:
        self._shutting_down = True
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._queue.put_nowait(None)
        logger.info("work_queue_shutdown", pending=len(self._pending))

    def is_scheduled(self, ref: ObjectRef) -> bool:
        return ref in self._timers

    def __len__(self) -> int:
        return len(self._pending)
