"""
Per-canvas lock held by an agent session, plus the patch notification channel.

While an agent holds a canvas lock, user-initiated runs and edits on that
canvas are refused. Locks expire after a TTL so a crashed session cannot
freeze a canvas forever; expiry is logged and treated as a release.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, Callable, Literal

from pydantic import BaseModel, Field

from canvas_engine.errors import LockContentionError
from canvas_engine.models.canvas import utcnow

logger = logging.getLogger(__name__)

EventKind = Literal["proposed", "patch", "rejected", "locked", "unlocked", "expired"]


@dataclass(frozen=True)
class CanvasLock:
    canvas_id: str
    holder: str
    acquired_at: float
    expires_at: float | None = None

    def expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class CanvasEvent(BaseModel):
    canvas_id: str
    kind: EventKind
    patch_id: str | None = None
    holder: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class CanvasLockManager:
    def __init__(
        self,
        ttl: float | None = 900.0,
        clock: Callable[[], float] = time.monotonic,
        subscriber_queue_size: int = 100,
    ):
        self.ttl = ttl
        self.clock = clock
        self.subscriber_queue_size = subscriber_queue_size
        self._locks: dict[str, CanvasLock] = {}
        self._subscribers: dict[str, set[asyncio.Queue]] = {}

    # ------------------------------------------------------------------
    # Lock state
    # ------------------------------------------------------------------

    def _current(self, canvas_id: str) -> CanvasLock | None:
        lock = self._locks.get(canvas_id)
        if lock is None:
            return None
        if lock.expired(self.clock()):
            del self._locks[canvas_id]
            logger.warning(
                "Lock on canvas %s held by %s expired; releasing",
                canvas_id,
                lock.holder,
            )
            self._publish(CanvasEvent(canvas_id=canvas_id, kind="expired", holder=lock.holder))
            return None
        return lock

    def is_locked(self, canvas_id: str) -> bool:
        return self._current(canvas_id) is not None

    def holder(self, canvas_id: str) -> str | None:
        lock = self._current(canvas_id)
        return lock.holder if lock else None

    def get(self, canvas_id: str) -> CanvasLock | None:
        return self._current(canvas_id)

    def lock(self, canvas_id: str, holder: str, ttl: float | None = None) -> CanvasLock:
        """
        Acquire the canvas for a holder.

        Re-acquiring by the same holder refreshes the expiry. Raises
        LockContentionError if another holder has it.
        """
        current = self._current(canvas_id)
        if current is not None and current.holder != holder:
            raise LockContentionError(canvas_id, current.holder)

        now = self.clock()
        ttl = ttl if ttl is not None else self.ttl
        lock = CanvasLock(
            canvas_id=canvas_id,
            holder=holder,
            acquired_at=current.acquired_at if current else now,
            expires_at=now + ttl if ttl else None,
        )
        self._locks[canvas_id] = lock
        if current is None:
            logger.info("Canvas %s locked by %s", canvas_id, holder)
            self._publish(CanvasEvent(canvas_id=canvas_id, kind="locked", holder=holder))
        return lock

    def refresh(self, canvas_id: str, holder: str, ttl: float | None = None) -> CanvasLock:
        self.ensure_holder(canvas_id, holder)
        return self.lock(canvas_id, holder, ttl)

    def unlock(self, canvas_id: str, holder: str | None = None) -> bool:
        """Release the lock. With a holder given, only that holder may release it."""
        current = self._current(canvas_id)
        if current is None:
            return False
        if holder is not None and current.holder != holder:
            raise LockContentionError(canvas_id, current.holder)
        del self._locks[canvas_id]
        logger.info("Canvas %s unlocked by %s", canvas_id, current.holder)
        self._publish(CanvasEvent(canvas_id=canvas_id, kind="unlocked", holder=current.holder))
        return True

    def force_release(self, canvas_id: str) -> bool:
        current = self._current(canvas_id)
        if current is None:
            return False
        logger.warning("Force releasing lock on canvas %s held by %s", canvas_id, current.holder)
        return self.unlock(canvas_id)

    def ensure_unlocked(self, canvas_id: str) -> None:
        current = self._current(canvas_id)
        if current is not None:
            raise LockContentionError(canvas_id, current.holder)

    def ensure_holder(self, canvas_id: str, holder: str) -> None:
        current = self._current(canvas_id)
        if current is None or current.holder != holder:
            raise LockContentionError(canvas_id, current.holder if current else None)

    @asynccontextmanager
    async def session(
        self,
        canvas_id: str,
        holder: str,
        ttl: float | None = None,
    ) -> AsyncIterator[CanvasLock]:
        """
        Hold the canvas for the duration of the block.

        The lock is released on every exit path, including cancellation.
        A session entered while the holder already owns the lock leaves it
        in place on exit.
        """
        already_held = self.holder(canvas_id) == holder
        lock = self.lock(canvas_id, holder, ttl)
        try:
            yield lock
        finally:
            if not already_held:
                current = self._locks.get(canvas_id)
                if current is not None and current.holder == holder:
                    self.unlock(canvas_id, holder)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def subscribe(self, canvas_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.subscriber_queue_size)
        self._subscribers.setdefault(canvas_id, set()).add(queue)
        return queue

    def unsubscribe(self, canvas_id: str, queue: asyncio.Queue) -> None:
        subscribers = self._subscribers.get(canvas_id)
        if not subscribers:
            return
        subscribers.discard(queue)
        if not subscribers:
            del self._subscribers[canvas_id]

    def notify_proposal(self, canvas_id: str, patch_id: str) -> CanvasEvent:
        """Tell listeners of a canvas that an agent patch is waiting for review."""
        return self.notify_patch(canvas_id, patch_id, kind="proposed")

    def notify_patch(self, canvas_id: str, patch_id: str, kind: EventKind = "patch") -> CanvasEvent:
        event = CanvasEvent(canvas_id=canvas_id, kind=kind, patch_id=patch_id)
        self._publish(event)
        return event

    def _publish(self, event: CanvasEvent) -> None:
        for queue in list(self._subscribers.get(event.canvas_id, ())):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    "Dropping %s event for canvas %s: subscriber queue full",
                    event.kind,
                    event.canvas_id,
                )
