"""Per-session mutual exclusion and pending-request queues.

SessionStore owns two keyed maps: a FIFO async lock per session and a
FIFO queue of requests that arrived while the session was busy. Both
are created lazily on first use and dropped by cleanup() when the
session is archived.

All mutation happens on the event loop between awaits, so the maps
need no extra synchronization. No lock here is held across a run by
the store itself; callers bracket only their check-then-act decision.
"""
from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


class SessionLock:
    """Async mutex with strict FIFO hand-off between waiters.

    release() passes ownership straight to the oldest waiter, so a
    task that calls acquire() later can never overtake one already
    waiting.
    """

    def __init__(self) -> None:
        self._locked = False
        self._waiters: deque[asyncio.Future[None]] = deque()

    def locked(self) -> bool:
        return self._locked

    @property
    def waiting(self) -> int:
        return sum(1 for w in self._waiters if not w.done())

    async def acquire(self) -> None:
        if not self._locked and not self._waiters:
            self._locked = True
            return
        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Ownership was handed to us just before cancellation.
                self.release()
            else:
                try:
                    self._waiters.remove(waiter)
                except ValueError:
                    pass
            raise

    def release(self) -> None:
        if not self._locked:
            raise RuntimeError("SessionLock.release() called on an unlocked lock")
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                # Lock stays held; ownership moves to the waiter.
                waiter.set_result(None)
                return
        self._locked = False


@dataclass
class PendingRequest:
    """A queued payload and the future its submitter is awaiting."""
    payload: Any
    future: asyncio.Future[Any] = field(repr=False)

    def resolve(self, result: Any = None) -> None:
        if not self.future.done():
            self.future.set_result(result)


class SessionStore:
    """Lock and queue bookkeeping for every session."""

    def __init__(self) -> None:
        self._locks: dict[str, SessionLock] = {}
        self._queues: dict[str, deque[PendingRequest]] = {}

    def _lock_for(self, session_id: str) -> SessionLock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = SessionLock()
            self._locks[session_id] = lock
        return lock

    async def acquire(self, session_id: str) -> None:
        """Wait until the session's lock is free, then hold it."""
        await self._lock_for(session_id).acquire()

    def release(self, session_id: str) -> None:
        lock = self._locks.get(session_id)
        if lock is None:
            logger.debug("Release for unknown session %s ignored", session_id[:12])
            return
        lock.release()

    @asynccontextmanager
    async def lock(self, session_id: str) -> AsyncIterator[None]:
        """Hold the session lock for the body; always released."""
        await self.acquire(session_id)
        try:
            yield
        finally:
            self.release(session_id)

    def is_locked(self, session_id: str) -> bool:
        lock = self._locks.get(session_id)
        return lock is not None and lock.locked()

    def enqueue(self, session_id: str, payload: Any) -> asyncio.Future[Any]:
        """Append *payload*; the returned future resolves once it has run."""
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._queues.setdefault(session_id, deque()).append(
            PendingRequest(payload=payload, future=future)
        )
        logger.debug(
            "Queued request for session %s (queue length %d)",
            session_id[:12], len(self._queues[session_id]),
        )
        return future

    def dequeue(self, session_id: str) -> PendingRequest | None:
        queue = self._queues.get(session_id)
        if not queue:
            return None
        item = queue.popleft()
        if not queue:
            del self._queues[session_id]
        return item

    def discard(self, session_id: str, future: asyncio.Future[Any]) -> bool:
        """Remove the pending request awaited through *future*, if still queued."""
        queue = self._queues.get(session_id)
        if not queue:
            return False
        for item in queue:
            if item.future is future:
                queue.remove(item)
                break
        else:
            return False
        if not queue:
            del self._queues[session_id]
        return True

    def queue_length(self, session_id: str) -> int:
        queue = self._queues.get(session_id)
        return len(queue) if queue else 0

    def clear_queue(self, session_id: str) -> int:
        """Drop every pending request, resolving each with None."""
        queue = self._queues.pop(session_id, None)
        if not queue:
            return 0
        for item in queue:
            item.resolve(None)
        logger.info(
            "Dropped %d queued request(s) for session %s",
            len(queue), session_id[:12],
        )
        return len(queue)

    def cleanup(self, session_id: str) -> None:
        """Forget the session's lock and queue entirely."""
        self.clear_queue(session_id)
        lock = self._locks.get(session_id)
        if lock is not None and lock.locked():
            # Dropping a held lock would strand its waiters.
            logger.warning(
                "Session %s lock still held during cleanup; keeping it",
                session_id[:12],
            )
            return
        self._locks.pop(session_id, None)

    def session_ids(self) -> list[str]:
        return sorted(set(self._locks) | set(self._queues))
