"""Single public entry point for running prompts against sessions.

SessionExecutor composes the SessionStore (locks and queues), the
ProcessRegistry and the AgentRunner. submit() always takes the session
lock around the busy check, so two concurrent submits for one session
can never both reach the registry's kill-and-replace path.

QUEUE MODEL:
   The first submit for an idle session claims it and runs immediately.
   Submits that arrive while the session is busy are queued and their
   callers wait on a future. When a run finishes, the claiming caller
   drains the queue in FIFO order, resuming each queued request from
   the most recent agent session id. The "queue empty, session idle"
   decision is made under the lock.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import replace

from .config import EngineConfig
from .handlers import EventHandlers, call_handler
from .models import RunRequest, RunResult, RunState
from .process_registry import ProcessRegistry
from .runner import AgentRunner
from .session_store import PendingRequest, SessionStore

logger = logging.getLogger(__name__)


class SessionExecutor:
    """Serializes agent runs per session and runs sessions in parallel."""

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        runner: AgentRunner | None = None,
        store: SessionStore | None = None,
    ) -> None:
        if runner is None:
            runner = AgentRunner(config or EngineConfig())
        self._runner = runner
        self._store = store if store is not None else SessionStore()
        # Sessions with a run or drain loop in progress.
        self._active: set[str] = set()
        # Archived while a drain loop was still running.
        self._archived: set[str] = set()
        self._shutting_down = False
        self._shutdown_lock = asyncio.Lock()

    @property
    def runner(self) -> AgentRunner:
        return self._runner

    @property
    def registry(self) -> ProcessRegistry:
        return self._runner.registry

    @property
    def store(self) -> SessionStore:
        return self._store

    def is_busy(self, session_id: str) -> bool:
        return session_id in self._active or self.registry.is_running(session_id)

    async def submit(
        self,
        request: RunRequest,
        handlers: EventHandlers | None = None,
    ) -> RunResult | None:
        """Run *request* now, or queue it behind the session's current run.

        Returns the RunResult of this request's own run, or None when a
        queued request was dropped (clear_queue, archive, shutdown).
        """
        handlers = handlers or EventHandlers()
        session_id = request.session_id
        if self._shutting_down:
            logger.warning("Rejecting submit for session %s: shutting down", session_id[:12])
            return RunResult(
                success=False,
                error_text="Executor is shutting down",
                state=RunState.FAILED,
            )

        future: asyncio.Future | None = None
        async with self._store.lock(session_id):
            if self.is_busy(session_id):
                future = self._store.enqueue(session_id, (request, handlers))
                position = self._store.queue_length(session_id)
            else:
                self._active.add(session_id)

        if future is not None:
            logger.info(
                "Session %s busy; request queued at position %d",
                session_id[:12], position,
            )
            try:
                try:
                    await call_handler(handlers.on_queued, position)
                except Exception:
                    logger.exception("on_queued handler failed for session %s", session_id[:12])
                return await future
            except asyncio.CancelledError:
                if self._store.discard(session_id, future):
                    logger.info(
                        "Session %s queued request cancelled; removed from queue",
                        session_id[:12],
                    )
                raise

        return await self._run_and_drain(request, handlers)

    async def _run_and_drain(
        self, request: RunRequest, handlers: EventHandlers,
    ) -> RunResult:
        session_id = request.session_id
        current: PendingRequest | None = None
        try:
            result = await self._runner.run(request, handlers)
            token = result.resumed_session_id or request.resume_token

            while True:
                async with self._store.lock(session_id):
                    current = self._store.dequeue(session_id)
                    if current is None:
                        self._active.discard(session_id)
                        break
                if current.future.done():
                    # Its submitter went away before it ran.
                    current = None
                    continue
                queued_request, queued_handlers = current.payload
                if token:
                    queued_request = replace(
                        queued_request, resume_token=token, continue_prior=False,
                    )
                logger.info(
                    "Session %s running queued request (%d still waiting)",
                    session_id[:12], self._store.queue_length(session_id),
                )
                queued_result = await self._runner.run(queued_request, queued_handlers)
                token = queued_result.resumed_session_id or token
                current.resolve(queued_result)
                current = None

            if session_id in self._archived:
                self._archived.discard(session_id)
                self._store.cleanup(session_id)
            return result
        except BaseException:
            # The caller that owns the drain loop is gone; nobody else
            # would run what is still queued.
            self._active.discard(session_id)
            self._archived.discard(session_id)
            if current is not None:
                current.resolve(None)
            dropped = self._store.clear_queue(session_id)
            if dropped:
                logger.warning(
                    "Session %s drain aborted; dropped %d queued request(s)",
                    session_id[:12], dropped,
                )
            raise

    async def stop(self, session_id: str) -> bool:
        """Stop the session's running process. Queued requests stay queued."""
        return await self.registry.stop(session_id)

    async def stop_all(self) -> None:
        await self.registry.stop_all()

    async def archive(self, session_id: str) -> bool:
        """Drop the session's queue, stop its process and forget its state."""
        dropped = self._store.clear_queue(session_id)
        stopped = await self.registry.stop(session_id)
        if session_id in self._active:
            self._archived.add(session_id)
        self._store.cleanup(session_id)
        logger.info(
            "Archived session %s (stopped=%s, dropped=%d)",
            session_id[:12], stopped, dropped,
        )
        return stopped

    async def shutdown(self) -> None:
        """Reject new work, drop every queue and stop every process."""
        if self._shutdown_lock.locked():
            logger.info("Shutdown already in progress, skipping concurrent call")
            return
        async with self._shutdown_lock:
            self._shutting_down = True
            for session_id in self._store.session_ids():
                self._store.clear_queue(session_id)
            await self.registry.stop_all()
            logger.info("SessionExecutor shutdown complete")

    # Low-level lock/queue operations for adapters that drive their own loop.

    async def acquire_lock(self, session_id: str) -> None:
        await self._store.acquire(session_id)

    def release_lock(self, session_id: str) -> None:
        self._store.release(session_id)

    def enqueue(self, session_id: str, payload: object) -> asyncio.Future:
        return self._store.enqueue(session_id, payload)

    def dequeue(self, session_id: str) -> PendingRequest | None:
        return self._store.dequeue(session_id)

    def queue_length(self, session_id: str) -> int:
        return self._store.queue_length(session_id)

    def clear_queue(self, session_id: str) -> int:
        return self._store.clear_queue(session_id)

    def cleanup(self, session_id: str) -> None:
        self._store.cleanup(session_id)

    # Registry queries

    def is_running(self, session_id: str) -> bool:
        return self.registry.is_running(session_id)

    def running_count(self) -> int:
        return self.registry.running_count()

    def running_ids(self) -> list[str]:
        return self.registry.running_ids()
