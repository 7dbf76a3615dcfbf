"""Async event bus bridging run callbacks to event-stream consumers.

The runner fires per-kind callbacks. EventBus.make_handlers() returns an
EventHandlers whose callbacks push every event into one queue, so an
adapter can `async for event in bus.consume()` instead.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator

from ccbridge.engine.handlers import EventHandlers
from ccbridge.engine.models import AgentEvent

logger = logging.getLogger(__name__)

_PUT_TIMEOUT_SECONDS = 30.0


class EventBus:
    """Async queue of AgentEvents for a single consumer."""

    def __init__(self, maxsize: int = 5000) -> None:
        self._queue: asyncio.Queue[AgentEvent] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self.errors: list[Exception] = []

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return self._queue.qsize()

    async def emit(self, event: AgentEvent) -> None:
        if self._closed:
            return
        try:
            # Backpressure instead of dropping
            await asyncio.wait_for(self._queue.put(event), timeout=_PUT_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.error(
                "EventBus queue blocked for %.0fs, dropping: %s (queue size: %d)",
                _PUT_TIMEOUT_SECONDS, event.kind, self._queue.qsize(),
            )

    def _record_error(self, error: Exception) -> None:
        logger.warning("Agent stream error: %s", error)
        self.errors.append(error)

    def make_handlers(self, base: EventHandlers | None = None) -> EventHandlers:
        """Handlers that publish every event; on_error/on_queued come from *base*."""
        base = base or EventHandlers()
        return base.replace(
            on_init=self.emit,
            on_tool_invocation=self.emit,
            on_assistant_text=self.emit,
            on_tool_outcome=self.emit,
            on_completion=self.emit,
            on_error=base.on_error or self._record_error,
        )

    async def consume(self) -> AsyncIterator[AgentEvent]:
        """Yield events as they arrive. After close(), drains what is left."""
        while True:
            if self._closed and self._queue.empty():
                return
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
            yield event

    def close(self) -> None:
        """Stop accepting events; consumers finish once the queue is empty."""
        self._closed = True

    def reset(self) -> None:
        """Drain leftover events and re-open the bus for another run."""
        while not self._queue.empty():
            self._queue.get_nowait()
        self.errors.clear()
        self._closed = False
