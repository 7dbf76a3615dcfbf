"""Handler-registration contract for agent events.

Callers pass an EventHandlers with any subset of callbacks set. Each
callback may be a plain function or a coroutine function; kinds with
no callback are simply not invoked.
"""
from __future__ import annotations

import dataclasses
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Union

from .models import (
    AgentEvent,
    AssistantTextEvent,
    CompletionEvent,
    InitEvent,
    ToolInvocationEvent,
    ToolOutcomeEvent,
)

logger = logging.getLogger(__name__)

# Signature: def handler(arg) -> None, or async def handler(arg) -> None
Handler = Callable[[Any], Union[Awaitable[None], None]]


async def call_handler(handler: Handler | None, arg: Any) -> None:
    """Invoke *handler* with *arg*, awaiting it when it is async."""
    if handler is None:
        return
    result = handler(arg)
    if inspect.isawaitable(result):
        await result


@dataclass
class EventHandlers:
    """Optional per-kind callbacks for a single run."""

    on_init: Callable[[InitEvent], Any] | None = None
    on_tool_invocation: Callable[[ToolInvocationEvent], Any] | None = None
    on_assistant_text: Callable[[AssistantTextEvent], Any] | None = None
    on_tool_outcome: Callable[[ToolOutcomeEvent], Any] | None = None
    on_completion: Callable[[CompletionEvent], Any] | None = None
    # Receives SchemaMismatchError / HandlerError instances.
    on_error: Callable[[Exception], Any] | None = None
    # Receives the 1-based queue position when a request has to wait.
    on_queued: Callable[[int], Any] | None = None

    def handler_for(self, event: AgentEvent) -> Handler | None:
        return getattr(self, f"on_{event.kind}", None)

    async def emit(self, event: AgentEvent) -> None:
        await call_handler(self.handler_for(event), event)

    async def report_error(self, error: Exception) -> None:
        """Deliver *error* to on_error; failures there are only logged."""
        if self.on_error is None:
            logger.debug("No error handler registered: %s", error)
            return
        try:
            await call_handler(self.on_error, error)
        except Exception:
            logger.exception("Error handler raised while reporting: %s", error)

    def replace(self, **changes: Any) -> EventHandlers:
        return dataclasses.replace(self, **changes)
