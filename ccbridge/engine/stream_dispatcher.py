"""Incremental parser for the agent's newline-delimited JSON stream.

Raw stdout text arrives in arbitrary chunks. The dispatcher keeps the
trailing partial line between feed() calls, turns each complete line
into typed AgentEvents and hands them to the registered handlers in
arrival order.

Error policy:
  - blank lines are skipped
  - non-JSON lines (progress text, banners) are dropped silently
  - JSON that matches no known message is reported to on_error and
    the stream continues
  - a handler that raises is reported to on_error and the stream
    continues
"""
from __future__ import annotations

import json
import logging
import math

from pydantic import ValidationError

from .errors import HandlerError, SchemaMismatchError
from .handlers import EventHandlers
from .models import (
    AgentEvent,
    AssistantTextEvent,
    CompletionEvent,
    CompletionStatus,
    InitEvent,
    ToolInvocationEvent,
    ToolOutcomeEvent,
)
from .protocol import (
    AgentMessage,
    AssistantMessage,
    LegacyToolResultMessage,
    LegacyToolUseMessage,
    ResultMessage,
    SystemMessage,
    UserMessage,
    flatten_tool_output,
    parse_message,
)

logger = logging.getLogger(__name__)

_KNOWN_STATUSES = {s.value for s in CompletionStatus}


def _as_int(value: float | None) -> int | None:
    if value is None or not math.isfinite(value):
        return None
    return int(round(value))


class StreamDispatcher:
    """Line-buffering stream-json parser for one agent run."""

    def __init__(self, handlers: EventHandlers | None = None) -> None:
        self._handlers = handlers or EventHandlers()
        self._buffer = ""
        self._flushed = False
        self.lines_processed = 0
        self.lines_skipped = 0

    @property
    def pending(self) -> str:
        """The buffered incomplete line."""
        return self._buffer

    async def feed(self, chunk: str) -> None:
        """Append *chunk* and process every line it completes."""
        if self._flushed:
            raise RuntimeError("StreamDispatcher.feed() called after flush()")
        self._buffer += chunk
        if "\n" not in chunk:
            return
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        for line in lines:
            await self.process_line(line)

    async def flush(self) -> None:
        """Process whatever is left once the stream has ended."""
        if self._flushed:
            raise RuntimeError("StreamDispatcher.flush() called twice")
        self._flushed = True
        remaining, self._buffer = self._buffer, ""
        if remaining.strip():
            await self.process_line(remaining)

    async def process_line(self, line: str) -> None:
        stripped = line.strip()
        if not stripped:
            return

        try:
            data = json.loads(stripped)
        except (json.JSONDecodeError, ValueError):
            # Not JSON (e.g. CLI status chatter), suppress
            self.lines_skipped += 1
            logger.debug("Skipping non-JSON stream line: %.120s", stripped)
            return

        try:
            message = parse_message(data)
        except ValidationError as exc:
            detail = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
                for err in exc.errors()
            )
            logger.warning("Unrecognized stream-json message: %s", detail)
            await self._handlers.report_error(SchemaMismatchError(stripped, detail))
            return

        self.lines_processed += 1
        for event in self._events_for(message):
            await self._emit(event)

    async def _emit(self, event: AgentEvent) -> None:
        try:
            await self._handlers.emit(event)
        except Exception as exc:
            logger.exception("Handler for %s event failed", event.kind)
            await self._handlers.report_error(HandlerError(event.kind, exc))

    @staticmethod
    def _events_for(message: AgentMessage) -> list[AgentEvent]:
        """Map one validated wire message to zero or more events."""
        if isinstance(message, SystemMessage):
            if message.subtype != "init":
                return []
            servers = (
                [s.model_dump() for s in message.mcp_servers]
                if message.mcp_servers is not None
                else None
            )
            return [InitEvent(
                agent_session_id=message.session_id or "",
                tool_names=list(message.tools),
                server_info=servers,
                model=message.model,
                cwd=message.cwd,
            )]

        if isinstance(message, AssistantMessage):
            events: list[AgentEvent] = []
            texts: list[str] = []
            for item in message.message.items():
                if item.type == "tool_use":
                    events.append(ToolInvocationEvent(
                        invocation_id=item.id,
                        name=item.name or "",
                        input=dict(item.input or {}),
                    ))
                elif item.type == "text":
                    texts.append(item.text or "")
            if any(t.strip() for t in texts):
                events.append(AssistantTextEvent(text="\n".join(texts)))
            return events

        if isinstance(message, UserMessage):
            return [
                ToolOutcomeEvent(
                    invocation_id=item.tool_use_id,
                    output=flatten_tool_output(item.content),
                    is_error=bool(item.is_error),
                )
                for item in message.message.items()
                if item.type == "tool_result"
            ]

        if isinstance(message, ResultMessage):
            status = (
                CompletionStatus(message.subtype)
                if message.subtype in _KNOWN_STATUSES
                else CompletionStatus.ERROR
            )
            cost = (
                message.total_cost_usd
                if message.total_cost_usd is not None
                else message.cost_usd
            )
            return [CompletionEvent(
                status=status,
                result_text=message.result,
                is_error=message.is_error,
                cost_usd=cost,
                duration_ms=_as_int(message.duration_ms),
                duration_api_ms=_as_int(message.duration_api_ms),
                num_turns=_as_int(message.num_turns),
                agent_session_id=message.session_id,
            )]

        if isinstance(message, LegacyToolUseMessage):
            return [ToolInvocationEvent(
                invocation_id=message.id,
                name=message.tool_name,
                input=dict(message.tool_input),
            )]

        if isinstance(message, LegacyToolResultMessage):
            return [ToolOutcomeEvent(
                invocation_id=message.tool_use_id,
                output=flatten_tool_output(message.tool_result),
                is_error=message.is_error,
                tool_name=message.tool_name,
            )]

        return []
