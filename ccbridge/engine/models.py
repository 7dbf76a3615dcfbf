"""Core data models for the agent execution engine.

Plain dataclasses and enums shared by the dispatcher, runner and
executor. Single source of truth to avoid circular imports.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any


class RunState(str, Enum):
    """Per-run lifecycle states. See lifecycle.py for transition rules."""
    IDLE = "idle"
    SPAWNING = "spawning"
    STREAMING = "streaming"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    STOPPED = "stopped"
    FAILED = "failed"


class CompletionStatus(str, Enum):
    """Terminal status reported by the agent's ``result`` message."""
    SUCCESS = "success"
    ERROR = "error"
    ERROR_MAX_TURNS = "error_max_turns"
    INTERRUPTED = "interrupted"


class TerminationReason(str, Enum):
    """Why the engine signalled an agent process."""
    STOPPED = "stopped"
    TIMEOUT = "timeout"
    REPLACED = "replaced"
    SHUTDOWN = "shutdown"


@dataclass(frozen=True)
class RunRequest:
    """One prompt to execute for a session.

    ``continue_prior`` and ``resume_token`` are alternative ways of
    resuming a conversation; ``continue_prior`` wins when both are set.
    ``timeout_ms=None`` means the configured default.
    """
    session_id: str
    cwd: str
    prompt: str
    resume_token: str | None = None
    continue_prior: bool = False
    model: str | None = None
    timeout_ms: int | None = None


@dataclass(frozen=True)
class RunResult:
    """Normalized outcome of a single agent invocation."""
    success: bool
    resumed_session_id: str | None = None
    cost_usd: float | None = None
    duration_ms: int | None = None
    error_text: str | None = None
    exit_code: int | None = None
    num_turns: int | None = None
    state: RunState = RunState.FAILED


@dataclass
class AgentEvent:
    """Base event parsed from the agent's stream-json output."""
    kind: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class InitEvent(AgentEvent):
    kind: str = "init"
    agent_session_id: str = ""
    tool_names: list[str] = field(default_factory=list)
    server_info: list[dict[str, Any]] | None = None
    model: str | None = None
    cwd: str | None = None


@dataclass
class ToolInvocationEvent(AgentEvent):
    kind: str = "tool_invocation"
    invocation_id: str | None = None
    name: str = ""
    input: dict[str, Any] = field(default_factory=dict)


@dataclass
class AssistantTextEvent(AgentEvent):
    kind: str = "assistant_text"
    text: str = ""


@dataclass
class ToolOutcomeEvent(AgentEvent):
    kind: str = "tool_outcome"
    invocation_id: str | None = None
    output: str = ""
    is_error: bool = False
    tool_name: str | None = None


@dataclass
class CompletionEvent(AgentEvent):
    kind: str = "completion"
    status: CompletionStatus = CompletionStatus.SUCCESS
    result_text: str | None = None
    is_error: bool | None = None
    cost_usd: float | None = None
    duration_ms: int | None = None
    duration_api_ms: int | None = None
    num_turns: int | None = None
    agent_session_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


_EVENT_TYPES: dict[str, type[AgentEvent]] = {
    "init": InitEvent,
    "tool_invocation": ToolInvocationEvent,
    "assistant_text": AssistantTextEvent,
    "tool_outcome": ToolOutcomeEvent,
    "completion": CompletionEvent,
}


def event_from_dict(data: dict[str, Any]) -> AgentEvent:
    """Rebuild a typed event from its ``to_dict()`` form.

    Unknown keys are dropped; an unknown ``kind`` yields a bare AgentEvent.
    """
    cls = _EVENT_TYPES.get(data.get("kind", ""), AgentEvent)
    known = {f.name for f in fields(cls)}
    kwargs = {k: v for k, v in data.items() if k in known}
    if cls is CompletionEvent and "status" in kwargs:
        kwargs["status"] = CompletionStatus(kwargs["status"])
    if cls is AgentEvent:
        kwargs["kind"] = data.get("kind", "")
    return cls(**kwargs)
