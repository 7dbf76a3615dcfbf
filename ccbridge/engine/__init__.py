"""ccbridge engine - per-session agent CLI execution with queuing and streaming."""
from .models import (
    AgentEvent,
    AssistantTextEvent,
    CompletionEvent,
    CompletionStatus,
    InitEvent,
    RunRequest,
    RunResult,
    RunState,
    TerminationReason,
    ToolInvocationEvent,
    ToolOutcomeEvent,
)
from .config import EngineConfig
from .handlers import EventHandlers
from .errors import (
    AgentSpawnError,
    AgentTimeoutError,
    BridgeError,
    ConfigError,
    HandlerError,
    SchemaMismatchError,
)

__all__ = [
    # Entry point (lazy import)
    "SessionExecutor",
    # Components (lazy import)
    "AgentRunner",
    "ProcessRegistry",
    "SessionStore",
    "StreamDispatcher",
    # Models
    "AgentEvent",
    "AssistantTextEvent",
    "CompletionEvent",
    "CompletionStatus",
    "InitEvent",
    "RunRequest",
    "RunResult",
    "RunState",
    "TerminationReason",
    "ToolInvocationEvent",
    "ToolOutcomeEvent",
    # Config
    "EngineConfig",
    "EventHandlers",
    # YAML config (lazy import)
    "load_yaml_config",
    # Errors
    "AgentSpawnError",
    "AgentTimeoutError",
    "BridgeError",
    "ConfigError",
    "HandlerError",
    "SchemaMismatchError",
]


def __getattr__(name: str):
    if name == "SessionExecutor":
        from .executor import SessionExecutor
        return SessionExecutor
    if name == "AgentRunner":
        from .runner import AgentRunner
        return AgentRunner
    if name == "ProcessRegistry":
        from .process_registry import ProcessRegistry
        return ProcessRegistry
    if name == "SessionStore":
        from .session_store import SessionStore
        return SessionStore
    if name == "StreamDispatcher":
        from .stream_dispatcher import StreamDispatcher
        return StreamDispatcher
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
