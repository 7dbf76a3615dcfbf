"""Exception hierarchy for the agent execution engine.

Specific exceptions for each failure mode. The runner converts them
into failed RunResults at its boundary; the dispatcher reports schema
problems to the caller's error handler instead of raising.
"""
from __future__ import annotations


class BridgeError(Exception):
    """Base exception for all engine errors."""


class AgentSpawnError(BridgeError):
    """The agent CLI could not be started."""
    def __init__(self, command: str, reason: str):
        self.command = command
        self.reason = reason
        super().__init__(f"Failed to start agent process '{command}': {reason}")


class AgentTimeoutError(BridgeError):
    """Agent process exceeded its time budget."""
    def __init__(self, session_id: str, timeout_seconds: float):
        self.session_id = session_id
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Agent process timed out after {timeout_seconds:g}s"
        )


class SchemaMismatchError(BridgeError):
    """A stream line was valid JSON but not a recognized message."""
    def __init__(self, line: str, detail: str):
        self.line = line
        self.detail = detail
        preview = line if len(line) <= 200 else line[:200] + "..."
        super().__init__(f"Unrecognized agent message: {detail} ({preview})")


class HandlerError(BridgeError):
    """A caller-supplied event handler raised."""
    def __init__(self, event_kind: str, cause: BaseException):
        self.event_kind = event_kind
        self.cause = cause
        super().__init__(
            f"Handler for '{event_kind}' failed: {type(cause).__name__}: {cause}"
        )


class ConfigError(BridgeError):
    """Invalid configuration value."""
    def __init__(self, key: str, value: object, reason: str):
        self.key = key
        self.value = value
        super().__init__(f"Invalid config {key}={value!r}: {reason}")
