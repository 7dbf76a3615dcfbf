"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via CCBRIDGE_* env vars,
or load a config.yaml with yaml_config.load_yaml_config().
"""
from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass, field

from .errors import ConfigError

logger = logging.getLogger(__name__)

ENV_PREFIX = "CCBRIDGE_"
_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _parse_float(key: str, raw: str) -> float:
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigError(key, raw, "expected a number") from exc
    if value <= 0:
        raise ConfigError(key, raw, "must be positive")
    return value


def _parse_int(key: str, raw: str) -> int:
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigError(key, raw, "expected an integer") from exc
    if value < 0:
        raise ConfigError(key, raw, "must not be negative")
    return value


def _parse_bool(key: str, raw: str) -> bool:
    lowered = raw.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ConfigError(key, raw, "expected a boolean")


def _parse_str(key: str, raw: str) -> str:
    return raw


# Env suffix -> (EngineConfig attribute, parser)
_ENV_FIELDS = {
    "CLAUDE_PATH": ("claude_path", _parse_str),
    "DEFAULT_MODEL": ("default_model", _parse_str),
    "TIMEOUT": ("timeout_seconds", _parse_float),
    "KILL_GRACE": ("kill_grace_seconds", _parse_float),
    "SKIP_PERMISSIONS": ("skip_permissions", _parse_bool),
    "EXTRA_ARGS": ("extra_args", lambda _key, raw: raw.split()),
    "LOG_LEVEL": ("log_level", lambda _key, raw: raw.upper()),
    "LOG_FILE": ("log_file", _parse_str),
    "LOG_MAX_BYTES": ("log_max_bytes", _parse_int),
    "LOG_BACKUPS": ("log_backup_count", _parse_int),
    "REAP_STALE": ("reap_stale_processes", _parse_bool),
}


def resolve_command(command: str, fallback: str | None = None) -> str:
    """Return the agent binary to run: *command* if set, else *fallback*.

    A configured command is never swapped for another binary. It may point
    to a CLI that is not on PATH (custom wrappers, tests); the raw value is
    kept so spawn errors show the configured command.
    """
    if command:
        if not shutil.which(command):
            logger.debug("Command %s not found on PATH; using it as given", command)
        return command
    return fallback or command


@dataclass
class EngineConfig:
    """Agent execution engine configuration."""

    # Agent CLI
    claude_path: str = "claude"
    default_model: str = "opus"
    # Per-run wall-clock limit before the process is terminated.
    timeout_seconds: float = 15 * 60.0
    # Wait between SIGTERM and SIGKILL when stopping a process.
    kill_grace_seconds: float = 5.0
    # Pass --dangerously-skip-permissions (the bridge is non-interactive).
    skip_permissions: bool = True
    # Appended verbatim after the generated flags.
    extra_args: list[str] = field(default_factory=list)

    # Logging
    log_level: str = "INFO"
    log_file: str | None = None
    log_max_bytes: int = 10 * 1024 * 1024
    log_backup_count: int = 7

    # Kill orphaned stream-json agent processes at startup.
    reap_stale_processes: bool = False

    def resolved_claude_path(self) -> str:
        return resolve_command(self.claude_path, "claude")

    def apply_env(self, environ: dict[str, str] | None = None) -> EngineConfig:
        """Override fields from CCBRIDGE_* variables in place."""
        env = os.environ if environ is None else environ
        overrides = {k: v for k, v in env.items() if k.startswith(ENV_PREFIX)}
        if overrides:
            logger.info(
                "EngineConfig: %s* env overrides: %s",
                ENV_PREFIX,
                ", ".join(sorted(overrides)),
            )

        for suffix, (attr, parse) in _ENV_FIELDS.items():
            key = ENV_PREFIX + suffix
            raw = overrides.get(key)
            if raw is None or raw == "":
                continue
            setattr(self, attr, parse(key, raw))
        return self

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> EngineConfig:
        """Load configuration from CCBRIDGE_* environment variables."""
        config = cls().apply_env(environ)
        logger.info(
            "EngineConfig.from_env: claude=%s model=%s timeout=%.0fs log_level=%s",
            config.claude_path, config.default_model,
            config.timeout_seconds, config.log_level,
        )
        return config
