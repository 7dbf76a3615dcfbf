"""YAML configuration loader.

Loads a single config.yaml on top of the built-in defaults, then applies
CCBRIDGE_* environment overrides (environment wins). A missing file is
not an error: defaults are used and a warning is logged.

Example YAML:
    claude:
      path: /usr/local/bin/claude
      default_model: opus
      timeout: 900000          # milliseconds
      kill_grace_seconds: 5
      skip_permissions: true
      extra_args: ["--max-turns", "40"]
      reap_stale_processes: false

    logging:
      level: INFO
      file: logs/ccbridge.log  # relative to this file's directory
      max_bytes: 10485760
      backup_count: 7
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from .config import EngineConfig
from .errors import ConfigError

logger = logging.getLogger(__name__)


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(name, value, "expected a mapping")
    return value


def _number(section: str, key: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{section}.{key}", value, "expected a number")
    if value <= 0:
        raise ConfigError(f"{section}.{key}", value, "must be positive")
    return float(value)


def _apply_claude_section(config: EngineConfig, claude: dict[str, Any]) -> None:
    if claude.get("path"):
        config.claude_path = str(claude["path"])
    if claude.get("default_model"):
        config.default_model = str(claude["default_model"])
    if "timeout" in claude:
        # Milliseconds, matching the historical config.yaml format.
        config.timeout_seconds = _number("claude", "timeout", claude["timeout"]) / 1000.0
    if "kill_grace_seconds" in claude:
        config.kill_grace_seconds = _number(
            "claude", "kill_grace_seconds", claude["kill_grace_seconds"],
        )
    if "skip_permissions" in claude:
        config.skip_permissions = bool(claude["skip_permissions"])
    if "extra_args" in claude:
        extra = claude["extra_args"] or []
        if not isinstance(extra, list):
            raise ConfigError("claude.extra_args", extra, "expected a list")
        config.extra_args = [str(a) for a in extra]
    if "reap_stale_processes" in claude:
        config.reap_stale_processes = bool(claude["reap_stale_processes"])


def _apply_logging_section(
    config: EngineConfig, section: dict[str, Any], base_dir: Path,
) -> None:
    if section.get("level"):
        config.log_level = str(section["level"]).upper()
    if section.get("file"):
        log_path = Path(str(section["file"])).expanduser()
        if not log_path.is_absolute():
            log_path = base_dir / log_path
        config.log_file = str(log_path)
    if "max_bytes" in section:
        config.log_max_bytes = int(section["max_bytes"])
    if "backup_count" in section:
        config.log_backup_count = int(section["backup_count"])


def load_yaml_config(
    path: str | Path,
    environ: dict[str, str] | None = None,
) -> EngineConfig:
    """Load *path* into an EngineConfig, then apply env overrides."""
    path = Path(path)
    config = EngineConfig()
    raw: dict[str, Any] = {}

    if path.exists():
        try:
            with open(path, encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
            raise ConfigError(str(path), "<file>", f"YAML parse error: {exc}") from exc
        if not isinstance(raw, dict):
            raise ConfigError(str(path), type(raw).__name__, "top level must be a mapping")
        logger.info(
            "Parsed YAML config %s sections: %s",
            path.name, ", ".join(sorted(raw)) or "(empty)",
        )
    else:
        logger.warning(
            "Config file not found: %s; using default configuration", path,
        )

    _apply_claude_section(config, _section(raw, "claude"))
    _apply_logging_section(config, _section(raw, "logging"), path.parent)
    return config.apply_env(environ)
