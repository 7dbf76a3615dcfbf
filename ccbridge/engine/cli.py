"""CLI entry point for the agent execution engine.

Usage:
    ccbridge run "Fix the failing test"
    ccbridge run --cwd ~/src/app --session app --resume 0b1c... "Continue"
    ccbridge run --json --config config.yaml "Summarize the repo"
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from logging.handlers import RotatingFileHandler

from ccbridge.adapters.event_bus import EventBus
from ccbridge.shared.services.process_cleanup import cleanup_stale_agent_processes

from .config import EngineConfig
from .errors import ConfigError
from .executor import SessionExecutor
from .models import (
    AgentEvent,
    AssistantTextEvent,
    CompletionEvent,
    InitEvent,
    RunRequest,
    RunResult,
    ToolInvocationEvent,
    ToolOutcomeEvent,
)
from .yaml_config import load_yaml_config

logger = logging.getLogger(__name__)

_PREVIEW_CHARS = 200


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ccbridge",
        description="Run prompts through the Claude CLI with per-session queuing",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run one prompt and print its event stream")
    run.add_argument("prompt", help="Prompt text passed to the agent")
    run.add_argument(
        "--cwd",
        default=None,
        help="Working directory for the agent (default: current dir)",
    )
    run.add_argument(
        "--session",
        default="cli",
        help="Session key used for locking and queuing (default: cli)",
    )
    resume = run.add_mutually_exclusive_group()
    resume.add_argument(
        "--resume",
        default=None,
        metavar="TOKEN",
        help="Resume the agent conversation with this session id",
    )
    resume.add_argument(
        "--continue",
        dest="continue_prior",
        action="store_true",
        help="Continue the most recent conversation in the working directory",
    )
    run.add_argument(
        "--model",
        default=None,
        help="Model passed to the agent (default: from config)",
    )
    run.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Run timeout in seconds (default: from config, 900)",
    )
    run.add_argument(
        "--config",
        default=None,
        help="Path to a config.yaml (default: CCBRIDGE_* env vars only)",
    )
    run.add_argument(
        "--json",
        action="store_true",
        help="Print events and the result as JSON lines",
    )
    run.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )
    run.add_argument(
        "--reap-stale",
        action="store_true",
        help="Kill orphaned stream-json agent processes before running",
    )
    return parser


def configure_logging(config: EngineConfig, verbose: bool = False) -> None:
    """Stderr logging always; a rotating log file when one is configured."""
    level_name = "DEBUG" if verbose else config.log_level
    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name, logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)
    if config.log_file:
        log_dir = os.path.dirname(config.log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            config.log_file,
            maxBytes=config.log_max_bytes,
            backupCount=config.log_backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)


def _preview(text: str) -> str:
    text = text.strip()
    if len(text) <= _PREVIEW_CHARS:
        return text
    return text[:_PREVIEW_CHARS] + "..."


def format_event(event: AgentEvent) -> str:
    """One human-readable line (or block, for assistant text) per event."""
    if isinstance(event, InitEvent):
        return f"[init] session={event.agent_session_id} tools={len(event.tool_names)}"
    if isinstance(event, ToolInvocationEvent):
        return f"[tool] {event.name} {_preview(json.dumps(event.input))}"
    if isinstance(event, ToolOutcomeEvent):
        marker = "tool error" if event.is_error else "tool result"
        return f"[{marker}] {_preview(event.output)}"
    if isinstance(event, AssistantTextEvent):
        return event.text
    if isinstance(event, CompletionEvent):
        cost = f"${event.cost_usd:.4f}" if event.cost_usd is not None else "n/a"
        return f"[done] status={event.status.value} cost={cost} duration_ms={event.duration_ms}"
    return f"[{event.kind}]"


def format_result(result: RunResult | None) -> str:
    if result is None:
        return "Result: dropped before it ran"
    status = "success" if result.success else f"failed ({result.state.value})"
    line = f"Result: {status} session={result.resumed_session_id or '-'}"
    if result.error_text:
        line += f"\n{result.error_text}"
    return line


def _result_dict(result: RunResult | None) -> dict:
    if result is None:
        return {"kind": "result", "dropped": True}
    return {
        "kind": "result",
        "success": result.success,
        "state": result.state.value,
        "resumed_session_id": result.resumed_session_id,
        "cost_usd": result.cost_usd,
        "duration_ms": result.duration_ms,
        "num_turns": result.num_turns,
        "exit_code": result.exit_code,
        "error_text": result.error_text,
    }


def _load_config(path: str | None) -> EngineConfig:
    if path:
        return load_yaml_config(path)
    return EngineConfig.from_env()


async def run_prompt(
    args: argparse.Namespace,
    config: EngineConfig,
    executor: SessionExecutor | None = None,
) -> RunResult | None:
    """Submit the prompt and print events as they stream in."""
    executor = executor or SessionExecutor(config)
    bus = EventBus()
    timeout_ms = int(args.timeout * 1000) if args.timeout else None
    request = RunRequest(
        session_id=args.session,
        cwd=os.path.abspath(args.cwd or os.getcwd()),
        prompt=args.prompt,
        resume_token=args.resume,
        continue_prior=args.continue_prior,
        model=args.model or config.default_model,
        timeout_ms=timeout_ms,
    )

    async def _print_events() -> None:
        async for event in bus.consume():
            if args.json:
                print(json.dumps(event.to_dict()), flush=True)
            else:
                print(format_event(event), flush=True)

    consumer = asyncio.ensure_future(_print_events())
    try:
        result = await executor.submit(request, bus.make_handlers())
    finally:
        bus.close()
        await consumer
        await executor.shutdown()

    if args.json:
        print(json.dumps(_result_dict(result)), flush=True)
    else:
        print(format_result(result), flush=True)
    return result


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = _load_config(args.config)
    except ConfigError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2

    configure_logging(config, verbose=args.verbose)

    if args.reap_stale or config.reap_stale_processes:
        reaped = cleanup_stale_agent_processes(log=logger.info)
        if reaped:
            logger.warning("Reaped %d stale agent process(es) at startup", reaped)

    try:
        result = asyncio.run(run_prompt(args, config))
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return 1
    return 0 if result is not None and result.success else 1


if __name__ == "__main__":
    sys.exit(main())
