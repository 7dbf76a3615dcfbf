"""Runs one agent CLI invocation for a session.

AgentRunner.run() builds the command line, spawns the CLI, registers
it with the ProcessRegistry, streams stdout through a StreamDispatcher
and turns the event stream plus the exit status into a RunResult.

TIMEOUT MODEL:
   One wall-clock timer per run (RunRequest.timeout_ms, else
   EngineConfig.timeout_seconds). On expiry the timer goes through the
   same path as an explicit stop: SIGTERM to the process group, then
   SIGKILL after kill_grace_seconds. A CompletionEvent that was already
   observed still decides the result.

run() never raises for run-level failures (spawn errors, stream errors,
non-zero exits); those come back as RunResult(success=False). Task
cancellation is the one exception: the process is killed and
CancelledError propagates.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from .config import EngineConfig
from .errors import AgentTimeoutError
from .handlers import EventHandlers, call_handler
from .lifecycle import RunStateTracker
from .models import (
    CompletionEvent,
    CompletionStatus,
    InitEvent,
    RunRequest,
    RunResult,
    RunState,
    TerminationReason,
)
from .process_registry import ManagedProcess, ProcessRegistry, spawn_process
from .stream_dispatcher import StreamDispatcher

logger = logging.getLogger(__name__)

# Signature: async def spawner(command, *, cwd, grace_seconds) -> ManagedProcess
Spawner = Callable[..., Awaitable[ManagedProcess]]


def build_command(config: EngineConfig, request: RunRequest) -> list[str]:
    """Build the CLI argument list for *request*.

    At most one of --continue / --resume is passed; --continue wins.
    """
    cmd = [
        config.resolved_claude_path(),
        "-p", request.prompt,
        "--output-format", "stream-json",
        # stream-json in print mode requires --verbose
        "--verbose",
    ]
    if config.skip_permissions:
        cmd.append("--dangerously-skip-permissions")
    if request.continue_prior:
        cmd.append("--continue")
    elif request.resume_token:
        cmd.extend(["--resume", request.resume_token])
    if request.model:
        cmd.extend(["--model", request.model])
    cmd.extend(config.extra_args)
    return cmd


@dataclass
class _RunCapture:
    agent_session_id: str | None = None
    completion: CompletionEvent | None = None


def derive_result(
    *,
    session_id: str,
    completion: CompletionEvent | None,
    agent_session_id: str | None,
    exit_code: int | None,
    stderr: str,
    termination_reason: TerminationReason | None,
    timeout_seconds: float,
) -> RunResult:
    """Combine the terminal event and exit status into a RunResult."""
    if completion is not None:
        return RunResult(
            success=completion.status is CompletionStatus.SUCCESS,
            resumed_session_id=agent_session_id,
            cost_usd=completion.cost_usd,
            duration_ms=completion.duration_ms,
            error_text=completion.result_text if completion.is_error else None,
            exit_code=exit_code,
            num_turns=completion.num_turns,
            state=RunState.COMPLETED,
        )

    stderr_text = stderr.strip()
    if termination_reason is TerminationReason.TIMEOUT:
        return RunResult(
            success=False,
            resumed_session_id=agent_session_id,
            error_text=str(AgentTimeoutError(session_id, timeout_seconds)),
            exit_code=exit_code,
            state=RunState.TIMED_OUT,
        )
    if termination_reason is not None:
        return RunResult(
            success=False,
            resumed_session_id=agent_session_id,
            error_text=stderr_text or f"Agent process {termination_reason.value} (exit code {exit_code})",
            exit_code=exit_code,
            state=RunState.STOPPED,
        )
    if exit_code != 0:
        return RunResult(
            success=False,
            resumed_session_id=agent_session_id,
            error_text=stderr_text or f"Process exited with code {exit_code}",
            exit_code=exit_code,
            state=RunState.FAILED,
        )
    # Clean exit but no result message: nothing to report as success.
    return RunResult(
        success=False,
        resumed_session_id=agent_session_id,
        exit_code=exit_code,
        state=RunState.FAILED,
    )


class AgentRunner:
    """Spawns and supervises agent CLI runs."""

    def __init__(
        self,
        config: EngineConfig | None = None,
        registry: ProcessRegistry | None = None,
        spawner: Spawner | None = None,
    ) -> None:
        self._config = config or EngineConfig()
        self._registry = registry if registry is not None else ProcessRegistry()
        self._spawner = spawner or spawn_process

    @property
    def registry(self) -> ProcessRegistry:
        return self._registry

    @property
    def config(self) -> EngineConfig:
        return self._config

    def _timeout_for(self, request: RunRequest) -> float:
        if request.timeout_ms is not None and request.timeout_ms > 0:
            return request.timeout_ms / 1000.0
        return self._config.timeout_seconds

    async def _expire(
        self, session_id: str, handle: ManagedProcess, timeout_seconds: float,
    ) -> None:
        await asyncio.sleep(timeout_seconds)
        logger.warning(
            "Session %s agent process pid=%s exceeded %.1fs timeout; terminating",
            session_id[:12], handle.pid, timeout_seconds,
        )
        stopped = await self._registry.stop(
            session_id, handle=handle, reason=TerminationReason.TIMEOUT,
        )
        if not stopped:
            await handle.kill(TerminationReason.TIMEOUT)

    async def run(
        self,
        request: RunRequest,
        handlers: EventHandlers | None = None,
    ) -> RunResult:
        handlers = handlers or EventHandlers()
        session_id = request.session_id
        tracker = RunStateTracker()
        capture = _RunCapture()

        async def on_init(event: InitEvent) -> None:
            if event.agent_session_id:
                capture.agent_session_id = event.agent_session_id
            await call_handler(handlers.on_init, event)

        async def on_completion(event: CompletionEvent) -> None:
            capture.completion = event
            if event.agent_session_id and not capture.agent_session_id:
                capture.agent_session_id = event.agent_session_id
            await call_handler(handlers.on_completion, event)

        dispatcher = StreamDispatcher(
            handlers.replace(on_init=on_init, on_completion=on_completion)
        )
        timeout_seconds = self._timeout_for(request)
        command = build_command(self._config, request)
        handle: ManagedProcess | None = None
        timer: asyncio.Future[None] | None = None

        tracker.advance(RunState.SPAWNING)
        logger.info(
            "Session %s starting agent: cmd=%s cwd=%s model=%s resume=%s continue=%s",
            session_id[:12], command[0], request.cwd, request.model,
            request.resume_token, request.continue_prior,
        )
        try:
            handle = await self._spawner(
                command,
                cwd=request.cwd,
                grace_seconds=self._config.kill_grace_seconds,
            )
            self._registry.start(session_id, handle)
            tracker.advance(RunState.STREAMING)
            timer = asyncio.ensure_future(
                self._expire(session_id, handle, timeout_seconds)
            )

            async for chunk in handle.iter_stdout():
                if not tracker.accepts_output:
                    raise RuntimeError(
                        f"Run in state {tracker.state.value} cannot take agent output"
                    )
                await dispatcher.feed(chunk)
            await dispatcher.flush()

            exit_info = await handle.wait()
        except asyncio.CancelledError:
            if handle is not None:
                self._registry.kill_in_background(handle, TerminationReason.STOPPED)
            raise
        except Exception as exc:
            logger.error(
                "Session %s agent run failed: %s: %s",
                session_id[:12], type(exc).__name__, exc,
            )
            tracker.advance(RunState.FAILED)
            if handle is not None:
                await handle.kill(TerminationReason.STOPPED)
            return RunResult(
                success=False,
                resumed_session_id=capture.agent_session_id,
                error_text=str(exc) or type(exc).__name__,
                state=RunState.FAILED,
            )
        finally:
            if timer is not None:
                timer.cancel()
            if handle is not None:
                self._registry.remove(session_id, handle)

        result = derive_result(
            session_id=session_id,
            completion=capture.completion,
            agent_session_id=capture.agent_session_id,
            exit_code=exit_info.exit_code,
            stderr=exit_info.stderr,
            termination_reason=handle.termination_reason,
            timeout_seconds=timeout_seconds,
        )
        tracker.advance(result.state)
        logger.info(
            "Session %s agent finished: state=%s success=%s exit=%s cost=%s duration_ms=%s"
            " lines=%d skipped=%d",
            session_id[:12], result.state.value, result.success,
            result.exit_code, result.cost_usd, result.duration_ms,
            dispatcher.lines_processed, dispatcher.lines_skipped,
        )
        return result
