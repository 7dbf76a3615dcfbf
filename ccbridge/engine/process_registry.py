"""Agent subprocess handles and the per-session process registry.

ManagedProcess wraps an asyncio subprocess with the capabilities the
runner needs: incremental stdout text, concurrent stderr capture and
two-stage termination (SIGTERM to the process group, SIGKILL after a
grace window).

ProcessRegistry enforces one live process per session key. Starting a
new process for a session that already has one kills the old one
(last writer wins).
"""
from __future__ import annotations

import asyncio
import codecs
import logging
import os
import signal
from collections.abc import AsyncIterator
from dataclasses import dataclass

from .errors import AgentSpawnError
from .models import TerminationReason

logger = logging.getLogger(__name__)

DEFAULT_KILL_GRACE_SECONDS = 5.0
_READ_CHUNK_BYTES = 64 * 1024


@dataclass(frozen=True)
class ProcessExit:
    exit_code: int | None
    stderr: str


class ManagedProcess:
    """A spawned agent CLI process owned by the registry."""

    def __init__(
        self,
        proc: asyncio.subprocess.Process,
        *,
        command: str = "",
        grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS,
        process_group: bool = True,
    ) -> None:
        self._proc = proc
        self.command = command
        self._grace_seconds = grace_seconds
        self._process_group = process_group
        self.termination_reason: TerminationReason | None = None
        # Drain stderr concurrently so a chatty CLI never blocks on a
        # full pipe while we are reading stdout.
        self._stderr_task: asyncio.Task[str] = asyncio.ensure_future(
            self._read_stderr()
        )

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode

    async def _read_stderr(self) -> str:
        stream = self._proc.stderr
        if stream is None:
            return ""
        data = await stream.read()
        return data.decode("utf-8", errors="replace")

    async def iter_stdout(self) -> AsyncIterator[str]:
        """Yield decoded stdout text as it arrives, until EOF.

        Reads fixed-size chunks instead of lines so a single huge JSON
        line never trips the StreamReader limit; multi-byte characters
        split across reads are reassembled by the incremental decoder.
        """
        stream = self._proc.stdout
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await stream.read(_READ_CHUNK_BYTES)
            if not data:
                break
            text = decoder.decode(data)
            if text:
                yield text
        tail = decoder.decode(b"", final=True)
        if tail:
            yield tail

    async def wait(self) -> ProcessExit:
        """Wait for exit and return the exit code with captured stderr."""
        exit_code = await self._proc.wait()
        stderr = await self._stderr_task
        return ProcessExit(exit_code=exit_code, stderr=stderr)

    def _signal(self, sig: int) -> None:
        try:
            if self._process_group and hasattr(os, "killpg"):
                os.killpg(self._proc.pid, sig)
            else:
                self._proc.send_signal(sig)
        except ProcessLookupError:
            pass  # Already exited

    async def kill(
        self, reason: TerminationReason = TerminationReason.STOPPED,
    ) -> None:
        """Terminate gracefully, escalating to SIGKILL after the grace window."""
        if self.termination_reason is None:
            self.termination_reason = reason
        if self._proc.returncode is not None:
            return

        logger.info(
            "Terminating agent process pid=%s reason=%s",
            self._proc.pid, reason.value,
        )
        self._signal(signal.SIGTERM)
        try:
            await asyncio.wait_for(self._proc.wait(), timeout=self._grace_seconds)
        except asyncio.TimeoutError:
            logger.warning(
                "Agent process pid=%s ignored SIGTERM for %.1fs, sending SIGKILL",
                self._proc.pid, self._grace_seconds,
            )
            self._signal(signal.SIGKILL)
            await self._proc.wait()


async def spawn_process(
    command: list[str],
    *,
    cwd: str | None = None,
    env: dict[str, str] | None = None,
    grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS,
) -> ManagedProcess:
    """Start *command* with piped stdout/stderr and stdin from /dev/null."""
    try:
        # Array-based exec, no shell. New session so termination
        # signals reach any helpers the CLI forks.
        proc = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=env,
            start_new_session=True,
        )
    except OSError as exc:
        raise AgentSpawnError(command[0] if command else "", str(exc)) from exc
    logger.debug("Spawned agent process pid=%s cmd=%s cwd=%s", proc.pid, command[0], cwd)
    return ManagedProcess(proc, command=command[0], grace_seconds=grace_seconds)


class ProcessRegistry:
    """Tracks the single live agent process per session."""

    def __init__(self) -> None:
        self._running: dict[str, ManagedProcess] = {}
        self._reaping: set[asyncio.Task[None]] = set()

    def start(self, session_id: str, handle: ManagedProcess) -> None:
        """Register *handle*, killing any process already registered."""
        existing = self._running.get(session_id)
        self._running[session_id] = handle
        if existing is not None and existing is not handle:
            logger.warning(
                "Session %s already had a running process (pid=%s); replacing it",
                session_id[:12], existing.pid,
            )
            self.kill_in_background(existing, TerminationReason.REPLACED)

    def kill_in_background(
        self, handle: ManagedProcess, reason: TerminationReason,
    ) -> None:
        """Schedule *handle*.kill() without waiting; stop_all() awaits it."""
        task = asyncio.ensure_future(handle.kill(reason))
        self._reaping.add(task)
        task.add_done_callback(self._reaping.discard)

    async def stop(
        self,
        session_id: str,
        *,
        handle: ManagedProcess | None = None,
        reason: TerminationReason = TerminationReason.STOPPED,
    ) -> bool:
        """Kill and forget the session's process.

        With *handle*, only acts if that handle is still the registered
        one. Returns whether a process was stopped.
        """
        proc = self._running.get(session_id)
        if proc is None or (handle is not None and proc is not handle):
            return False
        del self._running[session_id]
        await proc.kill(reason)
        logger.info("Stopped agent process for session %s (%s)", session_id[:12], reason.value)
        return True

    async def stop_all(
        self, reason: TerminationReason = TerminationReason.SHUTDOWN,
    ) -> None:
        ids = list(self._running)
        if ids:
            logger.info("Stopping %d agent process(es)", len(ids))
            await asyncio.gather(*(self.stop(sid, reason=reason) for sid in ids))
        if self._reaping:
            await asyncio.gather(*self._reaping, return_exceptions=True)

    def is_running(self, session_id: str) -> bool:
        return session_id in self._running

    def get(self, session_id: str) -> ManagedProcess | None:
        return self._running.get(session_id)

    def remove(self, session_id: str, handle: ManagedProcess | None = None) -> None:
        """Forget the session's process without killing it.

        With *handle*, a replacement registered meanwhile is left alone.
        """
        current = self._running.get(session_id)
        if current is None:
            return
        if handle is not None and current is not handle:
            return
        del self._running[session_id]

    def running_count(self) -> int:
        return len(self._running)

    def running_ids(self) -> list[str]:
        return list(self._running)
