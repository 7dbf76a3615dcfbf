"""Shared fakes for engine tests.

ScriptedProcess stands in for ManagedProcess: tests push stdout text into
it and decide when it exits. ScriptedSpawner hands out queued processes
and records every command line it was asked to run.
"""
from __future__ import annotations

import asyncio
import itertools
import json
import os
import stat
import sys
import time
from collections import deque
from pathlib import Path

import pytest

from ccbridge.engine.models import TerminationReason
from ccbridge.engine.process_registry import ProcessExit

_pids = itertools.count(40000)


class ScriptedProcess:
    def __init__(
        self,
        chunks: list[str] | tuple[str, ...] = (),
        *,
        exit_code: int = 0,
        stderr: str = "",
        hold: bool = False,
    ) -> None:
        self.pid = next(_pids)
        self.command = "claude"
        self.termination_reason: TerminationReason | None = None
        self.kill_calls: list[TerminationReason] = []
        self._exit_code = exit_code
        self._stderr = stderr
        self._chunks: asyncio.Queue[str | None] = asyncio.Queue()
        for chunk in chunks:
            self._chunks.put_nowait(chunk)
        if not hold:
            self._chunks.put_nowait(None)

    @property
    def killed(self) -> bool:
        return bool(self.kill_calls)

    def push(self, chunk: str) -> None:
        self._chunks.put_nowait(chunk)

    def finish(self, exit_code: int | None = None) -> None:
        if exit_code is not None:
            self._exit_code = exit_code
        self._chunks.put_nowait(None)

    async def iter_stdout(self):
        while True:
            chunk = await self._chunks.get()
            if chunk is None:
                return
            yield chunk

    async def wait(self) -> ProcessExit:
        return ProcessExit(exit_code=self._exit_code, stderr=self._stderr)

    async def kill(self, reason: TerminationReason = TerminationReason.STOPPED) -> None:
        if self.termination_reason is None:
            self.termination_reason = reason
        self.kill_calls.append(reason)
        if self._exit_code == 0:
            self._exit_code = -15
        self._chunks.put_nowait(None)


class ScriptedSpawner:
    def __init__(self) -> None:
        self.commands: list[list[str]] = []
        self.cwds: list[str | None] = []
        self.processes: list[ScriptedProcess] = []
        self._pending: deque[ScriptedProcess | BaseException] = deque()

    def add(self, proc: ScriptedProcess | BaseException) -> None:
        self._pending.append(proc)

    async def __call__(self, command, *, cwd=None, grace_seconds=5.0):
        self.commands.append(list(command))
        self.cwds.append(cwd)
        proc = self._pending.popleft() if self._pending else ScriptedProcess()
        if isinstance(proc, BaseException):
            raise proc
        self.processes.append(proc)
        return proc


def jsonl(obj: dict) -> str:
    return json.dumps(obj) + "\n"


async def _wait_until(predicate, timeout: float = 2.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def scripted_process():
    return ScriptedProcess


@pytest.fixture
def spawner():
    return ScriptedSpawner()


@pytest.fixture
def wait_until():
    return _wait_until


@pytest.fixture
def line():
    return jsonl


@pytest.fixture
def fake_cli(tmp_path: Path):
    """Write an executable Python script acting as the agent CLI."""
    def _make(body: str, name: str = "fake-claude") -> str:
        path = tmp_path / name
        path.write_text(f"#!{sys.executable}\n{body}", encoding="utf-8")
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return os.fspath(path)
    return _make
