"""Best-effort cleanup for stale agent CLI processes.

Targets `claude ... --output-format stream-json` processes that a
previous bridge instance spawned and that outlived it (each run gets
its own session, so a crashed bridge leaves them reparented to init).
"""

from __future__ import annotations

import os
import re
import signal
import subprocess
from dataclasses import dataclass
from typing import Callable

_AGENT_PATTERN = re.compile(r"\bclaude\b.*--output-format\b.*\bstream-json\b")


@dataclass(frozen=True)
class ProcessInfo:
    pid: int
    ppid: int
    args: str


def parse_process_table(output: str) -> dict[int, ProcessInfo]:
    """Parse `ps -eo pid=,ppid=,args=` output into a table keyed by PID."""
    table: dict[int, ProcessInfo] = {}
    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        parts = line.split(maxsplit=2)
        if len(parts) < 3:
            continue
        try:
            pid = int(parts[0])
            ppid = int(parts[1])
        except ValueError:
            continue
        table[pid] = ProcessInfo(pid=pid, ppid=ppid, args=parts[2])
    return table


def _list_processes() -> dict[int, ProcessInfo]:
    out = subprocess.check_output(
        ["ps", "-eo", "pid=,ppid=,args="],
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return parse_process_table(out)


def is_agent_process(args: str) -> bool:
    return _AGENT_PATTERN.search(args) is not None


def _has_bridge_ancestor(
    proc: ProcessInfo,
    table: dict[int, ProcessInfo],
    current_pid: int,
) -> bool:
    """True when a live bridge process (this one or another) owns *proc*."""
    cur = proc
    hops = 0
    while hops < 32:
        if cur.pid == current_pid:
            return True
        if cur.pid != proc.pid and "ccbridge" in cur.args:
            return True
        parent = table.get(cur.ppid)
        if parent is None:
            return False
        cur = parent
        hops += 1
    return False


def find_stale_agent_processes(
    table: dict[int, ProcessInfo],
    current_pid: int,
) -> list[ProcessInfo]:
    """Agent processes that are orphaned and not owned by a running bridge."""
    stale = []
    for proc in table.values():
        if proc.pid == current_pid:
            continue
        if not is_agent_process(proc.args):
            continue
        is_orphan = proc.ppid == 1 or proc.ppid not in table
        if not is_orphan:
            continue
        if _has_bridge_ancestor(proc, table, current_pid):
            continue
        stale.append(proc)
    return stale


def cleanup_stale_agent_processes(
    *,
    current_pid: int | None = None,
    log: Callable[[str], None] | None = None,
) -> int:
    """SIGTERM orphaned agent processes. Returns how many were signalled."""
    pid = current_pid or os.getpid()
    logger = log or (lambda _: None)
    try:
        table = _list_processes()
    except (OSError, subprocess.CalledProcessError) as exc:
        logger(f"Could not list processes: {type(exc).__name__}: {exc}")
        return 0

    killed = 0
    for proc in find_stale_agent_processes(table, pid):
        try:
            os.kill(proc.pid, signal.SIGTERM)
        except ProcessLookupError:
            continue
        except PermissionError as exc:
            logger(f"Failed to reap stale process pid={proc.pid}: {exc}")
            continue
        killed += 1
        logger(
            f"Reaped stale agent process pid={proc.pid} "
            f"ppid={proc.ppid} cmd={proc.args[:180]}"
        )
    return killed
