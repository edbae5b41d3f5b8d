#!/usr/bin/env python3
"""
sandboxed_shell.py — Bounded subprocess execution for the bash tool.

Each call runs `bash -lc <command>` in the workspace:
  - new session / process group, so a timeout kills the whole tree
  - RLIMIT_AS memory cap and an RLIMIT_CPU cap derived from the timeout
  - stdout and stderr merged into one stream, read on a helper thread
  - leftover children swept with psutil once the shell exits

The caller decides what a timeout or a nonzero exit means; this module only
reports them.

Requirements
------------
    pip install psutil
"""

from __future__ import annotations

import math
import os
import platform
import signal
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path

try:
    import psutil
    _HAVE_PSUTIL = True
except ImportError:
    _HAVE_PSUTIL = False

_IS_POSIX = platform.system() != "Windows"

if _IS_POSIX:
    import resource

# ---------------------------------------------------------------------------
# Tunables
# ---------------------------------------------------------------------------

DEFAULT_TIMEOUT_SECS  = 30.0
DEFAULT_MAX_OUTPUT    = 1_048_576   # bytes
DEFAULT_MAX_MEMORY_MB = 2048


@dataclass
class ShellResult:
    output:    str
    exit_code: int
    timed_out: bool = False
    truncated: bool = False


# ---------------------------------------------------------------------------
# POSIX process-group backend
# ---------------------------------------------------------------------------

def _posix_preexec(max_memory_mb: int, cpu_secs: int) -> None:
    os.setsid()
    if max_memory_mb > 0:
        mem = max_memory_mb * 1024 * 1024
        try:
            resource.setrlimit(resource.RLIMIT_AS, (mem, mem))
        except (ValueError, OSError):
            pass
    try:
        resource.setrlimit(resource.RLIMIT_CPU, (cpu_secs, cpu_secs))
    except (ValueError, OSError):
        pass


def _kill_group(pgid: int) -> None:
    if not _IS_POSIX:
        return
    try:
        os.killpg(pgid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass


def _kill_proc(pid: int) -> None:
    _sweep(pid)
    _kill_group(pid)


def _sweep(pid: int) -> None:
    if not _HAVE_PSUTIL:
        return
    try:
        for child in psutil.Process(pid).children(recursive=True):
            try:
                child.kill()
            except psutil.NoSuchProcess:
                pass
    except psutil.NoSuchProcess:
        pass


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def run_sandboxed(
    cmd: str,
    workspace: Path,
    timeout: float        = DEFAULT_TIMEOUT_SECS,
    max_output_bytes: int = DEFAULT_MAX_OUTPUT,
    max_memory_mb: int    = DEFAULT_MAX_MEMORY_MB,
) -> ShellResult:
    """Run *cmd* under bash in *workspace* and wait at most *timeout* seconds.

    On timeout the process group is killed and ``timed_out`` is set; the
    partial output collected so far is still returned.
    """
    popen_kwargs: dict = dict(
        cwd=str(workspace),
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        env=os.environ.copy(),
    )
    if _IS_POSIX:
        cpu_secs = max(1, math.ceil(timeout)) + 1
        popen_kwargs["preexec_fn"] = lambda: _posix_preexec(max_memory_mb, cpu_secs)

    proc = subprocess.Popen(["bash", "-lc", cmd], **popen_kwargs)

    chunks: list[bytes] = []
    total = 0
    trunc = False

    def _reader():
        nonlocal total, trunc
        assert proc.stdout
        for chunk in iter(lambda: proc.stdout.read(4096), b""):
            room = max_output_bytes - total
            if len(chunk) > room:
                trunc = True
            if room > 0:
                chunks.append(chunk[:room])
                total += min(len(chunk), room)

    reader = threading.Thread(target=_reader, daemon=True)
    reader.start()

    try:
        proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        _kill_proc(proc.pid)
        proc.wait()
        reader.join(timeout=2)
        out = b"".join(chunks).decode("utf-8", errors="replace")
        return ShellResult(output=out, exit_code=-1, timed_out=True, truncated=trunc)

    # the shell is gone; its group id is still its pid since it called setsid
    _kill_group(proc.pid)
    reader.join(timeout=5)
    out = b"".join(chunks).decode("utf-8", errors="replace")
    return ShellResult(output=out, exit_code=proc.returncode, truncated=trunc)
