from __future__ import annotations

import asyncio
import os
import signal
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Union

from .log import get_logger
from .models import ProcessExecutionResult
from .signals import InterruptWatch, signal_name

log = get_logger(__name__)

DEFAULT_GRACE_PERIOD_MS = 5000
MAX_STALL_CHECK_INTERVAL_S = 30.0
_READ_CHUNK = 65536
EXIT_POLL_INTERVAL_S = 0.05

STALL_TIMEOUT = "stall_timeout"
HARD_TIMEOUT = "hard_timeout"
INTERRUPTED = "interrupted"
EXITED = "exited"


@dataclass
class _Activity:
    last: float

    def touch(self) -> None:
        self.last = time.monotonic()


def _send_signal(proc: asyncio.subprocess.Process, sig: int, *, group: bool) -> None:
    if proc.returncode is not None:
        return
    try:
        if group:
            os.killpg(proc.pid, sig)
        else:
            proc.send_signal(sig)
    except ProcessLookupError:
        return
    except PermissionError:
        try:
            proc.send_signal(sig)
        except ProcessLookupError:
            return


async def kill_process_gracefully(
    proc: asyncio.subprocess.Process,
    grace_period_ms: int = DEFAULT_GRACE_PERIOD_MS,
    *,
    first_signal: int = signal.SIGTERM,
    group: bool = True,
) -> None:
    """Send ``first_signal``, wait up to the grace period, then SIGKILL."""
    if proc.returncode is not None:
        return
    log.debug("process.terminating", pid=proc.pid, signal=signal_name(first_signal), grace_period_ms=grace_period_ms)
    _send_signal(proc, first_signal, group=group)
    try:
        await asyncio.wait_for(_exit_watch(proc), timeout=max(grace_period_ms, 0) / 1000.0)
        return
    except asyncio.TimeoutError:
        pass
    log.warning("process.force_kill", pid=proc.pid)
    _send_signal(proc, signal.SIGKILL, group=group)
    await _exit_watch(proc)


async def _read_stream(stream: Optional[asyncio.StreamReader], chunks: List[bytes], activity: Optional[_Activity] = None, on_activity: Optional[Callable[[str], None]] = None) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(_READ_CHUNK)
        if not chunk:
            return
        chunks.append(chunk)
        if activity is not None:
            activity.touch()
        if on_activity is not None:
            on_activity(chunk.decode("utf-8", errors="replace"))


async def _exit_watch(proc: asyncio.subprocess.Process) -> Optional[int]:
    # proc.wait() only resolves once every pipe has closed, which an orphaned
    # grandchild holding stdout can postpone indefinitely.
    while proc.returncode is None:
        await asyncio.sleep(EXIT_POLL_INTERVAL_S)
    return proc.returncode


async def _stall_watch(activity: _Activity, stall_timeout_ms: int) -> None:
    limit = stall_timeout_ms / 1000.0
    while True:
        remaining = limit - (time.monotonic() - activity.last)
        if remaining <= 0:
            return
        await asyncio.sleep(min(remaining, MAX_STALL_CHECK_INTERVAL_S))


def _exit_fields(returncode: Optional[int]) -> tuple[Optional[int], Optional[str]]:
    if returncode is None:
        return None, None
    if returncode < 0:
        return None, signal_name(-returncode)
    return returncode, None


async def _cancel(tasks: Sequence["asyncio.Future[object]"]) -> None:
    pending = [task for task in tasks if not task.done()]
    for task in pending:
        task.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)


async def execute_with_timeout(
    command: str,
    args: Sequence[str] = (),
    *,
    cwd: Optional[Union[str, Path]] = None,
    env: Optional[Dict[str, str]] = None,
    grace_period_ms: int = DEFAULT_GRACE_PERIOD_MS,
    stall_timeout_ms: int = 0,
    hard_timeout_ms: int = 0,
    interrupt: Optional[InterruptWatch] = None,
    on_stderr_activity: Optional[Callable[[str], None]] = None,
) -> ProcessExecutionResult:
    """Run ``command`` with captured stdout/stderr, racing exit against stall and hard timeouts.

    Stdout is buffered until the outcome is known. Stderr is drained
    continuously and each chunk refreshes the stall timer. Either timeout
    terminates the whole process group gracefully and returns with
    ``timed_out=True``. A signal recorded by ``interrupt`` is forwarded to the
    child the same way and reported in ``signal``. Timeouts of 0 are disabled.
    Raises FileNotFoundError/PermissionError when the command cannot be spawned.
    """
    start = time.monotonic()
    proc = await asyncio.create_subprocess_exec(
        command,
        *args,
        cwd=str(cwd) if cwd is not None else None,
        env=env,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        start_new_session=True,
    )
    log.debug("process.started", command=command, pid=proc.pid, stall_timeout_ms=stall_timeout_ms, hard_timeout_ms=hard_timeout_ms)

    activity = _Activity(last=start)
    stdout_chunks: List[bytes] = []
    stderr_chunks: List[bytes] = []
    stdout_task = asyncio.ensure_future(_read_stream(proc.stdout, stdout_chunks))
    stderr_task = asyncio.ensure_future(_read_stream(proc.stderr, stderr_chunks, activity, on_stderr_activity))

    racers: Dict["asyncio.Future[object]", str] = {asyncio.ensure_future(_exit_watch(proc)): EXITED}
    if stall_timeout_ms > 0:
        racers[asyncio.ensure_future(_stall_watch(activity, stall_timeout_ms))] = STALL_TIMEOUT
    if hard_timeout_ms > 0:
        racers[asyncio.ensure_future(asyncio.sleep(hard_timeout_ms / 1000.0))] = HARD_TIMEOUT
    if interrupt is not None:
        racers[asyncio.ensure_future(interrupt.event().wait())] = INTERRUPTED

    outcome = EXITED
    try:
        done, _ = await asyncio.wait(list(racers), return_when=asyncio.FIRST_COMPLETED)
        finished = {racers[task] for task in done}
        # A natural exit observed in the same tick wins over any timer.
        for candidate in (EXITED, INTERRUPTED, HARD_TIMEOUT, STALL_TIMEOUT):
            if candidate in finished:
                outcome = candidate
                break
    finally:
        await _cancel(list(racers))
        if proc.returncode is None and outcome == EXITED:
            # Cancelled from outside; never leave the child behind.
            await kill_process_gracefully(proc, grace_period_ms)

    if outcome in (STALL_TIMEOUT, HARD_TIMEOUT):
        log.warning("process.timeout", command=command, pid=proc.pid, reason=outcome, stall_timeout_ms=stall_timeout_ms, hard_timeout_ms=hard_timeout_ms)
        await kill_process_gracefully(proc, grace_period_ms)
    elif outcome == INTERRUPTED:
        received = interrupt.received if interrupt is not None else None
        await kill_process_gracefully(proc, grace_period_ms, first_signal=received.signum if received else signal.SIGINT)

    streams = [stdout_task, stderr_task]
    # Bounded in case an orphaned grandchild still holds a pipe open.
    _, undrained = await asyncio.wait(streams, timeout=max(grace_period_ms, 1000) / 1000.0)
    if undrained:
        log.debug("process.pipes_held_open", command=command, pid=proc.pid)
    await _cancel(streams)

    exit_code, sig = _exit_fields(proc.returncode)
    if outcome == INTERRUPTED and interrupt is not None and interrupt.received is not None:
        sig = interrupt.received.value
    duration_ms = int((time.monotonic() - start) * 1000)
    log.debug("process.finished", command=command, pid=proc.pid, outcome=outcome, exit_code=exit_code, signal=sig, duration_ms=duration_ms)
    return ProcessExecutionResult(
        stdout=b"".join(stdout_chunks).decode("utf-8", errors="replace"),
        stderr=b"".join(stderr_chunks).decode("utf-8", errors="replace"),
        exit_code=exit_code,
        signal=sig,
        timed_out=outcome in (STALL_TIMEOUT, HARD_TIMEOUT),
        termination_reason=None if outcome == EXITED else outcome,
        duration_ms=duration_ms,
        pid=proc.pid,
    )


async def run_inherited(
    command: str,
    args: Sequence[str] = (),
    *,
    cwd: Optional[Union[str, Path]] = None,
    env: Optional[Dict[str, str]] = None,
    grace_period_ms: int = DEFAULT_GRACE_PERIOD_MS,
    interrupt: Optional[InterruptWatch] = None,
) -> ProcessExecutionResult:
    """Run an interactive command sharing this terminal; nothing is captured.

    The child stays in our process group so the terminal delivers Ctrl-C to
    it directly. If it is still alive a grace period after an interrupt, it
    is terminated.
    """
    start = time.monotonic()
    proc = await asyncio.create_subprocess_exec(command, *args, cwd=str(cwd) if cwd is not None else None, env=env)
    log.debug("process.started_interactive", command=command, pid=proc.pid)
    wait_task = asyncio.ensure_future(proc.wait())
    racers: List["asyncio.Future[object]"] = [wait_task]
    interrupt_task = None
    if interrupt is not None:
        interrupt_task = asyncio.ensure_future(interrupt.event().wait())
        racers.append(interrupt_task)
    try:
        await asyncio.wait(racers, return_when=asyncio.FIRST_COMPLETED)
        if not wait_task.done():
            received = interrupt.received if interrupt is not None else None
            try:
                await asyncio.wait_for(asyncio.shield(wait_task), timeout=grace_period_ms / 1000.0)
            except asyncio.TimeoutError:
                await kill_process_gracefully(proc, grace_period_ms, first_signal=received.signum if received else signal.SIGTERM, group=False)
    finally:
        await _cancel(racers)
        if proc.returncode is None:
            await kill_process_gracefully(proc, grace_period_ms, group=False)

    exit_code, sig = _exit_fields(proc.returncode)
    if sig is None and interrupt is not None and interrupt.received is not None:
        sig = interrupt.received.value
    return ProcessExecutionResult(
        stdout="",
        stderr="",
        exit_code=exit_code,
        signal=sig,
        timed_out=False,
        termination_reason=INTERRUPTED if interrupt is not None and interrupt.received is not None else None,
        duration_ms=int((time.monotonic() - start) * 1000),
        pid=proc.pid,
    )
