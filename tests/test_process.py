from __future__ import annotations

import asyncio
import os
import signal
import sys
import time
import unittest

from agentrun.process import (
    HARD_TIMEOUT,
    STALL_TIMEOUT,
    execute_with_timeout,
)
from agentrun.signals import InterruptWatch, TerminationSignal, normalize_termination


PY = sys.executable


def _assert_gone(pid: int) -> None:
    deadline = time.monotonic() + 2.0
    while time.monotonic() < deadline:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return
        time.sleep(0.02)
    raise AssertionError(f"process {pid} still alive")


class TestExecuteWithTimeout(unittest.IsolatedAsyncioTestCase):
    async def test_captures_streams_separately(self) -> None:
        code = "import sys; print('out'); print('err', file=sys.stderr)"
        result = await execute_with_timeout(PY, ["-c", code])
        assert result.exit_code == 0
        assert result.stdout.strip() == "out"
        assert result.stderr.strip() == "err"
        assert result.timed_out is False
        assert result.termination_reason is None
        assert result.signal is None

    async def test_nonzero_exit_is_reported(self) -> None:
        result = await execute_with_timeout(PY, ["-c", "import sys; sys.exit(3)"])
        assert result.exit_code == 3
        assert result.timed_out is False

    async def test_exit_seen_while_grandchild_holds_pipes(self) -> None:
        code = (
            "import subprocess\n"
            "subprocess.Popen(['sleep', '8'])\n"
            "print('{}', flush=True)\n"
        )
        for hard_timeout_ms in (5000, 0):
            started = time.monotonic()
            result = await asyncio.wait_for(
                execute_with_timeout(PY, ["-c", code], hard_timeout_ms=hard_timeout_ms, grace_period_ms=500),
                timeout=6,
            )
            try:
                os.killpg(result.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            assert result.exit_code == 0
            assert result.timed_out is False
            assert result.termination_reason is None
            assert result.stdout.strip() == "{}"
            assert time.monotonic() - started < 4

    async def test_hard_timeout_kills_child(self) -> None:
        result = await execute_with_timeout(
            PY, ["-c", "import time; time.sleep(30)"], hard_timeout_ms=200, grace_period_ms=500
        )
        assert result.timed_out is True
        assert result.termination_reason == HARD_TIMEOUT
        assert result.duration_ms < 5000
        assert result.pid is not None
        _assert_gone(result.pid)

    async def test_term_ignoring_child_is_killed_after_grace(self) -> None:
        code = (
            "import signal, sys, time\n"
            "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
            "print('ready', flush=True)\n"
            "time.sleep(30)\n"
        )
        result = await execute_with_timeout(PY, ["-c", code], hard_timeout_ms=1000, grace_period_ms=200)
        assert result.timed_out is True
        assert result.signal == "SIGKILL"
        _assert_gone(result.pid)

    async def test_stall_timeout_on_silent_child(self) -> None:
        result = await execute_with_timeout(
            PY, ["-c", "import time; time.sleep(30)"], stall_timeout_ms=200, grace_period_ms=500
        )
        assert result.timed_out is True
        assert result.termination_reason == STALL_TIMEOUT

    async def test_stderr_activity_refreshes_stall_timer(self) -> None:
        code = (
            "import sys, time\n"
            "for _ in range(30):\n"
            "    sys.stderr.write('.')\n"
            "    sys.stderr.flush()\n"
            "    time.sleep(0.05)\n"
            "print('done')\n"
        )
        seen = []
        result = await execute_with_timeout(PY, ["-c", code], stall_timeout_ms=1000, on_stderr_activity=seen.append)
        assert result.timed_out is False
        assert result.exit_code == 0
        assert result.stdout.strip() == "done"
        assert "".join(seen) == result.stderr

    async def test_child_killed_by_sigterm(self) -> None:
        code = "import os, signal; os.kill(os.getpid(), signal.SIGTERM)"
        result = await execute_with_timeout(PY, ["-c", code])
        assert result.exit_code is None
        assert result.signal == "SIGTERM"
        assert normalize_termination(result.signal, result.exit_code) is TerminationSignal.SIGTERM

    async def test_exit_code_130_normalizes_to_sigint(self) -> None:
        result = await execute_with_timeout(PY, ["-c", "import sys; sys.exit(130)"])
        assert result.exit_code == 130
        assert normalize_termination(result.signal, result.exit_code) is TerminationSignal.SIGINT

    async def test_interrupt_forwarded_to_child(self) -> None:
        watch = InterruptWatch()
        asyncio.get_running_loop().call_later(0.2, watch.trigger, TerminationSignal.SIGINT)
        result = await execute_with_timeout(
            PY, ["-c", "import time; time.sleep(30)"], interrupt=watch, grace_period_ms=500
        )
        assert result.signal == "SIGINT"
        assert result.timed_out is False
        assert result.termination_reason == "interrupted"
        _assert_gone(result.pid)

    async def test_missing_command_raises(self) -> None:
        with self.assertRaises(FileNotFoundError):
            await execute_with_timeout("agentrun-definitely-missing-binary", [])


if __name__ == "__main__":
    unittest.main()
