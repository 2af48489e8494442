from __future__ import annotations

import io
import os
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from unittest.mock import patch

import structlog

from agentrun import log as log_module
from agentrun.log import get_logger
from agentrun.sessions import get_session_metrics


class TestDefaultLogging(unittest.TestCase):
    def setUp(self) -> None:
        structlog.reset_defaults()
        log_module._configured = False
        self.addCleanup(self._restore)
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)

    def _restore(self) -> None:
        structlog.reset_defaults()
        log_module._configured = False
        log_module.configure_logging()

    def _capture(self, debug: str):
        out, err = io.StringIO(), io.StringIO()
        with patch.dict(os.environ, {"AGENTRUN_DEBUG": debug, "AGENTRUN_LOG_FORMAT": "console"}):
            with redirect_stdout(out), redirect_stderr(err):
                logger = get_logger("agentrun.tests")
                get_session_metrics("pi", "x", self.tmp.name)
                logger.info("tests.visible")
        return out.getvalue(), err.getvalue()

    def test_library_use_logs_to_stderr_at_info(self) -> None:
        out, err = self._capture("")
        assert out == ""
        assert "tests.visible" in err
        assert "session.unavailable" not in err

    def test_debug_setting_enables_debug_lines(self) -> None:
        out, err = self._capture("1")
        assert out == ""
        assert "session.unavailable" in err

    def test_host_configuration_is_left_alone(self) -> None:
        structlog.configure(processors=[structlog.processors.KeyValueRenderer()])
        get_logger("agentrun.tests")
        assert log_module._configured is False
