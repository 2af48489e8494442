from __future__ import annotations

import abc
import os
import shutil
import subprocess
import sys
import time
import uuid
from dataclasses import replace
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from ..config import ProviderConfig, Settings, model_from_env
from ..errors import (
    BinaryNotFoundError,
    ExplicitProviderError,
    HardTimeoutError,
    InvalidTTYError,
    NonZeroExitError,
    NotAvailableError,
    ParseFailureError,
    ProviderError,
    ProviderInterruptedError,
    StallTimeoutError,
    UnsupportedCapabilityError,
    tail,
)
from ..log import get_logger
from ..models import SUPERVISED, AgentResult, InvocationRequest, ProcessExecutionResult
from ..process import STALL_TIMEOUT, execute_with_timeout, run_inherited
from ..sessions import discover_recent_session
from ..sessions.cache import SessionPayloadCache, default_session_cache
from ..signals import InterruptWatch, normalize_termination
from .catalog import ModelValidationError, get_models_for_provider, validate_model_for_provider

log = get_logger(__name__)

MINUTE_MS = 60 * 1000
AVAILABILITY_PROBE_TIMEOUT_S = 5
LIGHTWEIGHT_TIMEOUT_MS = 30000


class Provider(abc.ABC):
    """One coding-agent CLI: argument construction, invocation and output normalization."""

    name: str
    display_name: str
    binaries: Tuple[str, ...] = ()
    default_model: Optional[str] = None
    lightweight_model: Optional[str] = None
    context_file_names: Tuple[str, ...] = ("AGENTS.md",)
    supports_supervised: bool = True
    supports_headless: bool = True
    supports_lightweight: bool = False
    default_timeout_ms: int = 60 * MINUTE_MS
    default_stall_timeout_ms: int = 10 * MINUTE_MS
    install_hint: Optional[str] = None
    synthesize_session_id: bool = False

    def __init__(
        self,
        config: Optional[ProviderConfig] = None,
        *,
        session_cache: Optional[SessionPayloadCache] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.config = config or ProviderConfig()
        self.settings = settings or Settings.from_env()
        self._session_cache = session_cache
        if self.config.model:
            self.default_model = self.config.model
        if self.config.lightweight_model:
            self.lightweight_model = self.config.lightweight_model

    # -- configuration -----------------------------------------------------

    @property
    def session_cache(self) -> SessionPayloadCache:
        if self._session_cache is None:
            self._session_cache = default_session_cache()
        return self._session_cache

    @property
    def workdir(self) -> Path:
        return self.config.cwd

    def configured_model(self) -> Optional[str]:
        """Model passed on the command line; None leaves the choice to the CLI."""
        return self.config.model or model_from_env(self.name)

    def timeouts(self) -> Tuple[int, int]:
        hard = self.config.timeout_ms if self.config.timeout_ms is not None else self.default_timeout_ms
        if self.config.stall_timeout_ms is not None:
            stall = self.config.stall_timeout_ms
        elif self.config.timeout_ms is not None:
            stall = self.config.timeout_ms
        else:
            stall = self.default_stall_timeout_ms
        return max(0, hard), max(0, stall)

    def child_env(self) -> Dict[str, str]:
        merged_env = os.environ.copy()
        merged_env.update({k: v for k, v in self.config.env.items() if v is not None})
        extra_paths = self._extra_path_entries()
        if extra_paths:
            current_path = merged_env.get("PATH", "")
            merged_env["PATH"] = os.pathsep.join(extra_paths + ([current_path] if current_path else []))
        return merged_env

    def _extra_path_entries(self) -> List[str]:
        candidates = [
            Path.home() / ".npm-global" / "bin",
            Path.home() / ".npm" / "bin",
            Path.home() / ".local" / "bin",
        ]
        return [str(path) for path in candidates if path.exists()]

    # -- availability ------------------------------------------------------

    def resolve_binary(self) -> Optional[str]:
        for binary in self.binaries:
            env_keys = (
                f"{self.name.upper()}_BIN",
                f"{binary.upper().replace('-', '_')}_BIN",
            )
            for key in env_keys:
                value = self.config.env.get(key) or os.environ.get(key)
                if value:
                    candidate = Path(value).expanduser()
                    if candidate.exists():
                        return str(candidate)
        search_path = self.child_env().get("PATH")
        for binary in self.binaries:
            path = shutil.which(binary, path=search_path)
            if path:
                return path
        return None

    def require_binary(self) -> str:
        binary = self.resolve_binary()
        if binary is None:
            raise BinaryNotFoundError(self.name, self.binaries, self.install_hint)
        return binary

    def probe(self) -> str:
        """Run ``<binary> --version`` with a bounded timeout and return the first output line."""
        binary = self.require_binary()
        try:
            proc = subprocess.run(
                [binary, "--version"],
                env=self.child_env(),
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                timeout=AVAILABILITY_PROBE_TIMEOUT_S,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            raise NotAvailableError(self.name, f"{self.name} CLI at {binary} failed its --version probe: {exc}") from exc
        if proc.returncode != 0:
            detail = tail(proc.stderr or proc.stdout, 300)
            message = f"{self.name} CLI at {binary} failed its --version probe (exit code {proc.returncode})"
            raise NotAvailableError(self.name, f"{message}: {detail}" if detail else message)
        return next((line.strip() for line in proc.stdout.splitlines() if line.strip()), "")

    def is_available(self) -> bool:
        """Like ``probe`` but never raises."""
        try:
            self.probe()
        except ProviderError as exc:
            log.debug("provider.probe_failed", provider=self.name, error=str(exc))
            return False
        return True

    # -- models ------------------------------------------------------------

    def select_model(self, model: str) -> str:
        """Return the CLI format for ``model``, raising ModelValidationError when the catalog rejects it.

        Providers without catalog entries accept any model and leave validation to the CLI.
        """
        if not get_models_for_provider(self.name, self.settings.models_path):
            return model
        return validate_model_for_provider(model, self.name, self.settings.models_path)

    def is_valid_model(self, model: str) -> bool:
        try:
            self.select_model(model)
        except ModelValidationError:
            return False
        return True

    @staticmethod
    def has_interactive_terminal() -> bool:
        try:
            return sys.stdin.isatty() and sys.stdout.isatty()
        except (AttributeError, ValueError):
            return False

    # -- argument construction ---------------------------------------------

    def _model_args(self, model: Optional[str]) -> List[str]:
        return ["--model", model] if model else []

    @abc.abstractmethod
    def build_headless_args(self, prompt: str, model: Optional[str] = None) -> List[str]:
        raise NotImplementedError

    def build_supervised_args(self, prompt: str, model: Optional[str] = None) -> List[str]:
        return [*self._model_args(model), *self.config.extra_args, prompt]

    @abc.abstractmethod
    def normalize(self, raw: str) -> AgentResult:
        raise NotImplementedError

    # -- invocation --------------------------------------------------------

    async def invoke(self, request: InvocationRequest, *, interrupt: Optional[InterruptWatch] = None) -> AgentResult:
        if request.mode == SUPERVISED:
            return await self.invoke_supervised(request.prompt, interrupt=interrupt)
        return await self.invoke_headless(request.prompt, interrupt=interrupt)

    async def invoke_headless(self, prompt: str, *, interrupt: Optional[InterruptWatch] = None) -> AgentResult:
        if not self.supports_headless:
            raise UnsupportedCapabilityError(self.name, "headless mode")
        binary = self.require_binary()
        model = self.configured_model()
        args = self.build_headless_args(prompt, model)
        hard_timeout_ms, stall_timeout_ms = self.timeouts()
        log.info("provider.invoke_started", provider=self.name, mode="headless", model=model, cwd=str(self.workdir))
        try:
            execution = await execute_with_timeout(
                binary,
                args,
                cwd=self.workdir,
                env=self.child_env(),
                grace_period_ms=self.config.grace_period_ms,
                stall_timeout_ms=stall_timeout_ms,
                hard_timeout_ms=hard_timeout_ms,
                interrupt=interrupt,
            )
        except FileNotFoundError as exc:
            raise BinaryNotFoundError(self.name, self.binaries, self.install_hint) from exc

        self._raise_for_interrupt(execution)
        if execution.timed_out:
            log.warning("provider.invoke_timed_out", provider=self.name, reason=execution.termination_reason)
            if execution.termination_reason == STALL_TIMEOUT:
                raise StallTimeoutError(self.name, stall_timeout_ms, execution.stdout, execution.stderr)
            raise HardTimeoutError(self.name, hard_timeout_ms, execution.stdout, execution.stderr)

        if execution.exit_code not in (0, None):
            self._raise_for_failed_exit(execution)

        try:
            result = self.normalize(execution.stdout)
        except ParseFailureError:
            log.error("provider.parse_failed", provider=self.name, stderr=execution.stderr[-500:])
            raise
        result = self._finalize(result, execution)
        self._persist_session(result.session_id, execution.stdout, execution.stderr)
        log.info(
            "provider.invoke_completed",
            provider=self.name,
            session_id=result.session_id,
            duration_ms=result.duration_ms,
            cost_usd=result.cost_usd,
        )
        return result

    async def invoke_supervised(self, prompt: str, *, interrupt: Optional[InterruptWatch] = None) -> AgentResult:
        if not self.supports_supervised:
            raise UnsupportedCapabilityError(self.name, "supervised mode")
        if not self.has_interactive_terminal():
            raise InvalidTTYError(self.name)
        binary = self.require_binary()
        args = self.build_supervised_args(prompt, self.configured_model())
        started_at = time.time()
        log.info("provider.invoke_started", provider=self.name, mode="supervised", cwd=str(self.workdir))
        try:
            execution = await run_inherited(
                binary,
                args,
                cwd=self.workdir,
                env=self.child_env(),
                grace_period_ms=self.config.grace_period_ms,
                interrupt=interrupt,
            )
        except FileNotFoundError as exc:
            raise BinaryNotFoundError(self.name, self.binaries, self.install_hint) from exc
        self._raise_for_interrupt(execution)
        if execution.exit_code not in (0, None):
            raise NonZeroExitError(self.name, execution.exit_code)

        discovered = discover_recent_session(self.name, started_at, self.workdir, cache=self._session_cache)
        return AgentResult(
            result_text="",
            session_id=discovered.session_id if discovered else "",
            duration_ms=execution.duration_ms,
        )

    async def invoke_lightweight(
        self,
        prompt: str,
        *,
        timeout_ms: int = LIGHTWEIGHT_TIMEOUT_MS,
        model: Optional[str] = None,
        interrupt: Optional[InterruptWatch] = None,
    ) -> str:
        """Run a short headless prompt on the provider's cheap model and return its text."""
        if not self.supports_lightweight:
            raise UnsupportedCapabilityError(self.name, "lightweight invocation")
        config = replace(
            self.config,
            model=model or self.lightweight_model,
            timeout_ms=timeout_ms,
            stall_timeout_ms=None,
        )
        provider = type(self)(config, session_cache=self._session_cache, settings=self.settings)
        result = await provider.invoke_headless(prompt, interrupt=interrupt)
        return result.result_text.strip()

    # -- helpers -----------------------------------------------------------

    def _raise_for_interrupt(self, execution: ProcessExecutionResult) -> None:
        interrupted = normalize_termination(execution.signal, execution.exit_code)
        if interrupted is not None:
            log.info("provider.invoke_interrupted", provider=self.name, signal=interrupted.value)
            raise ProviderInterruptedError(self.name, interrupted.value)

    def _raise_for_failed_exit(self, execution: ProcessExecutionResult) -> None:
        # Some CLIs exit non-zero while still printing a structured error record.
        try:
            self.normalize(execution.stdout)
        except ExplicitProviderError:
            raise
        except Exception:
            pass
        raise NonZeroExitError(self.name, execution.exit_code, execution.stdout, execution.stderr)

    def _finalize(self, result: AgentResult, execution: ProcessExecutionResult) -> AgentResult:
        if result.duration_ms == 0 and execution.duration_ms > 0:
            result = replace(result, duration_ms=execution.duration_ms)
        if not result.session_id and self.synthesize_session_id:
            result = replace(result, session_id=f"local-{uuid.uuid4().hex}")
        return result

    def _persist_session(self, session_id: str, payload: str, stderr: str = "") -> None:
        if not session_id or not payload:
            return
        try:
            self.session_cache.store(self.name, session_id, payload, repo_root=self.workdir, stderr=stderr)
        except Exception as exc:
            log.debug("provider.persist_failed", provider=self.name, session_id=session_id, error=str(exc))

    def describe(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "display_name": self.display_name,
            "binaries": list(self.binaries),
            "default_model": self.default_model,
            "lightweight_model": self.lightweight_model if self.supports_lightweight else None,
            "context_files": list(self.context_file_names),
            "supervised": self.supports_supervised,
            "headless": self.supports_headless,
            "lightweight": self.supports_lightweight,
        }

