from __future__ import annotations

from typing import Optional, Sequence

PREVIEW_LIMIT = 500
TAIL_LIMIT = 2000


def preview(text: Optional[str], limit: int = PREVIEW_LIMIT) -> str:
    if not text:
        return ""
    stripped = text.strip()
    if len(stripped) <= limit:
        return stripped
    return stripped[:limit] + "..."


def tail(text: Optional[str], limit: int = TAIL_LIMIT) -> str:
    if not text:
        return ""
    stripped = text.strip()
    if len(stripped) <= limit:
        return stripped
    return "..." + stripped[-limit:]


class ProviderError(Exception):
    """Base class for every failure raised while invoking a provider CLI."""

    def __init__(self, provider: str, message: str) -> None:
        super().__init__(message)
        self.provider = provider
        self.message = message

    def __str__(self) -> str:
        return self.message


class UnknownProviderError(ProviderError, ValueError):
    def __init__(self, provider: str, known: Sequence[str] = ()) -> None:
        message = f"Unknown provider: {provider}"
        if known:
            message += f" (expected one of: {', '.join(known)})"
        super().__init__(provider, message)


class BinaryNotFoundError(ProviderError):
    def __init__(self, provider: str, binaries: Sequence[str], install_hint: Optional[str] = None) -> None:
        tried = ", ".join(binaries)
        message = f"{provider} CLI not found (tried: {tried})."
        if install_hint:
            message += f" Install it with: {install_hint}"
        super().__init__(provider, message)
        self.binaries = tuple(binaries)
        self.install_hint = install_hint


class NotAvailableError(ProviderError):
    pass


class InvalidTTYError(ProviderError):
    def __init__(self, provider: str) -> None:
        super().__init__(
            provider,
            f"{provider} supervised mode requires an interactive terminal on stdin and stdout. "
            "Run from a terminal or add --headless.",
        )


class ProviderTimeoutError(ProviderError):
    kind = "timeout"

    def __init__(self, provider: str, timeout_ms: int, stdout: str = "", stderr: str = "") -> None:
        super().__init__(provider, f"{provider} {self.kind} timed out after {timeout_ms}ms")
        self.timeout_ms = timeout_ms
        self.stdout_tail = tail(stdout)
        self.stderr_tail = tail(stderr)


class StallTimeoutError(ProviderTimeoutError):
    kind = "stall timeout (no activity)"


class HardTimeoutError(ProviderTimeoutError):
    kind = "hard timeout"


class NonZeroExitError(ProviderError):
    def __init__(self, provider: str, exit_code: Optional[int], stdout: str = "", stderr: str = "") -> None:
        self.exit_code = exit_code
        self.stdout_tail = tail(stdout)
        self.stderr_tail = tail(stderr)
        message = f"{provider} exited with code {exit_code}"
        detail = self.stderr_tail or self.stdout_tail
        if detail:
            message += f": {detail}"
        super().__init__(provider, message)


class ParseFailureError(ProviderError):
    def __init__(self, provider: str, message: str, raw: Optional[str] = None) -> None:
        self.preview = preview(raw)
        if self.preview:
            message = f"{message}. Output preview: {self.preview}"
        super().__init__(provider, message)


class EmptyOutputError(ParseFailureError):
    def __init__(self, provider: str, message: Optional[str] = None) -> None:
        super().__init__(provider, message or f"Empty output from {provider}")


class ProviderInterruptedError(ProviderError):
    def __init__(self, provider: str, signal: str) -> None:
        super().__init__(provider, f"{provider} interrupted by {signal}")
        self.signal = signal


class ExplicitProviderError(ProviderError):
    def __init__(self, provider: str, message: str, subtype: Optional[str] = None) -> None:
        super().__init__(provider, message)
        self.subtype = subtype


class UnsupportedCapabilityError(ProviderError):
    def __init__(self, provider: str, capability: str) -> None:
        super().__init__(provider, f"{provider} does not support {capability}")
        self.capability = capability
