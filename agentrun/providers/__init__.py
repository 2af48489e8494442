from __future__ import annotations

import asyncio
import os
from typing import Callable, Dict, Mapping, Optional, Tuple

from ..config import ProviderConfig
from ..errors import ProviderInterruptedError, UnknownProviderError
from ..log import get_logger
from ..models import AgentResult, InvocationRequest
from ..sessions.cache import SessionPayloadCache
from ..signals import TerminationSignal, exit_for_signal, interrupt_scope
from .base import Provider
from .claude import ClaudeProvider
from .codex import CodexProvider
from .cursor import CursorProvider
from .gemini import GeminiProvider
from .opencode import OpencodeProvider

log = get_logger(__name__)

ProviderFactory = Callable[..., Provider]

PROVIDER_REGISTRY: Dict[str, ProviderFactory] = {
    "claude": ClaudeProvider,
    "codex": CodexProvider,
    "cursor": CursorProvider,
    "gemini": GeminiProvider,
    "opencode": OpencodeProvider,
}

_instances: Dict[str, Provider] = {}

# Cursor is never picked implicitly.
AUTO_DETECT_PRIORITY = ("claude", "opencode", "codex", "gemini")
DEFAULT_PROVIDER = "claude"
PROVIDER_ENV_KEY = "AGENTRUN_PROVIDER"


def list_providers() -> Tuple[str, ...]:
    return tuple(PROVIDER_REGISTRY.keys())


def _key(name: str) -> str:
    key = name.strip().lower()
    if key not in PROVIDER_REGISTRY:
        raise UnknownProviderError(name, list_providers())
    return key


def get_provider(
    name: str,
    config: Optional[ProviderConfig] = None,
    *,
    session_cache: Optional[SessionPayloadCache] = None,
) -> Provider:
    """Return the provider for ``name``.

    Calls without a configuration or cache share one cached instance per
    provider; any explicit argument builds a fresh, uncached instance.
    """
    key = _key(name)
    if config is None and session_cache is None:
        instance = _instances.get(key)
        if instance is None:
            instance = PROVIDER_REGISTRY[key]()
            _instances[key] = instance
        return instance
    return PROVIDER_REGISTRY[key](config, session_cache=session_cache)


def clear_provider_cache() -> None:
    _instances.clear()


def auto_detect_provider() -> str:
    """First provider in priority order whose binary resolves, else claude."""
    for name in AUTO_DETECT_PRIORITY:
        if get_provider(name).resolve_binary() is not None:
            log.debug("provider.auto_detected", provider=name)
            return name
    return DEFAULT_PROVIDER


def select_provider(explicit: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> str:
    """Pick a provider: explicit name, then $AGENTRUN_PROVIDER, then auto-detection.

    Explicit and environment names are validated and raise UnknownProviderError.
    """
    env = os.environ if environ is None else environ
    for candidate in (explicit, env.get(PROVIDER_ENV_KEY)):
        if candidate and candidate.strip():
            return _key(candidate)
    return auto_detect_provider()


async def invoke(
    name: str,
    request: InvocationRequest,
    *,
    session_cache: Optional[SessionPayloadCache] = None,
    propagate_signals: bool = True,
) -> AgentResult:
    """Invoke provider ``name``; failures surface as typed ``ProviderError`` subclasses.

    SIGINT/SIGTERM handlers are installed only while the call runs. When the
    invocation was interrupted and ``propagate_signals`` is set, the signal is
    re-raised on this process after cleanup; otherwise ProviderInterruptedError
    is raised.
    """
    provider = get_provider(name, request.config, session_cache=session_cache)
    with interrupt_scope() as watch:
        try:
            return await provider.invoke(request, interrupt=watch)
        except ProviderInterruptedError as exc:
            interrupted = exc
    if propagate_signals:
        exit_for_signal(TerminationSignal(interrupted.signal))
    raise interrupted


def invoke_sync(name: str, request: InvocationRequest, **kwargs) -> AgentResult:
    return asyncio.run(invoke(name, request, **kwargs))


__all__ = [
    "PROVIDER_REGISTRY",
    "ClaudeProvider",
    "CodexProvider",
    "CursorProvider",
    "GeminiProvider",
    "OpencodeProvider",
    "Provider",
    "auto_detect_provider",
    "clear_provider_cache",
    "get_provider",
    "invoke",
    "invoke_sync",
    "list_providers",
    "select_provider",
]
