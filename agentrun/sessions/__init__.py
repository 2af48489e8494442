"""Per-provider session adapters and the never-raising entry points over them."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, Optional, Type, Union

from ..log import get_logger
from ..models import DiscoveredSession, ProviderSession, SessionMetrics
from .base import NoopSessionAdapter, SessionAdapter
from .cache import SessionPayloadCache, default_session_cache, reset_default_session_cache
from .claude import ClaudeSessionAdapter
from .codex import CodexSessionAdapter
from .cursor import CursorSessionAdapter
from .gemini import GeminiSessionAdapter
from .opencode import OpencodeSessionAdapter

log = get_logger(__name__)

SESSION_ADAPTERS: Dict[str, Type[SessionAdapter]] = {
    "claude": ClaudeSessionAdapter,
    "codex": CodexSessionAdapter,
    "cursor": CursorSessionAdapter,
    "gemini": GeminiSessionAdapter,
    "opencode": OpencodeSessionAdapter,
}

PathLike = Union[str, Path]


def get_session_adapter(provider: str, *, cache: Optional[SessionPayloadCache] = None) -> SessionAdapter:
    adapter_cls = SESSION_ADAPTERS.get((provider or "").strip().lower(), NoopSessionAdapter)
    return adapter_cls(cache)


def discover_recent_session(
    provider: str,
    after_timestamp: float,
    repo_root: PathLike,
    *,
    cache: Optional[SessionPayloadCache] = None,
) -> Optional[DiscoveredSession]:
    try:
        return get_session_adapter(provider, cache=cache).discover_recent_session(after_timestamp, Path(repo_root))
    except Exception as exc:
        log.debug("session.discover_failed", provider=provider, error=str(exc))
        return None


def resolve_session(
    provider: str,
    session_id: str,
    repo_root: PathLike,
    *,
    cache: Optional[SessionPayloadCache] = None,
) -> Optional[ProviderSession]:
    if not session_id:
        return None
    try:
        return get_session_adapter(provider, cache=cache).resolve_session(session_id, Path(repo_root))
    except Exception as exc:
        log.debug("session.resolve_failed", provider=provider, session_id=session_id, error=str(exc))
        return None


def extract_session_metrics(
    provider: str,
    session: ProviderSession,
    repo_root: PathLike,
    *,
    cache: Optional[SessionPayloadCache] = None,
) -> SessionMetrics:
    try:
        return get_session_adapter(provider, cache=cache).extract_metrics(session, Path(repo_root))
    except Exception as exc:
        log.debug("session.extract_failed", provider=provider, session_id=session.session_id, error=str(exc))
        return SessionMetrics()


def get_session_metrics(
    provider: str,
    session_id: str,
    repo_root: PathLike,
    *,
    cache: Optional[SessionPayloadCache] = None,
) -> SessionMetrics:
    """Best-effort metrics for one session; zeroed metrics when anything is missing."""
    session = resolve_session(provider, session_id, repo_root, cache=cache)
    if session is None:
        log.debug("session.unavailable", provider=provider, session_id=session_id)
        return SessionMetrics()
    return extract_session_metrics(provider, session, repo_root, cache=cache)


__all__ = [
    "NoopSessionAdapter",
    "SESSION_ADAPTERS",
    "SessionAdapter",
    "SessionPayloadCache",
    "default_session_cache",
    "discover_recent_session",
    "extract_session_metrics",
    "get_session_adapter",
    "get_session_metrics",
    "reset_default_session_cache",
    "resolve_session",
]
