from __future__ import annotations

from pathlib import Path
from typing import List, Optional

from ..config import Settings
from ..log import get_logger
from ..models import DiscoveredSession, ProviderSession, SessionMetrics, TokenUsage
from .cache import CachedSession, SessionPayloadCache, default_session_cache, sanitize_session_id

log = get_logger(__name__)

_PATH_UNSAFE = set("/\\*?[]{}\0")


class SessionAdapter:
    """Locates a provider's persisted session log and mines it for metrics.

    ``after_timestamp`` values are epoch seconds. Extraction works on the
    resolved payload only and never starts a subprocess.
    """

    provider: str = ""
    lookback_seconds: float = 10.0

    def __init__(
        self,
        cache: Optional[SessionPayloadCache] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._cache = cache
        self.settings = settings or Settings.from_env()

    @property
    def cache(self) -> SessionPayloadCache:
        if self._cache is None:
            self._cache = default_session_cache()
        return self._cache

    def discover_recent_session(self, after_timestamp: float, repo_root: Path) -> Optional[DiscoveredSession]:
        return None

    def resolve_session(self, session_id: str, repo_root: Path) -> Optional[ProviderSession]:
        return None

    def extract_duration_ms(self, session: ProviderSession) -> int:
        return 0

    def extract_tool_calls(self, session: ProviderSession) -> int:
        return 0

    def extract_files_changed(self, session: ProviderSession, repo_root: Path) -> List[str]:
        return []

    def extract_token_usage(self, session: ProviderSession) -> Optional[TokenUsage]:
        return None

    def extract_metrics(self, session: ProviderSession, repo_root: Path) -> SessionMetrics:
        return SessionMetrics(
            duration_ms=max(0, self.extract_duration_ms(session)),
            tool_calls=max(0, self.extract_tool_calls(session)),
            files_changed=self.extract_files_changed(session, repo_root),
            token_usage=self.extract_token_usage(session),
        )

    # -- cache helpers -----------------------------------------------------

    def _resolve_cached(self, session_id: str) -> Optional[ProviderSession]:
        entry = self.cache.get(self.provider, session_id)
        if entry is None:
            return None
        return ProviderSession(session_id=session_id, payload=entry.payload, path=entry.path)

    def _discover_cached(self, after_timestamp: float, repo_root: Path) -> Optional[DiscoveredSession]:
        """Newest capture inside the lookback window, same repository first.

        Disk snapshots left by earlier processes carry no repository, so they
        only back the repository-agnostic fallback.
        """
        threshold = after_timestamp - self.lookback_seconds
        root = str(Path(repo_root).expanduser().resolve())
        in_memory = self.cache.entries(self.provider)
        known = {sanitize_session_id(entry.session_id) for entry in in_memory}
        recent = [entry for entry in in_memory if entry.captured_at >= threshold]
        for entry in recent:
            if entry.repo_root and same_dir(entry.repo_root, root):
                return _discovered(entry)
        on_disk = [entry for entry in self.cache.disk_entries(self.provider) if entry.session_id not in known and entry.captured_at >= threshold]
        for entry in [*recent, *on_disk]:
            if not entry.repo_root:
                return _discovered(entry)
        return None


class NoopSessionAdapter(SessionAdapter):
    """Used for providers without session-log support; every lookup comes back empty."""


def _discovered(entry: CachedSession) -> DiscoveredSession:
    return DiscoveredSession(session_id=entry.session_id, path=entry.path)


def same_dir(left: str, right: str) -> bool:
    try:
        return Path(left).expanduser().resolve() == Path(right).expanduser().resolve()
    except OSError:
        return left.rstrip("/") == right.rstrip("/")


def is_path_safe_id(session_id: str) -> bool:
    """True when ``session_id`` can name a file without escaping its directory or acting as a glob."""
    return bool(session_id) and session_id not in (".", "..") and not _PATH_UNSAFE.intersection(session_id)


def newest_files(paths: List[Path], after_timestamp: Optional[float] = None) -> List[Path]:
    """Existing files sorted newest first, optionally only those modified after a time."""
    stamped = []
    for path in paths:
        try:
            mtime = path.stat().st_mtime
        except OSError:
            continue
        if after_timestamp is not None and mtime < after_timestamp:
            continue
        stamped.append((mtime, path))
    stamped.sort(key=lambda item: item[0], reverse=True)
    return [path for _, path in stamped]


def read_session_file(session_id: str, path: Path) -> Optional[ProviderSession]:
    try:
        payload = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        log.debug("session.read_failed", path=str(path), error=str(exc))
        return None
    return ProviderSession(session_id=session_id, payload=payload, path=str(path))


def dash_encode(repo_root: Path) -> str:
    return str(repo_root).replace("/", "-").replace(".", "-")
