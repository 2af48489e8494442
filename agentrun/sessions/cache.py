from __future__ import annotations

import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from ..config import Settings
from ..log import get_logger
from ..utils import format_trace_text, join_output

log = get_logger(__name__)

DEFAULT_CACHE_LIMIT = 50
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def sanitize_session_id(session_id: str) -> str:
    cleaned = _UNSAFE_CHARS.sub("_", session_id.strip())
    return cleaned.strip(".") or "session"


@dataclass(frozen=True)
class CachedSession:
    provider: str
    session_id: str
    payload: str
    captured_at: float
    repo_root: Optional[str] = None
    path: Optional[str] = None


class SessionPayloadCache:
    """Bounded in-memory map of headless payloads backed by one file per session.

    Entries are replaced, never mutated. When more than ``limit`` entries are
    held the oldest ``captured_at`` is evicted from memory; its disk copy stays.
    Disk failures only cost the fallback, so they are logged and ignored.
    """

    def __init__(self, root: Optional[Path] = None, *, limit: int = DEFAULT_CACHE_LIMIT) -> None:
        self.root = Path(root).expanduser() if root is not None else None
        self.limit = max(1, limit)
        self._entries: Dict[tuple[str, str], CachedSession] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def _file_for(self, provider: str, session_id: str) -> Optional[Path]:
        if self.root is None:
            return None
        return self.root / provider / f"{sanitize_session_id(session_id)}.jsonl"

    def store(
        self,
        provider: str,
        session_id: str,
        payload: str,
        *,
        repo_root: Optional[Path] = None,
        captured_at: Optional[float] = None,
        stderr: str = "",
    ) -> CachedSession:
        """Keep ``payload`` in memory and on disk; ``stderr`` only goes into the YAML trace."""
        path = self._write(provider, session_id, payload, stderr)
        entry = CachedSession(
            provider=provider,
            session_id=session_id,
            payload=payload,
            captured_at=captured_at if captured_at is not None else time.time(),
            repo_root=str(repo_root) if repo_root is not None else None,
            path=str(path) if path is not None else None,
        )
        self._entries[(provider, session_id)] = entry
        self._evict()
        return entry

    def get(self, provider: str, session_id: str) -> Optional[CachedSession]:
        entry = self._entries.get((provider, session_id))
        if entry is not None:
            return entry
        path = self._file_for(provider, session_id)
        if path is None or not path.is_file():
            return None
        try:
            payload = path.read_text(encoding="utf-8")
        except OSError as exc:
            log.debug("session_cache.read_failed", provider=provider, path=str(path), error=str(exc))
            return None
        return CachedSession(
            provider=provider,
            session_id=session_id,
            payload=payload,
            captured_at=path.stat().st_mtime,
            path=str(path),
        )

    def entries(self, provider: str) -> List[CachedSession]:
        """In-memory entries for ``provider``, newest first."""
        items = [entry for (name, _), entry in self._entries.items() if name == provider]
        return sorted(items, key=lambda entry: entry.captured_at, reverse=True)

    def disk_entries(self, provider: str) -> List[CachedSession]:
        """Snapshots on disk for ``provider``, newest first; ids are the sanitized file stems."""
        if self.root is None:
            return []
        folder = self.root / provider
        if not folder.is_dir():
            return []
        items: List[CachedSession] = []
        for path in folder.glob("*.jsonl"):
            try:
                items.append(
                    CachedSession(
                        provider=provider,
                        session_id=path.stem,
                        payload=path.read_text(encoding="utf-8"),
                        captured_at=path.stat().st_mtime,
                        path=str(path),
                    )
                )
            except OSError:
                continue
        return sorted(items, key=lambda entry: entry.captured_at, reverse=True)

    def _evict(self) -> None:
        while len(self._entries) > self.limit:
            oldest = min(self._entries, key=lambda key: self._entries[key].captured_at)
            log.debug("session_cache.evicted", provider=oldest[0], session_id=oldest[1])
            del self._entries[oldest]

    def _write(self, provider: str, session_id: str, payload: str, stderr: str = "") -> Optional[Path]:
        path = self._file_for(provider, session_id)
        if path is None:
            return None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(payload, encoding="utf-8")
            trace = format_trace_text(join_output(payload, stderr), source=str(path), provider=provider)
            if trace:
                path.with_name(f"{path.stem}.trace.yaml").write_text(trace, encoding="utf-8")
        except Exception as exc:
            log.debug("session_cache.write_failed", provider=provider, path=str(path), error=str(exc))
            return None
        return path


_default_cache: Optional[SessionPayloadCache] = None


def default_session_cache() -> SessionPayloadCache:
    global _default_cache
    if _default_cache is None:
        _default_cache = SessionPayloadCache(Settings.from_env().sessions_dir)
    return _default_cache


def reset_default_session_cache() -> None:
    global _default_cache
    _default_cache = None
