from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..models import DiscoveredSession, ProviderSession, TokenUsage
from ..usage import model_tokens_usage, sum_usages
from ..utils import as_dict, collect_files, load_json_document, normalize_tool_name, parse_timestamp_ms, read_int, read_string, span_ms
from .base import SessionAdapter, newest_files, read_session_file

MUTATION_TOOLS = {"writefile", "replace", "edit", "smartedit"}
PATH_KEYS = ("file_path", "filePath", "absolute_path", "path")


def _message_tokens(message: Dict[str, Any]) -> Optional[TokenUsage]:
    tokens = as_dict(message.get("tokens"))
    if not tokens:
        return None
    usage = TokenUsage(
        input=read_int(tokens, "input", "prompt"),
        output=read_int(tokens, "output", "candidates"),
        cache_read=read_int(tokens, "cached"),
        reasoning=read_int(tokens, "thoughts"),
    )
    return None if usage.is_empty() else usage


class GeminiSessionAdapter(SessionAdapter):
    """Reads cached ``--output-format json`` payloads and the CLI's chat recordings."""

    provider = "gemini"

    def chats_dir(self, repo_root: Path) -> Path:
        digest = hashlib.sha256(str(Path(repo_root).expanduser().resolve()).encode("utf-8")).hexdigest()
        return self.settings.gemini_home / "tmp" / digest / "chats"

    def _recordings(self, repo_root: Path, after_timestamp: Optional[float] = None) -> List[Path]:
        return newest_files(list(self.chats_dir(repo_root).glob("session-*.json")), after_timestamp)

    def discover_recent_session(self, after_timestamp: float, repo_root: Path) -> Optional[DiscoveredSession]:
        cached = self._discover_cached(after_timestamp, repo_root)
        if cached is not None:
            return cached
        for path in self._recordings(repo_root, after_timestamp - self.lookback_seconds):
            document = _load(path)
            session_id = read_string(document, "sessionId", "session_id")
            if session_id:
                return DiscoveredSession(session_id=session_id, path=str(path))
        return None

    def resolve_session(self, session_id: str, repo_root: Path) -> Optional[ProviderSession]:
        cached = self._resolve_cached(session_id)
        if cached is not None:
            return cached
        for path in self._recordings(repo_root):
            if read_string(_load(path), "sessionId", "session_id") == session_id:
                return read_session_file(session_id, path)
        return None

    def extract_duration_ms(self, session: ProviderSession) -> int:
        document = as_dict(load_json_document(session.payload)) or {}
        if "messages" in document:
            started = parse_timestamp_ms(document.get("startTime"))
            finished = parse_timestamp_ms(document.get("lastUpdated"))
            return span_ms(started, finished)
        stats = as_dict(document.get("stats")) or {}
        return max(0, read_int(stats, "duration_ms", "durationMs") or read_int(document, "duration_ms") or 0)

    def extract_tool_calls(self, session: ProviderSession) -> int:
        document = as_dict(load_json_document(session.payload)) or {}
        if "messages" in document:
            return sum(len(message.get("toolCalls") or []) for message in _messages(document))
        tools = as_dict((as_dict(document.get("stats")) or {}).get("tools")) or {}
        return max(0, read_int(tools, "totalCalls") or 0)

    def extract_files_changed(self, session: ProviderSession, repo_root: Path) -> List[str]:
        document = as_dict(load_json_document(session.payload)) or {}
        paths = []
        for message in _messages(document):
            for call in message.get("toolCalls") or []:
                if not isinstance(call, dict) or normalize_tool_name(call.get("name")) not in MUTATION_TOOLS:
                    continue
                paths.append(read_string(as_dict(call.get("args")) or {}, *PATH_KEYS))
        return collect_files(paths, repo_root)

    def extract_token_usage(self, session: ProviderSession) -> Optional[TokenUsage]:
        document = as_dict(load_json_document(session.payload)) or {}
        if "messages" in document:
            return sum_usages(_message_tokens(message) for message in _messages(document))
        return model_tokens_usage(document.get("stats"))


def _messages(document: Dict[str, Any]) -> List[Dict[str, Any]]:
    return [message for message in document.get("messages") or [] if isinstance(message, dict)]


def _load(path: Path) -> Dict[str, Any]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except Exception:
        return {}
    return data if isinstance(data, dict) else {}
