from __future__ import annotations

import base64
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from ..log import get_logger
from ..models import DiscoveredSession, ProviderSession, TokenUsage
from ..usage import parse_usage
from ..utils import (
    as_dict,
    collect_files,
    load_json_document,
    normalize_tool_name,
    parse_jsonl,
    parse_timestamp_ms,
    read_int,
    span_ms,
)
from .base import SessionAdapter, dash_encode, is_path_safe_id, newest_files, read_session_file

log = get_logger(__name__)

MUTATION_TOOLS = {"write", "edit", "multiedit", "notebookedit"}
PATH_KEYS = ("file_path", "path", "notebook_path")


def project_dir_names(repo_root: Path) -> List[str]:
    raw = str(repo_root)
    encoded = base64.b64encode(raw.encode("utf-8")).decode("ascii")
    encoded_url = encoded.replace("+", "-").replace("/", "_").replace("=", "")
    return [encoded, encoded_url, dash_encode(repo_root)]


def _content_blocks(record: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
    message = as_dict(record.get("message"))
    content = message.get("content") if message else None
    if isinstance(content, list):
        for block in content:
            if isinstance(block, dict):
                yield block


def _tool_uses(records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Unique ``tool_use`` blocks; transcripts repeat a message once per content block."""
    seen = set()
    blocks = []
    for record in records:
        for block in _content_blocks(record):
            if block.get("type") != "tool_use":
                continue
            key = block.get("id") or id(block)
            if key in seen:
                continue
            seen.add(key)
            blocks.append(block)
    return blocks


class ClaudeSessionAdapter(SessionAdapter):
    provider = "claude"

    @property
    def config_dir(self) -> Path:
        return self.settings.claude_config_dir

    def discover_recent_session(self, after_timestamp: float, repo_root: Path) -> Optional[DiscoveredSession]:
        projects = self.config_dir / "projects"
        if projects.is_dir():
            candidates = newest_files(list(projects.rglob("*.jsonl")), after_timestamp - self.lookback_seconds)
            if candidates:
                preferred = set(project_dir_names(Path(repo_root).expanduser().resolve()))
                for path in candidates:
                    if path.parent.name in preferred:
                        return DiscoveredSession(session_id=path.stem, path=str(path))
                return DiscoveredSession(session_id=candidates[0].stem, path=str(candidates[0]))
        return self._discover_cached(after_timestamp, repo_root)

    def session_path(self, session_id: str, repo_root: Path) -> Optional[Path]:
        if not is_path_safe_id(session_id):
            log.debug("session.unsafe_id", provider=self.provider, session_id=session_id)
            return None
        projects = self.config_dir / "projects"
        tried = [projects / name / f"{session_id}.jsonl" for name in project_dir_names(Path(repo_root).expanduser().resolve())]
        tried.append(projects / f"{session_id}.jsonl")
        tried.append(self.config_dir / "sessions" / f"{session_id}.jsonl")
        for candidate in tried:
            if candidate.is_file():
                return candidate
        if projects.is_dir():
            for depth in ("*", "*/*", "*/*/*"):
                for candidate in projects.glob(f"{depth}/{session_id}.jsonl"):
                    if candidate.is_file():
                        return candidate
        log.debug("session.not_found", provider=self.provider, session_id=session_id, tried=[str(path) for path in tried])
        return None

    def resolve_session(self, session_id: str, repo_root: Path) -> Optional[ProviderSession]:
        path = self.session_path(session_id, repo_root)
        if path is not None:
            session = read_session_file(session_id, path)
            if session is not None:
                return session
        return self._resolve_cached(session_id)

    def extract_duration_ms(self, session: ProviderSession) -> int:
        document = load_json_document(session.payload)
        if isinstance(document, dict):
            return max(0, read_int(document, "duration_ms", "durationMs") or 0)
        stamps = [parse_timestamp_ms(record.get("timestamp")) for record in parse_jsonl(session.payload)]
        stamps = [stamp for stamp in stamps if stamp is not None]
        if len(stamps) < 2:
            return 0
        return span_ms(stamps[0], stamps[-1])

    def extract_tool_calls(self, session: ProviderSession) -> int:
        return len(_tool_uses(parse_jsonl(session.payload)))

    def extract_files_changed(self, session: ProviderSession, repo_root: Path) -> List[str]:
        paths = []
        for block in _tool_uses(parse_jsonl(session.payload)):
            if normalize_tool_name(block.get("name")) not in MUTATION_TOOLS:
                continue
            tool_input = as_dict(block.get("input")) or {}
            for key in PATH_KEYS:
                if tool_input.get(key):
                    paths.append(tool_input[key])
                    break
        return collect_files(paths, repo_root)

    def extract_token_usage(self, session: ProviderSession) -> Optional[TokenUsage]:
        """Context tokens come from the latest request; output tokens are summed.

        Every request re-sends the whole conversation, so the latest record's
        input and cache counters already cover the earlier ones.
        """
        document = load_json_document(session.payload)
        if isinstance(document, dict):
            return parse_usage(document.get("usage"))
        by_message: Dict[str, TokenUsage] = {}
        for index, record in enumerate(parse_jsonl(session.payload)):
            message = as_dict(record.get("message"))
            usage = parse_usage(message.get("usage")) if message else None
            if usage is None:
                continue
            key = message.get("id") if isinstance(message.get("id"), str) else f"#{index}"
            by_message.pop(key, None)
            by_message[key] = usage
        if not by_message:
            return None
        records = list(by_message.values())
        latest = records[-1]
        return TokenUsage(
            input=latest.input,
            output=sum(usage.output or 0 for usage in records),
            cache_read=latest.cache_read,
            cache_write=latest.cache_write,
        )
