from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..models import DiscoveredSession, ProviderSession, TokenUsage
from ..usage import parse_usage, sum_usages
from ..utils import as_dict, collect_files, parse_jsonl, parse_timestamp_ms, read_string, span_ms, timestamps_span_ms
from .base import SessionAdapter, is_path_safe_id, newest_files, read_session_file, same_dir

TOOL_EVENT_TYPES = {"tool", "tool_call"}
TOOL_ITEM_TYPES = {"command_execution", "file_change", "mcp_tool_call", "web_search"}
ROLLOUT_TOOL_TYPES = {"function_call", "custom_tool_call", "local_shell_call"}
_PATCH_FILE = re.compile(r"^\*\*\* (?:Add|Update|Delete) File: (.+)$", re.MULTILINE)
_PATCH_MOVE = re.compile(r"^\*\*\* Move to: (.+)$", re.MULTILINE)


def _payload(event: Dict[str, Any]) -> Dict[str, Any]:
    return as_dict(event.get("payload")) or {}


def _is_rollout(events: List[Dict[str, Any]]) -> bool:
    return any(event.get("type") in ("session_meta", "response_item", "event_msg") for event in events)


def _patch_paths(text: Any) -> List[str]:
    if not isinstance(text, str):
        return []
    return _PATCH_FILE.findall(text) + _PATCH_MOVE.findall(text)


class CodexSessionAdapter(SessionAdapter):
    """Reads ``codex exec --json`` captures and the CLI's own rollout files."""

    provider = "codex"

    @property
    def sessions_root(self) -> Path:
        return self.settings.codex_home / "sessions"

    def discover_recent_session(self, after_timestamp: float, repo_root: Path) -> Optional[DiscoveredSession]:
        cached = self._discover_cached(after_timestamp, repo_root)
        if cached is not None:
            return cached
        if not self.sessions_root.is_dir():
            return None
        rollouts = newest_files(list(self.sessions_root.rglob("rollout-*.jsonl")), after_timestamp - self.lookback_seconds)
        fallback: Optional[DiscoveredSession] = None
        for path in rollouts:
            meta = self._rollout_meta(path)
            session_id = read_string(meta, "id") or path.stem[-36:]
            found = DiscoveredSession(session_id=session_id, path=str(path))
            cwd = read_string(meta, "cwd")
            if cwd and same_dir(cwd, str(repo_root)):
                return found
            fallback = fallback or found
        return fallback

    def _rollout_meta(self, path: Path) -> Dict[str, Any]:
        try:
            with path.open("r", encoding="utf-8") as handle:
                first = handle.readline()
            event = json.loads(first)
        except Exception:
            return {}
        return _payload(event) if isinstance(event, dict) and event.get("type") == "session_meta" else {}

    def resolve_session(self, session_id: str, repo_root: Path) -> Optional[ProviderSession]:
        cached = self._resolve_cached(session_id)
        if cached is not None:
            return cached
        if not is_path_safe_id(session_id) or not self.sessions_root.is_dir():
            return None
        for path in newest_files(list(self.sessions_root.rglob(f"rollout-*{session_id}.jsonl"))):
            session = read_session_file(session_id, path)
            if session is not None:
                return session
        return None

    def extract_duration_ms(self, session: ProviderSession) -> int:
        events = parse_jsonl(session.payload)
        start = next((event for event in events if event.get("type") == "thread.started"), None)
        end = next((event for event in reversed(events) if event.get("type") == "turn.completed"), None)
        if start is not None and end is not None:
            started = parse_timestamp_ms(start.get("timestamp"))
            finished = parse_timestamp_ms(end.get("timestamp"))
            if started is not None and finished is not None:
                return span_ms(started, finished)
        return timestamps_span_ms(parse_timestamp_ms(event.get("timestamp")) for event in events)

    def extract_tool_calls(self, session: ProviderSession) -> int:
        events = parse_jsonl(session.payload)
        if _is_rollout(events):
            return sum(
                1
                for event in events
                if event.get("type") == "response_item" and _payload(event).get("type") in ROLLOUT_TOOL_TYPES
            )
        count = 0
        for event in events:
            kind = event.get("type")
            if kind in TOOL_EVENT_TYPES:
                count += 1
            elif kind == "item.completed":
                item = as_dict(event.get("item")) or {}
                if item.get("type") in TOOL_ITEM_TYPES:
                    count += 1
        return count

    def extract_files_changed(self, session: ProviderSession, repo_root: Path) -> List[str]:
        paths: List[Any] = []
        for event in parse_jsonl(session.payload):
            kind = event.get("type")
            if kind == "item.completed":
                item = as_dict(event.get("item")) or {}
                if item.get("type") == "file_change":
                    for change in item.get("changes") or []:
                        if isinstance(change, dict):
                            paths.append(change.get("path"))
            elif kind == "response_item":
                payload = _payload(event)
                if payload.get("type") == "custom_tool_call" and payload.get("name") == "apply_patch":
                    paths.extend(_patch_paths(payload.get("input")))
                elif payload.get("type") == "function_call" and payload.get("name") == "apply_patch":
                    try:
                        arguments = json.loads(payload.get("arguments") or "{}")
                    except Exception:
                        arguments = {}
                    paths.extend(_patch_paths(arguments.get("input") if isinstance(arguments, dict) else None))
            else:
                tool_input = as_dict((as_dict(event.get("part")) or {}).get("input"))
                if tool_input:
                    paths.append(read_string(tool_input, "file_path", "path"))
        return collect_files(paths, repo_root)

    def extract_token_usage(self, session: ProviderSession) -> Optional[TokenUsage]:
        """Exec captures report per-turn usage (summed); rollout ``token_count`` totals are cumulative."""
        events = parse_jsonl(session.payload)
        latest_total: Optional[TokenUsage] = None
        turn_usages = []
        for event in events:
            kind = event.get("type")
            if kind == "turn.completed":
                part = as_dict(event.get("part")) or {}
                turn_usages.append(parse_usage(part.get("usage") if part.get("usage") is not None else event.get("usage")))
            elif kind == "event_msg":
                payload = _payload(event)
                if payload.get("type") == "token_count":
                    info = as_dict(payload.get("info")) or {}
                    total = parse_usage(info.get("total_token_usage"))
                    if total is not None:
                        latest_total = total
        if latest_total is not None:
            return latest_total
        return sum_usages(turn_usages)
