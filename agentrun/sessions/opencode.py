from __future__ import annotations

import json
import os
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..log import get_logger
from ..models import DiscoveredSession, ProviderSession, TokenUsage
from ..usage import parse_usage, sum_usages
from ..utils import (
    as_dict,
    collect_files,
    extract_embedded_json,
    load_json_document,
    parse_jsonl,
    parse_timestamp_ms,
    read_string,
    span_ms,
)
from .base import SessionAdapter, same_dir

log = get_logger(__name__)

MUTATION_TOOLS = {"apply_patch", "edit", "multi_edit", "multiedit", "write"}
PATH_KEYS = ("filePath", "file_path", "path")
SESSION_SCAN_LIMIT = 20
LIST_TIMEOUT_S = 10
EXPORT_TIMEOUT_S = 15


def _export(payload: str) -> Optional[Dict[str, Any]]:
    document = load_json_document(payload)
    if isinstance(document, dict) and ("messages" in document or "info" in document):
        return document
    return None


def _tool_parts(document: Any, events: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """``type: tool`` parts from an export document or from a ``run --format json`` stream."""
    parts: List[Dict[str, Any]] = []
    if isinstance(document, dict):
        for message in document.get("messages") or []:
            for part in (as_dict(message) or {}).get("parts") or []:
                if isinstance(part, dict) and part.get("type") == "tool":
                    parts.append(part)
        return parts
    for event in events:
        part = as_dict(event.get("part"))
        if event.get("type") == "tool_use" and part:
            parts.append(part)
    return parts


class OpencodeSessionAdapter(SessionAdapter):
    """Sessions live in OpenCode's own store; they are listed and exported through its CLI."""

    provider = "opencode"
    lookback_seconds = 10.0
    binary = "opencode"

    def _binary(self) -> str:
        return os.environ.get("OPENCODE_BIN") or self.binary

    def list_sessions(self, limit: int = SESSION_SCAN_LIMIT) -> List[Dict[str, Any]]:
        try:
            proc = subprocess.run(
                [self._binary(), "session", "list", "--format", "json", "-n", str(limit)],
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                timeout=LIST_TIMEOUT_S,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            log.debug("session.list_failed", provider=self.provider, error=str(exc))
            return []
        if proc.returncode != 0:
            return []
        data = load_json_document(proc.stdout)
        if not isinstance(data, list):
            return []
        return [entry for entry in data if isinstance(entry, dict)]

    def discover_recent_session(self, after_timestamp: float, repo_root: Path) -> Optional[DiscoveredSession]:
        cached = self._discover_cached(after_timestamp, repo_root)
        if cached is not None:
            return cached
        threshold_ms = (after_timestamp - self.lookback_seconds) * 1000.0
        target = str(Path(repo_root).expanduser().resolve())
        sessions = []
        for entry in self.list_sessions():
            session_id = read_string(entry, "id")
            if not session_id:
                continue
            stamp = parse_timestamp_ms(entry.get("updated")) or parse_timestamp_ms(entry.get("created")) or 0.0
            directory = read_string(entry, "directory") or ""
            sessions.append((stamp, session_id, directory))
        sessions.sort(key=lambda item: item[0], reverse=True)

        def matches(directory: str) -> bool:
            return bool(directory) and same_dir(directory, target)

        for predicate in (
            lambda stamp, directory: matches(directory) and stamp >= threshold_ms,
            lambda stamp, directory: stamp >= threshold_ms,
            lambda stamp, directory: matches(directory),
            lambda stamp, directory: True,
        ):
            for stamp, session_id, directory in sessions:
                if predicate(stamp, directory):
                    return DiscoveredSession(session_id=session_id, path=directory or target)
        return None

    def resolve_session(self, session_id: str, repo_root: Path) -> Optional[ProviderSession]:
        cached = self._resolve_cached(session_id)
        if cached is not None:
            return cached
        try:
            proc = subprocess.run(
                [self._binary(), "export", session_id],
                cwd=str(repo_root),
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                timeout=EXPORT_TIMEOUT_S,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            log.debug("session.export_failed", provider=self.provider, session_id=session_id, error=str(exc))
            return None
        if proc.returncode != 0:
            return None
        document = extract_embedded_json(proc.stdout)
        if document is None:
            return None
        return ProviderSession(session_id=session_id, payload=json.dumps(document), path=None)

    def extract_duration_ms(self, session: ProviderSession) -> int:
        document = _export(session.payload)
        if isinstance(document, dict):
            times = as_dict((as_dict(document.get("info")) or {}).get("time")) or {}
            created = parse_timestamp_ms(times.get("created"))
            updated = parse_timestamp_ms(times.get("updated"))
            if created is not None and updated is not None and updated >= created:
                return span_ms(created, updated)
            starts, ends = [], []
            for message in document.get("messages") or []:
                message_time = as_dict((as_dict((as_dict(message) or {}).get("info")) or {}).get("time")) or {}
                starts.append(parse_timestamp_ms(message_time.get("created")))
                ends.append(parse_timestamp_ms(message_time.get("completed")) or parse_timestamp_ms(message_time.get("created")))
            starts = [value for value in starts if value is not None]
            ends = [value for value in ends if value is not None]
            if not starts or not ends:
                return 0
            return span_ms(starts[0], ends[-1])
        events = parse_jsonl(session.payload)
        start = next((event for event in events if event.get("type") == "step_start"), None)
        finish = next((event for event in reversed(events) if event.get("type") == "step_finish"), None)
        if start is None or finish is None:
            return 0
        return span_ms(parse_timestamp_ms(start.get("timestamp")), parse_timestamp_ms(finish.get("timestamp")))

    def extract_tool_calls(self, session: ProviderSession) -> int:
        return len(_tool_parts(_export(session.payload), parse_jsonl(session.payload)))

    def extract_files_changed(self, session: ProviderSession, repo_root: Path) -> List[str]:
        paths = []
        for part in _tool_parts(_export(session.payload), parse_jsonl(session.payload)):
            tool = part.get("tool")
            if not isinstance(tool, str) or tool.strip().lower() not in MUTATION_TOOLS:
                continue
            tool_input = as_dict((as_dict(part.get("state")) or {}).get("input")) or {}
            paths.append(read_string(tool_input, *PATH_KEYS))
        return collect_files(paths, repo_root)

    def extract_token_usage(self, session: ProviderSession) -> Optional[TokenUsage]:
        document = _export(session.payload)
        if isinstance(document, dict):
            usages = []
            for message in document.get("messages") or []:
                info = as_dict((as_dict(message) or {}).get("info")) or {}
                if info.get("role") == "user":
                    continue
                usages.append(parse_usage(info.get("tokens")))
            return sum_usages(usages)
        return sum_usages(
            parse_usage((as_dict(event.get("part")) or {}).get("tokens"))
            for event in parse_jsonl(session.payload)
            if event.get("type") == "step_finish"
        )

