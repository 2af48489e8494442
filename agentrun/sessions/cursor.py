from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

from ..models import DiscoveredSession, ProviderSession, TokenUsage
from ..usage import parse_usage
from ..utils import as_dict, collect_files, load_json_payloads, normalize_tool_name, read_int, read_string, timestamps_span_ms
from .base import SessionAdapter, dash_encode, is_path_safe_id, newest_files, read_session_file

MUTATION_TOOLS = {"addfile", "applypatch", "deletefile", "edit", "multiedit", "updatefile", "write"}
PATH_KEYS = ("destination_path", "destinationPath", "file_path", "filePath", "path", "target_path", "targetPath")


def _tool_call_events(events: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """``tool_call`` events, keeping only the ``started`` half when both halves are present."""
    calls = [event for event in events if event.get("type") == "tool_call"]
    started = [event for event in calls if event.get("subtype") == "started"]
    return started or calls


def _terminal(events: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    for event in reversed(events):
        if event.get("type") == "result":
            return event
    return events[-1] if events else None


class CursorSessionAdapter(SessionAdapter):
    provider = "cursor"
    lookback_seconds = 120.0

    def transcript_dir(self, repo_root: Path) -> Path:
        encoded = dash_encode(Path(repo_root).expanduser().resolve()).lstrip("-")
        return self.settings.cursor_config_dir / "projects" / encoded / "agent-transcripts"

    def discover_recent_session(self, after_timestamp: float, repo_root: Path) -> Optional[DiscoveredSession]:
        threshold = after_timestamp - self.lookback_seconds
        cached = self._discover_cached(after_timestamp, repo_root)
        if cached is not None:
            return cached
        transcripts = newest_files(list(self.transcript_dir(repo_root).glob("*.txt")))
        for path in transcripts:
            if path.stat().st_mtime >= threshold:
                return DiscoveredSession(session_id=path.stem, path=str(path))
        if transcripts:
            return DiscoveredSession(session_id=transcripts[0].stem, path=str(transcripts[0]))
        return None

    def resolve_session(self, session_id: str, repo_root: Path) -> Optional[ProviderSession]:
        cached = self._resolve_cached(session_id)
        if cached is not None:
            return cached
        if not is_path_safe_id(session_id):
            return None
        transcript = self.transcript_dir(repo_root) / f"{session_id}.txt"
        if transcript.is_file():
            return read_session_file(session_id, transcript)
        return None

    def extract_duration_ms(self, session: ProviderSession) -> int:
        events = load_json_payloads(session.payload)
        terminal = _terminal(events)
        explicit = read_int(terminal, "duration_ms", "durationMs") if terminal else None
        if explicit is not None:
            return max(0, explicit)
        return timestamps_span_ms(read_int(event, "timestamp_ms", "timestampMs") for event in events)

    def extract_tool_calls(self, session: ProviderSession) -> int:
        return len(_tool_call_events(load_json_payloads(session.payload)))

    def extract_files_changed(self, session: ProviderSession, repo_root: Path) -> List[str]:
        paths = []
        for event in _tool_call_events(load_json_payloads(session.payload)):
            tool_call = as_dict(event.get("tool_call"))
            if not tool_call:
                continue
            for tool_name, tool_payload in tool_call.items():
                if normalize_tool_name(tool_name) not in MUTATION_TOOLS:
                    continue
                args = as_dict((as_dict(tool_payload) or {}).get("args"))
                if args:
                    paths.append(read_string(args, *PATH_KEYS))
        return collect_files(paths, repo_root)

    def extract_token_usage(self, session: ProviderSession) -> Optional[TokenUsage]:
        terminal = _terminal(load_json_payloads(session.payload))
        usage = parse_usage(terminal.get("usage")) if terminal else None
        if usage is None:
            return None
        if not any((usage.input, usage.output, usage.cache_read, usage.cache_write, usage.reasoning)):
            return None
        return usage
