from __future__ import annotations

import json
import re
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import yaml

_STDERR_MARKER = "----- STDERR -----"
MAX_FILES_CHANGED = 50

_URL_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://")
_GLOB_CHARS = set("*?[]{}")


def load_json_payloads(text: str) -> List[Dict[str, Any]]:
    """Parse a whole-document JSON object/array, falling back to one JSON value per line."""
    if not text:
        return []
    stripped = text.strip()
    if stripped:
        try:
            data = json.loads(stripped)
        except Exception:
            data = None
        if isinstance(data, dict):
            return [data]
        if isinstance(data, list):
            return [item for item in data if isinstance(item, dict)]
    return parse_jsonl(text)


def parse_jsonl(text: str) -> List[Dict[str, Any]]:
    payloads: List[Dict[str, Any]] = []
    for line in (text or "").splitlines():
        line = line.strip()
        if not line or line[0] not in "{[":
            continue
        try:
            data = json.loads(line)
        except Exception:
            continue
        if isinstance(data, dict):
            payloads.append(data)
        elif isinstance(data, list):
            payloads.extend([item for item in data if isinstance(item, dict)])
    return payloads


def load_json_document(text: str) -> Any:
    """Return the parsed document, or None when the text is not a single JSON value."""
    stripped = (text or "").strip()
    if not stripped:
        return None
    try:
        return json.loads(stripped)
    except Exception:
        return None


def extract_embedded_json(text: str) -> Any:
    """Parse JSON starting at the first ``{`` or ``[`` (CLIs sometimes print a banner first)."""
    if not text:
        return None
    indexes = [index for index in (text.find("{"), text.find("[")) if index >= 0]
    if not indexes:
        return None
    start = min(indexes)
    try:
        value, _ = json.JSONDecoder().raw_decode(text, start)
    except Exception:
        return None
    return value


def load_env_file(path: Path) -> Dict[str, str]:
    content = path.read_text(encoding="utf-8")
    env: Dict[str, str] = {}
    for raw_line in content.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export ") :].strip()
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not key:
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
            value = value[1:-1]
        env[key] = value
    return env


def as_dict(value: Any) -> Optional[Dict[str, Any]]:
    return value if isinstance(value, dict) else None


def as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, float):
        if value != value:
            return None
        return int(value)
    try:
        return int(value)
    except Exception:
        return None


def as_float(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        result = float(value)
    except Exception:
        return None
    if result != result:
        return None
    return result


def read_int(obj: Any, *keys: str) -> Optional[int]:
    if not isinstance(obj, Mapping):
        return None
    for key in keys:
        value = as_int(obj.get(key))
        if value is not None:
            return value
    return None


def read_number(obj: Any, *keys: str) -> Optional[float]:
    if not isinstance(obj, Mapping):
        return None
    for key in keys:
        value = as_float(obj.get(key))
        if value is not None:
            return value
    return None


def read_string(obj: Any, *keys: str) -> Optional[str]:
    if not isinstance(obj, Mapping):
        return None
    for key in keys:
        value = obj.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return None


def parse_timestamp_ms(value: Any) -> Optional[float]:
    """Accept epoch seconds, epoch milliseconds, or ISO-8601 strings."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        number = float(value)
        # Anything below ~2001-09 in milliseconds is taken to be seconds.
        return number * 1000.0 if number < 1e12 else number
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return parse_timestamp_ms(float(text))
        except ValueError:
            pass
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return datetime.fromisoformat(text).timestamp() * 1000.0
        except ValueError:
            return None
    return None


def span_ms(start: Optional[float], end: Optional[float]) -> int:
    if start is None or end is None:
        return 0
    return max(0, int(round(end - start)))


def timestamps_span_ms(values: Iterable[Optional[float]]) -> int:
    present = [value for value in values if value is not None]
    if len(present) < 2:
        return 0
    return span_ms(min(present), max(present))


def normalize_tool_name(name: Any) -> str:
    if not isinstance(name, str):
        return ""
    cleaned = name.strip()
    if cleaned.endswith("ToolCall"):
        cleaned = cleaned[: -len("ToolCall")]
    return cleaned.replace("_", "").replace("-", "").lower()


def normalize_file_path(raw: Any, repo_root: Optional[Path]) -> Optional[str]:
    if not isinstance(raw, str):
        return None
    text = raw.strip()
    if not text or _URL_PATTERN.match(text):
        return None
    if any(char in _GLOB_CHARS for char in text):
        return None
    if repo_root is not None:
        path = Path(text)
        if path.is_absolute():
            root = Path(repo_root).expanduser()
            for base in (root, root.resolve()):
                try:
                    return PurePosixPath(path.relative_to(base).as_posix()).as_posix()
                except ValueError:
                    continue
            return text
    if text.startswith("./"):
        text = text[2:]
    return text or None


def collect_files(paths: Iterable[Any], repo_root: Optional[Path], limit: int = MAX_FILES_CHANGED) -> List[str]:
    seen: Dict[str, None] = {}
    for raw in paths:
        normalized = normalize_file_path(raw, repo_root)
        if normalized and normalized not in seen:
            seen[normalized] = None
            if len(seen) >= limit:
                break
    return list(seen)


class _TraceDumper(yaml.SafeDumper):
    pass


def _represent_multiline_str(dumper: yaml.SafeDumper, data: str) -> yaml.nodes.ScalarNode:
    style = "|" if "\n" in data else None
    return dumper.represent_scalar("tag:yaml.org,2002:str", data, style=style)


_TraceDumper.add_representer(str, _represent_multiline_str)


def _yaml_dump(data: Dict[str, Any]) -> str:
    return yaml.dump(
        data,
        Dumper=_TraceDumper,
        allow_unicode=True,
        sort_keys=False,
        default_flow_style=False,
        width=1000000,
    ).rstrip() + "\n"


def _split_stdout_stderr(text: str) -> Tuple[str, str]:
    if _STDERR_MARKER not in text:
        return text, ""
    stdout, stderr = text.split(_STDERR_MARKER, 1)
    return stdout, stderr.strip("\n")


def join_output(stdout: str, stderr: str) -> str:
    if stdout and stderr:
        return f"{stdout}\n\n{_STDERR_MARKER}\n{stderr}"
    return stdout or stderr


def format_trace_text(
    text: str,
    *,
    source: Optional[str] = None,
    provider: Optional[str] = None,
) -> str:
    """Render raw provider output as a YAML document for operators to read."""
    if text is None:
        return ""
    if not text.strip("\n"):
        return ""

    stdout, stderr = _split_stdout_stderr(text)
    stdout_stripped = stdout.strip("\n")
    doc: Dict[str, Any] = {
        "title": "Agent Session Trace",
        "format": "text",
    }
    if provider:
        doc["provider"] = provider
    if source:
        doc["source"] = source

    if not stdout_stripped:
        doc["text"] = ""
        if stderr:
            doc["stderr"] = stderr
        return _yaml_dump(doc)

    payload = load_json_document(stdout_stripped)
    if payload is not None:
        doc["format"] = "json-yaml"
        doc["item"] = payload
        if stderr:
            doc["stderr"] = stderr
        return _yaml_dump(doc)

    entries: List[Dict[str, Any]] = []
    json_found = False
    for index, raw_line in enumerate(stdout.splitlines(), start=1):
        stripped = raw_line.strip()
        if not stripped:
            continue
        try:
            parsed = json.loads(stripped)
        except Exception:
            entries.append({"index": index, "type": "text", "text": raw_line})
            continue
        entries.append({"index": index, "type": "json", "item": parsed})
        json_found = True
    if json_found:
        doc["format"] = "jsonl-yaml"
        doc["entry_count"] = len(entries)
        doc["entries"] = entries
    else:
        doc["text"] = stdout_stripped
    if stderr:
        doc["stderr"] = stderr
    return _yaml_dump(doc)
