from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

import yaml

from agentrun.config import Settings, model_from_env
from agentrun.usage import parse_usage
from agentrun.utils import (
    collect_files,
    extract_embedded_json,
    format_trace_text,
    join_output,
    load_env_file,
    normalize_file_path,
    normalize_tool_name,
    parse_jsonl,
    parse_timestamp_ms,
)


class TestPaths(unittest.TestCase):
    def test_normalize_file_path(self) -> None:
        repo = Path("/work/repo")
        assert normalize_file_path("/work/repo/src/a.py", repo) == "src/a.py"
        assert normalize_file_path("./src/a.py", repo) == "src/a.py"
        assert normalize_file_path("/etc/hosts", repo) == "/etc/hosts"
        assert normalize_file_path("https://example.com/a.py", repo) is None
        assert normalize_file_path("src/**/*.py", repo) is None
        assert normalize_file_path("   ", repo) is None
        assert normalize_file_path(None, repo) is None

    def test_collect_files_dedupes_and_caps(self) -> None:
        repo = Path("/work/repo")
        files = collect_files(["/work/repo/a.py", "a.py", None, "b.py"], repo)
        assert files == ["a.py", "b.py"]
        many = collect_files([f"f{i}.txt" for i in range(80)], repo)
        assert len(many) == 50

    def test_normalize_tool_name(self) -> None:
        assert normalize_tool_name("editToolCall") == "edit"
        assert normalize_tool_name("write_file") == "writefile"
        assert normalize_tool_name("Multi-Edit") == "multiedit"
        assert normalize_tool_name(None) == ""


class TestParsing(unittest.TestCase):
    def test_timestamps(self) -> None:
        assert parse_timestamp_ms(1700000000) == 1700000000000.0
        assert parse_timestamp_ms(1700000000123) == 1700000000123.0
        assert parse_timestamp_ms("2025-01-01T00:00:01Z") - parse_timestamp_ms("2025-01-01T00:00:00Z") == 1000.0
        assert parse_timestamp_ms("yesterday") is None
        assert parse_timestamp_ms(True) is None

    def test_parse_jsonl_skips_noise(self) -> None:
        events = parse_jsonl('banner\n{"a": 1}\n{broken\n[{"b": 2}, 3]\n')
        assert events == [{"a": 1}, {"b": 2}]

    def test_extract_embedded_json(self) -> None:
        assert extract_embedded_json('Exporting...\n{"id": "x"} trailing') == {"id": "x"}
        assert extract_embedded_json("no json here") is None

    def test_usage_aliases(self) -> None:
        usage = parse_usage({"prompt_tokens": 10, "completion_tokens": 5, "cache": {"read": 3, "write": 1}})
        assert usage.to_dict() == {"input": 10, "output": 5, "cache_read": 3, "cache_write": 1}
        assert parse_usage({"unrelated": 1}) is None
        assert parse_usage({"input_tokens": -4}).input == 0


class TestTraceFormatting(unittest.TestCase):
    def test_json_payload_becomes_yaml(self) -> None:
        text = format_trace_text('{"result": "line one\\nline two"}', provider="claude", source="s.jsonl")
        doc = yaml.safe_load(text)
        assert doc["title"] == "Agent Session Trace"
        assert doc["format"] == "json-yaml"
        assert doc["provider"] == "claude"
        assert doc["item"]["result"] == "line one\nline two"

    def test_stderr_is_split_out(self) -> None:
        text = format_trace_text(join_output('{"ok": true}', "warning: slow"))
        doc = yaml.safe_load(text)
        assert doc["item"] == {"ok": True}
        assert doc["stderr"] == "warning: slow"

    def test_blank_input(self) -> None:
        assert format_trace_text("\n\n") == ""


class TestConfig(unittest.TestCase):
    def test_env_file(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / ".env"
            path.write_text('# comment\nexport CURSOR_BIN="/opt/agent"\nEMPTY=\nnot a pair\nQUOTED=\'x y\'\n', encoding="utf-8")
            env = load_env_file(path)
        assert env == {"CURSOR_BIN": "/opt/agent", "EMPTY": "", "QUOTED": "x y"}

    def test_settings_from_env(self) -> None:
        settings = Settings.from_env(
            {"AGENTRUN_CACHE_DIR": "/tmp/agentrun-cache", "AGENTRUN_DEBUG": "yes", "AGENTRUN_LOG_FORMAT": "xml", "CODEX_HOME": "/srv/codex"}
        )
        assert settings.sessions_dir == Path("/tmp/agentrun-cache/sessions")
        assert settings.debug is True
        assert settings.log_format == "console"
        assert settings.codex_home == Path("/srv/codex")

    def test_model_from_env(self) -> None:
        assert model_from_env("claude", {"ANTHROPIC_MODEL": " claude-opus-4-1 "}) == "claude-opus-4-1"
        assert model_from_env("cursor", {}) is None


if __name__ == "__main__":
    unittest.main()
