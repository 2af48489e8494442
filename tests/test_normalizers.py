from __future__ import annotations

import json
import unittest
from pathlib import Path

from agentrun.config import ProviderConfig
from agentrun.errors import EmptyOutputError, ExplicitProviderError, ParseFailureError
from agentrun.providers import ClaudeProvider, CodexProvider, CursorProvider, GeminiProvider, OpencodeProvider
from agentrun.sessions.cache import SessionPayloadCache

FIXTURES = Path(__file__).resolve().parent / "fixtures"


def _fixture(name: str) -> str:
    return (FIXTURES / name).read_text(encoding="utf-8")


def _provider(cls, **config):
    # A throwaway cache keeps construction from touching the user's cache dir.
    return cls(ProviderConfig(**config), session_cache=SessionPayloadCache(limit=4))


class TestCursorNormalizer(unittest.TestCase):
    def setUp(self) -> None:
        self.provider = _provider(CursorProvider)

    def test_single_json_payload(self) -> None:
        output = json.dumps(
            {
                "duration_ms": 1200,
                "result": "done",
                "session_id": "cur_123",
                "total_cost_usd": 0.02,
                "usage": {"cache_read": 5, "cache_write": 1, "input_tokens": 100, "output_tokens": 25},
            }
        )
        result = self.provider.normalize(output)
        assert result.result_text == "done"
        assert result.session_id == "cur_123"
        assert result.duration_ms == 1200
        assert result.cost_usd == 0.02
        assert result.token_usage is not None
        assert result.token_usage.to_dict() == {"input": 100, "output": 25, "cache_read": 5, "cache_write": 1}

    def test_jsonl_stream_payload(self) -> None:
        jsonl = "\n".join(
            [
                '{"type":"system","session_id":"cur_abc"}',
                '{"type":"assistant","content":"partial "}',
                '{"type":"assistant","content":"answer"}',
                '{"type":"result","result":"final answer","duration_ms":900}',
            ]
        )
        result = self.provider.normalize(jsonl)
        assert result.cost_usd == 0
        assert result.duration_ms == 900
        assert result.result_text == "final answer"
        assert result.session_id == "cur_abc"

    def test_nested_assistant_content_fills_missing_result(self) -> None:
        jsonl = "\n".join(
            [
                '{"type":"assistant","message":{"role":"assistant","content":[{"type":"text","text":"nested "},'
                '{"type":"text","text":"content"}]},"session_id":"cur_nested"}',
                '{"type":"result","duration_ms":450}',
            ]
        )
        result = self.provider.normalize(jsonl)
        assert result.result_text == "nested content"
        assert result.duration_ms == 450
        assert result.session_id == "cur_nested"

    def test_nested_result_content_object(self) -> None:
        output = json.dumps({"duration_ms": 800, "result": {"content": {"text": "deep result text"}}, "session_id": "cur_deep"})
        result = self.provider.normalize(output)
        assert result.result_text == "deep result text"
        assert result.session_id == "cur_deep"

    def test_explicit_error_result(self) -> None:
        output = json.dumps(
            {
                "error": {"message": "Permission denied by policy"},
                "is_error": True,
                "subtype": "error_permission",
                "type": "result",
            }
        )
        with self.assertRaises(ExplicitProviderError) as ctx:
            self.provider.normalize(output)
        assert "Permission denied by policy" in str(ctx.exception)
        assert ctx.exception.subtype == "error_permission"

    def test_plain_text_is_a_parse_failure(self) -> None:
        with self.assertRaises(ParseFailureError) as ctx:
            self.provider.normalize("plain text response")
        assert "Unable to parse Cursor output as JSON or JSONL structured payload" in str(ctx.exception)
        assert "plain text response" in str(ctx.exception)

    def test_empty_output(self) -> None:
        with self.assertRaises(EmptyOutputError):
            self.provider.normalize("  \n ")

    def test_stream_fixture_skips_banner_lines(self) -> None:
        result = self.provider.normalize(_fixture("cursor_stream.jsonl"))
        assert result.result_text == "final answer"
        assert result.session_id == "cur_abc"
        assert result.duration_ms == 900

    def test_headless_args(self) -> None:
        provider = _provider(CursorProvider, model="cursor-fast")
        args = provider.build_headless_args("Implement feature X", provider.configured_model())
        assert args == ["-p", "--output-format", "stream-json", "--model", "cursor-fast", "--", "Implement feature X"]
        assert self.provider.build_headless_args("ping") == ["-p", "--output-format", "stream-json", "--", "ping"]

    def test_force_flag_follows_sandbox_mode(self) -> None:
        provider = _provider(CursorProvider, sandbox_mode="danger-full-access")
        assert "--force" in provider.build_headless_args("ping")


class TestClaudeNormalizer(unittest.TestCase):
    def setUp(self) -> None:
        self.provider = _provider(ClaudeProvider)

    def test_event_array_uses_result_event(self) -> None:
        result = self.provider.normalize(_fixture("claude_result_array.json"))
        assert result.result_text == "Done."
        assert result.session_id == "sess-123"
        assert result.duration_ms == 4210
        self.assertAlmostEqual(result.cost_usd, 0.0123)
        assert result.token_usage.to_dict() == {"input": 12, "output": 40, "cache_read": 300, "cache_write": 25}
        assert result.token_usage.context_tokens == 337

    def test_negative_values_are_clamped(self) -> None:
        output = json.dumps({"type": "result", "result": "ok", "duration_ms": -5, "total_cost_usd": -1, "session_id": "s"})
        result = self.provider.normalize(output)
        assert result.duration_ms == 0
        assert result.cost_usd == 0.0

    def test_headless_args_end_with_prompt_separator(self) -> None:
        args = self.provider.build_headless_args("-rf looks like a flag", "claude-sonnet-4-5")
        assert args[:4] == ["-p", "--output-format", "json", "--dangerously-skip-permissions"]
        assert args[-2:] == ["--", "-rf looks like a flag"]
        assert "--model" in args


class TestCodexNormalizer(unittest.TestCase):
    def setUp(self) -> None:
        self.provider = _provider(CodexProvider)

    def test_exec_stream(self) -> None:
        result = self.provider.normalize(_fixture("codex_exec.jsonl"))
        assert result.result_text == "Updated lib.rs."
        assert result.session_id == "0199a213-81c0-7800-8aa1-bbab2a035a53"
        assert result.token_usage.to_dict() == {"input": 2400, "output": 310, "cache_read": 1200}

    def test_turn_failed_raises(self) -> None:
        jsonl = "\n".join(
            [
                '{"type":"thread.started","thread_id":"t1"}',
                '{"type":"turn.failed","error":{"message":"stream disconnected"}}',
            ]
        )
        with self.assertRaises(ExplicitProviderError) as ctx:
            self.provider.normalize(jsonl)
        assert "stream disconnected" in str(ctx.exception)

    def test_missing_turn_completed(self) -> None:
        with self.assertRaises(ParseFailureError) as ctx:
            self.provider.normalize('{"type":"thread.started","thread_id":"t1"}')
        assert "No turn.completed event found in Codex output" in str(ctx.exception)

    def test_empty_output(self) -> None:
        with self.assertRaises(EmptyOutputError) as ctx:
            self.provider.normalize("")
        assert "Empty JSONL output from Codex" in str(ctx.exception)

    def test_sandbox_flag(self) -> None:
        assert "--dangerously-bypass-approvals-and-sandbox" in self.provider.build_headless_args("x")
        provider = _provider(CodexProvider, sandbox_mode="read-only")
        args = provider.build_headless_args("x")
        assert args[:3] == ["exec", "--json", "--skip-git-repo-check"]
        assert args[3:5] == ["--sandbox", "read-only"]


class TestGeminiNormalizer(unittest.TestCase):
    def setUp(self) -> None:
        self.provider = _provider(GeminiProvider)

    def test_json_document(self) -> None:
        result = self.provider.normalize(_fixture("gemini_output.json"))
        assert result.result_text == "All tests pass."
        assert result.session_id == "gem-42"
        assert result.token_usage.to_dict() == {"input": 1000, "output": 150, "cache_read": 300, "reasoning": 80}

    def test_error_document(self) -> None:
        output = json.dumps({"error": {"type": "ApiError", "message": "quota exceeded", "code": 429}})
        with self.assertRaises(ExplicitProviderError) as ctx:
            self.provider.normalize(output)
        assert "quota exceeded" in str(ctx.exception)

    def test_stream(self) -> None:
        jsonl = "\n".join(
            [
                '{"type":"init","session_id":"g-stream","model":"gemini-2.5-flash"}',
                '{"type":"message","role":"user","content":"hi"}',
                '{"type":"message","role":"assistant","content":"Hel","delta":true}',
                '{"type":"message","role":"assistant","content":"lo","delta":true}',
                '{"type":"result","status":"success","stats":{"input_tokens":10,"output_tokens":2,"duration_ms":321}}',
            ]
        )
        result = self.provider.normalize(jsonl)
        assert result.result_text == "Hello"
        assert result.session_id == "g-stream"
        assert result.duration_ms == 321
        assert result.token_usage.to_dict() == {"input": 10, "output": 2}

    def test_prompt_flag_is_last(self) -> None:
        assert self.provider.build_headless_args("hello")[-2:] == ["-p", "hello"]
        assert self.provider.build_supervised_args("hello")[-2:] == ["-i", "hello"]


class TestOpencodeNormalizer(unittest.TestCase):
    def setUp(self) -> None:
        self.provider = _provider(OpencodeProvider)

    def test_run_stream(self) -> None:
        result = self.provider.normalize(_fixture("opencode_run.jsonl"))
        assert result.result_text == "Hello world"
        assert result.session_id == "ses_123"
        assert result.duration_ms == 2500
        self.assertAlmostEqual(result.cost_usd, 0.003)
        assert result.token_usage.to_dict() == {
            "input": 220,
            "output": 30,
            "cache_read": 110,
            "cache_write": 4,
            "reasoning": 5,
        }

    def test_missing_stop_finish(self) -> None:
        jsonl = '{"type":"step_finish","part":{"reason":"tool-calls","cost":0.1}}'
        with self.assertRaises(ParseFailureError) as ctx:
            self.provider.normalize(jsonl)
        assert 'No step_finish event with reason "stop" found in OpenCode output' in str(ctx.exception)

    def test_error_event(self) -> None:
        jsonl = '{"type":"error","error":{"name":"ProviderAuthError","data":{"message":"invalid api key"}}}'
        with self.assertRaises(ExplicitProviderError) as ctx:
            self.provider.normalize(jsonl)
        assert "invalid api key" in str(ctx.exception)

    def test_stop_without_text_or_tokens(self) -> None:
        result = self.provider.normalize('{"type":"step_finish","part":{"reason":"stop","cost":0.002}}')
        assert result.result_text == ""
        assert result.session_id == ""
        assert result.token_usage is None
        assert result.duration_ms == 0
        self.assertAlmostEqual(result.cost_usd, 0.002)

    def test_empty_output(self) -> None:
        for raw in ("", "  \n  \n  "):
            with self.assertRaises(EmptyOutputError):
                self.provider.normalize(raw)

    def test_headless_args(self) -> None:
        provider = _provider(OpencodeProvider, model="openai/gpt-5")
        args = provider.build_headless_args("ship it", provider.configured_model())
        assert args == ["run", "--format", "json", "--model", "openai/gpt-5", "--", "ship it"]

def _events(name: str):
    return [json.loads(line) for line in _fixture(name).splitlines() if line.strip()]


def _wire_shapes(events):
    """The same events as a line stream, a compact JSON array and an indented JSON array."""
    return {
        "stream": "\n".join(json.dumps(event) for event in events),
        "array": json.dumps(events),
        "indented array": json.dumps(events, indent=2),
    }


class TestWireShapeInvariance(unittest.TestCase):
    def assert_same_result(self, provider, payloads) -> None:
        results = {shape: provider.normalize(raw) for shape, raw in payloads.items()}
        first = next(iter(results.values()))
        for shape, result in results.items():
            assert result == first, f"{shape}: {result!r} != {first!r}"

    def test_result_record_providers(self) -> None:
        record = {
            "type": "result",
            "subtype": "success",
            "result": "done",
            "session_id": "s-1",
            "duration_ms": 1500,
            "total_cost_usd": 0.04,
            "usage": {"input_tokens": 30, "output_tokens": 7, "cache_read_input_tokens": 12},
        }
        events = [
            {"type": "system", "subtype": "init", "session_id": "s-1"},
            {"type": "assistant", "message": {"content": [{"type": "text", "text": "done"}]}},
            record,
        ]
        for cls in (ClaudeProvider, CursorProvider):
            provider = _provider(cls)
            payloads = {"object": json.dumps(record), **_wire_shapes(events)}
            self.assert_same_result(provider, payloads)
            result = provider.normalize(payloads["object"])
            assert result.result_text == "done"
            assert result.session_id == "s-1"
            assert result.duration_ms == 1500
            assert result.cost_usd == 0.04
            assert result.token_usage.to_dict() == {"input": 30, "output": 7, "cache_read": 12}

    def test_codex_events(self) -> None:
        provider = _provider(CodexProvider)
        events = _events("codex_exec.jsonl")
        self.assert_same_result(provider, _wire_shapes(events))
        assert provider.normalize(json.dumps(events)).result_text == "Updated lib.rs."
        self.assert_same_result(provider, {"object": json.dumps(events[-1]), **_wire_shapes(events[-1:])})

    def test_opencode_events(self) -> None:
        provider = _provider(OpencodeProvider)
        events = _events("opencode_run.jsonl")
        self.assert_same_result(provider, _wire_shapes(events))
        result = provider.normalize(json.dumps(events, indent=2))
        assert result.result_text == "Hello world"
        assert result.duration_ms == 2500
        self.assert_same_result(provider, {"object": json.dumps(events[-1]), **_wire_shapes(events[-1:])})

    def test_gemini_stream_events(self) -> None:
        provider = _provider(GeminiProvider)
        final = {
            "type": "result",
            "status": "success",
            "session_id": "g-1",
            "response": "Hello",
            "stats": {"input_tokens": 10, "output_tokens": 2, "duration_ms": 321},
        }
        events = [
            {"type": "init", "session_id": "g-1", "model": "gemini-2.5-flash"},
            {"type": "message", "role": "assistant", "content": "Hello"},
            final,
        ]
        payloads = {"object": json.dumps(final), **_wire_shapes(events)}
        self.assert_same_result(provider, payloads)
        result = provider.normalize(payloads["object"])
        assert result.result_text == "Hello"
        assert result.session_id == "g-1"
        assert result.duration_ms == 321


if __name__ == "__main__":
    unittest.main()
