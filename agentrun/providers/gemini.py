from __future__ import annotations

from typing import Any, Dict, List, Optional

from ..errors import EmptyOutputError, ExplicitProviderError, ParseFailureError
from ..models import AgentResult
from ..usage import model_tokens_usage, parse_usage
from ..utils import as_dict, load_json_document, load_json_payloads, read_int, read_string
from .base import Provider
from .normalize import SESSION_ID_KEYS, content_text, error_message, event_type


class GeminiProvider(Provider):
    name = "gemini"
    display_name = "Gemini CLI"
    binaries = ("gemini",)
    default_model = "gemini-2.5-flash-lite"
    context_file_names = ("AGENTS.md",)
    install_hint = "npm install -g @google/gemini-cli"
    synthesize_session_id = True

    def build_headless_args(self, prompt: str, model: Optional[str] = None) -> List[str]:
        args = ["--output-format", "json", "--approval-mode", "yolo"]
        args.extend(self._model_args(model))
        args.extend(self.config.extra_args)
        args.extend(["-p", prompt])
        return args

    def build_supervised_args(self, prompt: str, model: Optional[str] = None) -> List[str]:
        return [*self._model_args(model), *self.config.extra_args, "-i", prompt]

    def normalize(self, raw: str) -> AgentResult:
        if raw is None or not raw.strip():
            raise EmptyOutputError(self.name, "Empty output from Gemini CLI")
        document = load_json_document(raw)
        # A typed object is a single stream event, not the headless document.
        if isinstance(document, dict) and not event_type(document):
            return self._from_document(document, raw)
        events = load_json_payloads(raw)
        if not events:
            raise ParseFailureError(self.name, "Unable to parse Gemini CLI output as JSON or JSONL structured payload", raw)
        return self._from_stream(events, raw)

    def _from_document(self, document: Dict[str, Any], raw: str) -> AgentResult:
        response = content_text(document.get("response"))
        if document.get("error") and response is None:
            raise ExplicitProviderError(self.name, error_message(document) or "Gemini CLI reported an error")
        stats = document.get("stats")
        usage = model_tokens_usage(stats)
        if response is None and usage is None:
            raise ParseFailureError(self.name, "Gemini CLI JSON output has no response field", raw)
        return AgentResult(
            result_text=response or "",
            session_id=read_string(document, *SESSION_ID_KEYS) or "",
            duration_ms=max(0, read_int(as_dict(stats) or {}, "duration_ms", "durationMs") or 0),
            token_usage=usage,
        )

    def _from_stream(self, events: List[Dict[str, Any]], raw: str) -> AgentResult:
        session_id: Optional[str] = None
        fragments: List[str] = []
        result_event: Optional[Dict[str, Any]] = None
        for event in events:
            kind = event_type(event)
            session_id = session_id or read_string(event, *SESSION_ID_KEYS)
            if kind == "message" and event.get("role") == "assistant":
                text = content_text(event.get("content"))
                if text:
                    fragments.append(text)
            elif kind == "error":
                raise ExplicitProviderError(self.name, error_message(event) or "Gemini CLI reported an error")
            elif kind == "result":
                result_event = event
        if result_event is None:
            if not fragments:
                raise ParseFailureError(self.name, "No result event found in Gemini CLI output", raw)
            return AgentResult(result_text="".join(fragments), session_id=session_id or "")
        if result_event.get("status") == "error":
            raise ExplicitProviderError(self.name, error_message(result_event) or "Gemini CLI reported an error")
        stats = as_dict(result_event.get("stats")) or {}
        return AgentResult(
            result_text=content_text(result_event.get("response")) or "".join(fragments),
            session_id=session_id or "",
            duration_ms=max(0, read_int(stats, "duration_ms", "durationMs") or 0),
            token_usage=parse_usage(stats) or model_tokens_usage(stats),
        )
