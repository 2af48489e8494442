from __future__ import annotations

from typing import Any, Dict, List, Optional

from ..errors import EmptyOutputError, ExplicitProviderError, ParseFailureError
from ..models import AgentResult
from ..usage import parse_usage, sum_usages
from ..utils import as_dict, as_float, load_json_payloads, parse_timestamp_ms, read_string, span_ms
from .base import Provider
from .normalize import error_message, event_type


class OpencodeProvider(Provider):
    name = "opencode"
    display_name = "OpenCode"
    binaries = ("opencode",)
    default_model = "anthropic/claude-sonnet-4-5"
    lightweight_model = "anthropic/claude-3-5-haiku-latest"
    context_file_names = ("AGENTS.md",)
    supports_lightweight = True
    install_hint = "npm install -g opencode-ai"

    def build_headless_args(self, prompt: str, model: Optional[str] = None) -> List[str]:
        args = ["run", "--format", "json"]
        args.extend(self._model_args(model))
        args.extend(self.config.extra_args)
        args.append("--")
        args.append(prompt)
        return args

    def build_supervised_args(self, prompt: str, model: Optional[str] = None) -> List[str]:
        return [*self._model_args(model), *self.config.extra_args, "--prompt", prompt]

    def normalize(self, raw: str) -> AgentResult:
        """Fold ``opencode run --format json`` events.

        Text comes from ``text`` events in order. Cost and tokens are summed
        over every ``step_finish``; the run must end with a ``stop`` finish.
        """
        if raw is None or not raw.strip():
            raise EmptyOutputError(self.name, "Empty JSONL output from OpenCode")
        events = load_json_payloads(raw)
        if not events:
            raise ParseFailureError(self.name, "Unable to parse OpenCode output as JSONL events", raw)

        session_id: Optional[str] = None
        texts: List[str] = []
        usages = []
        cost = 0.0
        started_at: Optional[float] = None
        stop_event: Optional[Dict[str, Any]] = None
        for event in events:
            kind = event_type(event)
            part = as_dict(event.get("part")) or {}
            session_id = session_id or read_string(event, "sessionID", "sessionId", "session_id") or read_string(part, "sessionID")
            if kind == "step_start" and started_at is None:
                started_at = parse_timestamp_ms(event.get("timestamp"))
            elif kind == "text":
                text = part.get("text")
                if isinstance(text, str):
                    texts.append(text)
            elif kind == "error":
                raise ExplicitProviderError(self.name, error_message(event) or "OpenCode reported an error")
            elif kind == "step_finish":
                usages.append(parse_usage(part.get("tokens")))
                cost += max(0.0, as_float(part.get("cost")) or 0.0)
                if part.get("reason") == "stop":
                    stop_event = event

        if stop_event is None:
            raise ParseFailureError(self.name, 'No step_finish event with reason "stop" found in OpenCode output', raw)
        return AgentResult(
            result_text="".join(texts),
            session_id=session_id or "",
            duration_ms=span_ms(started_at, parse_timestamp_ms(stop_event.get("timestamp"))),
            cost_usd=cost,
            token_usage=sum_usages(usages),
        )
