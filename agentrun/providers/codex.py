from __future__ import annotations

from typing import Any, List, Optional

from ..errors import EmptyOutputError, ExplicitProviderError, ParseFailureError
from ..models import AgentResult
from ..usage import parse_usage, sum_usages
from ..utils import load_json_payloads, parse_timestamp_ms, read_string, span_ms
from .base import Provider
from .normalize import error_message, event_type

AGENT_MESSAGE_TYPES = {"agent_message", "assistant_message"}


class CodexProvider(Provider):
    name = "codex"
    display_name = "Codex"
    binaries = ("codex",)
    default_model = "gpt-5.2-codex"
    lightweight_model = "gpt-5.1-codex-mini"
    context_file_names = ("CODEX.md", "AGENTS.md")
    supports_lightweight = True
    install_hint = "npm install -g @openai/codex"
    synthesize_session_id = True

    def build_headless_args(self, prompt: str, model: Optional[str] = None) -> List[str]:
        args = ["exec", "--json", "--skip-git-repo-check"]
        if self.config.sandbox_mode:
            args.extend(["--sandbox", self.config.sandbox_mode])
        else:
            args.append("--dangerously-bypass-approvals-and-sandbox")
        args.extend(self._model_args(model))
        args.extend(self.config.extra_args)
        args.append("--")
        args.append(prompt)
        return args

    def build_supervised_args(self, prompt: str, model: Optional[str] = None) -> List[str]:
        args: List[str] = []
        if self.config.sandbox_mode:
            args.extend(["--sandbox", self.config.sandbox_mode])
        return [*args, *self._model_args(model), *self.config.extra_args, prompt]

    def normalize(self, raw: str) -> AgentResult:
        """Fold the ``codex exec --json`` event stream into one result."""
        if raw is None or not raw.strip():
            raise EmptyOutputError(self.name, "Empty JSONL output from Codex")
        events = load_json_payloads(raw)
        if not events:
            raise ParseFailureError(self.name, "Unable to parse Codex output as JSONL events", raw)

        session_id: Optional[str] = None
        messages: List[str] = []
        usages = []
        pending_error: Optional[str] = None
        completed = False
        started_at: Optional[float] = None
        finished_at: Optional[float] = None

        for event in events:
            kind = event_type(event)
            stamp = parse_timestamp_ms(event.get("timestamp"))
            if kind == "thread.started":
                session_id = session_id or read_string(event, "thread_id", "session_id")
                started_at = stamp if started_at is None else started_at
            elif kind == "item.completed":
                text = _agent_message_text(event.get("item"))
                if text:
                    messages.append(text)
            elif kind == "turn.completed":
                usages.append(parse_usage(event.get("usage")))
                completed = True
                pending_error = None
                finished_at = stamp if stamp is not None else finished_at
            elif kind in ("turn.failed", "error"):
                pending_error = error_message(event) or f"Codex reported {kind}"

        if pending_error is not None:
            raise ExplicitProviderError(self.name, pending_error)
        if not completed and not messages:
            raise ParseFailureError(self.name, "No turn.completed event found in Codex output", raw)
        return AgentResult(
            result_text=messages[-1] if messages else "",
            session_id=session_id or "",
            duration_ms=span_ms(started_at, finished_at),
            token_usage=sum_usages(usages),
        )


def _agent_message_text(item: Any) -> Optional[str]:
    if not isinstance(item, dict):
        return None
    kind = item.get("type") or item.get("item_type")
    if kind not in AGENT_MESSAGE_TYPES:
        return None
    text = item.get("text")
    if isinstance(text, str) and text.strip():
        return text
    return None
