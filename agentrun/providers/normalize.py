"""Shared pieces of the per-provider output normalizers."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

from ..errors import EmptyOutputError, ExplicitProviderError, ParseFailureError
from ..models import AgentResult
from ..usage import parse_usage
from ..utils import load_json_document, parse_jsonl, read_int, read_number, read_string

SESSION_ID_KEYS = ("session_id", "sessionId", "sessionID", "chat_id", "chatId", "thread_id")
DURATION_KEYS = ("duration_ms", "durationMs")
COST_KEYS = ("total_cost_usd", "totalCostUsd", "cost_usd", "costUsd")


def content_text(value: Any) -> Optional[str]:
    """Text from a string, a ``{content: ...}`` wrapper or a list of content blocks."""
    if isinstance(value, str):
        return value if value.strip() else None
    if isinstance(value, list):
        parts = []
        for block in value:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type", "text") in ("text", "output_text"):
                text = block.get("text")
                if isinstance(text, str):
                    parts.append(text)
        joined = "".join(parts)
        return joined if joined.strip() else None
    if isinstance(value, dict):
        for key in ("text", "content", "message"):
            if key in value:
                text = content_text(value[key])
                if text is not None:
                    return text
    return None


def event_type(event: Dict[str, Any]) -> str:
    value = event.get("type")
    return value if isinstance(value, str) else ""


def first_session_id(events: Sequence[Dict[str, Any]]) -> Optional[str]:
    for event in events:
        session_id = read_string(event, *SESSION_ID_KEYS)
        if session_id:
            return session_id
    return None


def raise_for_error_event(provider: str, event: Dict[str, Any]) -> None:
    subtype = event.get("subtype") if isinstance(event.get("subtype"), str) else None
    is_error = event.get("is_error") is True or event_type(event) == "error"
    if not is_error and not (subtype and subtype.startswith("error")):
        return
    message = error_message(event) or f"{provider} reported an error" + (f" ({subtype})" if subtype else "")
    raise ExplicitProviderError(provider, message, subtype=subtype)


def error_message(event: Dict[str, Any]) -> Optional[str]:
    error = event.get("error")
    if isinstance(error, dict):
        text = read_string(error, "message", "msg", "detail")
        if text:
            return text
        data = error.get("data")
        if isinstance(data, dict):
            text = read_string(data, "message")
            if text:
                return text
        name = read_string(error, "name", "type", "code")
        if name:
            return name
    if isinstance(error, str) and error.strip():
        return error
    return read_string(event, "message", "result")


def assistant_fragment(event: Dict[str, Any]) -> Optional[str]:
    if event_type(event) != "assistant":
        return None
    message = event.get("message")
    if message is not None:
        text = content_text(message)
        if text is not None:
            return text
    return content_text(event.get("text")) or content_text(event.get("content"))


def result_from_event(
    provider: str,
    event: Dict[str, Any],
    *,
    fallback_text: str = "",
    fallback_session_id: Optional[str] = None,
    raw: Optional[str] = None,
) -> AgentResult:
    raise_for_error_event(provider, event)
    text = None
    for key in ("result", "message", "response", "text", "content"):
        if key in event:
            text = content_text(event[key])
            if text is not None:
                break
    session_id = read_string(event, *SESSION_ID_KEYS) or fallback_session_id
    duration = read_int(event, *DURATION_KEYS)
    usage = parse_usage(event.get("usage"))
    if text is None and not fallback_text and session_id is None and duration is None and usage is None:
        raise ParseFailureError(provider, f"Unrecognized {provider} result payload", raw)
    return AgentResult(
        result_text=text if text is not None else fallback_text,
        session_id=session_id or "",
        duration_ms=max(0, duration or 0),
        cost_usd=max(0.0, read_number(event, *COST_KEYS) or 0.0),
        token_usage=usage,
    )


def normalize_result_output(
    provider: str,
    display_name: str,
    raw: str,
    *,
    terminal_types: Sequence[str] = ("result",),
) -> AgentResult:
    """Normalize a single JSON object, a JSON array of events, or a JSONL stream.

    Array and stream inputs use the last event whose type is one of
    ``terminal_types``; arrays fall back to their last element. Streams
    collect assistant fragments as the fallback result text and fall back to
    the first event carrying a session id.
    """
    if raw is None or not raw.strip():
        raise EmptyOutputError(provider, f"Empty output from {display_name}")
    document = load_json_document(raw)
    if isinstance(document, dict):
        return result_from_event(provider, document, raw=raw)
    if isinstance(document, list):
        events = [item for item in document if isinstance(item, dict)]
        if not events:
            raise ParseFailureError(provider, f"{display_name} returned a JSON array without event objects", raw)
        terminal = _last_of_type(events, terminal_types) or events[-1]
        return result_from_event(
            provider,
            terminal,
            fallback_text=_assistant_text(events),
            fallback_session_id=first_session_id(events),
            raw=raw,
        )

    events = parse_jsonl(raw)
    if not events:
        raise ParseFailureError(provider, f"Unable to parse {display_name} output as JSON or JSONL structured payload", raw)
    for event in events:
        if event_type(event) == "error":
            raise_for_error_event(provider, event)
    fallback_text = _assistant_text(events)
    fallback_session_id = first_session_id(events)
    terminal = _last_of_type(events, terminal_types)
    if terminal is None:
        if not fallback_text:
            raise ParseFailureError(provider, f"No result event found in {display_name} output", raw)
        return AgentResult(result_text=fallback_text, session_id=fallback_session_id or "")
    return result_from_event(
        provider,
        terminal,
        fallback_text=fallback_text,
        fallback_session_id=fallback_session_id,
        raw=raw,
    )


def _last_of_type(events: Sequence[Dict[str, Any]], types: Sequence[str]) -> Optional[Dict[str, Any]]:
    for event in reversed(events):
        if event_type(event) in types:
            return event
    return None


def _assistant_text(events: Sequence[Dict[str, Any]]) -> str:
    fragments: List[str] = []
    for event in events:
        fragment = assistant_fragment(event)
        if fragment:
            fragments.append(fragment)
    return "".join(fragments)
