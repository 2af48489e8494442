from __future__ import annotations

import json
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from ..config import Settings
from ..errors import ProviderError
from ..log import get_logger

log = get_logger(__name__)

COST_HINTS = ("cheap", "standard", "expensive")
CATALOG_PROVIDERS = ("claude", "codex", "cursor", "gemini", "opencode")
MAX_SUGGESTIONS = 5
REFRESH_HINT = "Run 'agentrun models <provider>' to see available models; discovered models are read from the models file."

_CODEX_COMPATIBLE = re.compile(r"(?:^|[./-])codex(?=[./-]|$)", re.IGNORECASE)


@dataclass(frozen=True)
class ModelInfo:
    id: str
    cli_format: str
    provider: str
    cost_hint: str = "standard"
    description: Optional[str] = None
    discovered_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"id": self.id, "cli_format": self.cli_format, "provider": self.provider, "cost_hint": self.cost_hint}
        if self.description:
            data["description"] = self.description
        if self.discovered_at:
            data["discovered_at"] = self.discovered_at
        return data


@dataclass(frozen=True)
class ModelSelection:
    """Outcome of ``validate_model_selection``; ``cli_format`` is set only when valid."""

    valid: bool
    cli_format: Optional[str] = None
    error: Optional[str] = None
    suggestions: Tuple[str, ...] = field(default_factory=tuple)


class ModelValidationError(ProviderError):
    def __init__(self, provider: str, message: str, suggestions: Tuple[str, ...] = ()) -> None:
        self.suggestions = suggestions
        super().__init__(provider, message)


def _claude(model_id: str, cost_hint: str, cli_format: Optional[str] = None, description: Optional[str] = None) -> ModelInfo:
    return ModelInfo(id=model_id, cli_format=cli_format or model_id, provider="claude", cost_hint=cost_hint, description=description)


def _opencode(model_id: str, cost_hint: str) -> ModelInfo:
    return ModelInfo(id=model_id, cli_format=model_id, provider="opencode", cost_hint=cost_hint)


STATIC_MODELS: Tuple[ModelInfo, ...] = (
    _claude("claude-haiku-4-5", "cheap"),
    _claude("claude-haiku-4-5-20251001", "cheap"),
    _claude("claude-opus-4-6", "expensive"),
    _claude("claude-sonnet-4-5", "standard"),
    _claude("claude-sonnet-4-5-20250929", "standard"),
    _claude("default", "expensive", "claude-opus-4-6", "Claude Code alias"),
    _claude("haiku", "cheap", "claude-haiku-4-5-20251001", "Claude Code alias"),
    _claude("opus", "expensive", "claude-opus-4-6", "Claude Code alias"),
    _claude("opusplan", "expensive", "claude-opus-4-6", "Claude Code alias"),
    _claude("sonnet", "standard", "claude-sonnet-4-5-20250929", "Claude Code alias"),
    _opencode("github-copilot/claude-haiku-4.5", "cheap"),
    _opencode("github-copilot/claude-opus-4.5", "expensive"),
    _opencode("github-copilot/claude-opus-4.6", "expensive"),
    _opencode("github-copilot/claude-sonnet-4", "standard"),
    _opencode("github-copilot/claude-sonnet-4.5", "standard"),
    _opencode("github-copilot/gemini-2.5-pro", "standard"),
    _opencode("github-copilot/gemini-3-flash-preview", "cheap"),
    _opencode("github-copilot/gemini-3-pro-preview", "standard"),
    _opencode("github-copilot/gpt-4.1", "standard"),
    _opencode("github-copilot/gpt-4o", "standard"),
    _opencode("github-copilot/gpt-5", "standard"),
    _opencode("github-copilot/gpt-5-mini", "cheap"),
    _opencode("github-copilot/gpt-5.1", "standard"),
    _opencode("github-copilot/gpt-5.1-codex", "standard"),
    _opencode("github-copilot/gpt-5.1-codex-max", "expensive"),
    _opencode("github-copilot/gpt-5.1-codex-mini", "cheap"),
    _opencode("github-copilot/gpt-5.2", "standard"),
    _opencode("github-copilot/gpt-5.2-codex", "expensive"),
    _opencode("github-copilot/grok-code-fast-1", "cheap"),
    _opencode("kimi-for-coding/k2p5", "standard"),
    _opencode("kimi-for-coding/kimi-k2-thinking", "standard"),
    _opencode("opencode/big-pickle", "standard"),
    _opencode("opencode/glm-4.7-free", "cheap"),
    _opencode("opencode/gpt-5-nano", "cheap"),
    _opencode("opencode/kimi-k2.5-free", "cheap"),
    _opencode("opencode/minimax-m2.1-free", "cheap"),
    _opencode("openai/gpt-5.1-codex", "standard"),
    _opencode("openai/gpt-5.1-codex-max", "expensive"),
    _opencode("openai/gpt-5.1-codex-mini", "cheap"),
    _opencode("openai/gpt-5.2", "standard"),
    _opencode("openai/gpt-5.2-codex", "expensive"),
    _opencode("openai/gpt-5.3-codex", "expensive"),
)


def _parse_model_record(value: Any) -> Optional[ModelInfo]:
    if not isinstance(value, dict):
        return None
    model_id = value.get("id")
    cli_format = value.get("cliFormat", value.get("cli_format"))
    provider = value.get("provider")
    cost_hint = value.get("costHint", value.get("cost_hint"))
    discovered_at = value.get("discoveredAt", value.get("discovered_at"))
    if not all(isinstance(item, str) for item in (model_id, cli_format, provider, cost_hint)):
        return None
    if cost_hint not in COST_HINTS or provider not in CATALOG_PROVIDERS:
        return None
    if discovered_at is not None and not isinstance(discovered_at, str):
        return None
    return ModelInfo(id=model_id, cli_format=cli_format, provider=provider, cost_hint=cost_hint, discovered_at=discovered_at)


def load_discovered_models(path: Optional[Path] = None) -> List[ModelInfo]:
    """Read a ``{"models": [...]}`` file of discovered models; malformed records are skipped."""
    if path is None:
        path = Settings.from_env().models_path
    if not path.is_file():
        return []
    try:
        document = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        log.warning("catalog.discovered_unreadable", path=str(path), error=str(exc))
        return []
    records = document.get("models") if isinstance(document, dict) else None
    if not isinstance(records, list):
        return []
    models: List[ModelInfo] = []
    seen = set()
    for record in records:
        model = _parse_model_record(record)
        if model is None or model.id in seen:
            continue
        seen.add(model.id)
        models.append(model)
    return models


def get_all_models(discovered_path: Optional[Path] = None) -> List[ModelInfo]:
    """Static models plus discovered ones; a static id always wins over a discovered one."""
    static_ids = {model.id for model in STATIC_MODELS}
    discovered = [model for model in load_discovered_models(discovered_path) if model.id not in static_ids]
    return [*STATIC_MODELS, *discovered]


def get_model_by_id(model_id: str, discovered_path: Optional[Path] = None) -> Optional[ModelInfo]:
    for model in get_all_models(discovered_path):
        if model.id == model_id or model.cli_format == model_id:
            return model
    return None


def is_codex_compatible(model: ModelInfo) -> bool:
    return bool(_CODEX_COMPATIBLE.search(model.id) or _CODEX_COMPATIBLE.search(model.cli_format))


def get_models_for_provider(provider: str, discovered_path: Optional[Path] = None) -> List[ModelInfo]:
    models = get_all_models(discovered_path)
    if provider == "codex":
        return [replace(model, provider="codex") for model in models if is_codex_compatible(model)]
    return [model for model in models if model.provider == provider]


def model_completions(provider: Optional[str] = None, discovered_path: Optional[Path] = None) -> List[str]:
    models = get_all_models(discovered_path) if provider is None else get_models_for_provider(provider, discovered_path)
    return sorted({model.id for model in models})


def _model_for_provider(model_id: str, provider: str, discovered_path: Optional[Path]) -> Optional[ModelInfo]:
    model = get_model_by_id(model_id, discovered_path)
    if model is None or model.provider == provider:
        return model
    if provider == "codex" and is_codex_compatible(model):
        return replace(model, provider="codex")
    return model


def _suggestions(provider: str, discovered_path: Optional[Path]) -> Tuple[str, ...]:
    return tuple(model_completions(provider, discovered_path)[:MAX_SUGGESTIONS])


def validate_model_selection(model_id: str, provider: str, discovered_path: Optional[Path] = None) -> ModelSelection:
    """Check ``model_id`` against ``provider``'s catalog without raising.

    Ids and CLI formats are both accepted. On failure up to five of the
    provider's model ids are offered as suggestions.
    """
    model = _model_for_provider(model_id, provider, discovered_path)
    if model is None:
        message = f"Unknown model '{model_id}' for provider '{provider}'. {REFRESH_HINT}"
    elif model.provider != provider:
        message = f"Model '{model_id}' belongs to provider '{model.provider}', not '{provider}'. {REFRESH_HINT}"
    else:
        return ModelSelection(valid=True, cli_format=model.cli_format)
    return ModelSelection(valid=False, error=message, suggestions=_suggestions(provider, discovered_path))


def validate_model_for_provider(model_id: str, provider: str, discovered_path: Optional[Path] = None) -> str:
    """Return the CLI format for ``model_id`` or raise ModelValidationError."""
    selection = validate_model_selection(model_id, provider, discovered_path)
    if not selection.valid:
        hint = f" Did you mean: {', '.join(selection.suggestions)}?" if selection.suggestions else ""
        raise ModelValidationError(provider, f"{selection.error}{hint}", selection.suggestions)
    return selection.cli_format or model_id
