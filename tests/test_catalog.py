from __future__ import annotations

import json
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from agentrun.config import ProviderConfig, Settings
from agentrun.errors import UnknownProviderError
from agentrun.providers import (
    ClaudeProvider,
    CursorProvider,
    OpencodeProvider,
    Provider,
    auto_detect_provider,
    clear_provider_cache,
    select_provider,
)
from agentrun.providers.catalog import (
    ModelValidationError,
    get_all_models,
    get_model_by_id,
    get_models_for_provider,
    load_discovered_models,
    model_completions,
    validate_model_for_provider,
    validate_model_selection,
)


class CatalogTestCase(unittest.TestCase):
    def setUp(self) -> None:
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.tmp = Path(tmp.name)
        self.models_file = self.tmp / "models.json"

    def write_discovered(self, models) -> Path:
        self.models_file.write_text(json.dumps({"version": 1, "models": models}), encoding="utf-8")
        return self.models_file


class TestModelCatalog(CatalogTestCase):
    def test_lookup_by_id_or_cli_format(self) -> None:
        assert get_model_by_id("sonnet", self.models_file).cli_format == "claude-sonnet-4-5-20250929"
        assert get_model_by_id("claude-opus-4-6", self.models_file).id == "claude-opus-4-6"
        assert get_model_by_id("nope", self.models_file) is None

    def test_alias_resolves_to_cli_format(self) -> None:
        assert validate_model_for_provider("opus", "claude", self.models_file) == "claude-opus-4-6"

    def test_codex_borrows_codex_named_models(self) -> None:
        models = get_models_for_provider("codex", self.models_file)
        assert models
        assert all("codex" in model.id for model in models)
        assert {model.provider for model in models} == {"codex"}
        selection = validate_model_selection("openai/gpt-5.1-codex", "codex", self.models_file)
        assert selection.valid
        assert selection.cli_format == "openai/gpt-5.1-codex"

    def test_unknown_model_offers_sorted_suggestions(self) -> None:
        selection = validate_model_selection("gpt-9000", "claude", self.models_file)
        assert not selection.valid
        assert "Unknown model 'gpt-9000' for provider 'claude'" in selection.error
        assert list(selection.suggestions) == model_completions("claude", self.models_file)[:5]

    def test_model_of_another_provider_is_rejected(self) -> None:
        selection = validate_model_selection("openai/gpt-5.2", "claude", self.models_file)
        assert not selection.valid
        assert "belongs to provider 'opencode', not 'claude'" in selection.error
        with self.assertRaises(ModelValidationError) as ctx:
            validate_model_for_provider("openai/gpt-5.2", "claude", self.models_file)
        assert "Did you mean:" in str(ctx.exception)
        assert ctx.exception.provider == "claude"

    def test_discovered_models_merge_behind_static(self) -> None:
        self.write_discovered(
            [
                {"id": "gemini-2.5-pro", "cliFormat": "gemini-2.5-pro", "provider": "gemini", "costHint": "standard"},
                {"id": "sonnet", "cliFormat": "other", "provider": "claude", "costHint": "cheap"},
                {"id": "bad-cost", "cliFormat": "x", "provider": "gemini", "costHint": "free"},
                {"id": "bad-provider", "cliFormat": "x", "provider": "pi", "costHint": "cheap"},
                {"id": "gemini-2.5-pro", "cliFormat": "dup", "provider": "gemini", "costHint": "cheap"},
                "not a record",
            ]
        )
        discovered = load_discovered_models(self.models_file)
        assert [model.id for model in discovered] == ["gemini-2.5-pro", "sonnet"]
        merged = get_all_models(self.models_file)
        assert [model for model in merged if model.id == "sonnet"][0].cli_format == "claude-sonnet-4-5-20250929"
        assert [model.id for model in get_models_for_provider("gemini", self.models_file)] == ["gemini-2.5-pro"]

    def test_unreadable_discovered_file_is_ignored(self) -> None:
        self.models_file.write_text("{not json", encoding="utf-8")
        assert load_discovered_models(self.models_file) == []
        assert load_discovered_models(self.tmp / "missing.json") == []


class TestProviderModelSelection(CatalogTestCase):
    def settings(self) -> Settings:
        return Settings(cache_dir=self.tmp, models_file=self.models_file)

    def test_catalogued_provider_validates(self) -> None:
        provider = ClaudeProvider(ProviderConfig(), settings=self.settings())
        assert provider.select_model("haiku") == "claude-haiku-4-5-20251001"
        assert provider.is_valid_model("claude-sonnet-4-5")
        assert not provider.is_valid_model("github-copilot/gpt-4o")
        assert OpencodeProvider(ProviderConfig(), settings=self.settings()).is_valid_model("github-copilot/gpt-4o")

    def test_uncatalogued_provider_accepts_any_model(self) -> None:
        provider = CursorProvider(ProviderConfig(), settings=self.settings())
        assert provider.select_model("cursor-fast") == "cursor-fast"
        assert provider.is_valid_model("anything")


class TestProviderSelection(unittest.TestCase):
    def setUp(self) -> None:
        clear_provider_cache()
        self.addCleanup(clear_provider_cache)

    def _installed(self, *names: str):
        return patch.object(
            Provider,
            "resolve_binary",
            autospec=True,
            side_effect=lambda provider: f"/usr/bin/{provider.name}" if provider.name in names else None,
        )

    def test_auto_detect_follows_priority(self) -> None:
        with self._installed("gemini", "codex"):
            assert auto_detect_provider() == "codex"
        with self._installed("gemini", "opencode", "claude"):
            assert auto_detect_provider() == "claude"

    def test_auto_detect_skips_cursor_and_defaults_to_claude(self) -> None:
        with self._installed("cursor"):
            assert auto_detect_provider() == "claude"

    def test_explicit_then_environment_then_detection(self) -> None:
        with self._installed("opencode"):
            assert select_provider("Gemini", environ={"AGENTRUN_PROVIDER": "codex"}) == "gemini"
            assert select_provider(None, environ={"AGENTRUN_PROVIDER": "codex"}) == "codex"
            assert select_provider("", environ={}) == "opencode"

    def test_invalid_names_are_rejected(self) -> None:
        with self.assertRaises(UnknownProviderError):
            select_provider("pi", environ={})
        with self.assertRaises(UnknownProviderError):
            select_provider(None, environ={"AGENTRUN_PROVIDER": "nope"})


if __name__ == "__main__":
    unittest.main()
