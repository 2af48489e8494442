from __future__ import annotations

from typing import List, Optional

from ..models import AgentResult
from .base import Provider
from .normalize import normalize_result_output


class ClaudeProvider(Provider):
    name = "claude"
    display_name = "Claude Code"
    binaries = ("claude",)
    default_model = "claude-sonnet-4-5"
    lightweight_model = "claude-3-5-haiku-latest"
    context_file_names = ("CLAUDE.md", "AGENTS.md")
    supports_lightweight = True
    install_hint = "npm install -g @anthropic-ai/claude-code"

    def build_headless_args(self, prompt: str, model: Optional[str] = None) -> List[str]:
        args = [
            "-p",
            "--output-format",
            "json",
            "--dangerously-skip-permissions",
        ]
        args.extend(self._model_args(model))
        args.extend(self.config.extra_args)
        args.append("--")
        args.append(prompt)
        return args

    def build_supervised_args(self, prompt: str, model: Optional[str] = None) -> List[str]:
        return [
            "--permission-mode",
            "bypassPermissions",
            *self._model_args(model),
            *self.config.extra_args,
            prompt,
        ]

    def normalize(self, raw: str) -> AgentResult:
        """``--output-format json`` prints one result object; older builds print the event array."""
        return normalize_result_output(self.name, self.display_name, raw)
