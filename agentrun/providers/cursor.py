from __future__ import annotations

from typing import List, Optional

from ..models import AgentResult
from .base import MINUTE_MS, Provider
from .normalize import normalize_result_output


class CursorProvider(Provider):
    name = "cursor"
    display_name = "Cursor"
    binaries = ("agent", "cursor-agent")
    default_model = "composer-1"
    context_file_names = (".cursor/rules/", "AGENTS.md", "CLAUDE.md")
    default_timeout_ms = 30 * MINUTE_MS
    default_stall_timeout_ms = 5 * MINUTE_MS
    install_hint = "Download from cursor.com and install cursor-agent"

    def build_headless_args(self, prompt: str, model: Optional[str] = None) -> List[str]:
        args = ["-p", "--output-format", "stream-json"]
        args.extend(self._model_args(model))
        if self.config.sandbox_mode == "danger-full-access":
            args.append("--force")
        args.extend(self.config.extra_args)
        args.append("--")
        args.append(prompt)
        return args

    def normalize(self, raw: str) -> AgentResult:
        return normalize_result_output(self.name, self.display_name, raw)
