from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional

_TRUE_VALUES = {"1", "true", "yes", "on"}

MODEL_ENV_KEYS: Dict[str, tuple[str, ...]] = {
    "claude": ("CLAUDE_MODEL", "ANTHROPIC_MODEL"),
    "codex": ("CODEX_MODEL",),
    "cursor": ("CURSOR_MODEL",),
    "gemini": ("GEMINI_MODEL",),
    "opencode": ("OPENCODE_MODEL",),
}


@dataclass
class ProviderConfig:
    model: Optional[str] = None
    timeout_ms: Optional[int] = None
    stall_timeout_ms: Optional[int] = None
    grace_period_ms: int = 5000
    working_directory: Optional[Path] = None
    extra_args: List[str] = field(default_factory=list)
    sandbox_mode: Optional[str] = None
    lightweight_model: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)

    @property
    def cwd(self) -> Path:
        return (self.working_directory or Path.cwd()).expanduser().resolve()


@dataclass(frozen=True)
class Settings:
    cache_dir: Path
    debug: bool = False
    log_format: str = "console"
    claude_config_dir: Path = Path.home() / ".claude"
    codex_home: Path = Path.home() / ".codex"
    cursor_config_dir: Path = Path.home() / ".cursor"
    gemini_home: Path = Path.home() / ".gemini"
    models_file: Optional[Path] = None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        home = Path.home()
        cache_root = env.get("AGENTRUN_CACHE_DIR")
        log_format = (env.get("AGENTRUN_LOG_FORMAT") or "console").strip().lower()
        if log_format not in {"console", "json"}:
            log_format = "console"
        return cls(
            cache_dir=Path(cache_root).expanduser() if cache_root else home / ".cache" / "agentrun",
            debug=(env.get("AGENTRUN_DEBUG") or "").strip().lower() in _TRUE_VALUES,
            log_format=log_format,
            claude_config_dir=_path_from(env, "CLAUDE_CONFIG_DIR", home / ".claude"),
            codex_home=_path_from(env, "CODEX_HOME", home / ".codex"),
            cursor_config_dir=_path_from(env, "CURSOR_CONFIG_DIR", home / ".cursor"),
            gemini_home=_path_from(env, "GEMINI_HOME", home / ".gemini"),
            models_file=_path_from(env, "AGENTRUN_MODELS_FILE", None),
        )

    @property
    def sessions_dir(self) -> Path:
        return self.cache_dir / "sessions"

    @property
    def models_path(self) -> Path:
        return self.models_file or self.cache_dir / "models.json"


def _path_from(env: Mapping[str, str], key: str, default: Optional[Path]) -> Optional[Path]:
    value = env.get(key)
    if value and value.strip():
        return Path(value.strip()).expanduser()
    return default


def model_from_env(provider: str, environ: Optional[Mapping[str, str]] = None) -> Optional[str]:
    env = os.environ if environ is None else environ
    for key in MODEL_ENV_KEYS.get(provider, ()):
        value = env.get(key)
        if value and value.strip():
            return value.strip()
    return None
