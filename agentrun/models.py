from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .config import ProviderConfig

SUPERVISED = "supervised"
HEADLESS = "headless"
MODES = (SUPERVISED, HEADLESS)


@dataclass(frozen=True)
class TokenUsage:
    input: Optional[int] = None
    output: Optional[int] = None
    cache_read: Optional[int] = None
    cache_write: Optional[int] = None
    reasoning: Optional[int] = None

    @property
    def context_tokens(self) -> int:
        return (self.input or 0) + (self.cache_read or 0) + (self.cache_write or 0)

    def is_empty(self) -> bool:
        return all(
            value is None
            for value in (self.input, self.output, self.cache_read, self.cache_write, self.reasoning)
        )

    def to_dict(self) -> Dict[str, int]:
        data = {
            "input": self.input,
            "output": self.output,
            "cache_read": self.cache_read,
            "cache_write": self.cache_write,
            "reasoning": self.reasoning,
        }
        return {key: value for key, value in data.items() if value is not None}


@dataclass(frozen=True)
class AgentResult:
    result_text: str
    session_id: str = ""
    duration_ms: int = 0
    cost_usd: float = 0.0
    token_usage: Optional[TokenUsage] = None

    def __post_init__(self) -> None:
        if self.duration_ms < 0:
            object.__setattr__(self, "duration_ms", 0)
        if self.cost_usd < 0:
            object.__setattr__(self, "cost_usd", 0.0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "result_text": self.result_text,
            "session_id": self.session_id,
            "duration_ms": self.duration_ms,
            "cost_usd": self.cost_usd,
            "token_usage": self.token_usage.to_dict() if self.token_usage else None,
        }


@dataclass
class InvocationRequest:
    prompt: str
    mode: str = HEADLESS
    config: Optional[ProviderConfig] = None

    def __post_init__(self) -> None:
        if self.mode not in MODES:
            raise ValueError(f"Unsupported invocation mode: {self.mode}")


@dataclass
class ProcessExecutionResult:
    stdout: str
    stderr: str
    exit_code: Optional[int]
    signal: Optional[str] = None
    timed_out: bool = False
    termination_reason: Optional[str] = None
    duration_ms: int = 0
    pid: Optional[int] = None


@dataclass(frozen=True)
class ProviderSession:
    session_id: str
    payload: str
    path: Optional[str] = None


@dataclass(frozen=True)
class DiscoveredSession:
    session_id: str
    path: Optional[str] = None


@dataclass
class SessionMetrics:
    duration_ms: int = 0
    tool_calls: int = 0
    files_changed: List[str] = field(default_factory=list)
    token_usage: Optional[TokenUsage] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "duration_ms": self.duration_ms,
            "tool_calls": self.tool_calls,
            "files_changed": list(self.files_changed),
            "token_usage": self.token_usage.to_dict() if self.token_usage else None,
        }
