from __future__ import annotations

from .models import AgentResult, InvocationRequest, SessionMetrics, TokenUsage
from .providers import get_provider, invoke, invoke_sync, list_providers, select_provider
from .sessions import get_session_metrics

__all__ = [
    "AgentResult",
    "InvocationRequest",
    "SessionMetrics",
    "TokenUsage",
    "get_provider",
    "get_session_metrics",
    "invoke",
    "invoke_sync",
    "list_providers",
    "select_provider",
]
