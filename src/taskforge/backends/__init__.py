from taskforge.backends.base import (
    AgentTransport,
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
    EventSink,
    TurnResult,
)
from taskforge.backends.codex import CodexTransport
from taskforge.backends.resilient import ResilientTransport, RetryPolicy

__all__ = [
    "AgentTransport",
    "BackendExecutionError",
    "BackendProcessError",
    "BackendTimeoutError",
    "CodexTransport",
    "EventSink",
    "ResilientTransport",
    "RetryPolicy",
    "TurnResult",
]
