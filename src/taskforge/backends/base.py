from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from taskforge.errors import TransportError

EventSink = Callable[[dict[str, Any]], None]


class BackendExecutionError(TransportError):
    """Raised when an agent process execution fails."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class BackendTimeoutError(BackendExecutionError):
    """Raised when an agent turn exceeds the configured timeout."""


class BackendProcessError(BackendExecutionError):
    """Raised when the agent process cannot be started."""


@dataclass(slots=True)
class TurnResult:
    success: bool
    session_id: str | None = None
    output: str = ""
    usage: dict[str, int] = field(default_factory=dict)
    error: str | None = None

    @property
    def tokens_used(self) -> int:
        return int(self.usage.get("input_tokens", 0)) + int(self.usage.get("output_tokens", 0))


class AgentTransport(ABC):
    @abstractmethod
    async def run_turn(
        self,
        prompt: str,
        *,
        working_directory: Path,
        session_id: str | None = None,
        event_sink: EventSink | None = None,
    ) -> TurnResult:
        """Run one agent turn, continuing ``session_id`` when given."""
