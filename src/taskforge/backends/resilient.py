from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from taskforge.backends.base import (
    AgentTransport,
    BackendExecutionError,
    BackendTimeoutError,
    EventSink,
    TurnResult,
)

logger = logging.getLogger(__name__)

BackendEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    timeout_seconds: float = 1800.0


class ResilientTransport(AgentTransport):
    """Wraps a transport with per-turn timeout and retry with backoff."""

    def __init__(
        self,
        name: str,
        transport: AgentTransport,
        retry_policy: RetryPolicy,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.name = name
        self.transport = transport
        self.retry_policy = retry_policy
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def run_turn(
        self,
        prompt: str,
        *,
        working_directory: Path,
        session_id: str | None = None,
        event_sink: EventSink | None = None,
    ) -> TurnResult:
        errors: list[str] = []
        for attempt in range(self.retry_policy.max_retries + 1):
            if attempt > 0:
                delay = self.retry_policy.backoff_seconds * (2 ** (attempt - 1))
                self._emit(
                    {
                        "event": "backend_retry",
                        "backend": self.name,
                        "attempt": attempt,
                        "delay_seconds": delay,
                    }
                )
                await asyncio.sleep(delay)
            try:
                return await asyncio.wait_for(
                    self.transport.run_turn(
                        prompt,
                        working_directory=working_directory,
                        session_id=session_id,
                        event_sink=event_sink,
                    ),
                    timeout=self.retry_policy.timeout_seconds,
                )
            except TimeoutError:
                error = BackendTimeoutError(
                    f"Agent turn timed out after {self.retry_policy.timeout_seconds:.1f}s",
                    backend=self.name,
                    retriable=True,
                )
                errors.append(f"{self.name}[{attempt}]: {error}")
                self._emit(
                    {
                        "event": "backend_attempt_failed",
                        "backend": self.name,
                        "attempt": attempt,
                        "error": str(error),
                        "retriable": True,
                    }
                )
            except BackendExecutionError as exc:
                errors.append(f"{self.name}[{attempt}]: {exc}")
                self._emit(
                    {
                        "event": "backend_attempt_failed",
                        "backend": self.name,
                        "attempt": attempt,
                        "error": str(exc),
                        "retriable": exc.retriable,
                    }
                )
                if not exc.retriable:
                    break

        summary = "; ".join(errors[-6:])
        logger.warning("Agent turn failed after retries: %s", summary)
        raise BackendExecutionError(
            f"All agent attempts failed. {summary}",
            backend=self.name,
            retriable=False,
        )
