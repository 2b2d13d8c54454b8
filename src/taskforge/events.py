from __future__ import annotations

import json
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

from taskforge.state.run_state import utcnow_iso

logger = logging.getLogger(__name__)

EventSink = Callable[[dict[str, Any]], None]


class JsonlEventLog:
    """Appends orchestration events to a JSON-lines file."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def __call__(self, event: dict[str, Any]) -> None:
        record = {"ts": utcnow_iso(), **event}
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")
        logger.debug("%s %s", event.get("type"), event.get("task_id") or "")


def read_events(path: Path) -> list[dict[str, Any]]:
    if not path.exists():
        return []
    events: list[dict[str, Any]] = []
    for line in path.read_text(encoding="utf-8").splitlines():
        if not line.strip():
            continue
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict):
            events.append(payload)
    return events


def fanout(*sinks: EventSink | None) -> EventSink:
    active = [sink for sink in sinks if sink is not None]

    def _emit(event: dict[str, Any]) -> None:
        for sink in active:
            sink(event)

    return _emit

