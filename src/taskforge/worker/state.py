from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from taskforge.errors import StateStoreError
from taskforge.state.run_state import CheckpointCommit, merge_checkpoint_commits, utcnow_iso

WORKER_STATE_RELATIVE_PATH = Path(".taskforge") / "worker-state.json"


@dataclass(slots=True)
class WorkerState:
    attempt: int = 0
    thread_id: str | None = None
    stage_a_complete: bool = False
    checkpoints: list[CheckpointCommit] = field(default_factory=list)
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkerState:
        return cls(
            attempt=int(data.get("attempt", 0)),
            thread_id=data.get("thread_id"),
            stage_a_complete=bool(data.get("stage_a_complete", False)),
            checkpoints=[CheckpointCommit.from_dict(item) for item in data.get("checkpoints", [])],
            created_at=str(data.get("created_at") or utcnow_iso()),
            updated_at=str(data.get("updated_at") or utcnow_iso()),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempt": self.attempt,
            "thread_id": self.thread_id,
            "stage_a_complete": self.stage_a_complete,
            "checkpoints": [
                {"attempt": item.attempt, "sha": item.sha, "created_at": item.created_at}
                for item in self.checkpoints
            ],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


def worker_state_path(workspace: Path) -> Path:
    return workspace / WORKER_STATE_RELATIVE_PATH


def load_worker_state(workspace: Path) -> WorkerState | None:
    path = worker_state_path(workspace)
    if not path.exists():
        return None
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise StateStoreError(f"Corrupt worker state at {path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise StateStoreError(f"Corrupt worker state at {path}: expected an object.")
    return WorkerState.from_dict(payload)


class WorkerStateStore:
    """Workspace-local attempt counter, agent thread id and checkpoint list."""

    def __init__(self, workspace: Path) -> None:
        self.path = worker_state_path(workspace)
        self._workspace = workspace
        self._state: WorkerState | None = None

    @property
    def state(self) -> WorkerState:
        if self._state is None:
            self.load()
        assert self._state is not None
        return self._state

    def load(self) -> WorkerState:
        self._state = load_worker_state(self._workspace) or WorkerState()
        return self._state

    @property
    def next_attempt(self) -> int:
        state = self.state
        last_checkpoint = max((item.attempt for item in state.checkpoints), default=0)
        return max(state.attempt, last_checkpoint) + 1

    @property
    def thread_id(self) -> str | None:
        return self.state.thread_id

    @property
    def checkpoints(self) -> list[CheckpointCommit]:
        return list(self.state.checkpoints)

    def record_attempt_start(self, attempt: int) -> None:
        self.state.attempt = attempt
        self._save()

    def record_thread_id(self, thread_id: str) -> None:
        self.state.thread_id = thread_id
        self._save()

    def record_checkpoint(self, attempt: int, sha: str) -> None:
        self.state.checkpoints = merge_checkpoint_commits(
            self.state.checkpoints,
            [CheckpointCommit(attempt=attempt, sha=sha, created_at=utcnow_iso())],
        )
        self._save()

    def mark_stage_a_complete(self) -> None:
        self.state.stage_a_complete = True
        self._save()

    def _save(self) -> None:
        state = self.state
        state.updated_at = utcnow_iso()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".json.tmp")
        tmp_path.write_text(json.dumps(state.to_dict(), indent=2), encoding="utf-8")
        tmp_path.replace(self.path)
