from __future__ import annotations

from collections.abc import Iterable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

RunStatus = Literal["pending", "running", "complete", "failed", "stopped"]
TaskStatus = Literal["pending", "running", "complete", "failed", "needs_human_review", "skipped"]
BatchStatus = Literal["pending", "running", "complete", "failed", "stopped"]

TASK_STATUSES: tuple[str, ...] = (
    "pending",
    "running",
    "complete",
    "failed",
    "needs_human_review",
    "skipped",
)


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class CheckpointCommit:
    attempt: int
    sha: str
    created_at: str = field(default_factory=utcnow_iso)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CheckpointCommit:
        return cls(
            attempt=int(data["attempt"]),
            sha=str(data["sha"]),
            created_at=str(data.get("created_at") or utcnow_iso()),
        )


@dataclass(slots=True)
class ValidatorResult:
    validator: str
    status: Literal["pass", "fail", "error"]
    mode: Literal["warn", "block"] = "warn"
    summary: str = ""
    report_path: str | None = None


@dataclass(slots=True)
class HumanReview:
    validator: str
    reason: str
    summary: str = ""
    report_path: str | None = None


@dataclass(slots=True)
class TaskState:
    status: TaskStatus = "pending"
    attempts: int = 0
    branch: str | None = None
    workspace: str | None = None
    base_sha: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    last_error: str | None = None
    merged: bool = False
    thread_id: str | None = None
    tokens_used: int = 0
    checkpoint_commits: list[CheckpointCommit] = field(default_factory=list)
    validator_results: list[ValidatorResult] = field(default_factory=list)
    human_review: HumanReview | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskState:
        human_review = data.get("human_review")
        return cls(
            status=data.get("status", "pending"),
            attempts=int(data.get("attempts", 0)),
            branch=data.get("branch"),
            workspace=data.get("workspace"),
            base_sha=data.get("base_sha"),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            last_error=data.get("last_error"),
            merged=bool(data.get("merged", False)),
            thread_id=data.get("thread_id"),
            tokens_used=int(data.get("tokens_used", 0)),
            checkpoint_commits=[
                CheckpointCommit.from_dict(item) for item in data.get("checkpoint_commits", [])
            ],
            validator_results=[
                ValidatorResult(**item) for item in data.get("validator_results", [])
            ],
            human_review=HumanReview(**human_review) if isinstance(human_review, dict) else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class BatchState:
    batch_id: int
    task_ids: list[str]
    status: BatchStatus = "pending"
    started_at: str | None = None
    completed_at: str | None = None
    merge_commit: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BatchState:
        return cls(
            batch_id=int(data["batch_id"]),
            task_ids=list(data.get("task_ids", [])),
            status=data.get("status", "pending"),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            merge_commit=data.get("merge_commit"),
        )


@dataclass(slots=True)
class RunState:
    run_id: str
    project: str
    repo_path: str
    main_branch: str
    started_at: str
    updated_at: str
    status: RunStatus = "running"
    base_sha: str | None = None
    batches: list[BatchState] = field(default_factory=list)
    tasks: dict[str, TaskState] = field(default_factory=dict)
    tokens_used: int = 0
    stop: dict[str, Any] | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunState:
        return cls(
            run_id=str(data["run_id"]),
            project=str(data["project"]),
            repo_path=str(data["repo_path"]),
            main_branch=str(data.get("main_branch", "main")),
            started_at=str(data.get("started_at") or utcnow_iso()),
            updated_at=str(data.get("updated_at") or utcnow_iso()),
            status=data.get("status", "running"),
            base_sha=data.get("base_sha"),
            batches=[BatchState.from_dict(item) for item in data.get("batches", [])],
            tasks={
                str(task_id): TaskState.from_dict(payload)
                for task_id, payload in data.get("tasks", {}).items()
            },
            tokens_used=int(data.get("tokens_used", 0)),
            stop=data.get("stop"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "project": self.project,
            "repo_path": self.repo_path,
            "main_branch": self.main_branch,
            "started_at": self.started_at,
            "updated_at": self.updated_at,
            "status": self.status,
            "base_sha": self.base_sha,
            "batches": [asdict(batch) for batch in self.batches],
            "tasks": {task_id: task.to_dict() for task_id, task in self.tasks.items()},
            "tokens_used": self.tokens_used,
            "stop": self.stop,
        }

    def task(self, task_id: str) -> TaskState:
        if task_id not in self.tasks:
            self.tasks[task_id] = TaskState()
        return self.tasks[task_id]

    def completed_task_ids(self) -> set[str]:
        return {task_id for task_id, task in self.tasks.items() if task.status == "complete"}

    def unmerged_task_ids(self) -> list[str]:
        return sorted(
            task_id
            for task_id, task in self.tasks.items()
            if task.status == "complete" and not task.merged
        )

    def start_batch(self, task_ids: list[str], now: str) -> BatchState:
        batch = BatchState(
            batch_id=len(self.batches) + 1,
            task_ids=list(task_ids),
            status="running",
            started_at=now,
        )
        self.batches.append(batch)
        self.updated_at = now
        return batch

    def finish_batch(self, batch: BatchState, status: BatchStatus, now: str) -> None:
        batch.status = status
        batch.completed_at = now
        self.updated_at = now


def create_run_state(
    *,
    run_id: str,
    project: str,
    repo_path: str,
    main_branch: str,
    task_ids: Iterable[str],
    now: str | None = None,
) -> RunState:
    timestamp = now or utcnow_iso()
    return RunState(
        run_id=run_id,
        project=project,
        repo_path=repo_path,
        main_branch=main_branch,
        started_at=timestamp,
        updated_at=timestamp,
        status="running",
        tasks={task_id: TaskState() for task_id in sorted(task_ids)},
    )


@dataclass(slots=True)
class RunSummary:
    run_id: str
    status: RunStatus
    task_counts: dict[str, int]
    human_review: list[dict[str, Any]]
    tokens_used: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def summarize_run_state(state: RunState) -> RunSummary:
    counts = {status: 0 for status in TASK_STATUSES}
    human_review: list[dict[str, Any]] = []
    for task_id in sorted(state.tasks):
        task = state.tasks[task_id]
        counts[task.status] = counts.get(task.status, 0) + 1
        if task.status == "needs_human_review" and task.human_review is not None:
            human_review.append({"id": task_id, **asdict(task.human_review)})
    return RunSummary(
        run_id=state.run_id,
        status=state.status,
        task_counts=counts,
        human_review=human_review,
        tokens_used=state.tokens_used,
    )


def merge_checkpoint_commits(
    existing: Iterable[CheckpointCommit], incoming: Iterable[CheckpointCommit]
) -> list[CheckpointCommit]:
    by_attempt: dict[int, CheckpointCommit] = {item.attempt: item for item in existing}
    for item in incoming:
        by_attempt[item.attempt] = item
    return [by_attempt[attempt] for attempt in sorted(by_attempt)]


def checkpoint_lists_equal(
    left: list[CheckpointCommit], right: list[CheckpointCommit]
) -> bool:
    if len(left) != len(right):
        return False
    return all(
        a.attempt == b.attempt and a.sha == b.sha and a.created_at == b.created_at
        for a, b in zip(left, right)
    )
