from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from taskforge.errors import PlanningError
from taskforge.manifest import ResourceLocks, TaskSpec, locks_conflict, normalize_string_list

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Batch:
    batch_id: int
    task_ids: list[str]
    locks: ResourceLocks = field(default_factory=ResourceLocks)

    def to_dict(self) -> dict:
        return {
            "batch_id": self.batch_id,
            "task_ids": list(self.task_ids),
            "locks": self.locks.to_dict(),
        }


def _remaining_dependents(tasks: dict[str, TaskSpec]) -> dict[str, int]:
    """Count transitive dependents of each task among the given tasks."""
    direct: dict[str, set[str]] = {task_id: set() for task_id in tasks}
    for task_id, task in tasks.items():
        for dependency in task.manifest.dependencies:
            if dependency in direct:
                direct[dependency].add(task_id)

    counts: dict[str, int] = {}
    for task_id in tasks:
        seen: set[str] = set()
        stack = list(direct[task_id])
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(direct[current])
        counts[task_id] = len(seen)
    return counts


def _cycle_members(pending: dict[str, TaskSpec]) -> list[str]:
    # Strip tasks that nothing pending depends on until only cycles remain.
    remaining = dict(pending)
    changed = True
    while changed:
        changed = False
        needed = {dep for task in remaining.values() for dep in task.manifest.dependencies}
        for task_id in list(remaining):
            if task_id not in needed:
                del remaining[task_id]
                changed = True
    return sorted(remaining)


def plan_batches(
    tasks: Iterable[TaskSpec], completed_task_ids: Iterable[str] = ()
) -> list[Batch]:
    by_id: dict[str, TaskSpec] = {}
    for task in tasks:
        if task.id in by_id:
            raise PlanningError(f"Duplicate task id: {task.id}")
        by_id[task.id] = task

    completed = set(completed_task_ids)
    pending = {task_id: task for task_id, task in by_id.items() if task_id not in completed}

    for task_id in sorted(pending):
        unknown = [
            dep
            for dep in pending[task_id].manifest.dependencies
            if dep not in by_id and dep not in completed
        ]
        if unknown:
            raise PlanningError(
                f"Task {task_id} depends on unknown task(s): {', '.join(sorted(unknown))}"
            )

    dependents = _remaining_dependents(pending)
    satisfied = set(completed) | (set(by_id) - set(pending))
    batches: list[Batch] = []
    while pending:
        ready = [
            task
            for task in pending.values()
            if all(dep in satisfied for dep in task.manifest.dependencies)
        ]
        if not ready:
            members = _cycle_members(pending)
            raise PlanningError(
                "Dependency cycle detected between tasks: " + ", ".join(members or sorted(pending))
            )

        ready.sort(key=lambda task: (-dependents[task.id], task.id))
        selected: list[TaskSpec] = []
        for candidate in ready:
            if any(
                locks_conflict(candidate.manifest.locks, chosen.manifest.locks)
                for chosen in selected
            ):
                continue
            selected.append(candidate)

        batch = Batch(
            batch_id=len(batches) + 1,
            task_ids=sorted(task.id for task in selected),
            locks=ResourceLocks(
                reads=normalize_string_list(
                    lock for task in selected for lock in task.manifest.locks.reads
                ),
                writes=normalize_string_list(
                    lock for task in selected for lock in task.manifest.locks.writes
                ),
            ),
        )
        batches.append(batch)
        logger.debug("Planned batch %d: %s", batch.batch_id, ", ".join(batch.task_ids))
        for task in selected:
            satisfied.add(task.id)
            del pending[task.id]
    return batches


def format_batch_plan(batches: list[Batch]) -> str:
    if not batches:
        return "No pending tasks."
    lines: list[str] = []
    for batch in batches:
        reads = ", ".join(batch.locks.reads) or "-"
        writes = ", ".join(batch.locks.writes) or "-"
        lines.append(
            f"- Batch {batch.batch_id}: {', '.join(batch.task_ids)} "
            f"[locks: reads={reads}; writes={writes}]"
        )
    return "\n".join(lines)
