from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from taskforge.errors import ConflictError, GitError, MainAdvancedError
from taskforge.vcs.git import GitRepository

logger = logging.getLogger(__name__)

BlockedReason = Literal["main_advanced", "non_fast_forward"]


@dataclass(slots=True)
class TaskBranch:
    task_id: str
    branch_name: str
    workspace_path: Path


@dataclass(slots=True)
class MergeConflict:
    branch: TaskBranch
    message: str


@dataclass(slots=True)
class MergeResult:
    merged: list[TaskBranch] = field(default_factory=list)
    conflicts: list[MergeConflict] = field(default_factory=list)
    merge_commit: str | None = None


@dataclass(slots=True)
class TempMergeResult:
    base_sha: str
    temp_branch: str
    merged: list[TaskBranch] = field(default_factory=list)
    conflicts: list[MergeConflict] = field(default_factory=list)
    merge_commit: str | None = None


@dataclass(slots=True)
class FastForwarded:
    previous_head: str
    head: str


@dataclass(slots=True)
class FastForwardBlocked:
    reason: BlockedReason
    current_head: str
    target_ref: str
    message: str


FastForwardResult = FastForwarded | FastForwardBlocked


def _remote_name(task_id: str) -> str:
    safe_id = re.sub(r"[^A-Za-z0-9_-]+", "-", task_id).strip("-") or "task"
    return f"task-{safe_id}"


def _merge_branch(repo: GitRepository, branch: TaskBranch) -> None:
    remote = _remote_name(branch.task_id)
    repo.remove_remote(remote)
    repo.add_remote(remote, str(branch.workspace_path))
    try:
        repo.fetch(remote, branch.branch_name)
        proc = repo.run_git(
            ["merge", "--no-ff", "FETCH_HEAD", "-m", f"Merge {branch.branch_name}"],
            check=False,
        )
        if proc.returncode == 0:
            return
        detail = proc.stdout.strip() or proc.stderr.strip()
        if repo.merge_in_progress():
            repo.run_git(["merge", "--abort"])
            raise ConflictError(branch.branch_name, detail or "Merge conflict.")
        raise GitError(f"Merging {branch.branch_name} failed: {detail}")
    finally:
        repo.remove_remote(remote)


def _merge_into_current(
    repo: GitRepository, branches: list[TaskBranch]
) -> tuple[list[TaskBranch], list[MergeConflict], str | None]:
    merged: list[TaskBranch] = []
    conflicts: list[MergeConflict] = []
    for branch in branches:
        try:
            _merge_branch(repo, branch)
        except ConflictError as exc:
            logger.warning("Merge conflict for %s: %s", branch.branch_name, exc)
            conflicts.append(MergeConflict(branch=branch, message=str(exc)))
            continue
        merged.append(branch)
    merge_commit = repo.head_sha() if merged else None
    return merged, conflicts, merge_commit


def merge_task_branches(
    repo: GitRepository, main_branch: str, branches: list[TaskBranch]
) -> MergeResult:
    repo.ensure_clean_working_tree()
    repo.checkout(main_branch)
    merged, conflicts, merge_commit = _merge_into_current(repo, branches)
    return MergeResult(merged=merged, conflicts=conflicts, merge_commit=merge_commit)


def _available_branch_name(repo: GitRepository, base_name: str) -> str:
    candidate = base_name
    suffix = 1
    while repo.branch_exists(candidate):
        candidate = f"{base_name}-{suffix}"
        suffix += 1
    return candidate


def merge_task_branches_to_temp(
    repo: GitRepository,
    main_branch: str,
    temp_branch: str,
    branches: list[TaskBranch],
) -> TempMergeResult:
    repo.ensure_clean_working_tree()
    repo.checkout(main_branch)
    base_sha = repo.head_sha()
    temp_name = _available_branch_name(repo, temp_branch)
    repo.checkout_new_branch(temp_name, base_sha)
    merged, conflicts, merge_commit = _merge_into_current(repo, branches)
    return TempMergeResult(
        base_sha=base_sha,
        temp_branch=temp_name,
        merged=merged,
        conflicts=conflicts,
        merge_commit=merge_commit,
    )


def fast_forward(
    repo: GitRepository,
    main_branch: str,
    target_ref: str,
    *,
    expected_base_sha: str | None = None,
    cleanup_branch: str | None = None,
) -> FastForwardResult:
    repo.ensure_clean_working_tree()
    repo.checkout(main_branch)
    head = repo.head_sha()
    if expected_base_sha and head != expected_base_sha:
        return FastForwardBlocked(
            reason="main_advanced",
            current_head=head,
            target_ref=target_ref,
            message=str(MainAdvancedError(expected_base_sha, head, main_branch=main_branch)),
        )

    target_sha = repo.head_sha(target_ref)
    if not repo.is_ancestor(head, target_sha):
        return FastForwardBlocked(
            reason="non_fast_forward",
            current_head=head,
            target_ref=target_ref,
            message=f"{target_ref} is not a descendant of {main_branch}.",
        )

    repo.run_git(["merge", "--ff-only", target_sha])
    if cleanup_branch and cleanup_branch != main_branch and repo.branch_exists(cleanup_branch):
        proc = repo.run_git(["branch", "-D", cleanup_branch], check=False)
        if proc.returncode != 0:
            logger.warning("Could not delete %s: %s", cleanup_branch, proc.stderr.strip())
    return FastForwarded(previous_head=head, head=repo.head_sha())
