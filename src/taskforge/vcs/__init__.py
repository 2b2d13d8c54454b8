from taskforge.vcs.git import GitRepository, build_task_branch_name
from taskforge.vcs.merge import (
    FastForwardBlocked,
    FastForwarded,
    FastForwardResult,
    MergeConflict,
    MergeResult,
    TaskBranch,
    TempMergeResult,
    fast_forward,
    merge_task_branches,
    merge_task_branches_to_temp,
)

__all__ = [
    "FastForwardBlocked",
    "FastForwardResult",
    "FastForwarded",
    "GitRepository",
    "MergeConflict",
    "MergeResult",
    "TaskBranch",
    "TempMergeResult",
    "build_task_branch_name",
    "fast_forward",
    "merge_task_branches",
    "merge_task_branches_to_temp",
]
