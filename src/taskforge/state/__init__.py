from taskforge.state.run_state import (
    BatchState,
    CheckpointCommit,
    HumanReview,
    RunState,
    RunSummary,
    TaskState,
    ValidatorResult,
    checkpoint_lists_equal,
    create_run_state,
    merge_checkpoint_commits,
    summarize_run_state,
)
from taskforge.state.store import RunStateStore

__all__ = [
    "BatchState",
    "CheckpointCommit",
    "HumanReview",
    "RunState",
    "RunStateStore",
    "RunSummary",
    "TaskState",
    "ValidatorResult",
    "checkpoint_lists_equal",
    "create_run_state",
    "merge_checkpoint_commits",
    "summarize_run_state",
]
