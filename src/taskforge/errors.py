from __future__ import annotations


class TaskforgeError(RuntimeError):
    """Base class for orchestration failures."""


class ConfigError(TaskforgeError):
    """Raised when configuration or a task manifest is invalid."""


class PlanningError(TaskforgeError):
    """Raised when the task graph cannot be turned into batches."""


class StateStoreError(TaskforgeError):
    """Raised when run or worker state cannot be read or written."""


class TransportError(TaskforgeError):
    """Raised when an external invocation (agent, VCS, process) fails."""


class GitError(TransportError):
    """Raised when a git command fails."""


class ConflictError(GitError):
    def __init__(self, branch: str, message: str) -> None:
        super().__init__(message)
        self.branch = branch


class MainAdvancedError(GitError):
    def __init__(self, expected: str, actual: str, *, main_branch: str = "main") -> None:
        super().__init__(f"Expected {main_branch} at {expected} but found {actual}.")
        self.expected = expected
        self.actual = actual
        self.main_branch = main_branch


class VerificationFailure(TaskforgeError):
    def __init__(self, kind: str, output: str) -> None:
        super().__init__(f"{kind} failed")
        self.kind = kind
        self.output = output


class MaxRetriesExceeded(TaskforgeError):
    def __init__(self, task_id: str, max_retries: int) -> None:
        super().__init__(f"Max retries exceeded ({max_retries})")
        self.task_id = task_id
        self.max_retries = max_retries


class ScopeViolation(TaskforgeError):
    def __init__(self, task_id: str, summary: str) -> None:
        super().__init__(f"Task {task_id} blocked by manifest compliance: {summary}")
        self.task_id = task_id
        self.summary = summary
