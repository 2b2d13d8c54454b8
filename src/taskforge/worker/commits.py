from __future__ import annotations

import logging

from taskforge.vcs.git import GitRepository

logger = logging.getLogger(__name__)


def checkpoint_message(task_id: str, attempt: int) -> str:
    return f"WIP(Task {task_id}): attempt {attempt} checkpoint"


def final_message(task_id: str, task_name: str) -> str:
    return f"[FEAT] {task_id} {task_name}\n\nTask: {task_id}"


def is_checkpoint_commit(message: str, task_id: str) -> bool:
    first_line = message.splitlines()[0] if message else ""
    return first_line.startswith(f"WIP(Task {task_id})") and "checkpoint" in first_line


def commit_checkpoint(repo: GitRepository, task_id: str, attempt: int) -> str | None:
    """Fold pending changes into a single amendable checkpoint commit."""
    repo.stage_all()
    if not repo.has_staged_changes():
        return None
    amend = repo.has_commits() and is_checkpoint_commit(repo.head_message(), task_id)
    return repo.commit(checkpoint_message(task_id, attempt), amend=amend)


def commit_final(repo: GitRepository, task_id: str, task_name: str) -> str | None:
    repo.stage_all()
    message = final_message(task_id, task_name)
    if repo.has_commits() and is_checkpoint_commit(repo.head_message(), task_id):
        return repo.commit(message, amend=True)
    if not repo.has_staged_changes():
        logger.debug("Nothing to commit for %s", task_id)
        return None
    return repo.commit(message)
