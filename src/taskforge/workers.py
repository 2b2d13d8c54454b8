from __future__ import annotations

import asyncio
import logging
import shutil
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from taskforge.backends.base import AgentTransport, EventSink
from taskforge.config import TaskforgeConfig
from taskforge.manifest import TaskSpec
from taskforge.signals import StopToken
from taskforge.vcs.git import GitRepository
from taskforge.worker.loop import WorkerConfig, WorkerResult, run_worker

logger = logging.getLogger(__name__)

TransportFactory = Callable[[], AgentTransport]


@dataclass(slots=True)
class WorkerStopResult:
    stopped: int = 0
    errors: list[str] = field(default_factory=list)


class WorkerRunner(ABC):
    @abstractmethod
    async def prepare_workspace(
        self, run_id: str, task: TaskSpec, *, branch: str, base_sha: str
    ) -> Path:
        """Return an isolated checkout of ``branch`` for ``task``."""

    @abstractmethod
    async def run_task(
        self,
        run_id: str,
        task: TaskSpec,
        workspace: Path,
        *,
        logs_dir: Path,
        stop_token: StopToken,
        event_sink: EventSink | None = None,
    ) -> WorkerResult:
        """Drive the task's attempts to a terminal result."""

    @abstractmethod
    async def stop(self) -> WorkerStopResult:
        """Tear down anything still running after a stop request."""

    @abstractmethod
    async def cleanup_task(self, run_id: str, task: TaskSpec) -> None:
        """Remove the task's workspace."""


class LocalWorkerRunner(WorkerRunner):
    """Runs workers in per-task clones under the workspaces directory."""

    def __init__(
        self,
        config: TaskforgeConfig,
        repo: GitRepository,
        transport_factory: TransportFactory,
        *,
        stop_grace_seconds: float = 30.0,
    ) -> None:
        self.config = config
        self.repo = repo
        self.transport_factory = transport_factory
        self.stop_grace_seconds = stop_grace_seconds
        self._active: dict[str, asyncio.Task] = {}

    def workspace_path(self, run_id: str, task: TaskSpec) -> Path:
        root = self.repo.repo_root / self.config.workflow.workspaces_dir
        return root / run_id / task.dir_name

    async def prepare_workspace(
        self, run_id: str, task: TaskSpec, *, branch: str, base_sha: str
    ) -> Path:
        path = self.workspace_path(run_id, task)
        if (path / ".git").exists():
            workspace = GitRepository(path)
            if workspace.branch_exists(branch):
                logger.info("Reusing workspace for %s at %s", task.id, path)
                workspace.checkout(branch)
                return path
            await asyncio.to_thread(workspace.run_git, ["fetch", "--quiet", "origin"])
        else:
            workspace = await asyncio.to_thread(self.repo.clone_to, path)
        workspace.reset_branch(branch, base_sha)
        workspace.ensure_excluded(".taskforge/")
        return path

    def _worker_config(self, task: TaskSpec, workspace: Path, logs_dir: Path) -> WorkerConfig:
        project = self.config.project
        return WorkerConfig(
            task_id=task.id,
            task_branch=GitRepository(workspace).current_branch(),
            working_directory=workspace,
            run_logs_dir=logs_dir,
            doctor_command=project.doctor_command,
            doctor_timeout_seconds=project.doctor_timeout_seconds,
            lint_command=project.lint_command,
            lint_timeout_seconds=project.lint_timeout_seconds,
            max_retries=self.config.workflow.max_retries,
            bootstrap_commands=list(project.bootstrap_commands),
            checkpoint_commits=self.config.workflow.checkpoint_commits,
        )

    async def run_task(
        self,
        run_id: str,
        task: TaskSpec,
        workspace: Path,
        *,
        logs_dir: Path,
        stop_token: StopToken,
        event_sink: EventSink | None = None,
    ) -> WorkerResult:
        current = asyncio.current_task()
        if current is not None:
            self._active[task.id] = current
        try:
            return await run_worker(
                task,
                self._worker_config(task, workspace, logs_dir),
                self.transport_factory(),
                event_sink=event_sink,
                stop_token=stop_token,
            )
        finally:
            self._active.pop(task.id, None)

    async def stop(self) -> WorkerStopResult:
        """Let in-flight workers reach a stop boundary, then cancel the stragglers."""
        result = WorkerStopResult()
        active = {
            task_id: running for task_id, running in self._active.items() if not running.done()
        }
        if not active:
            return result
        _, pending = await asyncio.wait(active.values(), timeout=self.stop_grace_seconds)
        for task_id, running in active.items():
            if running in pending:
                logger.info("Cancelling worker for %s", task_id)
                running.cancel()
        if pending:
            await asyncio.wait(pending)
        for task_id, running in active.items():
            error = None if running.cancelled() else running.exception()
            if error is not None:
                result.errors.append(f"{task_id}: {error}")
                continue
            result.stopped += 1
        return result

    async def cleanup_task(self, run_id: str, task: TaskSpec) -> None:
        path = self.workspace_path(run_id, task)
        if path.exists():
            await asyncio.to_thread(shutil.rmtree, path)
