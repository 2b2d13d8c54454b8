from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from taskforge.compliance import (
    compute_rescope,
    describe_manifest_violations,
    enforce_compliance,
    evaluate_compliance,
    write_compliance_report,
)
from taskforge.config import TaskforgeConfig
from taskforge.errors import (
    GitError,
    ScopeViolation,
    StateStoreError,
    TaskforgeError,
)
from taskforge.events import EventSink, JsonlEventLog, fanout
from taskforge.manifest import TaskSpec
from taskforge.planner import Batch, plan_batches
from taskforge.signals import StopToken
from taskforge.state.run_state import (
    BatchState,
    HumanReview,
    RunState,
    TaskState,
    checkpoint_lists_equal,
    create_run_state,
    merge_checkpoint_commits,
)
from taskforge.state.store import RunStateStore
from taskforge.validators import ValidatorRunner
from taskforge.vcs.git import GitRepository
from taskforge.vcs.merge import (
    FastForwardBlocked,
    FastForwarded,
    MergeConflict,
    TaskBranch,
    TempMergeResult,
    fast_forward,
    merge_task_branches,
    merge_task_branches_to_temp,
)
from taskforge.worker.commands import run_verification_command, truncate_text
from taskforge.worker.loop import WorkerResult
from taskforge.workers import WorkerRunner, WorkerStopResult

logger = logging.getLogger(__name__)

MAX_MERGE_ROUNDS = 3


class Clock:
    def now(self) -> datetime:
        return datetime.now(UTC)

    def iso_now(self) -> str:
        return self.now().replace(microsecond=0).isoformat()


def new_run_id(clock: Clock) -> str:
    return f"run-{clock.now().strftime('%Y%m%d%H%M%S')}-{uuid4().hex[:8]}"


@dataclass(slots=True)
class RunOptions:
    run_id: str | None = None
    resume: bool = False
    dry_run: bool = False
    max_parallel: int | None = None


@dataclass(slots=True)
class RunResult:
    run_id: str
    status: str
    plan: list[Batch]
    state: RunState | None = None
    stopped: dict[str, Any] | None = None

    @property
    def ok(self) -> bool:
        return self.status in {"complete", "planned", "stopped"}


class RunEngine:
    """Plans batches, runs workers under a concurrency cap and merges results."""

    def __init__(
        self,
        *,
        config: TaskforgeConfig,
        repo: GitRepository,
        tasks: list[TaskSpec],
        worker_runner: WorkerRunner,
        validator_runner: ValidatorRunner,
        state_store: RunStateStore,
        event_sink: EventSink | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.config = config
        self.repo = repo
        self.tasks = list(tasks)
        self.worker_runner = worker_runner
        self.validator_runner = validator_runner
        self.state_store = state_store
        self.event_sink = event_sink
        self.clock = clock or Clock()
        self.logs_root = repo.repo_root / config.workflow.logs_dir
        self._by_id = {task.id: task for task in self.tasks}
        self._state: RunState | None = None
        self._revision: int | None = None
        self._emit_sink: EventSink | None = event_sink
        self._state_lock = asyncio.Lock()
        self._merge_lock = asyncio.Lock()

    @property
    def run_id(self) -> str | None:
        return self._state.run_id if self._state is not None else None

    @property
    def state(self) -> RunState:
        if self._state is None:
            raise StateStoreError("Run has not started.")
        return self._state

    def _emit(self, event_type: str, task_id: str | None = None, **payload: Any) -> None:
        if self._emit_sink is None:
            return
        event: dict[str, Any] = {"type": event_type, "payload": payload}
        if self._state is not None:
            event["run_id"] = self._state.run_id
        if task_id is not None:
            event["task_id"] = task_id
        self._emit_sink(event)

    def _forward_worker_event(self, event: dict[str, Any]) -> None:
        if self._emit_sink is not None:
            self._emit_sink({"run_id": self.state.run_id, **event})

    async def _persist(self) -> None:
        async with self._state_lock:
            self._revision = self.state_store.save(self.state, expected_revision=self._revision)

    def run_logs_dir(self, run_id: str) -> Path:
        return self.logs_root / run_id

    def task_logs_dir(self, run_id: str, task: TaskSpec) -> Path:
        return self.run_logs_dir(run_id) / "tasks" / task.dir_name

    async def run(
        self, options: RunOptions | None = None, stop_token: StopToken | None = None
    ) -> RunResult:
        options = options or RunOptions()
        stop_token = stop_token or StopToken()
        project = self.config.project.name

        state: RunState | None = None
        completed: set[str] = set()
        if options.resume:
            run_id = options.run_id or self.state_store.find_latest_run_id(project)
            if not run_id:
                raise StateStoreError(f"No runs found for project {project}.")
            state = self.state_store.load(project, run_id)
            self._revision = int(self.state_store.get_envelope(project, run_id)["revision"])
            completed = state.completed_task_ids()
        else:
            run_id = options.run_id or new_run_id(self.clock)

        plan = plan_batches(self.tasks, completed)
        if options.dry_run:
            return RunResult(run_id=run_id, status="planned", plan=plan, state=state)

        self._emit_sink = fanout(
            JsonlEventLog(self.run_logs_dir(run_id) / "orchestrator.jsonl"), self.event_sink
        )
        max_parallel = max(1, options.max_parallel or self.config.workflow.max_parallel)
        main_branch = self.config.project.main_branch

        self.repo.ensure_excluded(".taskforge/")
        if state is None:
            self.repo.ensure_clean_working_tree()
            self._revision = 0
            state = create_run_state(
                run_id=run_id,
                project=project,
                repo_path=str(self.repo.repo_root),
                main_branch=main_branch,
                task_ids=[task.id for task in self.tasks],
                now=self.clock.iso_now(),
            )
            state.base_sha = self.repo.resolve_run_base_sha(main_branch)
        else:
            state.status = "running"
            state.stop = None
            for task in self.tasks:
                state.task(task.id)
        self._state = state
        await self._persist()
        self._emit(
            "run.start",
            resume=options.resume,
            max_parallel=max_parallel,
            batches=[batch.to_dict() for batch in plan],
        )
        logger.info("Run %s started with %d batch(es)", run_id, len(plan))

        stop_watch = asyncio.ensure_future(self._stop_workers_on_request(stop_token))
        try:
            pending_merge = state.unmerged_task_ids()
            if pending_merge:
                await self._merge_tasks(pending_merge, None)
            for batch in plan:
                if stop_token.is_set():
                    break
                await self._run_batch(batch, max_parallel, stop_token)
        except Exception:
            state.status = "failed"
            await self._persist()
            raise
        finally:
            if not stop_token.is_set():
                stop_watch.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await stop_watch

        if stop_token.is_set():
            return await self._finish_stopped(stop_token, await stop_watch, plan)

        done = all(
            state.tasks[task.id].status == "complete" and state.tasks[task.id].merged
            for task in self.tasks
        )
        state.status = "complete" if done else "failed"
        await self._persist()
        self._emit("run.complete", status=state.status)
        return RunResult(run_id=run_id, status=state.status, plan=plan, state=state)

    async def _stop_workers_on_request(self, stop_token: StopToken) -> WorkerStopResult:
        await stop_token.wait()
        logger.info("Stop requested (%s); stopping in-flight workers", stop_token.signal)
        return await self.worker_runner.stop()

    async def _finish_stopped(
        self, stop_token: StopToken, stop_result: WorkerStopResult, plan: list[Batch]
    ) -> RunResult:
        state = self.state
        state.status = "stopped"
        state.stop = {
            "signal": stop_token.signal,
            "workers": "left_running" if stop_result.errors else "stopped",
            "stopped_workers": stop_result.stopped,
            "stop_errors": list(stop_result.errors),
        }
        await self._persist()
        self._emit("run.stop", **state.stop)
        return RunResult(
            run_id=state.run_id, status="stopped", plan=plan, state=state, stopped=state.stop
        )

    async def _run_batch(self, batch: Batch, max_parallel: int, stop_token: StopToken) -> None:
        state = self.state
        main_branch = self.config.project.main_branch
        batch_state = state.start_batch(batch.task_ids, self.clock.iso_now())
        base_sha = self.repo.head_sha(main_branch)
        await self._persist()
        self._emit("batch.start", batch_id=batch_state.batch_id, task_ids=batch.task_ids)

        semaphore = asyncio.Semaphore(max_parallel)

        async def _guarded(task: TaskSpec) -> None:
            async with semaphore:
                if stop_token.is_set():
                    return
                await self._run_task(task, base_sha, stop_token)

        results = await asyncio.gather(
            *(_guarded(self._by_id[task_id]) for task_id in batch.task_ids),
            return_exceptions=True,
        )
        # Workers torn down after a stop request stay "running" for resume.
        failures = [
            result
            for result in results
            if isinstance(result, BaseException)
            and not (stop_token.is_set() and isinstance(result, asyncio.CancelledError))
        ]
        if failures:
            state.finish_batch(batch_state, "failed", self.clock.iso_now())
            await self._persist()
            raise failures[0]

        if stop_token.is_set():
            state.finish_batch(batch_state, "stopped", self.clock.iso_now())
            await self._persist()
            return

        await self._merge_tasks(batch.task_ids, batch_state)
        batch_ok = all(
            state.tasks[task_id].status == "complete" and state.tasks[task_id].merged
            for task_id in batch.task_ids
        )
        state.finish_batch(batch_state, "complete" if batch_ok else "failed", self.clock.iso_now())
        await self._persist()
        self._emit("batch.complete", batch_id=batch_state.batch_id, status=batch_state.status)

    def _unmet_dependencies(self, task: TaskSpec) -> list[str]:
        unmet: list[str] = []
        for dependency in task.manifest.dependencies:
            dep_state = self.state.tasks.get(dependency)
            if dep_state is None:
                # Completed in an earlier run and no longer tracked.
                if dependency not in self._by_id:
                    continue
                unmet.append(dependency)
                continue
            if dep_state.status != "complete" or not dep_state.merged:
                unmet.append(dependency)
        return unmet

    async def _fail_task(
        self, task: TaskSpec, message: str, *, event: str = "task.failed"
    ) -> None:
        task_state = self.state.task(task.id)
        task_state.status = "failed"
        task_state.last_error = message
        task_state.completed_at = self.clock.iso_now()
        await self._persist()
        self._emit(event, task.id, error=message)
        logger.warning("Task %s failed: %s", task.id, message)

    async def _run_task(self, task: TaskSpec, base_sha: str, stop_token: StopToken) -> None:
        state = self.state
        task_state = state.task(task.id)

        unmet = self._unmet_dependencies(task)
        if unmet:
            task_state.status = "skipped"
            task_state.last_error = "Blocked by unfinished dependencies: " + ", ".join(unmet)
            await self._persist()
            self._emit("task.skipped", task.id, dependencies=unmet)
            return

        resuming = task_state.status == "running" and task_state.workspace is not None
        if not resuming:
            await self.worker_runner.cleanup_task(state.run_id, task)
            task_state.base_sha = base_sha
            task_state.checkpoint_commits = []
            task_state.validator_results = []
            task_state.human_review = None
            task_state.thread_id = None
        task_state.status = "running"
        task_state.branch = task_state.branch or self.repo.build_task_branch_name(
            task.id, task.name
        )
        task_state.started_at = task_state.started_at or self.clock.iso_now()
        task_state.last_error = None
        await self._persist()
        self._emit("task.start", task.id, branch=task_state.branch, resume=resuming)

        logs_dir = self.task_logs_dir(state.run_id, task)
        try:
            workspace = await self.worker_runner.prepare_workspace(
                state.run_id,
                task,
                branch=task_state.branch,
                base_sha=task_state.base_sha or base_sha,
            )
            task_state.workspace = str(workspace)
            await self._persist()
            result = await self.worker_runner.run_task(
                state.run_id,
                task,
                workspace,
                logs_dir=logs_dir,
                stop_token=stop_token,
                event_sink=self._forward_worker_event,
            )
        except StateStoreError:
            raise
        except TaskforgeError as exc:
            await self._fail_task(task, str(exc))
            return

        await self._record_worker_result(task_state, result)
        if result.stopped:
            await self._persist()
            return
        if not result.success:
            await self._fail_task(
                task, result.error or f"Worker ended at stage {result.stage} without success."
            )
            return

        try:
            if not await self._check_compliance(task, task_state, workspace, logs_dir):
                return
            await self._run_validators(task, task_state, workspace, logs_dir)
        except StateStoreError:
            raise
        except TaskforgeError as exc:
            await self._fail_task(task, str(exc))

    async def _record_worker_result(self, task_state: TaskState, result: WorkerResult) -> None:
        task_state.attempts = max(task_state.attempts, result.attempts)
        task_state.thread_id = result.thread_id or task_state.thread_id
        task_state.tokens_used += result.tokens_used
        self.state.tokens_used += result.tokens_used
        checkpoints = merge_checkpoint_commits(task_state.checkpoint_commits, result.checkpoints)
        if not checkpoint_lists_equal(task_state.checkpoint_commits, checkpoints):
            task_state.checkpoint_commits = checkpoints
            await self._persist()

    async def _run_validators(
        self, task: TaskSpec, task_state: TaskState, workspace: Path, logs_dir: Path
    ) -> None:
        validator_results = await self.validator_runner.validate(task, workspace, logs_dir)
        task_state.validator_results = validator_results
        for outcome in validator_results:
            self._emit(
                "validator.result",
                task.id,
                validator=outcome.validator,
                status=outcome.status,
                mode=outcome.mode,
            )
        blocking = [
            outcome
            for outcome in validator_results
            if outcome.mode == "block" and outcome.status != "pass"
        ]
        if blocking:
            first = blocking[0]
            task_state.status = "needs_human_review"
            task_state.human_review = HumanReview(
                validator=first.validator,
                reason=f"{first.validator} validator reported {first.status}",
                summary=first.summary,
                report_path=first.report_path,
            )
            task_state.completed_at = self.clock.iso_now()
            await self._persist()
            self._emit("task.blocked", task.id, validator=first.validator)
            return

        task_state.status = "complete"
        task_state.completed_at = self.clock.iso_now()
        await self._persist()
        self._emit("task.complete", task.id, attempts=task_state.attempts)

    async def _check_compliance(
        self, task: TaskSpec, task_state: TaskState, workspace: Path, logs_dir: Path
    ) -> bool:
        workflow = self.config.workflow
        changed = await asyncio.to_thread(
            GitRepository(workspace).list_changed_files, task_state.base_sha or "HEAD"
        )
        report = evaluate_compliance(
            task.manifest,
            changed,
            resources=self.config.resources,
            policy=workflow.compliance_policy,
            fallback_resource=workflow.fallback_resource,
        )
        report_path = write_compliance_report(logs_dir / "compliance.json", report)
        self._emit(
            "manifest.compliance." + ("skip" if report.status == "skipped" else report.status),
            task.id,
            violations=len(report.violations),
            report_path=str(report_path),
        )

        if report.status == "warn":
            rescope = compute_rescope(task.manifest, report)
            self._emit(
                "access.requested",
                task.id,
                status=rescope.status,
                added_locks=rescope.added_locks,
                added_files=rescope.added_files,
                reason=rescope.reason or describe_manifest_violations(report),
            )
            if rescope.status == "updated" and rescope.manifest is not None:
                rescoped_path = logs_dir / "manifest.rescoped.json"
                rescoped_path.write_text(
                    json.dumps(rescope.manifest.to_dict(), indent=2), encoding="utf-8"
                )

        try:
            enforce_compliance(report)
        except ScopeViolation as exc:
            await self._fail_task(task, str(exc), event="task.blocked")
            return False
        return True

    def _mark_conflicts(self, conflicts: list[MergeConflict]) -> None:
        for conflict in conflicts:
            task_state = self.state.task(conflict.branch.task_id)
            task_state.status = "needs_human_review"
            task_state.human_review = HumanReview(
                validator="merge",
                reason="merge_conflict",
                summary=truncate_text(conflict.message, 2000),
            )
            self._emit(
                "merge.conflict",
                conflict.branch.task_id,
                branch=conflict.branch.branch_name,
                message=truncate_text(conflict.message, 2000),
            )

    async def _mark_merged(
        self, task_ids: list[str], merge_commit: str | None, batch_state: BatchState | None
    ) -> None:
        for task_id in task_ids:
            self.state.task(task_id).merged = True
        if batch_state is not None:
            batch_state.merge_commit = merge_commit
        await self._persist()
        self._emit("merge.complete", task_ids=task_ids, merge_commit=merge_commit)
        for task_id in task_ids:
            task = self._by_id.get(task_id)
            if task is not None:
                await self.worker_runner.cleanup_task(self.state.run_id, task)

    def _branches_for(self, task_ids: list[str]) -> list[TaskBranch]:
        branches: list[TaskBranch] = []
        for task_id in task_ids:
            task_state = self.state.task(task_id)
            if task_state.status != "complete" or task_state.merged:
                continue
            if not task_state.branch or not task_state.workspace:
                raise GitError(f"Task {task_id} has no branch or workspace to merge.")
            branches.append(
                TaskBranch(
                    task_id=task_id,
                    branch_name=task_state.branch,
                    workspace_path=Path(task_state.workspace),
                )
            )
        return branches

    def _discard_temp_branch(self, temp: TempMergeResult) -> None:
        self.repo.checkout(self.config.project.main_branch)
        if self.repo.branch_exists(temp.temp_branch):
            self.repo.delete_branch(temp.temp_branch)

    async def _validate_integration(self, temp: TempMergeResult) -> bool:
        command = self.config.project.doctor_command
        if not command.strip():
            return True
        outcome = await run_verification_command(
            command, self.repo.repo_root, self.config.project.doctor_timeout_seconds
        )
        if outcome.ok:
            return True
        safe_name = temp.temp_branch.replace("/", "-")
        report_path = self.run_logs_dir(self.state.run_id) / f"{safe_name}.doctor.log"
        report_path.parent.mkdir(parents=True, exist_ok=True)
        report_path.write_text(outcome.output + "\n", encoding="utf-8")
        for branch in temp.merged:
            task_state = self.state.task(branch.task_id)
            task_state.status = "needs_human_review"
            task_state.human_review = HumanReview(
                validator="integration_doctor",
                reason="integration_doctor_failed",
                summary=truncate_text(outcome.output, 2000),
                report_path=str(report_path),
            )
        self._emit(
            "merge.blocked",
            reason="integration_doctor_failed",
            task_ids=[branch.task_id for branch in temp.merged],
        )
        return False

    async def _merge_tasks(self, task_ids: list[str], batch_state: BatchState | None) -> None:
        main_branch = self.config.project.main_branch
        async with self._merge_lock:
            if not self.config.workflow.use_temp_merge:
                branches = self._branches_for(task_ids)
                if not branches:
                    return
                result = await asyncio.to_thread(
                    merge_task_branches, self.repo, main_branch, branches
                )
                self._mark_conflicts(result.conflicts)
                merged_ids = [branch.task_id for branch in result.merged]
                if merged_ids:
                    await self._mark_merged(merged_ids, result.merge_commit, batch_state)
                else:
                    await self._persist()
                return

            temp_name = f"{self.config.workflow.task_branch_prefix}integration-{self.state.run_id}"
            last_message = ""
            for _ in range(MAX_MERGE_ROUNDS):
                branches = self._branches_for(task_ids)
                if not branches:
                    return
                temp = await asyncio.to_thread(
                    merge_task_branches_to_temp, self.repo, main_branch, temp_name, branches
                )
                self._mark_conflicts(temp.conflicts)
                if not temp.merged:
                    await asyncio.to_thread(self._discard_temp_branch, temp)
                    await self._persist()
                    return
                if not await self._validate_integration(temp):
                    await asyncio.to_thread(self._discard_temp_branch, temp)
                    await self._persist()
                    return

                outcome = await asyncio.to_thread(
                    fast_forward,
                    self.repo,
                    main_branch,
                    temp.temp_branch,
                    expected_base_sha=temp.base_sha,
                    cleanup_branch=temp.temp_branch,
                )
                match outcome:
                    case FastForwarded(head=head):
                        await self._mark_merged(
                            [branch.task_id for branch in temp.merged], head, batch_state
                        )
                        return
                    case FastForwardBlocked(reason="main_advanced", message=message):
                        last_message = message
                        self._emit("merge.blocked", reason="main_advanced", message=message)
                        await asyncio.to_thread(self._discard_temp_branch, temp)
                    case FastForwardBlocked(message=message):
                        await asyncio.to_thread(self._discard_temp_branch, temp)
                        raise GitError(message)

            logger.warning("Merge deferred after %d rounds: %s", MAX_MERGE_ROUNDS, last_message)
            self._emit(
                "merge.blocked", reason="deferred", task_ids=task_ids, message=last_message
            )
            await self._persist()
