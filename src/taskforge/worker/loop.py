from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from taskforge.backends.base import AgentTransport, BackendExecutionError, EventSink, TurnResult
from taskforge.errors import (
    ConfigError,
    GitError,
    MaxRetriesExceeded,
    TaskforgeError,
    TransportError,
    VerificationFailure,
)
from taskforge.manifest import TaskSpec
from taskforge.signals import StopToken
from taskforge.state.run_state import CheckpointCommit
from taskforge.vcs.git import GitRepository
from taskforge.worker.commands import run_verification_command, truncate_text
from taskforge.worker.commits import commit_checkpoint, commit_final
from taskforge.worker.prompts import build_implementation_prompt, build_stage_a_prompt
from taskforge.worker.reporting import (
    AttemptSummary,
    matches_any,
    out_of_scope_files,
    write_attempt_summary,
)
from taskforge.worker.state import WorkerStateStore

logger = logging.getLogger(__name__)

EVIDENCE_LIMIT = 2000


@dataclass(slots=True)
class WorkerConfig:
    task_id: str
    task_branch: str
    working_directory: Path
    run_logs_dir: Path
    doctor_command: str = ""
    doctor_timeout_seconds: float = 1200.0
    lint_command: str = ""
    lint_timeout_seconds: float = 600.0
    max_retries: int = 20
    bootstrap_commands: list[str] = field(default_factory=list)
    bootstrap_timeout_seconds: float = 1200.0
    checkpoint_commits: bool = True
    default_test_paths: list[str] = field(default_factory=list)


@dataclass(slots=True)
class WorkerResult:
    task_id: str
    success: bool
    attempts: int
    stage: str
    commit_sha: str | None = None
    stopped: bool = False
    thread_id: str | None = None
    tokens_used: int = 0
    checkpoints: list[CheckpointCommit] = field(default_factory=list)
    error: str | None = None


class _WorkerStopped(Exception):
    pass


class TaskWorker:
    """Drives one task through Stage A, implementation, lint, doctor and commit."""

    def __init__(
        self,
        task: TaskSpec,
        config: WorkerConfig,
        transport: AgentTransport,
        *,
        event_sink: EventSink | None = None,
        stop_token: StopToken | None = None,
    ) -> None:
        self.task = task
        self.config = config
        self.transport = transport
        self.event_sink = event_sink
        self.stop_token = stop_token
        self.repo = GitRepository(config.working_directory)
        self.state = WorkerStateStore(config.working_directory)
        self._stage = "init"
        self._attempt = 0
        self._tokens_used = 0

    @property
    def lint_command(self) -> str:
        return self.task.manifest.verify.lint or self.config.lint_command

    @property
    def doctor_command(self) -> str:
        return self.task.manifest.verify.doctor or self.config.doctor_command

    def _emit(self, event_type: str, **payload: Any) -> None:
        if self.event_sink is not None:
            self.event_sink({"type": event_type, "task_id": self.task.id, "payload": payload})

    def _forward_agent_event(self, event: dict[str, Any]) -> None:
        if self.event_sink is not None:
            self.event_sink({"task_id": self.task.id, **event})

    def _raise_if_stopped(self) -> None:
        if self.stop_token is not None and self.stop_token.is_set():
            raise _WorkerStopped()

    def _check_attempt_limit(self, attempt: int) -> None:
        limit = self.config.max_retries
        if limit > 0 and attempt > limit:
            raise MaxRetriesExceeded(self.task.id, limit)

    def _result(
        self,
        *,
        success: bool,
        stopped: bool = False,
        sha: str | None = None,
        error: str | None = None,
    ) -> WorkerResult:
        return WorkerResult(
            task_id=self.task.id,
            success=success,
            attempts=self._attempt,
            stage=self._stage,
            commit_sha=sha,
            stopped=stopped,
            thread_id=self.state.thread_id,
            tokens_used=self._tokens_used,
            checkpoints=self.state.checkpoints,
            error=error,
        )

    async def run(self) -> WorkerResult:
        if self.config.max_retries < 0:
            raise ConfigError("max_retries must be >= 0 (0 = unlimited).")

        self.repo.ensure_identity()
        self.repo.ensure_excluded(".taskforge/")
        self.state.load()

        try:
            self._raise_if_stopped()
            await self._run_bootstrap()
            attempt = self.state.next_attempt
            self._check_attempt_limit(attempt)
            if self.task.manifest.tdd_mode == "strict" and not self.state.state.stage_a_complete:
                attempt = await self._run_stage_a(attempt)
            return await self._run_implementation(attempt)
        except _WorkerStopped:
            logger.info("Task %s stopped during %s", self.task.id, self._stage)
            self._emit("task.stopped", attempt=self._attempt, stage=self._stage)
            return self._result(success=False, stopped=True)
        except MaxRetriesExceeded as exc:
            self._emit("task.failed", attempt=self._attempt, reason="max_retries_exceeded")
            return self._result(success=False, error=str(exc))
        except TaskforgeError as exc:
            logger.warning("Task %s aborted during %s: %s", self.task.id, self._stage, exc)
            self._emit("task.failed", attempt=self._attempt, reason=self._stage, error=str(exc))
            return self._result(success=False, error=str(exc))

    async def _run_bootstrap(self) -> None:
        self._stage = "bootstrap"
        for command in self.config.bootstrap_commands:
            result = await run_verification_command(
                command,
                self.config.working_directory,
                self.config.bootstrap_timeout_seconds,
            )
            self._emit("bootstrap.command", **result.to_dict())
            if not result.ok:
                raise TaskforgeError(
                    f"Bootstrap failed.\n{command}\n{truncate_text(result.output, EVIDENCE_LIMIT)}"
                )

    async def _run_turn(self, prompt: str, attempt: int) -> TurnResult:
        self._emit("turn.start", attempt=attempt, stage=self._stage)
        result = await self.transport.run_turn(
            prompt,
            working_directory=self.config.working_directory,
            session_id=self.state.thread_id,
            event_sink=self._forward_agent_event,
        )
        if result.session_id and result.session_id != self.state.thread_id:
            self.state.record_thread_id(result.session_id)
        self._tokens_used += result.tokens_used
        if not result.success:
            raise BackendExecutionError(result.error or "Agent turn did not complete.")
        self._emit("turn.complete", attempt=attempt, tokens_used=result.tokens_used)
        return result

    def _record_retry(
        self, summary: AttemptSummary, reason_code: str, evidence: str = ""
    ) -> None:
        summary.set_retry(reason_code, truncate_text(evidence, EVIDENCE_LIMIT))
        write_attempt_summary(self.config.run_logs_dir, summary)
        logger.info("Task %s attempt %d retry: %s", self.task.id, summary.attempt, reason_code)
        self._emit("task.retry", attempt=summary.attempt, reason_code=reason_code)

    def _record_git_retry(self, summary: AttemptSummary, exc: GitError) -> dict[str, str]:
        self._record_retry(summary, "git_error", str(exc))
        return {"type": "git", "output": str(exc)}

    def _head(self) -> str | None:
        return self.repo.head_sha() if self.repo.has_commits() else None

    async def _checkpoint(self, attempt: int) -> None:
        sha = await asyncio.to_thread(commit_checkpoint, self.repo, self.task.id, attempt)
        if sha is None:
            self._emit("git.checkpoint.skip", attempt=attempt)
            return
        self.state.record_checkpoint(attempt, sha)
        self._emit("git.checkpoint", attempt=attempt, sha=sha)

    async def _verify(
        self, kind: str, command: str, timeout_seconds: float, summary: AttemptSummary
    ) -> None:
        self._stage = kind
        result = await run_verification_command(
            command, self.config.working_directory, timeout_seconds
        )
        summary.commands[kind] = result.to_dict()
        if not result.ok:
            raise VerificationFailure(kind, result.output)

    async def _run_stage_a(self, attempt: int) -> int:
        manifest = self.task.manifest
        test_paths = manifest.test_paths or self.config.default_test_paths
        if not manifest.verify.fast:
            self._emit("tdd.stage.skip", reason="missing_fast_command")
            return attempt
        if not test_paths:
            self._emit("tdd.stage.skip", reason="missing_test_paths")
            return attempt

        self._stage = "tdd_stage_a"
        self._emit("tdd.stage.start", attempt=attempt, test_paths=test_paths)
        last_failure: dict[str, str] | None = None
        while True:
            self._raise_if_stopped()
            self._check_attempt_limit(attempt)
            self._attempt = attempt
            self._stage = "tdd_stage_a"
            self.state.record_attempt_start(attempt)
            summary = AttemptSummary(
                task_id=self.task.id,
                attempt=attempt,
                phase="tdd_stage_a",
                prompt_kind="retry" if last_failure else "initial",
                declared_write_globs=list(test_paths),
                tdd={"fast_command": manifest.verify.fast, "test_paths": list(test_paths)},
            )

            try:
                prompt = build_stage_a_prompt(self.task, test_paths, last_failure)
                await self._run_turn(prompt, attempt)
            except TransportError as exc:
                last_failure = {"type": "codex", "output": str(exc)}
                self._record_retry(summary, "codex_error", str(exc))
                self._emit("tdd.stage.fail", attempt=attempt, reason_code="codex_error")
                attempt += 1
                continue

            try:
                changed = await asyncio.to_thread(self.repo.changed_paths)
                summary.changed_files = changed
                non_test = [path for path in changed if not matches_any(path, test_paths)]
                if non_test:
                    await asyncio.to_thread(self.repo.revert_paths, non_test)
            except GitError as exc:
                last_failure = self._record_git_retry(summary, exc)
                self._emit("tdd.stage.fail", attempt=attempt, reason_code="git_error")
                attempt += 1
                continue
            if non_test:
                summary.out_of_scope_files = non_test
                evidence = "Reverted non-test changes: " + ", ".join(non_test)
                last_failure = {"type": "command", "output": evidence}
                self._record_retry(summary, "non_test_changes", evidence)
                self._emit("tdd.stage.fail", attempt=attempt, reason_code="non_test_changes")
                attempt += 1
                continue

            fast = await run_verification_command(
                manifest.verify.fast,
                self.config.working_directory,
                self.config.doctor_timeout_seconds,
            )
            summary.commands["fast"] = fast.to_dict()
            if fast.timed_out or fast.exit_code == 127:
                last_failure = {"type": "command", "output": fast.output}
                self._record_retry(summary, "fast_error", fast.output)
                self._emit("tdd.stage.fail", attempt=attempt, reason_code="fast_error")
                attempt += 1
                continue
            if fast.exit_code == 0:
                last_failure = {
                    "type": "command",
                    "output": "verify.fast passed unexpectedly; tests must fail first.",
                }
                self._record_retry(summary, "fast_passed", fast.output)
                self._emit("tdd.stage.fail", attempt=attempt, reason_code="fast_passed")
                attempt += 1
                continue

            if self.config.checkpoint_commits:
                try:
                    await self._checkpoint(attempt)
                except GitError as exc:
                    last_failure = self._record_git_retry(summary, exc)
                    self._emit("tdd.stage.fail", attempt=attempt, reason_code="git_error")
                    attempt += 1
                    continue
            write_attempt_summary(self.config.run_logs_dir, summary)
            self.state.mark_stage_a_complete()
            self._emit("tdd.stage.pass", attempt=attempt)
            return attempt + 1

    async def _run_implementation(self, attempt: int) -> WorkerResult:
        declared_writes = list(self.task.manifest.files.writes)
        last_failure: dict[str, str] | None = None
        while True:
            self._raise_if_stopped()
            self._check_attempt_limit(attempt)
            self._attempt = attempt
            self._stage = "implementation"
            self.state.record_attempt_start(attempt)
            summary = AttemptSummary(
                task_id=self.task.id,
                attempt=attempt,
                phase="implementation",
                prompt_kind="retry" if last_failure else "initial",
                declared_write_globs=declared_writes,
            )
            prompt = build_implementation_prompt(
                self.task,
                lint_command=self.lint_command,
                doctor_command=self.doctor_command,
                last_failure=last_failure,
            )

            try:
                await self._run_turn(prompt, attempt)
            except TransportError as exc:
                last_failure = {"type": "codex", "output": str(exc)}
                self._record_retry(summary, "codex_error", str(exc))
                attempt += 1
                continue

            try:
                summary.changed_files = await asyncio.to_thread(self.repo.changed_paths)
                summary.out_of_scope_files = out_of_scope_files(
                    summary.changed_files, declared_writes
                )
                if summary.out_of_scope_files:
                    self._emit(
                        "scope.divergence",
                        attempt=attempt,
                        out_of_scope_files=summary.out_of_scope_files,
                    )
                if self.config.checkpoint_commits:
                    await self._checkpoint(attempt)
            except GitError as exc:
                last_failure = self._record_git_retry(summary, exc)
                attempt += 1
                continue
            self._raise_if_stopped()

            try:
                if self.lint_command:
                    await self._verify(
                        "lint", self.lint_command, self.config.lint_timeout_seconds, summary
                    )
                await self._verify(
                    "doctor", self.doctor_command, self.config.doctor_timeout_seconds, summary
                )
            except VerificationFailure as exc:
                last_failure = {"type": exc.kind, "output": exc.output}
                self._record_retry(summary, f"{exc.kind}_failed", exc.output)
                attempt += 1
                continue

            self._stage = "commit"
            try:
                sha = await asyncio.to_thread(
                    commit_final, self.repo, self.task.id, self.task.name
                )
                head = await asyncio.to_thread(self._head)
            except GitError as exc:
                last_failure = self._record_git_retry(summary, exc)
                attempt += 1
                continue
            write_attempt_summary(self.config.run_logs_dir, summary)
            if sha is None:
                self._emit("git.commit.skip", attempt=attempt)
            else:
                self._emit("git.commit", attempt=attempt, sha=sha)
            self._stage = "complete"
            self._emit("task.complete", attempt=attempt, sha=head)
            return self._result(success=True, sha=head)


async def run_worker(
    task: TaskSpec,
    config: WorkerConfig,
    transport: AgentTransport,
    *,
    event_sink: EventSink | None = None,
    stop_token: StopToken | None = None,
) -> WorkerResult:
    worker = TaskWorker(
        task, config, transport, event_sink=event_sink, stop_token=stop_token
    )
    return await worker.run()
