import asyncio
import json
import subprocess
from collections.abc import Callable
from pathlib import Path
from typing import Any

from taskforge.backends.base import AgentTransport, EventSink, TurnResult
from taskforge.config import ResourceConfig, TaskforgeConfig, ValidatorConfig
from taskforge.engine import RunEngine, RunOptions
from taskforge.errors import GitError
from taskforge.events import read_events
from taskforge.manifest import TaskManifest, TaskSpec
from taskforge.signals import StopToken
from taskforge.state import RunStateStore, ValidatorResult
from taskforge.validators import CommandValidatorRunner, ValidatorRunner
from taskforge.vcs import GitRepository
from taskforge.workers import LocalWorkerRunner


class FileTransport(AgentTransport):
    """Writes one file per task so the task's doctor check can pass."""

    def __init__(
        self,
        *,
        skip: set[str] | None = None,
        filename: Callable[[str], str] = lambda task_id: f"{task_id}.txt",
        on_turn: Callable[[str], None] | None = None,
    ) -> None:
        self.skip = skip or set()
        self.filename = filename
        self.on_turn = on_turn
        self.calls: list[tuple[str, str | None]] = []

    async def run_turn(
        self,
        prompt: str,
        *,
        working_directory: Path,
        session_id: str | None = None,
        event_sink: EventSink | None = None,
    ) -> TurnResult:
        task_id = prompt.split("task ", 1)[1].split(":", 1)[0]
        self.calls.append((task_id, session_id))
        if task_id not in self.skip:
            (working_directory / self.filename(task_id)).write_text(
                f"{task_id}\n", encoding="utf-8"
            )
        if self.on_turn is not None:
            self.on_turn(task_id)
        return TurnResult(
            success=True,
            session_id=f"thread-{task_id}",
            usage={"input_tokens": 3, "output_tokens": 2},
        )


def _run(cmd: list[str], cwd: Path) -> str:
    proc = subprocess.run(cmd, cwd=cwd, check=True, text=True, capture_output=True)
    return proc.stdout.strip()


def _init_git_repo(repo_path: Path) -> None:
    repo_path.mkdir(parents=True)
    _run(["git", "init", "-b", "main"], cwd=repo_path)
    _run(["git", "config", "user.email", "test@example.com"], cwd=repo_path)
    _run(["git", "config", "user.name", "Test User"], cwd=repo_path)
    (repo_path / "shared.txt").write_text("base\n", encoding="utf-8")
    _run(["git", "add", "shared.txt"], cwd=repo_path)
    _run(["git", "commit", "-m", "seed"], cwd=repo_path)


def _task(task_id: str, *, doctor: str | None = None, **extra: Any) -> TaskSpec:
    payload: dict[str, Any] = {
        "id": task_id,
        "name": f"Task {task_id}",
        "verify": {"doctor": doctor or f"test -f {task_id}.txt"},
    }
    payload.update(extra)
    return TaskSpec(manifest=TaskManifest.from_dict(payload), spec=f"Create {task_id}.txt.")


def _config(**workflow: Any) -> TaskforgeConfig:
    config = TaskforgeConfig.default()
    config.project.name = "demo"
    config.project.doctor_command = "true"
    config.workflow.max_retries = 2
    for key, value in workflow.items():
        setattr(config.workflow, key, value)
    return config


def _engine(
    repo_path: Path,
    tasks: list[TaskSpec],
    transport: AgentTransport,
    config: TaskforgeConfig | None = None,
    events: list[dict[str, Any]] | None = None,
    stop_grace_seconds: float = 30.0,
) -> RunEngine:
    config = config or _config()
    repo = GitRepository(repo_path, branch_prefix=config.workflow.task_branch_prefix)
    return RunEngine(
        config=config,
        repo=repo,
        tasks=tasks,
        worker_runner=LocalWorkerRunner(
            config, repo, lambda: transport, stop_grace_seconds=stop_grace_seconds
        ),
        validator_runner=CommandValidatorRunner(config.validators),
        state_store=RunStateStore(repo_path / config.state.dir),
        event_sink=events.append if events is not None else None,
    )


def test_run_merges_independent_tasks(tmp_path: Path) -> None:
    repo_path = tmp_path / "repo"
    _init_git_repo(repo_path)
    events: list[dict[str, Any]] = []
    engine = _engine(
        repo_path, [_task("001"), _task("002")], FileTransport(), events=events
    )

    result = asyncio.run(engine.run(RunOptions(run_id="run-1")))

    assert result.status == "complete"
    assert [batch.task_ids for batch in result.plan] == [["001", "002"]]
    assert result.state is not None
    for task_id in ("001", "002"):
        task = result.state.tasks[task_id]
        assert task.status == "complete"
        assert task.merged is True
        assert task.branch == f"agent/{task_id}-task-{task_id}"
        assert (repo_path / f"{task_id}.txt").exists()
    assert result.state.tokens_used == 10
    assert result.state.batches[0].merge_commit == GitRepository(repo_path).head_sha("main")
    assert GitRepository(repo_path).current_branch() == "main"
    assert not (repo_path / ".taskforge" / "workspaces" / "run-1" / "001-task-001").exists()

    stored = RunStateStore(repo_path / ".taskforge" / "state").load("demo", "run-1")
    assert stored.status == "complete"
    log_types = [
        event["type"]
        for event in read_events(repo_path / ".taskforge" / "logs" / "run-1" / "orchestrator.jsonl")
    ]
    assert log_types[0] == "run.start"
    assert "merge.complete" in log_types
    assert log_types[-1] == "run.complete"
    assert any(event.get("type") == "git.commit" for event in events)


def test_dry_run_only_plans(tmp_path: Path) -> None:
    repo_path = tmp_path / "repo"
    _init_git_repo(repo_path)
    transport = FileTransport()
    tasks = [_task("001", locks={"writes": ["db"]}), _task("002", locks={"writes": ["db"]})]

    result = asyncio.run(_engine(repo_path, tasks, transport).run(RunOptions(dry_run=True)))

    assert result.status == "planned"
    assert [batch.task_ids for batch in result.plan] == [["001"], ["002"]]
    assert transport.calls == []
    assert not (repo_path / ".taskforge" / "state").exists()


def test_compliance_block_fails_task_and_skips_dependents(tmp_path: Path) -> None:
    repo_path = tmp_path / "repo"
    _init_git_repo(repo_path)
    config = _config(compliance_policy="block")
    config.resources = [ResourceConfig(name="api", paths=["src/api/*"])]
    events: list[dict[str, Any]] = []
    tasks = [_task("001"), _task("002", dependencies=["001"])]

    result = asyncio.run(
        _engine(repo_path, tasks, FileTransport(), config, events).run(RunOptions(run_id="r"))
    )

    assert result.status == "failed"
    assert result.state is not None
    assert result.state.tasks["001"].status == "failed"
    assert "manifest compliance" in (result.state.tasks["001"].last_error or "")
    assert result.state.tasks["001"].merged is False
    assert result.state.tasks["002"].status == "skipped"
    assert not (repo_path / "001.txt").exists()
    assert "manifest.compliance.block" in [event["type"] for event in events]
    compliance_report = (
        repo_path / ".taskforge" / "logs" / "r" / "tasks" / "001-task-001" / "compliance.json"
    )
    assert compliance_report.exists()


def test_blocking_validator_requests_human_review(tmp_path: Path) -> None:
    repo_path = tmp_path / "repo"
    _init_git_repo(repo_path)
    config = _config()
    config.validators = [ValidatorConfig(name="tests", command="false", mode="block")]

    result = asyncio.run(
        _engine(repo_path, [_task("001")], FileTransport(), config).run(RunOptions())
    )

    assert result.status == "failed"
    assert result.state is not None
    task = result.state.tasks["001"]
    assert task.status == "needs_human_review"
    assert task.human_review is not None
    assert task.human_review.validator == "tests"
    assert task.validator_results[0].status == "fail"
    assert task.merged is False


def test_merge_conflict_is_isolated_to_one_task(tmp_path: Path) -> None:
    repo_path = tmp_path / "repo"
    _init_git_repo(repo_path)
    tasks = [
        _task("001", doctor="test -f shared.txt"),
        _task("002", doctor="test -f shared.txt"),
    ]
    transport = FileTransport(filename=lambda task_id: "shared.txt")

    result = asyncio.run(_engine(repo_path, tasks, transport).run(RunOptions()))

    assert result.state is not None
    assert result.state.tasks["001"].merged is True
    conflicted = result.state.tasks["002"]
    assert conflicted.status == "needs_human_review"
    assert conflicted.human_review is not None
    assert conflicted.human_review.reason == "merge_conflict"
    assert (repo_path / "shared.txt").read_text(encoding="utf-8") == "001\n"
    assert result.status == "failed"


def test_resume_skips_completed_tasks(tmp_path: Path) -> None:
    repo_path = tmp_path / "repo"
    _init_git_repo(repo_path)
    tasks = [_task("001"), _task("002")]

    first = asyncio.run(
        _engine(repo_path, tasks, FileTransport(skip={"002"})).run(RunOptions(run_id="run-r"))
    )
    assert first.status == "failed"
    assert first.state is not None
    assert first.state.tasks["002"].status == "failed"
    assert "Max retries exceeded" in (first.state.tasks["002"].last_error or "")

    transport = FileTransport()
    second = asyncio.run(
        _engine(repo_path, tasks, transport).run(RunOptions(run_id="run-r", resume=True))
    )

    assert second.status == "complete"
    assert [task_id for task_id, _ in transport.calls] == ["002"]
    assert (repo_path / "002.txt").exists()


def test_stopped_run_resumes_from_checkpoint(tmp_path: Path) -> None:
    repo_path = tmp_path / "repo"
    _init_git_repo(repo_path)
    token = StopToken()
    stopping = FileTransport(on_turn=lambda task_id: token.request("SIGINT"))

    stopped = asyncio.run(
        _engine(repo_path, [_task("001")], stopping).run(RunOptions(run_id="run-s"), token)
    )

    assert stopped.status == "stopped"
    assert stopped.stopped is not None
    assert stopped.stopped["signal"] == "SIGINT"
    assert stopped.stopped["workers"] == "stopped"
    assert stopped.state is not None
    task = stopped.state.tasks["001"]
    assert task.status == "running"
    assert [item.attempt for item in task.checkpoint_commits] == [1]
    assert not (repo_path / "001.txt").exists()

    transport = FileTransport()
    resumed = asyncio.run(
        _engine(repo_path, [_task("001")], transport).run(RunOptions(resume=True))
    )

    assert resumed.run_id == "run-s"
    assert resumed.status == "complete"
    assert transport.calls == [("001", "thread-001")]
    assert resumed.state is not None
    assert resumed.state.tasks["001"].attempts == 2
    assert (repo_path / "001.txt").exists()


def test_exhausted_retries_keep_attempts_and_usage(tmp_path: Path) -> None:
    repo_path = tmp_path / "repo"
    _init_git_repo(repo_path)

    result = asyncio.run(
        _engine(repo_path, [_task("001")], FileTransport(skip={"001"})).run(
            RunOptions(run_id="run-x")
        )
    )

    assert result.status == "failed"
    assert result.state is not None
    task = result.state.tasks["001"]
    assert task.status == "failed"
    assert task.attempts == 2
    assert task.thread_id == "thread-001"
    assert task.tokens_used == 10
    assert result.state.tokens_used == 10
    assert "Max retries exceeded (2)" in (task.last_error or "")


def test_main_advancing_during_merge_defers_until_resume(tmp_path: Path) -> None:
    repo_path = tmp_path / "repo"
    _init_git_repo(repo_path)
    config = _config()
    # Moves main forward behind the integration branch on every merge round.
    config.project.doctor_command = (
        "git update-ref refs/heads/main $(git commit-tree -p main -m advance 'main^{tree}')"
    )
    events: list[dict[str, Any]] = []

    deferred = asyncio.run(
        _engine(repo_path, [_task("001")], FileTransport(), config, events).run(
            RunOptions(run_id="run-m")
        )
    )

    assert deferred.status == "failed"
    assert deferred.state is not None
    task = deferred.state.tasks["001"]
    assert task.status == "complete"
    assert task.merged is False
    reasons = [
        event["payload"]["reason"] for event in events if event["type"] == "merge.blocked"
    ]
    assert reasons == ["main_advanced", "main_advanced", "main_advanced", "deferred"]
    assert not (repo_path / "001.txt").exists()
    assert GitRepository(repo_path).current_branch() == "main"

    transport = FileTransport()
    resumed = asyncio.run(
        _engine(repo_path, [_task("001")], transport).run(RunOptions(run_id="run-m", resume=True))
    )

    assert resumed.status == "complete"
    assert resumed.state is not None
    assert resumed.state.tasks["001"].merged is True
    assert transport.calls == []
    assert (repo_path / "001.txt").exists()


def test_integration_doctor_failure_requests_review(tmp_path: Path) -> None:
    repo_path = tmp_path / "repo"
    _init_git_repo(repo_path)
    config = _config()
    config.project.doctor_command = "false"

    result = asyncio.run(
        _engine(repo_path, [_task("001")], FileTransport(), config).run(
            RunOptions(run_id="run-d")
        )
    )

    assert result.status == "failed"
    assert result.state is not None
    task = result.state.tasks["001"]
    assert task.status == "needs_human_review"
    assert task.merged is False
    assert task.human_review is not None
    assert task.human_review.validator == "integration_doctor"
    assert Path(task.human_review.report_path or "").exists()
    repo = GitRepository(repo_path)
    assert repo.current_branch() == "main"
    assert not repo.branch_exists("agent/integration-run-d")
    assert not (repo_path / "001.txt").exists()


def test_compliance_warn_records_rescope_and_still_merges(tmp_path: Path) -> None:
    repo_path = tmp_path / "repo"
    _init_git_repo(repo_path)
    config = _config(compliance_policy="warn")
    config.resources = [ResourceConfig(name="root", paths=["*.txt"])]
    events: list[dict[str, Any]] = []

    result = asyncio.run(
        _engine(repo_path, [_task("001")], FileTransport(), config, events).run(
            RunOptions(run_id="run-w")
        )
    )

    assert result.status == "complete"
    assert result.state is not None
    assert result.state.tasks["001"].merged is True
    event_types = [event["type"] for event in events]
    assert "manifest.compliance.warn" in event_types
    requested = next(event for event in events if event["type"] == "access.requested")
    assert requested["payload"]["status"] == "updated"
    assert requested["payload"]["added_locks"] == ["root"]
    assert requested["payload"]["added_files"] == ["001.txt"]
    task_logs = repo_path / ".taskforge" / "logs" / "run-w" / "tasks" / "001-task-001"
    rescoped = json.loads((task_logs / "manifest.rescoped.json").read_text(encoding="utf-8"))
    assert rescoped["locks"]["writes"] == ["root"]
    assert rescoped["files"]["writes"] == ["001.txt"]


def test_direct_merge_without_integration_branch(tmp_path: Path) -> None:
    repo_path = tmp_path / "repo"
    _init_git_repo(repo_path)
    config = _config(use_temp_merge=False)

    result = asyncio.run(
        _engine(repo_path, [_task("001"), _task("002")], FileTransport(), config).run(
            RunOptions(run_id="run-n")
        )
    )

    assert result.status == "complete"
    assert result.state is not None
    repo = GitRepository(repo_path)
    assert result.state.batches[0].merge_commit == repo.head_sha("main")
    assert _run(["git", "branch", "--list", "agent/integration*"], cwd=repo_path) == ""
    assert (repo_path / "001.txt").exists()
    assert (repo_path / "002.txt").exists()


class HangingTransport(AgentTransport):
    """Requests a stop and then never finishes its turn on its own."""

    def __init__(self, token: StopToken) -> None:
        self.token = token

    async def run_turn(
        self,
        prompt: str,
        *,
        working_directory: Path,
        session_id: str | None = None,
        event_sink: EventSink | None = None,
    ) -> TurnResult:
        _ = prompt, working_directory, session_id, event_sink
        self.token.request("SIGTERM")
        await asyncio.sleep(30)
        return TurnResult(success=True)


def test_stop_tears_down_in_flight_worker(tmp_path: Path) -> None:
    repo_path = tmp_path / "repo"
    _init_git_repo(repo_path)
    token = StopToken()
    engine = _engine(
        repo_path, [_task("001")], HangingTransport(token), stop_grace_seconds=0.1
    )

    result = asyncio.run(engine.run(RunOptions(run_id="run-t"), token))

    assert result.status == "stopped"
    assert result.stopped is not None
    assert result.stopped["signal"] == "SIGTERM"
    assert result.stopped["workers"] == "stopped"
    assert result.stopped["stopped_workers"] == 1
    assert result.state is not None
    assert result.state.tasks["001"].status == "running"
    assert result.state.batches[0].status == "stopped"


class BrokenGitValidators(ValidatorRunner):
    def __init__(self, failing_task: str) -> None:
        self.failing_task = failing_task

    async def validate(
        self, task: TaskSpec, workspace: Path, logs_dir: Path
    ) -> list[ValidatorResult]:
        _ = workspace, logs_dir
        if task.id == self.failing_task:
            raise GitError("git diff failed: bad object")
        return []


def test_post_worker_git_failure_is_contained_to_its_task(tmp_path: Path) -> None:
    repo_path = tmp_path / "repo"
    _init_git_repo(repo_path)
    config = _config()
    repo = GitRepository(repo_path)
    engine = RunEngine(
        config=config,
        repo=repo,
        tasks=[_task("001"), _task("002")],
        worker_runner=LocalWorkerRunner(config, repo, FileTransport),
        validator_runner=BrokenGitValidators("001"),
        state_store=RunStateStore(repo_path / config.state.dir),
    )

    result = asyncio.run(engine.run(RunOptions(run_id="run-g")))

    assert result.status == "failed"
    assert result.state is not None
    assert result.state.tasks["001"].status == "failed"
    assert "bad object" in (result.state.tasks["001"].last_error or "")
    assert result.state.tasks["002"].merged is True
    assert (repo_path / "002.txt").exists()
