import asyncio
import json
import subprocess
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from taskforge.backends.base import AgentTransport, EventSink, TurnResult
from taskforge.errors import ConfigError, MaxRetriesExceeded
from taskforge.manifest import TaskManifest, TaskSpec
from taskforge.signals import StopToken
from taskforge.worker import WorkerConfig, WorkerStateStore, run_worker
from taskforge.worker.commands import run_verification_command

TurnAction = Callable[[Path], TurnResult | None]


class ScriptedTransport(AgentTransport):
    """Runs one scripted action per turn against the workspace."""

    def __init__(self, actions: list[TurnAction]) -> None:
        self.actions = list(actions)
        self.prompts: list[str] = []
        self.session_ids: list[str | None] = []

    async def run_turn(
        self,
        prompt: str,
        *,
        working_directory: Path,
        session_id: str | None = None,
        event_sink: EventSink | None = None,
    ) -> TurnResult:
        self.prompts.append(prompt)
        self.session_ids.append(session_id)
        action = self.actions.pop(0) if self.actions else None
        outcome = action(working_directory) if action is not None else None
        if outcome is not None:
            return outcome
        return TurnResult(
            success=True,
            session_id="thread-1",
            usage={"input_tokens": 10, "output_tokens": 5},
        )


def _write(relative: str, content: str = "x\n") -> TurnAction:
    def _action(workspace: Path) -> None:
        target = workspace / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")

    return _action


def _noop(workspace: Path) -> None:
    _ = workspace


def _fail(workspace: Path) -> TurnResult:
    _ = workspace
    return TurnResult(success=False, error="agent crashed")


def _run(cmd: list[str], cwd: Path) -> str:
    proc = subprocess.run(cmd, cwd=cwd, check=True, text=True, capture_output=True)
    return proc.stdout.strip()


def _init_workspace(path: Path) -> Path:
    path.mkdir(parents=True)
    _run(["git", "init", "-b", "main"], cwd=path)
    _run(["git", "config", "user.email", "test@example.com"], cwd=path)
    _run(["git", "config", "user.name", "Test User"], cwd=path)
    (path / "README.md").write_text("seed\n", encoding="utf-8")
    _run(["git", "add", "README.md"], cwd=path)
    _run(["git", "commit", "-m", "seed"], cwd=path)
    _run(["git", "checkout", "-b", "agent/001-add-feature"], cwd=path)
    return path


def _task(**extra: Any) -> TaskSpec:
    payload: dict[str, Any] = {
        "id": "001",
        "name": "Add feature",
        "verify": {"doctor": "test -f feature.txt"},
        "files": {"writes": ["feature.txt"]},
    }
    payload.update(extra)
    return TaskSpec(manifest=TaskManifest.from_dict(payload), spec="Create feature.txt.")


def _config(workspace: Path, logs: Path, **overrides: Any) -> WorkerConfig:
    values: dict[str, Any] = {
        "task_id": "001",
        "task_branch": "agent/001-add-feature",
        "working_directory": workspace,
        "run_logs_dir": logs,
        "doctor_timeout_seconds": 30.0,
        "lint_timeout_seconds": 30.0,
    }
    values.update(overrides)
    return WorkerConfig(**values)


def test_worker_commits_after_doctor_passes(tmp_path: Path) -> None:
    workspace = _init_workspace(tmp_path / "ws")
    logs = tmp_path / "logs"
    events: list[dict[str, Any]] = []
    transport = ScriptedTransport([_write("feature.txt")])

    result = asyncio.run(
        run_worker(_task(), _config(workspace, logs), transport, event_sink=events.append)
    )

    assert result.success is True
    assert result.attempts == 1
    assert result.thread_id == "thread-1"
    assert result.tokens_used == 15
    assert [item.attempt for item in result.checkpoints] == [1]
    assert _run(["git", "log", "-1", "--pretty=%s"], cwd=workspace) == "[FEAT] 001 Add feature"
    assert _run(["git", "rev-list", "--count", "HEAD"], cwd=workspace) == "2"
    assert result.commit_sha == _run(["git", "rev-parse", "HEAD"], cwd=workspace)

    summary = json.loads((logs / "attempt-001.summary.json").read_text(encoding="utf-8"))
    assert summary["changed_files"] == ["feature.txt"]
    assert summary["commands"]["doctor"]["exit_code"] == 0
    assert summary["retry"] is None

    event_types = [event.get("type") for event in events]
    assert "git.checkpoint" in event_types
    assert event_types[-1] == "task.complete"


def test_worker_retries_with_failure_context(tmp_path: Path) -> None:
    workspace = _init_workspace(tmp_path / "ws")
    logs = tmp_path / "logs"
    events: list[dict[str, Any]] = []
    transport = ScriptedTransport([_fail, _noop, _write("feature.txt")])

    result = asyncio.run(
        run_worker(_task(), _config(workspace, logs), transport, event_sink=events.append)
    )

    assert result.success is True
    assert result.attempts == 3
    retries = [
        event["payload"]["reason_code"] for event in events if event.get("type") == "task.retry"
    ]
    assert retries == ["codex_error", "doctor_failed"]
    assert "previous attempt failed (codex)" in transport.prompts[1]
    assert "previous attempt failed (doctor)" in transport.prompts[2]
    assert transport.session_ids[2] == "thread-1"

    doctor_summary = json.loads((logs / "attempt-002.summary.json").read_text(encoding="utf-8"))
    assert doctor_summary["retry"]["reason_code"] == "doctor_failed"
    assert doctor_summary["prompt_kind"] == "retry"


def test_worker_reports_scope_divergence(tmp_path: Path) -> None:
    workspace = _init_workspace(tmp_path / "ws")
    events: list[dict[str, Any]] = []

    def _write_both(path: Path) -> None:
        (path / "feature.txt").write_text("x\n", encoding="utf-8")
        (path / "extra.txt").write_text("y\n", encoding="utf-8")

    result = asyncio.run(
        run_worker(
            _task(),
            _config(workspace, tmp_path / "logs"),
            ScriptedTransport([_write_both]),
            event_sink=events.append,
        )
    )

    assert result.success is True
    divergence = [event for event in events if event.get("type") == "scope.divergence"]
    assert divergence[0]["payload"]["out_of_scope_files"] == ["extra.txt"]


def test_worker_stops_at_max_retries(tmp_path: Path) -> None:
    workspace = _init_workspace(tmp_path / "ws")
    events: list[dict[str, Any]] = []
    transport = ScriptedTransport([])

    result = asyncio.run(
        run_worker(
            _task(),
            _config(workspace, tmp_path / "logs", max_retries=2),
            transport,
            event_sink=events.append,
        )
    )

    assert result.success is False
    assert result.error == str(MaxRetriesExceeded("001", 2))
    assert result.attempts == 2
    assert result.thread_id == "thread-1"
    assert result.tokens_used == 30
    assert [item.attempt for item in result.checkpoints] == []
    assert len(transport.prompts) == 2
    assert events[-1]["type"] == "task.failed"


def test_worker_lint_override_from_manifest(tmp_path: Path) -> None:
    workspace = _init_workspace(tmp_path / "ws")
    logs = tmp_path / "logs"
    task = _task(verify={"doctor": "test -f feature.txt", "lint": "test -f lint-ok.txt"})
    transport = ScriptedTransport([_write("feature.txt"), _write("lint-ok.txt")])

    result = asyncio.run(
        run_worker(task, _config(workspace, logs, lint_command="false"), transport)
    )

    assert result.attempts == 2
    first = json.loads((logs / "attempt-001.summary.json").read_text(encoding="utf-8"))
    assert first["retry"]["reason_code"] == "lint_failed"
    assert first["commands"]["lint"]["command"] == "test -f lint-ok.txt"


def test_stage_a_reverts_non_test_changes_and_amends_checkpoint(tmp_path: Path) -> None:
    workspace = _init_workspace(tmp_path / "ws")
    logs = tmp_path / "logs"
    events: list[dict[str, Any]] = []
    task = _task(
        tdd_mode="strict",
        test_paths=["tests/**"],
        verify={"doctor": "test -f feature.txt", "fast": "test -f feature.txt"},
    )
    transport = ScriptedTransport(
        [
            _write("feature.txt"),
            _write("tests/test_feature.py"),
            _write("feature.txt"),
        ]
    )

    result = asyncio.run(
        run_worker(task, _config(workspace, logs), transport, event_sink=events.append)
    )

    assert result.success is True
    assert result.attempts == 3
    stage_events = [
        (event["type"], event["payload"].get("reason_code"))
        for event in events
        if str(event.get("type", "")).startswith("tdd.stage.")
    ]
    assert stage_events == [
        ("tdd.stage.start", None),
        ("tdd.stage.fail", "non_test_changes"),
        ("tdd.stage.pass", None),
    ]
    assert _run(["git", "rev-list", "--count", "HEAD"], cwd=workspace) == "2"
    committed = _run(["git", "show", "--name-only", "--pretty=", "HEAD"], cwd=workspace)
    assert committed.splitlines() == ["feature.txt", "tests/test_feature.py"]
    assert WorkerStateStore(workspace).state.stage_a_complete is True


def test_stage_a_rejects_tests_that_already_pass(tmp_path: Path) -> None:
    workspace = _init_workspace(tmp_path / "ws")
    events: list[dict[str, Any]] = []
    task = _task(
        tdd_mode="strict", test_paths=["tests/**"], verify={"doctor": "true", "fast": "true"}
    )

    result = asyncio.run(
        run_worker(
            task,
            _config(workspace, tmp_path / "logs", max_retries=1),
            ScriptedTransport([_write("tests/test_feature.py")]),
            event_sink=events.append,
        )
    )

    assert result.success is False
    assert result.stage == "tdd_stage_a"

    reasons = [
        event["payload"].get("reason_code") for event in events if event["type"] == "task.retry"
    ]
    assert reasons == ["fast_passed"]


def test_worker_resumes_after_last_checkpoint(tmp_path: Path) -> None:
    workspace = _init_workspace(tmp_path / "ws")
    state = WorkerStateStore(workspace)
    state.record_thread_id("thread-old")
    state.record_checkpoint(2, _run(["git", "rev-parse", "HEAD"], cwd=workspace))
    transport = ScriptedTransport([_write("feature.txt")])

    result = asyncio.run(run_worker(_task(), _config(workspace, tmp_path / "logs"), transport))

    assert result.attempts == 3
    assert transport.session_ids == ["thread-old"]
    assert [item.attempt for item in result.checkpoints] == [2, 3]


def test_worker_honours_stop_request(tmp_path: Path) -> None:
    workspace = _init_workspace(tmp_path / "ws")
    transport = ScriptedTransport([])

    async def _run_stopped():
        token = StopToken()
        token.request("SIGTERM")
        return await run_worker(
            _task(), _config(workspace, tmp_path / "logs"), transport, stop_token=token
        )

    result = asyncio.run(_run_stopped())

    assert result.stopped is True
    assert result.success is False
    assert transport.prompts == []


def test_bootstrap_failure_aborts(tmp_path: Path) -> None:
    workspace = _init_workspace(tmp_path / "ws")
    transport = ScriptedTransport([])

    result = asyncio.run(
        run_worker(
            _task(),
            _config(workspace, tmp_path / "logs", bootstrap_commands=["false"]),
            transport,
        )
    )

    assert result.success is False
    assert result.stage == "bootstrap"
    assert (result.error or "").startswith("Bootstrap failed.")
    assert transport.prompts == []


def test_negative_max_retries_is_rejected(tmp_path: Path) -> None:
    workspace = _init_workspace(tmp_path / "ws")

    with pytest.raises(ConfigError, match="max_retries"):
        asyncio.run(
            run_worker(
                _task(),
                _config(workspace, tmp_path / "logs", max_retries=-1),
                ScriptedTransport([]),
            )
        )


def test_git_failure_during_checkpoint_is_retried(tmp_path: Path) -> None:
    workspace = _init_workspace(tmp_path / "ws")
    logs = tmp_path / "logs"
    index_lock = workspace / ".git" / "index.lock"

    def _write_with_locked_index(path: Path) -> None:
        (path / "feature.txt").write_text("x\n", encoding="utf-8")
        index_lock.write_text("", encoding="utf-8")

    def _unlock_and_write(path: Path) -> None:
        index_lock.unlink()
        (path / "feature.txt").write_text("y\n", encoding="utf-8")

    transport = ScriptedTransport([_write_with_locked_index, _unlock_and_write])

    result = asyncio.run(run_worker(_task(), _config(workspace, logs), transport))

    assert result.success is True
    assert result.attempts == 2
    first = json.loads((logs / "attempt-001.summary.json").read_text(encoding="utf-8"))
    assert first["retry"]["reason_code"] == "git_error"
    assert "index.lock" in transport.prompts[1]
    assert _run(["git", "log", "-1", "--pretty=%s"], cwd=workspace) == "[FEAT] 001 Add feature"


def test_lint_timeout_counts_as_retry(tmp_path: Path) -> None:
    workspace = _init_workspace(tmp_path / "ws")
    logs = tmp_path / "logs"
    transport = ScriptedTransport([_write("feature.txt"), _write("lint-ok.txt")])
    config = _config(
        workspace,
        logs,
        lint_command="test -f lint-ok.txt || sleep 5",
        lint_timeout_seconds=0.5,
    )

    result = asyncio.run(run_worker(_task(), config, transport))

    assert result.success is True
    assert result.attempts == 2
    first = json.loads((logs / "attempt-001.summary.json").read_text(encoding="utf-8"))
    assert first["retry"]["reason_code"] == "lint_failed"
    assert first["commands"]["lint"]["timed_out"] is True
    assert "timed out" in transport.prompts[1]


def test_verification_command_shell_detection_and_missing_binary(tmp_path: Path) -> None:
    piped = asyncio.run(run_verification_command("echo hello | tr a-z A-Z", tmp_path, 10))
    missing = asyncio.run(run_verification_command("definitely-not-a-binary-xyz", tmp_path, 10))
    slow = asyncio.run(run_verification_command("sleep 5", tmp_path, 0.2))

    assert piped.used_shell is True
    assert piped.stdout.strip() == "HELLO"
    assert missing.exit_code == 127
    assert missing.ok is False
    assert slow.timed_out is True
