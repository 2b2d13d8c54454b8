from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path

import click

from taskforge.backends import AgentTransport, CodexTransport, ResilientTransport, RetryPolicy
from taskforge.config import TaskforgeConfig, load_config, save_config
from taskforge.engine import RunEngine, RunOptions, RunResult
from taskforge.errors import TaskforgeError
from taskforge.manifest import TaskSpec, load_task_specs
from taskforge.planner import format_batch_plan, plan_batches
from taskforge.signals import StopToken, install_signal_handlers
from taskforge.state import RunStateStore, summarize_run_state
from taskforge.validators import CommandValidatorRunner
from taskforge.vcs import GitRepository
from taskforge.workers import LocalWorkerRunner

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: TaskforgeConfig
    repo: GitRepository
    store: RunStateStore


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _load_runtime(repo_root: Path, config_path: Path, project: str | None = None) -> Runtime:
    config = load_config(config_path)
    if project:
        config.project.name = project
    config.validate()
    repo = GitRepository(repo_root, branch_prefix=config.workflow.task_branch_prefix)
    store = RunStateStore(repo_root / config.state.dir)
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        repo=repo,
        store=store,
    )


def _load_tasks(runtime: Runtime) -> list[TaskSpec]:
    tasks_dir = runtime.repo_root / runtime.config.workflow.tasks_dir
    return load_task_specs(tasks_dir, runtime.config.resource_names())


def _build_transport(config: TaskforgeConfig) -> AgentTransport:
    agent = config.agent
    policy = RetryPolicy(
        max_retries=max(0, int(agent.max_retries)),
        backoff_seconds=max(0.0, float(agent.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(agent.timeout_seconds)),
    )
    return ResilientTransport(
        "codex",
        CodexTransport(binary=agent.binary, model=agent.model),
        policy,
        event_hook=lambda event: logger.info("backend event: %s", event),
    )


def _build_engine(runtime: Runtime, tasks: list[TaskSpec]) -> RunEngine:
    def _transport() -> AgentTransport:
        return _build_transport(runtime.config)

    return RunEngine(
        config=runtime.config,
        repo=runtime.repo,
        tasks=tasks,
        worker_runner=LocalWorkerRunner(runtime.config, runtime.repo, _transport),
        validator_runner=CommandValidatorRunner(runtime.config.validators),
        state_store=runtime.store,
    )


async def _run_with_signals(engine: RunEngine, options: RunOptions) -> RunResult:
    token = StopToken()

    def _announce(signal_name: str) -> None:
        run_id = engine.run_id or options.run_id
        click.echo(f"Received {signal_name}. Stopping run {run_id}...", err=True)

    remove_handlers = install_signal_handlers(token, _announce)
    try:
        return await engine.run(options, token)
    finally:
        remove_handlers()


def _report(result: RunResult) -> None:
    if result.status == "planned":
        click.echo(f"Run ID: {result.run_id} (dry run)")
        click.echo(format_batch_plan(result.plan))
        return

    click.echo(f"Run ID: {result.run_id}")
    click.echo(f"Status: {result.status}")
    if result.state is not None:
        summary = summarize_run_state(result.state)
        counts = ", ".join(
            f"{status}={count}" for status, count in summary.task_counts.items() if count
        )
        click.echo(f"Tasks: {counts or 'none'}")
        for item in summary.human_review:
            click.echo(f"Needs review: {item['id']} ({item['validator']}: {item['reason']})")
    if result.status == "stopped":
        click.echo(f"Resume with: taskforge resume --run-id {result.run_id}")
    elif result.status == "failed":
        raise click.exceptions.Exit(1)


def _execute(runtime: Runtime, options: RunOptions) -> None:
    try:
        tasks = _load_tasks(runtime)
        engine = _build_engine(runtime, tasks)
        result = asyncio.run(_run_with_signals(engine, options))
    except TaskforgeError as exc:
        raise click.ClickException(str(exc)) from exc
    _report(result)


@click.group()
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Taskforge CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option("--project", default=None, help="Project name to record in the config.")
@click.option("--config", "config_value", default="taskforge.toml", show_default=True)
def init_command(project: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    try:
        config = load_config(config_path)
    except TaskforgeError as exc:
        raise click.ClickException(str(exc)) from exc
    if project:
        config.project.name = project
    save_config(config_path, config)
    (repo_root / config.workflow.tasks_dir).mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized Taskforge in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Tasks: {repo_root / config.workflow.tasks_dir}")


@cli.command("plan")
@click.option("--config", "config_value", default="taskforge.toml", show_default=True)
def plan_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    try:
        runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
        batches = plan_batches(_load_tasks(runtime))
    except TaskforgeError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(format_batch_plan(batches))


@cli.command("run")
@click.option("--project", default=None, help="Override the configured project name.")
@click.option("--max-parallel", type=click.IntRange(min=1), default=None)
@click.option("--dry-run", is_flag=True, default=False)
@click.option("--resume", is_flag=True, default=False)
@click.option("--run-id", default=None)
@click.option("--config", "config_value", default="taskforge.toml", show_default=True)
def run_command(
    project: str | None,
    max_parallel: int | None,
    dry_run: bool,
    resume: bool,
    run_id: str | None,
    config_value: str,
) -> None:
    repo_root = Path.cwd().resolve()
    try:
        runtime = _load_runtime(
            repo_root, _resolve_config_path(repo_root, config_value), project=project
        )
    except TaskforgeError as exc:
        raise click.ClickException(str(exc)) from exc
    _execute(
        runtime,
        RunOptions(run_id=run_id, resume=resume, dry_run=dry_run, max_parallel=max_parallel),
    )


@cli.command("resume")
@click.option("--run-id", default=None, help="Defaults to the most recent run.")
@click.option("--max-parallel", type=click.IntRange(min=1), default=None)
@click.option("--config", "config_value", default="taskforge.toml", show_default=True)
def resume_command(run_id: str | None, max_parallel: int | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    try:
        runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    except TaskforgeError as exc:
        raise click.ClickException(str(exc)) from exc
    _execute(runtime, RunOptions(run_id=run_id, resume=True, max_parallel=max_parallel))


@cli.command("status")
@click.option("--run-id", default=None, help="Defaults to the most recent run.")
@click.option("--json", "as_json", is_flag=True, default=False)
@click.option("--config", "config_value", default="taskforge.toml", show_default=True)
def status_command(run_id: str | None, as_json: bool, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    try:
        runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
        project = runtime.config.project.name
        run_id = run_id or runtime.store.find_latest_run_id(project)
        if not run_id:
            raise click.ClickException(f"No runs found for project {project}.")
        state = runtime.store.load(project, run_id)
    except TaskforgeError as exc:
        raise click.ClickException(str(exc)) from exc

    summary = summarize_run_state(state)
    if as_json:
        payload = {"summary": summary.to_dict(), "state": state.to_dict()}
        click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
        return

    click.echo(f"Run ID: {state.run_id}")
    click.echo(f"Status: {state.status}")
    for task_id in sorted(state.tasks):
        task = state.tasks[task_id]
        marker = " (merged)" if task.merged else ""
        click.echo(f"  {task_id:<12} {task.status:<18} attempts={task.attempts}{marker}")
    for item in summary.human_review:
        click.echo(f"Needs review: {item['id']} ({item['validator']}: {item['reason']})")
