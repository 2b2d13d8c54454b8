from __future__ import annotations

import json

from taskforge.manifest import TaskSpec
from taskforge.worker.commands import truncate_text

FAILURE_OUTPUT_LIMIT = 6000


def _manifest_block(task: TaskSpec) -> str:
    return json.dumps(task.manifest.to_dict(), indent=2, ensure_ascii=False)


def _failure_block(last_failure: dict[str, str] | None) -> str:
    if not last_failure:
        return ""
    output = truncate_text(last_failure.get("output", "").strip(), FAILURE_OUTPUT_LIMIT)
    return (
        f"\n\nThe previous attempt failed ({last_failure.get('type', 'command')}). "
        f"Fix the cause before doing anything else.\n\nFailure output:\n{output}"
    )


def build_stage_a_prompt(
    task: TaskSpec, test_paths: list[str], last_failure: dict[str, str] | None = None
) -> str:
    paths = "\n".join(f"- {path}" for path in test_paths)
    return (
        f"You are working on task {task.id}: {task.name}.\n\n"
        "Write failing tests for the behaviour described below. Do not implement it yet.\n"
        f"Only create or edit files matching these test paths:\n{paths}\n\n"
        f"The command `{task.manifest.verify.fast}` must fail once you are done.\n\n"
        f"Task spec:\n{task.spec.strip()}\n\nManifest:\n{_manifest_block(task)}"
        f"{_failure_block(last_failure)}"
    )


def build_implementation_prompt(
    task: TaskSpec,
    *,
    lint_command: str,
    doctor_command: str,
    last_failure: dict[str, str] | None = None,
) -> str:
    checks = [f"- doctor: `{doctor_command}`"]
    if lint_command:
        checks.insert(0, f"- lint: `{lint_command}`")
    writes = ", ".join(task.manifest.files.writes) or "(not declared)"
    return (
        f"You are working on task {task.id}: {task.name}.\n\n"
        f"Task spec:\n{task.spec.strip()}\n\nManifest:\n{_manifest_block(task)}\n\n"
        f"Keep changes inside the declared write scope: {writes}.\n"
        "The following checks must pass when you are done:\n" + "\n".join(checks)
        + _failure_block(last_failure)
    )
