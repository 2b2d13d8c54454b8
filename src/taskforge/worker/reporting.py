from __future__ import annotations

import fnmatch
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from taskforge.state.run_state import utcnow_iso

AttemptPhase = Literal["tdd_stage_a", "implementation"]
PromptKind = Literal["initial", "retry"]

RETRY_REASONS: dict[str, str] = {
    "codex_error": "The agent turn failed.",
    "non_test_changes": "Stage A may only change test files; other changes were reverted.",
    "fast_error": "verify.fast could not be run.",
    "fast_passed": "verify.fast passed unexpectedly; tests must fail first.",
    "lint_failed": "Lint command failed.",
    "doctor_failed": "Doctor command failed.",
}


def matches_any(path: str, patterns: list[str]) -> bool:
    normalized = path.replace("\\", "/")
    for pattern in patterns:
        if fnmatch.fnmatch(normalized, pattern):
            return True
        if pattern.endswith("/**") and normalized.startswith(pattern[:-2]):
            return True
        if normalized == pattern or normalized.startswith(pattern.rstrip("/") + "/"):
            return True
    return False


def out_of_scope_files(changed_files: list[str], write_globs: list[str]) -> list[str]:
    if not write_globs:
        return []
    return [path for path in changed_files if not matches_any(path, write_globs)]


@dataclass(slots=True)
class AttemptSummary:
    task_id: str
    attempt: int
    phase: AttemptPhase
    prompt_kind: PromptKind
    changed_files: list[str] = field(default_factory=list)
    declared_write_globs: list[str] = field(default_factory=list)
    out_of_scope_files: list[str] = field(default_factory=list)
    tdd: dict[str, Any] = field(default_factory=dict)
    commands: dict[str, Any] = field(default_factory=dict)
    retry: dict[str, Any] | None = None
    created_at: str = field(default_factory=utcnow_iso)

    def set_retry(self, reason_code: str, evidence: str = "") -> None:
        self.retry = {
            "reason_code": reason_code,
            "human_readable_reason": RETRY_REASONS.get(reason_code, reason_code),
            "evidence": evidence,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "attempt": self.attempt,
            "phase": self.phase,
            "prompt_kind": self.prompt_kind,
            "changed_files": list(self.changed_files),
            "declared_write_globs": list(self.declared_write_globs),
            "scope_divergence": {"out_of_scope_files": list(self.out_of_scope_files)},
            "tdd": dict(self.tdd),
            "commands": dict(self.commands),
            "retry": self.retry,
            "created_at": self.created_at,
        }


def attempt_summary_path(logs_dir: Path, attempt: int) -> Path:
    return logs_dir / f"attempt-{attempt:03d}.summary.json"


def write_attempt_summary(logs_dir: Path, summary: AttemptSummary) -> Path:
    logs_dir.mkdir(parents=True, exist_ok=True)
    path = attempt_summary_path(logs_dir, summary.attempt)
    path.write_text(json.dumps(summary.to_dict(), indent=2, ensure_ascii=False), encoding="utf-8")
    return path
