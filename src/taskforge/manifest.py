from __future__ import annotations

import json
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from taskforge.errors import ConfigError

TddMode = Literal["off", "strict"]

MANIFEST_FILENAME = "manifest.json"
SPEC_FILENAME = "spec.md"

_MANIFEST_KEYS = {
    "id",
    "name",
    "description",
    "estimated_minutes",
    "dependencies",
    "locks",
    "files",
    "affected_tests",
    "test_paths",
    "tdd_mode",
    "verify",
}


def normalize_string_list(values: Iterable[Any] | None) -> list[str]:
    if not values:
        return []
    normalized = {str(value).strip() for value in values}
    return sorted(value for value in normalized if value)


@dataclass(slots=True)
class ResourceLocks:
    reads: list[str] = field(default_factory=list)
    writes: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> ResourceLocks:
        payload = data if isinstance(data, dict) else {}
        return cls(
            reads=normalize_string_list(payload.get("reads")),
            writes=normalize_string_list(payload.get("writes")),
        )

    def to_dict(self) -> dict[str, list[str]]:
        return {"reads": list(self.reads), "writes": list(self.writes)}


@dataclass(slots=True)
class FileScope:
    reads: list[str] = field(default_factory=list)
    writes: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> FileScope:
        payload = data if isinstance(data, dict) else {}
        return cls(
            reads=normalize_string_list(payload.get("reads")),
            writes=normalize_string_list(payload.get("writes")),
        )

    def to_dict(self) -> dict[str, list[str]]:
        return {"reads": list(self.reads), "writes": list(self.writes)}


@dataclass(slots=True)
class VerifyCommands:
    doctor: str
    fast: str | None = None
    lint: str | None = None

    def to_dict(self) -> dict[str, str]:
        payload = {"doctor": self.doctor}
        if self.fast:
            payload["fast"] = self.fast
        if self.lint:
            payload["lint"] = self.lint
        return payload


def _optional_command(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


@dataclass(slots=True)
class TaskManifest:
    id: str
    name: str
    verify: VerifyCommands
    description: str = ""
    estimated_minutes: int | None = None
    dependencies: list[str] = field(default_factory=list)
    locks: ResourceLocks = field(default_factory=ResourceLocks)
    files: FileScope = field(default_factory=FileScope)
    affected_tests: list[str] = field(default_factory=list)
    test_paths: list[str] = field(default_factory=list)
    tdd_mode: TddMode = "off"

    @classmethod
    def from_dict(cls, data: Any) -> TaskManifest:
        if not isinstance(data, dict):
            raise ConfigError("Task manifest must be a JSON object.")
        unknown = sorted(set(data) - _MANIFEST_KEYS)
        if unknown:
            raise ConfigError(f"Unknown manifest field(s): {', '.join(unknown)}")

        task_id = str(data.get("id", "")).strip()
        name = str(data.get("name", "")).strip()
        if not task_id:
            raise ConfigError("Task manifest is missing an id.")
        if not name:
            raise ConfigError(f"Task {task_id} is missing a name.")

        verify = data.get("verify")
        doctor = _optional_command(verify.get("doctor")) if isinstance(verify, dict) else None
        if doctor is None:
            raise ConfigError(f"Task {task_id} must declare verify.doctor.")

        tdd_mode = data.get("tdd_mode", "off")
        if tdd_mode not in {"off", "strict"}:
            raise ConfigError(f"Task {task_id} has unsupported tdd_mode: {tdd_mode}")

        estimated = data.get("estimated_minutes")
        dependencies = normalize_string_list(data.get("dependencies"))
        if task_id in dependencies:
            raise ConfigError(f"Task {task_id} depends on itself.")

        return cls(
            id=task_id,
            name=name,
            description=str(data.get("description", "")),
            estimated_minutes=int(estimated) if estimated is not None else None,
            dependencies=dependencies,
            locks=ResourceLocks.from_dict(data.get("locks")),
            files=FileScope.from_dict(data.get("files")),
            affected_tests=normalize_string_list(data.get("affected_tests")),
            test_paths=normalize_string_list(data.get("test_paths")),
            tdd_mode=tdd_mode,
            verify=VerifyCommands(
                doctor=doctor,
                fast=_optional_command(verify.get("fast")),
                lint=_optional_command(verify.get("lint")),
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "dependencies": list(self.dependencies),
            "locks": self.locks.to_dict(),
            "files": self.files.to_dict(),
            "affected_tests": list(self.affected_tests),
            "test_paths": list(self.test_paths),
            "tdd_mode": self.tdd_mode,
            "verify": self.verify.to_dict(),
        }
        if self.estimated_minutes is not None:
            payload["estimated_minutes"] = self.estimated_minutes
        return payload


@dataclass(slots=True)
class TaskSpec:
    """A manifest together with the prose spec handed to the agent."""

    manifest: TaskManifest
    spec: str = ""
    task_dir: Path | None = None

    @property
    def id(self) -> str:
        return self.manifest.id

    @property
    def name(self) -> str:
        return self.manifest.name

    @property
    def slug(self) -> str:
        return build_task_slug(self.manifest.name)

    @property
    def dir_name(self) -> str:
        return build_task_dir_name(self.manifest)


def locks_conflict(left: ResourceLocks, right: ResourceLocks) -> bool:
    left_writes = set(left.writes)
    right_writes = set(right.writes)
    if left_writes & (right_writes | set(right.reads)):
        return True
    return bool(right_writes & set(left.reads))


def validate_resource_locks(manifest: TaskManifest, resources: Iterable[str]) -> list[str]:
    known = set(resources)
    errors: list[str] = []
    for kind, values in (("reads", manifest.locks.reads), ("writes", manifest.locks.writes)):
        for resource in values:
            if resource not in known:
                errors.append(f'locks.{kind} references unknown resource "{resource}"')
    return errors


def _normalize_task_id(task_id: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]+", "-", task_id.strip()).strip("-") or "task"


def build_task_slug(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", name.strip().lower()).strip("-")
    return slug[:64].rstrip("-") or "task"


def build_task_dir_name(manifest: TaskManifest) -> str:
    return f"{_normalize_task_id(manifest.id)}-{build_task_slug(manifest.name)}"


def load_task_spec(task_dir: Path) -> TaskSpec:
    manifest_path = task_dir / MANIFEST_FILENAME
    try:
        payload = json.loads(manifest_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Invalid JSON in {manifest_path}: {exc}") from exc
    try:
        manifest = TaskManifest.from_dict(payload)
    except ConfigError as exc:
        raise ConfigError(f"{manifest_path}: {exc}") from exc
    spec_path = task_dir / SPEC_FILENAME
    spec = spec_path.read_text(encoding="utf-8") if spec_path.exists() else ""
    return TaskSpec(manifest=manifest, spec=spec, task_dir=task_dir)


def load_task_specs(tasks_dir: Path, resources: Iterable[str] | None = None) -> list[TaskSpec]:
    if not tasks_dir.is_dir():
        raise ConfigError(f"Tasks directory not found: {tasks_dir}")

    resource_names = list(resources) if resources is not None else []
    tasks: list[TaskSpec] = []
    seen: dict[str, Path] = {}
    for candidate in sorted(tasks_dir.iterdir()):
        if not (candidate / MANIFEST_FILENAME).is_file():
            continue
        task = load_task_spec(candidate)
        if task.id in seen:
            raise ConfigError(
                f"Duplicate task id {task.id} in {seen[task.id].name} and {candidate.name}."
            )
        seen[task.id] = candidate
        if resource_names:
            lock_errors = validate_resource_locks(task.manifest, resource_names)
            if lock_errors:
                raise ConfigError(f"Task {task.id}: " + "; ".join(lock_errors))
        tasks.append(task)
    return tasks


def write_task_spec(tasks_dir: Path, task: TaskSpec) -> Path:
    task_dir = tasks_dir / task.dir_name
    task_dir.mkdir(parents=True, exist_ok=True)
    (task_dir / MANIFEST_FILENAME).write_text(
        json.dumps(task.manifest.to_dict(), indent=2, ensure_ascii=False) + "\n",
        encoding="utf-8",
    )
    (task_dir / SPEC_FILENAME).write_text(task.spec, encoding="utf-8")
    task.task_dir = task_dir
    return task_dir
