from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Literal

from taskforge.errors import ConfigError

CompliancePolicy = Literal["off", "warn", "block"]
ValidatorMode = Literal["warn", "block"]

COMPLIANCE_POLICIES = {"off", "warn", "block"}
VALIDATOR_MODES = {"warn", "block"}


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    main_branch: str = "main"
    lint_command: str = ""
    lint_timeout_seconds: float = 600.0
    doctor_command: str = "python -m pytest -q"
    doctor_timeout_seconds: float = 1200.0
    bootstrap_commands: list[str] = field(default_factory=list)


@dataclass(slots=True)
class AgentConfig:
    binary: str = "codex"
    model: str = ""
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 1800.0


@dataclass(slots=True)
class WorkflowConfig:
    max_parallel: int = 4
    max_retries: int = 20
    checkpoint_commits: bool = True
    task_branch_prefix: str = "agent/"
    tasks_dir: str = ".taskforge/tasks"
    workspaces_dir: str = ".taskforge/workspaces"
    logs_dir: str = ".taskforge/logs"
    compliance_policy: CompliancePolicy = "warn"
    fallback_resource: str = ""
    use_temp_merge: bool = True


@dataclass(slots=True)
class ResourceConfig:
    name: str
    paths: list[str] = field(default_factory=list)
    description: str = ""


@dataclass(slots=True)
class ValidatorConfig:
    name: str
    command: str
    mode: ValidatorMode = "warn"
    timeout_seconds: float = 600.0


@dataclass(slots=True)
class StateConfig:
    dir: str = ".taskforge/state"


def _build_section(section_cls: type, payload: Any, label: str) -> Any:
    if not isinstance(payload, dict):
        raise ConfigError(f"[{label}] must be a table.")
    allowed = {item.name for item in fields(section_cls)}
    unknown = sorted(set(payload) - allowed)
    if unknown:
        raise ConfigError(f"Unknown key(s) in [{label}]: {', '.join(unknown)}")
    try:
        return section_cls(**payload)
    except TypeError as exc:
        raise ConfigError(f"Invalid [{label}] section: {exc}") from exc


@dataclass(slots=True)
class TaskforgeConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    state: StateConfig = field(default_factory=StateConfig)
    resources: list[ResourceConfig] = field(default_factory=list)
    validators: list[ValidatorConfig] = field(default_factory=list)

    @classmethod
    def default(cls) -> TaskforgeConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> TaskforgeConfig:
        known = {"project", "agent", "workflow", "state", "resources", "validators"}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown config section(s): {', '.join(unknown)}")
        config = cls(
            project=_build_section(ProjectConfig, data.get("project", {}), "project"),
            agent=_build_section(AgentConfig, data.get("agent", {}), "agent"),
            workflow=_build_section(WorkflowConfig, data.get("workflow", {}), "workflow"),
            state=_build_section(StateConfig, data.get("state", {}), "state"),
            resources=[
                _build_section(ResourceConfig, item, "resources")
                for item in data.get("resources", [])
            ],
            validators=[
                _build_section(ValidatorConfig, item, "validators")
                for item in data.get("validators", [])
            ],
        )
        config.validate()
        return config

    def validate(self) -> None:
        if self.workflow.max_parallel < 1:
            raise ConfigError("workflow.max_parallel must be at least 1.")
        if self.workflow.max_retries < 0:
            raise ConfigError("workflow.max_retries must be >= 0 (0 = unlimited).")
        if self.workflow.compliance_policy not in COMPLIANCE_POLICIES:
            raise ConfigError(
                f"Unsupported compliance policy: {self.workflow.compliance_policy}"
            )
        seen: set[str] = set()
        for resource in self.resources:
            if resource.name in seen:
                raise ConfigError(f'Duplicate resource "{resource.name}".')
            seen.add(resource.name)
        for validator in self.validators:
            if validator.mode not in VALIDATOR_MODES:
                raise ConfigError(
                    f'Validator "{validator.name}" has unsupported mode: {validator.mode}'
                )

    def resource_names(self) -> list[str]:
        return [resource.name for resource in self.resources]

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
                "main_branch": self.project.main_branch,
                "lint_command": self.project.lint_command,
                "lint_timeout_seconds": self.project.lint_timeout_seconds,
                "doctor_command": self.project.doctor_command,
                "doctor_timeout_seconds": self.project.doctor_timeout_seconds,
                "bootstrap_commands": list(self.project.bootstrap_commands),
            },
            "agent": {
                "binary": self.agent.binary,
                "model": self.agent.model,
                "max_retries": self.agent.max_retries,
                "retry_backoff_seconds": self.agent.retry_backoff_seconds,
                "timeout_seconds": self.agent.timeout_seconds,
            },
            "workflow": {
                "max_parallel": self.workflow.max_parallel,
                "max_retries": self.workflow.max_retries,
                "checkpoint_commits": self.workflow.checkpoint_commits,
                "task_branch_prefix": self.workflow.task_branch_prefix,
                "tasks_dir": self.workflow.tasks_dir,
                "workspaces_dir": self.workflow.workspaces_dir,
                "logs_dir": self.workflow.logs_dir,
                "compliance_policy": self.workflow.compliance_policy,
                "fallback_resource": self.workflow.fallback_resource,
                "use_temp_merge": self.workflow.use_temp_merge,
            },
            "state": {
                "dir": self.state.dir,
            },
            "resources": [
                {
                    "name": resource.name,
                    "paths": list(resource.paths),
                    "description": resource.description,
                }
                for resource in self.resources
            ],
            "validators": [
                {
                    "name": validator.name,
                    "command": validator.command,
                    "mode": validator.mode,
                    "timeout_seconds": validator.timeout_seconds,
                }
                for validator in self.validators
            ],
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: TaskforgeConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ["project", "agent", "workflow", "state"]:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    for section in ["resources", "validators"]:
        for entry in data[section]:
            lines.append(f"[[{section}]]")
            for key, value in entry.items():
                lines.append(f"{key} = {_toml_value(value)}")
            lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> TaskforgeConfig:
    if not path.exists():
        return TaskforgeConfig.default()
    try:
        payload = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Could not parse {path}: {exc}") from exc
    return TaskforgeConfig.from_dict(payload)


def save_config(path: Path, config: TaskforgeConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
