from __future__ import annotations

import fnmatch
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from taskforge.config import CompliancePolicy, ResourceConfig
from taskforge.errors import ScopeViolation
from taskforge.manifest import FileScope, ResourceLocks, TaskManifest, normalize_string_list
from taskforge.worker.reporting import matches_any

ComplianceStatus = Literal["skipped", "pass", "warn", "block"]
ViolationReason = Literal[
    "resource_not_locked_for_write",
    "file_not_declared_for_write",
    "resource_unmapped",
]


@dataclass(slots=True)
class ComplianceViolation:
    path: str
    reasons: list[ViolationReason]
    resources: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ComplianceReport:
    task_id: str
    task_name: str
    policy: CompliancePolicy
    status: ComplianceStatus
    changed_files: list[str] = field(default_factory=list)
    violations: list[ComplianceViolation] = field(default_factory=list)
    locks: ResourceLocks = field(default_factory=ResourceLocks)
    files: FileScope = field(default_factory=FileScope)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "task_name": self.task_name,
            "policy": self.policy,
            "status": self.status,
            "changed_files": list(self.changed_files),
            "violations": [
                {
                    "path": violation.path,
                    "reasons": list(violation.reasons),
                    "resources": list(violation.resources),
                }
                for violation in self.violations
            ],
            "manifest": {"locks": self.locks.to_dict(), "files": self.files.to_dict()},
        }


def resources_for_file(
    path: str, resources: list[ResourceConfig], fallback_resource: str = ""
) -> list[str]:
    normalized = path.replace("\\", "/")
    matched = [
        resource.name
        for resource in resources
        if any(fnmatch.fnmatch(normalized, pattern) for pattern in resource.paths)
    ]
    if matched:
        return sorted(set(matched))
    return [fallback_resource] if fallback_resource else []


def evaluate_compliance(
    manifest: TaskManifest,
    changed_files: list[str],
    *,
    resources: list[ResourceConfig],
    policy: CompliancePolicy,
    fallback_resource: str = "",
) -> ComplianceReport:
    report = ComplianceReport(
        task_id=manifest.id,
        task_name=manifest.name,
        policy=policy,
        status="skipped",
        changed_files=sorted(changed_files),
        locks=manifest.locks,
        files=manifest.files,
    )
    if policy == "off":
        return report

    locked_writes = set(manifest.locks.writes)
    declared_writes = manifest.files.writes
    for path in report.changed_files:
        reasons: list[ViolationReason] = []
        mapped = resources_for_file(path, resources, fallback_resource)
        if not mapped:
            reasons.append("resource_unmapped")
        elif not set(mapped) <= locked_writes:
            reasons.append("resource_not_locked_for_write")
        if declared_writes and not matches_any(path, declared_writes):
            reasons.append("file_not_declared_for_write")
        if reasons:
            report.violations.append(
                ComplianceViolation(path=path, reasons=reasons, resources=mapped)
            )

    if not report.violations:
        report.status = "pass"
    else:
        report.status = "block" if policy == "block" else "warn"
    return report


def enforce_compliance(report: ComplianceReport) -> None:
    if report.status == "block":
        raise ScopeViolation(report.task_id, describe_manifest_violations(report))


def describe_manifest_violations(report: ComplianceReport) -> str:
    count = len(report.violations)
    if count == 0:
        return "no undeclared access"
    return f"{count} undeclared access request(s) (example: {report.violations[0].path})"


def write_compliance_report(path: Path, report: ComplianceReport) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(report.to_dict(), indent=2, ensure_ascii=False), encoding="utf-8")
    return path


RescopeStatus = Literal["updated", "noop", "failed"]


@dataclass(slots=True)
class RescopeResult:
    status: RescopeStatus
    manifest: TaskManifest | None = None
    added_locks: list[str] = field(default_factory=list)
    added_files: list[str] = field(default_factory=list)
    reason: str = ""


def compute_rescope(manifest: TaskManifest, report: ComplianceReport) -> RescopeResult:
    unmapped = [
        violation.path
        for violation in report.violations
        if "resource_unmapped" in violation.reasons
    ]
    if unmapped:
        return RescopeResult(
            status="failed",
            reason="Resource mapping missing for: " + ", ".join(unmapped),
        )

    added_locks = normalize_string_list(
        resource
        for violation in report.violations
        if "resource_not_locked_for_write" in violation.reasons
        for resource in violation.resources
        if resource not in manifest.locks.writes
    )
    added_files = normalize_string_list(
        violation.path
        for violation in report.violations
        if "file_not_declared_for_write" in violation.reasons
    )
    if not added_locks and not added_files:
        return RescopeResult(status="noop", manifest=manifest)

    rescoped = TaskManifest.from_dict(manifest.to_dict())
    rescoped.locks.writes = normalize_string_list([*rescoped.locks.writes, *added_locks])
    rescoped.files.writes = normalize_string_list([*rescoped.files.writes, *added_files])
    return RescopeResult(
        status="updated",
        manifest=rescoped,
        added_locks=added_locks,
        added_files=added_files,
    )
