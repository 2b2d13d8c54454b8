import json
from pathlib import Path

import pytest

from taskforge.compliance import (
    compute_rescope,
    enforce_compliance,
    evaluate_compliance,
    resources_for_file,
    write_compliance_report,
)
from taskforge.config import ResourceConfig
from taskforge.errors import ScopeViolation
from taskforge.manifest import TaskManifest

RESOURCES = [
    ResourceConfig(name="api", paths=["src/api/*"]),
    ResourceConfig(name="db", paths=["src/db/*", "migrations/*"]),
]


def _manifest(writes: list[str], files: list[str] | None = None) -> TaskManifest:
    return TaskManifest.from_dict(
        {
            "id": "001",
            "name": "Touch api",
            "verify": {"doctor": "true"},
            "locks": {"writes": writes},
            "files": {"writes": files or []},
        }
    )


def test_resources_for_file_uses_fallback() -> None:
    assert resources_for_file("src/api/routes.py", RESOURCES) == ["api"]
    assert resources_for_file("README.md", RESOURCES) == []
    assert resources_for_file("README.md", RESOURCES, fallback_resource="repo") == ["repo"]


def test_compliant_changes_pass() -> None:
    report = evaluate_compliance(
        _manifest(["api"], ["src/api/**"]),
        ["src/api/routes.py"],
        resources=RESOURCES,
        policy="block",
    )

    assert report.status == "pass"
    assert report.violations == []
    enforce_compliance(report)


def test_policy_off_skips_evaluation() -> None:
    report = evaluate_compliance(
        _manifest([]), ["src/db/models.py"], resources=RESOURCES, policy="off"
    )

    assert report.status == "skipped"


def test_undeclared_writes_warn_and_rescope() -> None:
    manifest = _manifest(["api"], ["src/api/**"])
    report = evaluate_compliance(
        manifest,
        ["src/api/routes.py", "src/db/models.py"],
        resources=RESOURCES,
        policy="warn",
    )

    assert report.status == "warn"
    assert [violation.path for violation in report.violations] == ["src/db/models.py"]
    assert report.violations[0].reasons == [
        "resource_not_locked_for_write",
        "file_not_declared_for_write",
    ]
    enforce_compliance(report)

    rescope = compute_rescope(manifest, report)
    assert rescope.status == "updated"
    assert rescope.added_locks == ["db"]
    assert rescope.added_files == ["src/db/models.py"]
    assert rescope.manifest is not None
    assert rescope.manifest.locks.writes == ["api", "db"]
    assert manifest.locks.writes == ["api"]


def test_unmapped_file_cannot_be_rescoped() -> None:
    manifest = _manifest(["api"])
    report = evaluate_compliance(manifest, ["README.md"], resources=RESOURCES, policy="warn")

    rescope = compute_rescope(manifest, report)

    assert report.violations[0].reasons == ["resource_unmapped"]
    assert rescope.status == "failed"
    assert "README.md" in rescope.reason


def test_block_policy_raises_scope_violation(tmp_path: Path) -> None:
    report = evaluate_compliance(
        _manifest(["api"]), ["migrations/001.sql"], resources=RESOURCES, policy="block"
    )
    path = write_compliance_report(tmp_path / "logs" / "compliance.json", report)

    with pytest.raises(ScopeViolation, match="migrations/001.sql"):
        enforce_compliance(report)
    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload["status"] == "block"
    assert payload["manifest"]["locks"]["writes"] == ["api"]
