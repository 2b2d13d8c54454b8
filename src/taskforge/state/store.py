from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from taskforge.errors import StateStoreError
from taskforge.state.run_state import RunState, utcnow_iso

logger = logging.getLogger(__name__)


def _safe_segment(value: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "-", value.strip()).strip("-.")
    if not cleaned:
        raise StateStoreError(f"Invalid state key: {value!r}")
    return cleaned


class RunStateStore:
    """Persists one JSON envelope per (project, run_id)."""

    SCHEMA_VERSION = 1

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = state_dir.resolve()

    def _project_dir(self, project: str) -> Path:
        return self.state_dir / _safe_segment(project)

    def run_file(self, project: str, run_id: str) -> Path:
        return self._project_dir(project) / f"{_safe_segment(run_id)}.json"

    @contextmanager
    def _state_lock(self, project: str, timeout_seconds: float = 5.0):
        project_dir = self._project_dir(project)
        project_dir.mkdir(parents=True, exist_ok=True)
        lock_file = project_dir / ".lock"
        start = time.monotonic()
        while True:
            try:
                fd = os.open(lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise StateStoreError("Timed out waiting for state lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_envelope(self, path: Path) -> dict[str, Any] | None:
        if not path.exists():
            return None
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise StateStoreError(f"Corrupt run state at {path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise StateStoreError(f"Corrupt run state at {path}: expected an object.")
        if {"schema_version", "revision", "data"} <= set(raw):
            return raw
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 1,
            "updated_at": raw.get("updated_at") or utcnow_iso(),
            "data": raw,
        }

    def get_envelope(self, project: str, run_id: str) -> dict[str, Any]:
        envelope = self._read_envelope(self.run_file(project, run_id))
        if envelope is None:
            raise StateStoreError(f"No run state found for {project}/{run_id}.")
        return envelope

    def save(self, state: RunState, expected_revision: int | None = None) -> int:
        path = self.run_file(state.project, state.run_id)
        with self._state_lock(state.project):
            current = self._read_envelope(path)
            current_revision = int(current.get("revision", 0)) if current else 0
            if expected_revision is not None and expected_revision != current_revision:
                raise StateStoreError(
                    f"Concurrent state update detected for run '{state.run_id}'."
                )
            state.updated_at = utcnow_iso()
            envelope = {
                "schema_version": self.SCHEMA_VERSION,
                "revision": current_revision + 1,
                "updated_at": state.updated_at,
                "data": state.to_dict(),
            }
            self._write_atomic(path, envelope)
        logger.debug("Saved run state %s revision %d", state.run_id, current_revision + 1)
        return current_revision + 1

    @staticmethod
    def _write_atomic(path: Path, payload: dict[str, Any]) -> None:
        serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        fd, tmp_name = tempfile.mkstemp(prefix=".run-", suffix=".json", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(serialized)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
        except OSError as exc:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise StateStoreError(f"Could not write run state to {path}: {exc}") from exc

    def load(self, project: str, run_id: str) -> RunState:
        envelope = self.get_envelope(project, run_id)
        data = envelope.get("data")
        if not isinstance(data, dict):
            raise StateStoreError(f"Run state for {project}/{run_id} has no data.")
        try:
            return RunState.from_dict(data)
        except (KeyError, TypeError, ValueError) as exc:
            raise StateStoreError(f"Invalid run state for {project}/{run_id}: {exc}") from exc

    def list_run_ids(self, project: str) -> list[str]:
        project_dir = self._project_dir(project)
        if not project_dir.is_dir():
            return []
        return sorted(
            path.stem
            for path in project_dir.glob("*.json")
            if not path.name.startswith(".")
        )

    def find_latest_run_id(self, project: str) -> str | None:
        candidates: list[tuple[str, str]] = []
        for run_id in self.list_run_ids(project):
            envelope = self._read_envelope(self.run_file(project, run_id))
            data = envelope.get("data") if envelope else None
            started_at = data.get("started_at", "") if isinstance(data, dict) else ""
            candidates.append((str(started_at), run_id))
        if not candidates:
            return None
        return max(candidates)[1]
