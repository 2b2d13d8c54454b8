from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from pathlib import Path

from taskforge.config import ValidatorConfig
from taskforge.manifest import TaskSpec
from taskforge.state.run_state import ValidatorResult
from taskforge.worker.commands import run_verification_command

logger = logging.getLogger(__name__)


class ValidatorRunner(ABC):
    @abstractmethod
    async def validate(
        self, task: TaskSpec, workspace: Path, logs_dir: Path
    ) -> list[ValidatorResult]:
        """Run post-attempt validators for a finished task."""


class CommandValidatorRunner(ValidatorRunner):
    """Runs each configured validator command inside the task workspace."""

    def __init__(self, validators: list[ValidatorConfig]) -> None:
        self.validators = list(validators)

    async def validate(
        self, task: TaskSpec, workspace: Path, logs_dir: Path
    ) -> list[ValidatorResult]:
        results: list[ValidatorResult] = []
        for validator in self.validators:
            outcome = await run_verification_command(
                validator.command, workspace, validator.timeout_seconds
            )
            safe_name = re.sub(r"[^A-Za-z0-9._-]+", "-", validator.name) or "validator"
            report_path = logs_dir / f"validator-{safe_name}.log"
            report_path.parent.mkdir(parents=True, exist_ok=True)
            report_path.write_text(outcome.output + "\n", encoding="utf-8")

            if outcome.ok:
                status = "pass"
                summary = f"{validator.name} passed"
            elif outcome.timed_out or outcome.exit_code == 127:
                status = "error"
                summary = f"{validator.name} could not complete (exit {outcome.exit_code})"
            else:
                status = "fail"
                summary = f"{validator.name} failed with exit code {outcome.exit_code}"
            logger.debug("Validator %s for %s: %s", validator.name, task.id, status)
            results.append(
                ValidatorResult(
                    validator=validator.name,
                    status=status,
                    mode=validator.mode,
                    summary=summary,
                    report_path=str(report_path),
                )
            )
        return results
