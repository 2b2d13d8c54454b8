from __future__ import annotations

import asyncio
import os
import re
import shlex
import signal
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`]|[$]\(|[$][A-Za-z_{])")
OUTPUT_TAIL_CHARS = 4000


def truncate_text(text: str, limit: int = OUTPUT_TAIL_CHARS) -> str:
    if len(text) <= limit:
        return text
    return "...[truncated]\n" + text[-limit:]


@dataclass(slots=True)
class CommandResult:
    command: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration_seconds: float = 0.0
    timed_out: bool = False
    used_shell: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    @property
    def output(self) -> str:
        return f"{self.stdout}\n{self.stderr}".strip()

    def to_dict(self) -> dict[str, Any]:
        return {
            "command": self.command,
            "exit_code": self.exit_code,
            "timed_out": self.timed_out,
            "duration_seconds": round(self.duration_seconds, 3),
            "stdout_tail": truncate_text(self.stdout.strip(), 1000),
            "stderr_tail": truncate_text(self.stderr.strip(), 1000),
            "used_shell": self.used_shell,
        }


def _kill_process_group(process: asyncio.subprocess.Process) -> None:
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


async def run_verification_command(
    command: str, cwd: Path, timeout_seconds: float | None = None
) -> CommandResult:
    command_text = command.strip()
    if not command_text:
        return CommandResult(command=command, exit_code=1, stderr="Command is empty.")

    used_shell = bool(SHELL_REQUIRED_PATTERN.search(command_text))
    argv: list[str] = []
    if not used_shell:
        try:
            argv = shlex.split(command_text)
        except ValueError:
            used_shell = True

    started = time.monotonic()
    try:
        if used_shell:
            process = await asyncio.create_subprocess_shell(
                command_text,
                cwd=str(cwd),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        else:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(cwd),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
    except FileNotFoundError as exc:
        return CommandResult(
            command=command,
            exit_code=127,
            stderr=f"Command not found: {exc.filename or argv[:1]}",
            duration_seconds=time.monotonic() - started,
            used_shell=used_shell,
        )

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout_seconds)
    except TimeoutError:
        _kill_process_group(process)
        stdout, stderr = await process.communicate()
        return CommandResult(
            command=command,
            exit_code=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=(
                stderr.decode("utf-8", errors="replace")
                + f"\nCommand timed out after {timeout_seconds:.0f}s"
            ),
            duration_seconds=time.monotonic() - started,
            timed_out=True,
            used_shell=used_shell,
        )

    return CommandResult(
        command=command,
        exit_code=process.returncode if process.returncode is not None else -1,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
        duration_seconds=time.monotonic() - started,
        used_shell=used_shell,
    )
