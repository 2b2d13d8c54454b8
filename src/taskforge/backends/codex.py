from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
from pathlib import Path
from typing import Any

from taskforge.backends.base import (
    AgentTransport,
    BackendExecutionError,
    BackendProcessError,
    EventSink,
    TurnResult,
)

logger = logging.getLogger(__name__)


def _kill_process_group(process: asyncio.subprocess.Process) -> None:
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


class CodexTransport(AgentTransport):
    def __init__(self, binary: str = "codex", model: str = "") -> None:
        self.binary = binary
        self.model = model

    def build_command(self, prompt: str, session_id: str | None = None) -> list[str]:
        command = [self.binary, "exec", "--json", "--skip-git-repo-check"]
        if self.model.strip():
            command.extend(["-m", self.model.strip()])
        if session_id:
            command.extend(["resume", session_id])
        command.append(prompt)
        return command

    @staticmethod
    def _agent_text(event: dict[str, Any]) -> str:
        item = event.get("item")
        if isinstance(item, dict) and item.get("type") == "agent_message":
            text = item.get("text")
            if isinstance(text, str):
                return text
        return ""

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    async def run_turn(
        self,
        prompt: str,
        *,
        working_directory: Path,
        session_id: str | None = None,
        event_sink: EventSink | None = None,
    ) -> TurnResult:
        def _emit(payload: dict[str, Any]) -> None:
            if event_sink is not None:
                event_sink(payload)

        command = self.build_command(prompt, session_id)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(working_directory),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"Codex binary not found: {self.binary}",
                backend="codex",
                retriable=False,
            ) from exc

        if process.stdout is None:
            raise BackendProcessError(
                "Codex backend did not expose stdout.", backend="codex", retriable=False
            )

        # stderr is drained alongside stdout so a chatty agent cannot fill the pipe.
        stderr_reader = (
            asyncio.ensure_future(process.stderr.read()) if process.stderr is not None else None
        )
        result = TurnResult(success=False, session_id=session_id)
        messages: list[str] = []
        parse_buffer = ""
        try:
            async for raw_line in process.stdout:
                line = raw_line.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                candidate = f"{parse_buffer}{line}" if parse_buffer else line
                try:
                    event = json.loads(candidate)
                    parse_buffer = ""
                except json.JSONDecodeError:
                    if self._appears_partial_json(candidate):
                        parse_buffer = candidate
                        continue
                    parse_buffer = ""
                    continue
                if not isinstance(event, dict):
                    continue

                event_type = str(event.get("type", ""))
                if event_type == "thread.started":
                    thread_id = event.get("thread_id")
                    if isinstance(thread_id, str) and thread_id:
                        name = "codex.thread.resumed" if session_id else "codex.thread.started"
                        result.session_id = thread_id
                        _emit({"type": name, "payload": {"thread_id": thread_id}})
                elif event_type == "turn.completed":
                    usage = event.get("usage")
                    if isinstance(usage, dict):
                        for key, value in usage.items():
                            if isinstance(value, int):
                                result.usage[key] = result.usage.get(key, 0) + value
                    _emit({"type": "turn.complete", "payload": {"usage": dict(result.usage)}})
                elif event_type == "turn.failed":
                    error = event.get("error")
                    message = error.get("message") if isinstance(error, dict) else None
                    result.error = str(message or "turn failed")
                else:
                    text = self._agent_text(event)
                    if text:
                        messages.append(text)

            return_code = await process.wait()
            stderr_output = ""
            if stderr_reader is not None:
                stderr_output = (await stderr_reader).decode("utf-8", errors="replace").strip()
        except BaseException:
            # Cancelled (turn timeout or run stop): the agent must not outlive its turn.
            if process.returncode is None:
                logger.info("Killing codex process %s", process.pid)
                _kill_process_group(process)
                await process.wait()
            if stderr_reader is not None:
                stderr_reader.cancel()
            raise

        if return_code != 0:
            raise BackendExecutionError(
                f"Codex backend failed with exit code {return_code}: {stderr_output}",
                backend="codex",
                exit_code=return_code,
                retriable=True,
            )
        result.output = "\n".join(messages).strip()
        result.success = result.error is None
        return result
