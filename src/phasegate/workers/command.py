from __future__ import annotations

import asyncio
import json
import shutil
from collections.abc import Callable
from pathlib import Path
from typing import Any

from phasegate.workers.base import WorkerClient, WorkerExecutionError, WorkerProcessError

TASK_PLACEHOLDER = "{task}"


class CommandWorker(WorkerClient):
    """Runs an external command per invocation and returns its stdout.

    ``command`` is an argv list. A ``{task}`` item is replaced with the
    rendered task; without one the rendered task is sent on stdin.
    """

    def __init__(
        self,
        command: list[str],
        *,
        name: str = "command",
        working_directory: Path | None = None,
        system_prompt: str = "",
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        if not command:
            raise ValueError("CommandWorker requires a non-empty command.")
        self.command = list(command)
        self.name = name
        self.working_directory = working_directory
        self.system_prompt = system_prompt
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    @property
    def binary(self) -> str:
        return self.command[0]

    def render_task(self, task: str, scope: dict[str, Any]) -> str:
        parts = []
        if self.system_prompt:
            parts.append(self.system_prompt.strip())
        parts.append(task)
        if scope:
            parts.append("Context JSON:")
            parts.append(json.dumps(scope, ensure_ascii=False, indent=2, default=str))
        return "\n\n".join(parts)

    def build_command(self, rendered_task: str) -> tuple[list[str], bool]:
        if TASK_PLACEHOLDER in self.command:
            command = [
                rendered_task if part == TASK_PLACEHOLDER else part for part in self.command
            ]
            return command, False
        return list(self.command), True

    def _cwd(self, scope: dict[str, Any]) -> str | None:
        override = scope.get("workspace")
        if isinstance(override, str) and override.strip():
            return override
        return str(self.working_directory) if self.working_directory else None

    async def preflight(self) -> tuple[bool, str]:
        if shutil.which(self.binary) is None:
            return False, f"{self.binary} not found in PATH."
        return True, ""

    def parse_stdout(self, stdout: str) -> str:
        return stdout

    async def execute(self, task: str, scope: dict[str, Any]) -> str:
        rendered = self.render_task(task, scope)
        command, use_stdin = self.build_command(rendered)
        self._emit({"event": "worker_process_start", "worker": self.name, "command": command[:2]})
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=self._cwd(scope),
                stdin=asyncio.subprocess.PIPE if use_stdin else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise WorkerProcessError(
                f"Worker binary not found: {self.binary}", worker=self.name
            ) from exc
        except OSError as exc:
            raise WorkerProcessError(
                f"Worker {self.name} could not start: {exc}", worker=self.name
            ) from exc

        stdin_payload = rendered.encode("utf-8") if use_stdin else None
        try:
            stdout_bytes, stderr_bytes = await process.communicate(stdin_payload)
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise
        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace").strip()
        return_code = process.returncode
        self._emit(
            {
                "event": "worker_process_exit",
                "worker": self.name,
                "exit_code": return_code,
                "stderr": stderr[:400],
            }
        )
        if return_code != 0:
            raise WorkerExecutionError(
                f"Worker {self.name} failed with exit code {return_code}: {stderr}",
                worker=self.name,
                exit_code=return_code,
            )
        return self.parse_stdout(stdout).strip()
