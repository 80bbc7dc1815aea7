from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

from phasegate.workers.command import TASK_PLACEHOLDER, CommandWorker


class ClaudeCodeWorker(CommandWorker):
    def __init__(
        self,
        binary: str = "claude",
        *,
        name: str = "claude",
        working_directory: Path | None = None,
        system_prompt: str = "",
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        super().__init__(
            [binary, "-p", TASK_PLACEHOLDER, "--output-format", "stream-json", "--verbose"],
            name=name,
            working_directory=working_directory,
            system_prompt=system_prompt,
            event_hook=event_hook,
        )

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        content = event.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts: list[str] = []
            for item in content:
                if isinstance(item, dict):
                    text = item.get("text")
                    if isinstance(text, str):
                        parts.append(text)
            return "".join(parts)
        delta = event.get("delta")
        if isinstance(delta, str):
            return delta
        return ""

    @staticmethod
    def _result_text(event: dict[str, Any]) -> str | None:
        if event.get("type") != "result":
            return None
        result = event.get("result")
        return result if isinstance(result, str) else None

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    def parse_stdout(self, stdout: str) -> str:
        chunks: list[str] = []
        final_result: str | None = None
        parse_buffer = ""
        for raw_line in stdout.splitlines():
            line = raw_line.strip()
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
                chunks.append(line)
                continue
            if not isinstance(event, dict):
                continue
            result = self._result_text(event)
            if result is not None:
                final_result = result
                continue
            content = self._extract_content(event)
            if content:
                chunks.append(content)

        if parse_buffer:
            chunks.append(parse_buffer)
        # The terminal result event repeats the assistant text in full.
        if final_result is not None:
            return final_result
        return "\n".join(chunks)
