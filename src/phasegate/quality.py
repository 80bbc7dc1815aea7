from __future__ import annotations

import logging
import re
import shlex
import subprocess
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from phasegate.errors import QualityGateViolation
from phasegate.gates import RetryController
from phasegate.workers.base import WorkerClient

logger = logging.getLogger(__name__)

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`]|[$]\()")
DIAGNOSTIC_PATTERN = re.compile(
    r"^(?P<file>[^\s:][^:]*):(?P<line>\d+)(?::\d+)?:?\s+(?P<message>.+)$"
)
CORRECTION_CYCLES = 2
CONSTRUCTION_HEADING = re.compile(r"^##\s*CONSTRUCTION_CHECKS\b", re.IGNORECASE)
SECTION_HEADING = re.compile(r"^##\s")
CONSTRUCTION_ENTRY_PATTERNS = {
    "file": re.compile(r"^-\s*FILE:\s*(?P<file>.+)$", re.IGNORECASE),
    "function": re.compile(
        r"^-\s*EXPORT_FUNCTION:\s*(?P<name>\w+)\s+IN\s+(?P<file>.+)$", re.IGNORECASE
    ),
    "type": re.compile(r"^-\s*EXPORT_TYPE:\s*(?P<name>\w+)\s+IN\s+(?P<file>.+)$", re.IGNORECASE),
}
# Module-level Python definitions plus the ES module export forms.
SYMBOL_TEMPLATES = {
    "function": (
        r"^(?:async\s+)?def\s+{name}\s*\(",
        r"^{name}\s*(?::[^=\n]+)?=",
        r"export\s+(?:async\s+)?function\s+{name}\b",
        r"export\s+const\s+{name}\s*=",
    ),
    "type": (
        r"^class\s+{name}\b",
        r"^type\s+{name}\b",
        r"export\s+(?:type|interface|class)\s+{name}\b",
    ),
}


@dataclass(frozen=True, slots=True)
class Violation:
    check: str
    message: str
    file: str = ""
    line: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"check": self.check, "file": self.file, "line": self.line, "message": self.message}

    def render(self) -> str:
        location = f"{self.file}:{self.line}" if self.file and self.line else self.file
        prefix = f"{location}: " if location else ""
        return f"[{self.check}] {prefix}{self.message}"


class QualityCheck(Protocol):
    name: str

    def run(self, workspace: Path) -> list[Violation]: ...


class CommandCheck:
    """A configured shell command; a non-zero exit is a violation.

    ``path:line: message`` lines in the output become individual
    violations, otherwise the output tail is reported as one.
    """

    def __init__(self, command: str, *, name: str | None = None) -> None:
        self.command = command
        self.name = name or (command.split()[0] if command.strip() else "command")

    def _run_command(self, workspace: Path) -> dict[str, Any]:
        command_text = self.command.strip()
        if not command_text:
            return {
                "exit_code": 1,
                "stdout": "",
                "stderr": "Command is empty.",
                "used_shell": False,
            }

        used_shell = bool(SHELL_REQUIRED_PATTERN.search(command_text))
        command_payload: str | list[str] = command_text
        if not used_shell:
            try:
                command_payload = shlex.split(command_text)
            except ValueError:
                used_shell = True
                command_payload = command_text

        try:
            proc = subprocess.run(
                command_payload,
                cwd=workspace,
                shell=used_shell,
                text=True,
                capture_output=True,
            )
        except FileNotFoundError as exc:
            return {"exit_code": 127, "stdout": "", "stderr": str(exc), "used_shell": used_shell}
        return {
            "exit_code": proc.returncode,
            "stdout": proc.stdout,
            "stderr": proc.stderr,
            "used_shell": used_shell,
        }

    def run(self, workspace: Path) -> list[Violation]:
        result = self._run_command(workspace)
        if result["exit_code"] == 0:
            return []
        output = "\n".join(part for part in (result["stdout"], result["stderr"]) if part)
        violations: list[Violation] = []
        for raw_line in output.splitlines():
            match = DIAGNOSTIC_PATTERN.match(raw_line.strip())
            if match:
                violations.append(
                    Violation(
                        check=self.name,
                        file=match.group("file"),
                        line=int(match.group("line")),
                        message=match.group("message").strip(),
                    )
                )
        if violations:
            return violations
        tail = output.strip()[-1000:] or "no output"
        return [
            Violation(
                check=self.name,
                message=f"`{self.command}` exited with {result['exit_code']}: {tail}",
            )
        ]


@dataclass(frozen=True, slots=True)
class ConstructionItem:
    kind: str
    file: str
    name: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "file": self.file, "name": self.name}

    def describe(self) -> str:
        if self.kind == "file":
            return f"file {self.file}"
        return f"{self.kind} {self.name} in {self.file}"


def parse_construction_checks(plan_output: str) -> list[ConstructionItem]:
    """Read the ``## CONSTRUCTION_CHECKS`` section of a plan.

    The section ends at the next ``## `` heading. Unrecognised lines are
    ignored and duplicate entries are kept once.
    """
    items: list[ConstructionItem] = []
    in_section = False
    for raw_line in plan_output.splitlines():
        line = raw_line.strip()
        if CONSTRUCTION_HEADING.match(line):
            in_section = True
            continue
        if in_section and SECTION_HEADING.match(line):
            in_section = False
        if not in_section:
            continue
        for kind, pattern in CONSTRUCTION_ENTRY_PATTERNS.items():
            match = pattern.match(line)
            if match:
                item = ConstructionItem(
                    kind=kind,
                    file=match.group("file").strip().strip("`"),
                    name=match.groupdict().get("name") or "",
                )
                if item not in items:
                    items.append(item)
                break
    return items


class ConstructionCheck:
    """Verifies that the files and symbols a plan promised actually exist."""

    name = "construction"

    def __init__(self, items: Sequence[ConstructionItem]) -> None:
        self.items = list(items)

    @classmethod
    def from_plan(cls, plan_output: str) -> ConstructionCheck:
        return cls(parse_construction_checks(plan_output))

    @staticmethod
    def _defines(source: str, item: ConstructionItem) -> bool:
        name = re.escape(item.name)
        return any(
            re.search(template.replace("{name}", name), source, re.MULTILINE)
            for template in SYMBOL_TEMPLATES[item.kind]
        )

    def run(self, workspace: Path) -> list[Violation]:
        violations: list[Violation] = []
        for item in self.items:
            path = workspace / item.file
            if not path.is_file():
                violations.append(
                    Violation(
                        check=self.name,
                        file=item.file,
                        message=f"Planned {item.describe()} was not created.",
                    )
                )
                continue
            if item.kind == "file":
                continue
            try:
                source = path.read_text(encoding="utf-8", errors="replace")
            except OSError as exc:
                violations.append(
                    Violation(check=self.name, file=item.file, message=f"Unreadable: {exc}")
                )
                continue
            if not self._defines(source, item):
                violations.append(
                    Violation(
                        check=self.name,
                        file=item.file,
                        message=f"Planned {item.kind} {item.name} is not defined.",
                    )
                )
        return violations


@dataclass(slots=True)
class QualityReport:
    passed: bool
    violations: list[Violation] = field(default_factory=list)
    corrections: int = 0
    history: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "passed": self.passed,
            "corrections": self.corrections,
            "history": list(self.history),
            "violations": [item.to_dict() for item in self.violations],
        }


def correction_task(violations: Sequence[Violation], marker: str) -> str:
    lines = "\n".join(f"- {item.render()}" for item in violations)
    return (
        "Deterministic quality checks failed. Fix every violation below without "
        "changing unrelated code.\n"
        f"{lines}\n\n"
        f"Report each change as `FIX_APPLIED: <file:line> | <description>` and end with {marker}."
    )


class QualityGate:
    """Runs deterministic checks and drives a bounded correction loop.

    The gate itself only reads the workspace; edits are made by the
    correction worker.
    """

    def __init__(
        self,
        checks: Sequence[QualityCheck],
        retry: RetryController,
        *,
        corrector: WorkerClient | None = None,
        marker: str = "CORRECTIONS_COMPLETE",
        max_retries: int = 2,
        correction_cycles: int = CORRECTION_CYCLES,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.checks = list(checks)
        self.retry = retry
        self.corrector = corrector
        self.marker = marker
        self.max_retries = max_retries
        self.correction_cycles = correction_cycles
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def evaluate(
        self, workspace: Path, extra_checks: Sequence[QualityCheck] = ()
    ) -> list[Violation]:
        violations: list[Violation] = []
        for check in [*self.checks, *extra_checks]:
            violations.extend(check.run(workspace))
        return violations

    async def enforce(
        self,
        workspace: Path,
        scope: dict[str, Any] | None = None,
        *,
        extra_checks: Sequence[QualityCheck] = (),
    ) -> QualityReport:
        violations = self.evaluate(workspace, extra_checks)
        history = [len(violations)]
        corrections = 0
        while violations and self.corrector is not None and corrections < self.correction_cycles:
            corrections += 1
            corrector = self.corrector
            task = correction_task(violations, self.marker)
            correction_scope = {**(scope or {}), "violations": [v.to_dict() for v in violations]}

            async def invoke() -> str:
                return await corrector.execute(task, correction_scope)

            await self.retry.run(
                invoke,
                self.marker,
                self.max_retries,
                label=f"quality-correction#{corrections}",
            )
            violations = self.evaluate(workspace, extra_checks)
            history.append(len(violations))
            self._emit(
                {
                    "event": "quality_correction",
                    "cycle": corrections,
                    "violations": len(violations),
                }
            )

        report = QualityReport(
            passed=not violations,
            violations=violations,
            corrections=corrections,
            history=history,
        )
        self._emit({"event": "quality_gate", "passed": report.passed, "corrections": corrections})
        if violations:
            logger.warning(
                "Quality gate failed with %d violation(s) after %d correction cycle(s)",
                len(violations),
                corrections,
            )
            raise QualityGateViolation(
                f"{len(violations)} quality violation(s) remain after "
                f"{corrections} correction cycle(s).",
                violations=violations,
                corrections=corrections,
            )
        return report
