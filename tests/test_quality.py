import asyncio
from pathlib import Path
from typing import Any

import pytest

from phasegate.errors import QualityGateViolation
from phasegate.gates import RetryController
from phasegate.quality import (
    CommandCheck,
    ConstructionCheck,
    ConstructionItem,
    QualityGate,
    Violation,
    parse_construction_checks,
)
from phasegate.workers.base import WorkerClient


class CountdownCheck:
    """Reports ``remaining`` violations, one fewer after each correction."""

    name = "countdown"

    def __init__(self, remaining: int, step: int = 1) -> None:
        self.remaining = remaining
        self.step = step
        self.runs = 0

    def run(self, workspace: Path) -> list[Violation]:
        _ = workspace
        self.runs += 1
        return [
            Violation(check=self.name, file="src/app.py", line=n, message="lint")
            for n in range(1, self.remaining + 1)
        ]

    def corrected(self) -> None:
        self.remaining = max(0, self.remaining - self.step)


class Corrector(WorkerClient):
    name = "corrector"

    def __init__(self, check: CountdownCheck | None = None) -> None:
        self.check = check
        self.tasks: list[str] = []

    async def execute(self, task: str, scope: dict[str, Any]) -> str:
        _ = scope
        self.tasks.append(task)
        if self.check is not None:
            self.check.corrected()
        return "FIX_APPLIED: src/app.py:1 | cleaned\nCORRECTIONS_COMPLETE"


def test_clean_workspace_passes_without_corrections(tmp_path: Path) -> None:
    check = CountdownCheck(0)
    corrector = Corrector()
    gate = QualityGate([check], RetryController(), corrector=corrector)

    report = asyncio.run(gate.enforce(tmp_path))

    assert report.passed
    assert report.corrections == 0
    assert corrector.tasks == []


def test_violations_are_corrected_within_bound(tmp_path: Path) -> None:
    check = CountdownCheck(2)
    corrector = Corrector(check)
    events: list[dict[str, Any]] = []
    gate = QualityGate([check], RetryController(), corrector=corrector, event_hook=events.append)

    report = asyncio.run(gate.enforce(tmp_path))

    assert report.passed
    assert report.corrections == 2
    assert report.history == [2, 1, 0]
    assert "src/app.py:1" in corrector.tasks[0]
    assert "src/app.py:2" in corrector.tasks[0]
    assert events[-1] == {"event": "quality_gate", "passed": True, "corrections": 2}


def test_persistent_violations_raise_after_two_cycles(tmp_path: Path) -> None:
    check = CountdownCheck(5)
    corrector = Corrector(check)
    gate = QualityGate([check], RetryController(), corrector=corrector)

    with pytest.raises(QualityGateViolation) as exc_info:
        asyncio.run(gate.enforce(tmp_path))

    assert len(corrector.tasks) == 2
    assert exc_info.value.corrections == 2
    assert len(exc_info.value.violations) == 3
    diagnostics = exc_info.value.diagnostics()
    assert diagnostics["violations"][0]["file"] == "src/app.py"


def test_no_corrector_fails_immediately(tmp_path: Path) -> None:
    gate = QualityGate([CountdownCheck(1)], RetryController())

    with pytest.raises(QualityGateViolation) as exc_info:
        asyncio.run(gate.enforce(tmp_path))

    assert exc_info.value.corrections == 0


def test_command_check_parses_diagnostic_lines(tmp_path: Path) -> None:
    check = CommandCheck("printf 'src/a.py:3:1: F401 unused import\\n'; exit 1", name="lint")

    violations = check.run(tmp_path)

    assert violations == [
        Violation(check="lint", file="src/a.py", line=3, message="F401 unused import")
    ]


def test_command_check_passes_and_fails_on_exit_code(tmp_path: Path) -> None:
    assert CommandCheck("true").run(tmp_path) == []

    violations = CommandCheck("echo broken && exit 2", name="build").run(tmp_path)
    assert len(violations) == 1
    assert violations[0].file == ""
    assert "exited with 2" in violations[0].message
    assert "broken" in violations[0].message


def test_command_check_reports_missing_binary(tmp_path: Path) -> None:
    violations = CommandCheck("definitely-not-a-real-binary-xyz --check").run(tmp_path)

    assert len(violations) == 1
    assert "exited with 127" in violations[0].message


PLAN = """Plan for the exporter.

## Construction Checks
- FILE: src/exporter.py
- EXPORT_FUNCTION: export_rows IN src/exporter.py
- EXPORT_TYPE: RowSchema IN `src/schema.ts`
- FILE: src/exporter.py
- something informal

## Notes
- FILE: not/a/check.py
"""


def test_construction_section_is_parsed_until_next_heading() -> None:
    plan = PLAN.replace("Construction Checks", "CONSTRUCTION_CHECKS")

    assert parse_construction_checks(plan) == [
        ConstructionItem("file", "src/exporter.py"),
        ConstructionItem("function", "src/exporter.py", "export_rows"),
        ConstructionItem("type", "src/schema.ts", "RowSchema"),
    ]
    assert parse_construction_checks(PLAN) == []
    assert parse_construction_checks("no plan sections at all") == []


def test_construction_check_reports_missing_files_and_symbols(tmp_path: Path) -> None:
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "exporter.py").write_text(
        "class Exporter:\n    def export_rows(self):\n        return []\n", encoding="utf-8"
    )
    check = ConstructionCheck.from_plan(PLAN.replace("Construction Checks", "construction_checks"))

    violations = check.run(tmp_path)

    assert [(item.file, item.message) for item in violations] == [
        ("src/exporter.py", "Planned function export_rows is not defined."),
        ("src/schema.ts", "Planned type RowSchema in src/schema.ts was not created."),
    ]


def test_construction_check_accepts_python_and_module_exports(tmp_path: Path) -> None:
    (tmp_path / "exporter.py").write_text(
        "async def export_rows(rows):\n    return rows\n\nclass RowSchema:\n    pass\n",
        encoding="utf-8",
    )
    (tmp_path / "schema.ts").write_text(
        "export interface Row { id: string }\nexport const toRow = (x) => x;\n",
        encoding="utf-8",
    )
    check = ConstructionCheck(
        [
            ConstructionItem("function", "exporter.py", "export_rows"),
            ConstructionItem("type", "exporter.py", "RowSchema"),
            ConstructionItem("type", "schema.ts", "Row"),
            ConstructionItem("function", "schema.ts", "toRow"),
        ]
    )

    assert check.run(tmp_path) == []


def test_gate_runs_extra_checks_alongside_configured_ones(tmp_path: Path) -> None:
    gate = QualityGate([CountdownCheck(0)], RetryController())
    construction = ConstructionCheck([ConstructionItem("file", "missing.py")])

    with pytest.raises(QualityGateViolation) as exc_info:
        asyncio.run(gate.enforce(tmp_path, extra_checks=[construction]))

    assert [item.check for item in exc_info.value.violations] == ["construction"]
    assert asyncio.run(gate.enforce(tmp_path)).passed
