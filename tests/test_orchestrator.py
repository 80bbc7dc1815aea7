import asyncio
from pathlib import Path
from typing import Any

from phasegate.approval import ApprovalGate, Decision, auto_approve
from phasegate.config import PhasegateConfig
from phasegate.convergence import ConvergenceLoop
from phasegate.errors import SnapshotError
from phasegate.gates import RetryController
from phasegate.lessons import LessonStore
from phasegate.orchestrator import PipelineOrchestrator, ReviewStage, build_orchestrator
from phasegate.phases import Phase, PhaseKind
from phasegate.quality import QualityGate, Violation
from phasegate.scan import ScanCoordinator
from phasegate.state.ledger import RunLedger
from phasegate.state.snapshots import Snapshot, SnapshotStore
from phasegate.workers.base import WorkerClient
from phasegate.workspace import WorkspaceGuard


class FileWorker(WorkerClient):
    """Writes a file named after the phase, then replies from a script."""

    def __init__(self, name: str, outputs: list[str]) -> None:
        self.name = name
        self.outputs = list(outputs)
        self.calls = 0
        self.phases: list[str] = []

    async def execute(self, task: str, scope: dict[str, Any]) -> str:
        _ = task
        output = self.outputs[min(self.calls, len(self.outputs) - 1)]
        self.calls += 1
        phase = scope.get("phase", "review")
        self.phases.append(phase)
        if "workspace" in scope and not scope.get("read_only"):
            Path(scope["workspace"], f"{phase}.out").write_text(output, encoding="utf-8")
        return output


class RecordingProvider:
    def __init__(self, verdict: str, note: str = "") -> None:
        self.verdict = verdict
        self.note = note
        self.contexts: list[dict[str, Any]] = []

    def __call__(self, context: dict[str, Any]) -> Decision:
        self.contexts.append(context)
        return Decision(self.verdict, self.note)


class FailingSnapshots(SnapshotStore):
    def capture(self, label: str) -> str:
        raise SnapshotError(f"disk full while capturing {label}")


class LintCheck:
    name = "lint"

    def __init__(self, remaining: int) -> None:
        self.remaining = remaining

    def run(self, workspace: Path) -> list[Violation]:
        _ = workspace
        return [
            Violation(check="lint", message="E501", file="a.py", line=n + 1)
            for n in range(self.remaining)
        ]


PLAN = Phase(
    name="plan",
    worker="planner",
    completion_marker="PLAN_DONE",
    kind=PhaseKind.APPROVAL_GATED,
    max_retries=1,
)
IMPLEMENT = Phase(
    name="implement",
    worker="coder",
    completion_marker="IMPL_DONE",
    continue_marker="IMPL_MORE",
    kind=PhaseKind.LOOPABLE,
    max_retries=1,
)
VERIFY = Phase(
    name="verify",
    worker="tester",
    completion_marker="VERIFY_DONE",
    max_retries=1,
    quality_gate=True,
)


def _workers() -> dict[str, FileWorker]:
    return {
        "planner": FileWorker(
            "planner", ["plan\nLESSON: project | planning | Split work by module.\nPLAN_DONE"]
        ),
        "coder": FileWorker("coder", ["REMAINING: tests\nIMPL_MORE", "IMPL_DONE"]),
        "tester": FileWorker("tester", ["VERIFY_DONE"]),
    }


def _orchestrator(
    target: Path,
    workers: dict[str, Any],
    *,
    verdict: str = "approve",
    phases: tuple[Phase, ...] = (PLAN, IMPLEMENT, VERIFY),
    snapshots: SnapshotStore | None = None,
    quality: QualityGate | None = None,
    review: ReviewStage | None = None,
    provider: RecordingProvider | None = None,
) -> PipelineOrchestrator:
    ledger = RunLedger(target)
    return PipelineOrchestrator(
        target,
        phases,
        workers,
        ledger=ledger,
        snapshots=snapshots or SnapshotStore(target, ledger, mode="copy"),
        approval=ApprovalGate(provider or RecordingProvider(verdict), ledger),
        quality=quality,
        review=review,
        lessons=LessonStore(target / "LESSONS.md", target.parent / f"{target.name}-global.md"),
    )


def test_phases_run_in_order_and_cursor_advances(tmp_path: Path) -> None:
    workers = _workers()
    provider = RecordingProvider("approve")
    orchestrator = _orchestrator(tmp_path, workers, provider=provider)

    report = asyncio.run(orchestrator.run())

    assert report.ok
    assert report.status == "completed"
    assert report.cursor == 3
    assert [item["phase"] for item in report.phases] == ["plan", "implement", "verify"]
    assert report.phases[1]["iterations"] == 2
    assert report.snapshot_id is not None
    assert provider.contexts[0]["phase"] == "plan"
    assert provider.contexts[0]["cursor"] == 0
    assert report.lessons_recorded == 1
    assert [item["phase"] for item in report.metrics] == ["plan", "implement", "verify"]

    ledger = orchestrator.ledger
    run = ledger.get_run(report.run_id)
    assert run is not None and run["status"] == "completed"
    assert ledger.get_decisions()[0]["verdict"] == "approve"
    assert ledger.get_metrics()["pipeline"][report.run_id][0]["phase"] == "plan"


def test_reject_restores_snapshot_and_keeps_cursor(tmp_path: Path) -> None:
    (tmp_path / "app.py").write_text("original\n", encoding="utf-8")
    workers = _workers()
    orchestrator = _orchestrator(tmp_path, workers, verdict="reject")

    report = asyncio.run(orchestrator.run())

    assert report.status == "failed"
    assert report.cursor == 0
    assert report.halt is not None
    assert report.halt["kind"] == "rollback_requested"
    assert report.halt["diagnostics"]["snapshot_id"] == report.snapshot_id
    assert not (tmp_path / "plan.out").exists()
    assert (tmp_path / "app.py").read_text(encoding="utf-8") == "original\n"
    assert workers["coder"].calls == 0


def test_revise_parks_run_awaiting_approval(tmp_path: Path) -> None:
    workers = _workers()
    orchestrator = _orchestrator(tmp_path, workers, verdict="revise")

    report = asyncio.run(orchestrator.run())

    assert report.status == "awaiting-approval"
    assert report.cursor == 0
    assert report.halt is not None and report.halt["kind"] == "revision_requested"
    assert (tmp_path / "plan.out").exists()
    assert workers["coder"].calls == 0


def test_dry_run_plans_without_invoking_workers(tmp_path: Path) -> None:
    workers = _workers()
    orchestrator = _orchestrator(tmp_path, workers)

    report = asyncio.run(orchestrator.run(dry_run=True))

    assert report.ok
    assert report.dry_run
    assert [step["name"] for step in report.plan] == ["plan", "implement", "verify"]
    assert all(worker.calls == 0 for worker in workers.values())
    assert orchestrator.snapshots.list_snapshots() == []


def test_gate_failure_halts_with_last_output(tmp_path: Path) -> None:
    workers = _workers()
    workers["tester"] = FileWorker("tester", ["tests are still running"])
    orchestrator = _orchestrator(tmp_path, workers)

    report = asyncio.run(orchestrator.run())

    assert report.status == "failed"
    assert report.cursor == 2
    assert report.halt is not None
    assert report.halt["kind"] == "gate_failure"
    assert report.halt["diagnostics"]["last_output"] == "tests are still running"
    assert report.halt["diagnostics"]["attempts"] == 2
    assert workers["tester"].calls == 2


def test_loopable_phase_that_never_finishes_halts_as_partial(tmp_path: Path) -> None:
    workers = _workers()
    workers["coder"] = FileWorker("coder", ["REMAINING: everything\nIMPL_MORE"])
    orchestrator = _orchestrator(tmp_path, workers)

    report = asyncio.run(orchestrator.run())

    assert report.status == "failed"
    assert report.cursor == 1
    assert report.halt is not None
    assert report.halt["kind"] == "partial_completion"
    assert report.halt["diagnostics"]["remaining"] == ["everything"]
    assert workers["coder"].calls == 5


def test_quality_violations_halt_the_run(tmp_path: Path) -> None:
    workers = _workers()
    gate = QualityGate([LintCheck(2)], RetryController())
    orchestrator = _orchestrator(tmp_path, workers, quality=gate)

    report = asyncio.run(orchestrator.run())

    assert report.status == "failed"
    assert report.halt is not None
    assert report.halt["kind"] == "quality_gate_violation"
    assert report.metrics[-1]["phase"] == "verify"
    assert report.metrics[-1]["issues_found"] == 2
    failures = orchestrator.ledger.get_metrics()["gate_failures"]
    assert failures[0]["phase"] == "verify"


def test_snapshot_failure_runs_no_phase(tmp_path: Path) -> None:
    workers = _workers()
    ledger = RunLedger(tmp_path)
    orchestrator = _orchestrator(
        tmp_path, workers, snapshots=FailingSnapshots(tmp_path, ledger, mode="copy")
    )

    report = asyncio.run(orchestrator.run())

    assert report.status == "failed"
    assert report.halt is not None
    assert report.halt["kind"] == "snapshot_error"
    assert "disk full" in report.halt["message"]
    assert all(worker.calls == 0 for worker in workers.values())


def test_review_stage_converges_and_records_lessons(tmp_path: Path) -> None:
    workers: dict[str, Any] = _workers()
    workers["security"] = FileWorker(
        "security", ["ISSUE: a.py:3 — [HIGH] eval use\nSCAN_COMPLETE"]
    )
    workers["style"] = FileWorker("style", ["ISSUE: a.py:4 — eval use\nSCAN_COMPLETE"])
    workers["fixer"] = FileWorker("fixer", ["FIX_APPLIED: a.py:3 | removed eval\nFIXES_COMPLETE"])
    workers["scorer"] = FileWorker(
        "scorer",
        [
            "ISSUE: b.py:1 — missing docstring\nSCORE: 55\nSCORE_COMPLETE",
            "SCORE: 92\nSCORE_COMPLETE",
        ],
    )
    workers["learner"] = FileWorker(
        "learner", ["LESSON: both | security | Never call eval on input.\nLESSONS_COMPLETE"]
    )
    retry = RetryController()
    review = ReviewStage(
        scanners={"security": workers["security"], "style": workers["style"]},
        coordinator=ScanCoordinator(WorkspaceGuard(tmp_path), retry),
        loop=ConvergenceLoop(workers["fixer"], workers["scorer"], retry),
        learner=workers["learner"],
    )
    orchestrator = _orchestrator(tmp_path, workers, phases=(VERIFY,), review=review)

    report = asyncio.run(orchestrator.run())

    assert report.status == "completed"
    assert report.scan == {"scanners": {"security": 1, "style": 1}, "unavailable": {}}
    assert report.convergence is not None
    assert report.convergence["status"] == "converged"
    assert report.convergence["final_score"] == 92
    review_metric = report.metrics[-1]
    assert review_metric["phase"] == "review"
    assert review_metric["issues_found"] == 2
    assert review_metric["issues_fixed"] == 2
    assert report.lessons_recorded == 2
    assert workers["fixer"].calls == 1
    assert "Never call eval" in (tmp_path / "LESSONS.md").read_text(encoding="utf-8")


def test_rollback_restores_latest_snapshot(tmp_path: Path) -> None:
    (tmp_path / "app.py").write_text("v1\n", encoding="utf-8")
    orchestrator = _orchestrator(tmp_path, _workers())
    asyncio.run(orchestrator.run())
    (tmp_path / "app.py").write_text("v2\n", encoding="utf-8")

    snapshot = orchestrator.rollback()

    assert (tmp_path / "app.py").read_text(encoding="utf-8") == "v1\n"
    assert not (tmp_path / "implement.out").exists()
    assert orchestrator.status()["snapshots"] == [snapshot.id]


def test_build_orchestrator_wires_default_pipeline(tmp_path: Path) -> None:
    config = PhasegateConfig.default()
    workers = {name: FileWorker(name, ["noop"]) for name in config.workers}

    orchestrator = build_orchestrator(tmp_path, config, workers, decision_provider=auto_approve)

    assert [phase.name for phase in orchestrator.phases] == [
        item.name for item in config.phases
    ]
    assert orchestrator.runner.loop_max_iterations == config.workflow.loop_max_iterations


class OwnerRecordingSnapshots(SnapshotStore):
    """Remembers who held the workspace while each restore ran."""

    def __init__(self, target: Path, ledger: RunLedger) -> None:
        super().__init__(target, ledger, mode="copy")
        self.guard: WorkspaceGuard | None = None
        self.owners: list[str | None] = []

    def restore(self, snapshot_id: str) -> Snapshot:
        assert self.guard is not None
        self.owners.append(self.guard.writer_owner)
        return super().restore(snapshot_id)


def test_reject_restore_holds_the_workspace_writer(tmp_path: Path) -> None:
    ledger = RunLedger(tmp_path)
    snapshots = OwnerRecordingSnapshots(tmp_path, ledger)
    orchestrator = _orchestrator(tmp_path, _workers(), verdict="reject", snapshots=snapshots)
    snapshots.guard = orchestrator.guard

    report = asyncio.run(orchestrator.run())

    assert report.halt is not None and report.halt["kind"] == "rollback_requested"
    assert snapshots.owners == ["rollback"]
    assert orchestrator.guard.writer_owner is None


PLAN_WITH_CONSTRUCTION = (
    "1. add a widget module\n"
    "## CONSTRUCTION_CHECKS\n"
    "- FILE: src/widget.py\n"
    "- EXPORT_FUNCTION: build_widget IN src/widget.py\n"
    "## Risks\n"
    "- FILE: ignored.py\n"
    "PLAN_DONE"
)


class WidgetCoder(FileWorker):
    def __init__(self, source: str | None) -> None:
        super().__init__("coder", ["IMPL_DONE"])
        self.source = source

    async def execute(self, task: str, scope: dict[str, Any]) -> str:
        if self.source is not None:
            module = Path(scope["workspace"], "src", "widget.py")
            module.parent.mkdir(parents=True, exist_ok=True)
            module.write_text(self.source, encoding="utf-8")
        return await super().execute(task, scope)


def test_planned_files_missing_after_implementation_halt_the_run(tmp_path: Path) -> None:
    workers = _workers()
    workers["planner"] = FileWorker("planner", [PLAN_WITH_CONSTRUCTION])
    workers["coder"] = WidgetCoder(None)
    orchestrator = _orchestrator(tmp_path, workers)

    report = asyncio.run(orchestrator.run())

    assert report.status == "failed"
    assert report.cursor == 2
    assert report.halt is not None
    assert report.halt["kind"] == "quality_gate_violation"
    assert report.metrics[-1]["issues_found"] == 2
    run = orchestrator.ledger.get_run(report.run_id)
    assert run is not None
    assert [item["kind"] for item in run["construction"]] == ["file", "function"]


def test_planned_files_present_pass_the_construction_gate(tmp_path: Path) -> None:
    workers = _workers()
    workers["planner"] = FileWorker("planner", [PLAN_WITH_CONSTRUCTION])
    workers["coder"] = WidgetCoder("def build_widget(size: int) -> str:\n    return 'w'\n")
    orchestrator = _orchestrator(tmp_path, workers)

    report = asyncio.run(orchestrator.run())

    assert report.status == "completed", report.halt
    assert report.quality[0]["phase"] == "verify"
    assert report.quality[0]["passed"] is True


def test_build_orchestrator_labels_snapshots_with_project_name(tmp_path: Path) -> None:
    config = PhasegateConfig.default()
    config.project.name = "Billing Service"
    config.state.snapshot_mode = "copy"
    workers = {name: FileWorker(name, ["noop"]) for name in config.workers}
    orchestrator = build_orchestrator(tmp_path, config, workers, decision_provider=auto_approve)

    snapshot_id = orchestrator.snapshots.capture(orchestrator.snapshot_label)

    assert orchestrator.snapshot_label == "Billing Service"
    assert snapshot_id.startswith("phasegate/billing-service-")
    config.project.name = ""
    unnamed = build_orchestrator(tmp_path, config, workers, decision_provider=auto_approve)
    assert unnamed.snapshot_label == tmp_path.resolve().name
