from __future__ import annotations

import logging
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from uuid import uuid4

from phasegate.approval import APPROVE, REJECT, ApprovalGate, DecisionProvider
from phasegate.config import PhasegateConfig
from phasegate.convergence import ConvergenceLoop, ConvergenceResult, ScoreRecord
from phasegate.errors import PartialCompletion, PipelineHalt, RollbackRequested, SnapshotError
from phasegate.gates import RetryController
from phasegate.lessons import LessonEntry, LessonStore
from phasegate.phases import Phase, PhaseKind, PhaseResult, PhaseRunner
from phasegate.protocol import parse_lessons
from phasegate.quality import (
    CommandCheck,
    ConstructionCheck,
    ConstructionItem,
    QualityCheck,
    QualityGate,
    QualityReport,
    parse_construction_checks,
)
from phasegate.scan import DedupPolicy, FindingsDeduplicator, ScanCoordinator, ScanReport
from phasegate.state.ledger import RunLedger, utcnow_iso
from phasegate.state.snapshots import Snapshot, SnapshotStore
from phasegate.workers.base import WorkerClient
from phasegate.workspace import WorkspaceGuard

logger = logging.getLogger(__name__)

RUN_PENDING = "pending"
RUN_RUNNING = "running"
RUN_AWAITING_APPROVAL = "awaiting-approval"
RUN_FAILED = "failed"
RUN_COMPLETED = "completed"


@dataclass(slots=True)
class PipelineRun:
    run_id: str
    target: Path
    phases: tuple[Phase, ...]
    cursor: int = 0
    status: str = RUN_PENDING
    snapshot_id: str | None = None
    construction: list[ConstructionItem] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "target": str(self.target),
            "phases": [phase.name for phase in self.phases],
            "cursor": self.cursor,
            "status": self.status,
            "snapshot_id": self.snapshot_id,
            "construction": [item.to_dict() for item in self.construction],
        }


@dataclass(slots=True)
class PhaseMetric:
    phase: str
    issues_found: int = 0
    issues_fixed: int = 0
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "issues_found": self.issues_found,
            "issues_fixed": self.issues_fixed,
            "duration_ms": self.duration_ms,
        }


@dataclass(slots=True)
class ReviewStage:
    scanners: dict[str, WorkerClient]
    coordinator: ScanCoordinator
    loop: ConvergenceLoop
    deduplicator: FindingsDeduplicator = field(default_factory=FindingsDeduplicator)
    learner: WorkerClient | None = None
    learn_marker: str = "LESSONS_COMPLETE"
    max_retries: int = 2


@dataclass(slots=True)
class RunReport:
    run_id: str
    status: str
    cursor: int
    snapshot_id: str | None = None
    dry_run: bool = False
    plan: list[dict[str, Any]] = field(default_factory=list)
    phases: list[dict[str, Any]] = field(default_factory=list)
    quality: list[dict[str, Any]] = field(default_factory=list)
    scan: dict[str, Any] | None = None
    convergence: dict[str, Any] | None = None
    lessons_recorded: int = 0
    metrics: list[dict[str, Any]] = field(default_factory=list)
    halt: dict[str, Any] | None = None

    @property
    def ok(self) -> bool:
        return self.status == RUN_COMPLETED or (self.dry_run and self.status == RUN_PENDING)

    @property
    def totals(self) -> dict[str, int]:
        return {
            "issues_found": sum(int(item.get("issues_found", 0)) for item in self.metrics),
            "issues_fixed": sum(int(item.get("issues_fixed", 0)) for item in self.metrics),
            "duration_ms": sum(int(item.get("duration_ms", 0)) for item in self.metrics),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status,
            "cursor": self.cursor,
            "snapshot_id": self.snapshot_id,
            "dry_run": self.dry_run,
            "plan": list(self.plan),
            "phases": list(self.phases),
            "quality": list(self.quality),
            "scan": self.scan,
            "convergence": self.convergence,
            "lessons_recorded": self.lessons_recorded,
            "metrics": list(self.metrics),
            "totals": self.totals,
            "halt": self.halt,
        }


class PipelineOrchestrator:
    """Runs an ordered pipeline of phases against one target workspace.

    A snapshot is captured before the first phase. Phases run strictly in
    order and the cursor only advances on success. Bound exhaustion in any
    component halts the run with diagnostics instead of retrying further.
    Files and symbols declared under ``## CONSTRUCTION_CHECKS`` in any phase
    output are verified by every later quality-gated phase.
    """

    def __init__(
        self,
        target: Path,
        phases: Sequence[Phase],
        workers: Mapping[str, WorkerClient],
        *,
        ledger: RunLedger,
        snapshots: SnapshotStore,
        approval: ApprovalGate,
        guard: WorkspaceGuard | None = None,
        retry: RetryController | None = None,
        quality: QualityGate | None = None,
        review: ReviewStage | None = None,
        lessons: LessonStore | None = None,
        loop_max_iterations: int | None = None,
        snapshot_label: str = "",
    ) -> None:
        self.target = target.resolve()
        self.snapshot_label = snapshot_label or self.target.name
        self.phases = tuple(phases)
        self.workers = dict(workers)
        self.ledger = ledger
        self.snapshots = snapshots
        self.approval = approval
        self.guard = guard or WorkspaceGuard(self.target)
        self.retry = retry or RetryController(event_hook=self.record_event)
        self.quality = quality
        self.review = review
        self.lessons = lessons
        runner_kwargs: dict[str, Any] = {"event_hook": self.record_event}
        if loop_max_iterations is not None:
            runner_kwargs["loop_max_iterations"] = loop_max_iterations
        self.runner = PhaseRunner(self.workers, self.retry, **runner_kwargs)

        missing = sorted({phase.worker for phase in self.phases} - set(self.workers))
        if missing:
            raise ValueError(f"Pipeline references unknown worker(s): {', '.join(missing)}")

    def record_event(self, event: dict[str, Any]) -> None:
        self.ledger.record_event(event)

    def _scope(self, run: PipelineRun, root: Path) -> dict[str, Any]:
        return {"run_id": run.run_id, "target": str(self.target), "workspace": str(root)}

    def _persist(self, run: PipelineRun, **extra: Any) -> None:
        self.ledger.upsert_run(run.run_id, {**run.to_dict(), **extra})

    def plan(self) -> list[dict[str, Any]]:
        steps = [phase.to_dict() for phase in self.phases]
        if self.review is not None and self.review.scanners:
            steps.append(
                {
                    "name": "review",
                    "scanners": sorted(self.review.scanners),
                    "convergence_cap": self.review.loop.cap,
                }
            )
        return steps

    async def run(self, *, dry_run: bool = False) -> RunReport:
        run = PipelineRun(run_id=f"run-{uuid4().hex[:12]}", target=self.target, phases=self.phases)
        report = RunReport(run_id=run.run_id, status=run.status, cursor=run.cursor)
        if dry_run:
            report.dry_run = True
            report.plan = self.plan()
            return report

        run.status = RUN_RUNNING
        self._persist(run, started_at=utcnow_iso())
        try:
            run.snapshot_id = self.snapshots.capture(self.snapshot_label)
        except SnapshotError as exc:
            logger.error("Snapshot capture failed, no phase was run: %s", exc)
            run.status = RUN_FAILED
            report.halt = {"kind": "snapshot_error", "message": str(exc), "diagnostics": {}}
            return self._finish(run, report)
        report.snapshot_id = run.snapshot_id

        try:
            for index, phase in enumerate(self.phases):
                if index != run.cursor:
                    raise RuntimeError(f"Cursor mismatch: expected {index}, found {run.cursor}")
                if not await self._execute_phase(run, phase, report):
                    return self._finish(run, report)
            if self.review is not None and self.review.scanners:
                await self._review(run, report)
        except PipelineHalt as exc:
            logger.warning("Run %s halted: %s", run.run_id, exc)
            run.status = RUN_FAILED
            report.halt = {"kind": exc.kind, "message": str(exc), "diagnostics": exc.diagnostics()}
            self.record_event({"event": "run_halted", "run_id": run.run_id, "kind": exc.kind})
            return self._finish(run, report)
        except SnapshotError:
            run.status = RUN_FAILED
            self._finish(run, report)
            raise

        run.status = RUN_COMPLETED
        return self._finish(run, report)

    def _finish(self, run: PipelineRun, report: RunReport) -> RunReport:
        report.status = run.status
        report.cursor = run.cursor
        report.snapshot_id = run.snapshot_id
        self.ledger.record_phase_metrics(run.run_id, report.metrics)
        self._persist(run, ended_at=utcnow_iso(), halt=report.halt, totals=report.totals)
        logger.info("Run %s finished with status %s", run.run_id, run.status)
        return report

    def _record_lessons(self, raw_output: str) -> int:
        if self.lessons is None:
            return 0
        recorded = 0
        for note in parse_lessons(raw_output):
            for scope in note.scopes:
                entry = LessonEntry(scope=scope, category=note.category, text=note.text)
                if self.lessons.record(entry, scope):
                    recorded += 1
        return recorded

    def _quality_gate(self, run: PipelineRun) -> QualityGate | None:
        if self.quality is not None:
            return self.quality
        if run.construction:
            return QualityGate([], self.retry, event_hook=self.record_event)
        return None

    async def _execute_phase(self, run: PipelineRun, phase: Phase, report: RunReport) -> bool:
        started = time.monotonic()
        metric = PhaseMetric(phase=phase.name)
        quality_report: QualityReport | None = None

        if phase.mutates:
            access = self.guard.writer(phase.name)
        else:
            access = self.guard.readers()
        with access as root:
            scope = self._scope(run, root)
            result: PhaseResult = await self.runner.run(phase, scope)
            report.phases.append(result.to_dict())
            if not result.completed:
                metric.issues_found = len(result.remaining)
                metric.duration_ms = int((time.monotonic() - started) * 1000)
                report.metrics.append(metric.to_dict())
                raise PartialCompletion(
                    f"Phase {phase.name} still has remaining work after "
                    f"{result.iterations} iteration(s).",
                    phase=phase.name,
                    iterations=result.iterations,
                    remaining=result.remaining,
                )
            for item in parse_construction_checks(result.output):
                if item not in run.construction:
                    run.construction.append(item)
            gate = self._quality_gate(run)
            if phase.quality_gate and gate is not None:
                extra: list[QualityCheck] = []
                if run.construction:
                    extra.append(ConstructionCheck(run.construction))
                try:
                    quality_report = await gate.enforce(root, scope, extra_checks=extra)
                except PipelineHalt as exc:
                    violations = getattr(exc, "violations", [])
                    self.ledger.record_gate_result(
                        {
                            "name": "quality",
                            "phase": phase.name,
                            "passed": False,
                            "reason": str(exc),
                            "violations": len(violations),
                        }
                    )
                    metric.issues_found = len(violations)
                    metric.duration_ms = int((time.monotonic() - started) * 1000)
                    report.metrics.append(metric.to_dict())
                    raise

        report.lessons_recorded += self._record_lessons(result.output)
        if quality_report is not None:
            report.quality.append({"phase": phase.name, **quality_report.to_dict()})
            self.ledger.record_gate_result(
                {
                    "name": "quality",
                    "phase": phase.name,
                    "passed": True,
                    "corrections": quality_report.corrections,
                }
            )
            metric.issues_found = quality_report.history[0]
            metric.issues_fixed = quality_report.history[0] - quality_report.history[-1]
        metric.duration_ms = int((time.monotonic() - started) * 1000)
        report.metrics.append(metric.to_dict())

        if phase.kind == PhaseKind.APPROVAL_GATED:
            return await self._await_approval(run, phase, result, report)

        run.cursor += 1
        self._persist(run)
        return True

    async def _await_approval(
        self, run: PipelineRun, phase: Phase, result: PhaseResult, report: RunReport
    ) -> bool:
        run.status = RUN_AWAITING_APPROVAL
        self._persist(run)
        decision = await self.approval.await_decision(
            {
                "run_id": run.run_id,
                "phase": phase.name,
                "cursor": run.cursor,
                "output": result.output,
            }
        )
        if decision.verdict == APPROVE:
            run.status = RUN_RUNNING
            run.cursor += 1
            self._persist(run)
            return True
        if decision.verdict == REJECT:
            if run.snapshot_id is None:
                raise SnapshotError("No snapshot to restore for rejected run.")
            with self.guard.writer("rollback"):
                self.snapshots.restore(run.snapshot_id)
            raise RollbackRequested(
                f"Phase {phase.name} was rejected; workspace restored to {run.snapshot_id}.",
                phase=phase.name,
                snapshot_id=run.snapshot_id,
                note=decision.note,
            )
        # revise: the run stays parked at this phase and the workspace is left as is.
        report.halt = {
            "kind": "revision_requested",
            "message": f"Revision requested for phase {phase.name}.",
            "diagnostics": {"phase": phase.name, "note": decision.note},
        }
        return False

    async def _review(self, run: PipelineRun, report: RunReport) -> None:
        review = self.review
        assert review is not None
        started = time.monotonic()
        scope = self._scope(run, self.target)
        scan_report: ScanReport = await review.coordinator.scan_all(review.scanners, scope)
        report.scan = scan_report.to_dict()
        canonical = review.deduplicator.merge(scan_report.all_findings)

        with self.guard.writer("review") as root:
            scope = self._scope(run, root)
            scored = await review.loop.score(0, scope)
            initial = ScoreRecord(
                iteration=0,
                score=scored.score,
                open_issues=review.deduplicator.merge([*canonical, *scored.open_issues]),
            )
            convergence: ConvergenceResult = await review.loop.run(initial, scope)
        report.convergence = convergence.to_dict()

        found = len(initial.open_issues)
        report.metrics.append(
            PhaseMetric(
                phase="review",
                issues_found=found,
                issues_fixed=max(0, found - len(convergence.residual_issues)),
                duration_ms=int((time.monotonic() - started) * 1000),
            ).to_dict()
        )

        if review.learner is not None and self.lessons is not None:
            learner = review.learner
            summary = convergence.to_dict()
            task = (
                "Distill reusable lessons from this review as "
                "`LESSON: <project|global|both> | <category> | <text>` lines, "
                f"then end with {review.learn_marker}."
            )

            async def invoke() -> str:
                return await learner.execute(task, {**scope, "convergence": summary})

            outcome = await self.retry.run(
                invoke, review.learn_marker, review.max_retries, label="learn"
            )
            report.lessons_recorded += self._record_lessons(outcome.output)

    def rollback(self, snapshot_id: str | None = None) -> Snapshot:
        if snapshot_id is None:
            latest = self.snapshots.latest()
            if latest is None:
                raise SnapshotError("No snapshots recorded for this target.")
            snapshot_id = latest.id
        with self.guard.writer("rollback"):
            snapshot = self.snapshots.restore(snapshot_id)
        self.record_event({"event": "rollback", "snapshot_id": snapshot.id})
        return snapshot

    def status(self) -> dict[str, Any]:
        metrics = self.ledger.get_metrics()
        events = metrics.get("events", [])
        return {
            "target": str(self.target),
            "latest_run": self.ledger.latest_run(),
            "runs": len(self.ledger.list_runs()),
            "decisions": self.ledger.get_decisions()[-5:],
            "snapshots": [snapshot.id for snapshot in self.snapshots.list_snapshots()[:5]],
            "recent_events": events[-10:] if isinstance(events, list) else [],
        }


def build_orchestrator(
    target: Path,
    config: PhasegateConfig,
    workers: Mapping[str, WorkerClient],
    *,
    decision_provider: DecisionProvider,
    ledger: RunLedger | None = None,
) -> PipelineOrchestrator:
    target = target.resolve()
    ledger = ledger or RunLedger(target)
    snapshots = SnapshotStore(target, ledger, mode=config.state.snapshot_mode)
    guard = WorkspaceGuard(target)
    hook = ledger.record_event
    retry = RetryController(event_hook=hook)

    quality: QualityGate | None = None
    if config.quality.commands:
        quality = QualityGate(
            [CommandCheck(command) for command in config.quality.commands],
            retry,
            corrector=workers.get(config.quality.corrector),
            marker=config.quality.marker,
            max_retries=config.quality.max_retries,
            correction_cycles=config.quality.correction_cycles,
            event_hook=hook,
        )

    review: ReviewStage | None = None
    if config.review.enabled and config.review.scanners:
        deduplicator = FindingsDeduplicator(
            DedupPolicy(
                line_window=config.review.dedup_line_window,
                similarity=config.review.dedup_similarity,
            )
        )
        review = ReviewStage(
            scanners={name: workers[name] for name in config.review.scanners},
            coordinator=ScanCoordinator(
                guard,
                retry,
                marker=config.review.scan_marker,
                max_retries=config.review.scan_max_retries,
                event_hook=hook,
            ),
            loop=ConvergenceLoop(
                workers[config.review.fixer],
                workers[config.review.scorer],
                retry,
                deduplicator=deduplicator,
                fix_marker=config.review.fix_marker,
                score_marker=config.review.score_marker,
                max_retries=config.review.max_retries,
                cap=config.workflow.convergence_cap,
                event_hook=hook,
            ),
            deduplicator=deduplicator,
            learner=workers.get(config.review.learner) if config.review.learner else None,
            learn_marker=config.review.learn_marker,
            max_retries=config.review.max_retries,
        )

    lessons = LessonStore(
        config.lessons.project_path(target),
        config.lessons.global_path(),
        similarity=config.lessons.similarity,
    )
    return PipelineOrchestrator(
        target,
        config.pipeline(),
        workers,
        ledger=ledger,
        snapshots=snapshots,
        approval=ApprovalGate(decision_provider, ledger, event_hook=hook),
        guard=guard,
        retry=retry,
        quality=quality,
        review=review,
        lessons=lessons,
        loop_max_iterations=config.workflow.loop_max_iterations,
        snapshot_label=config.project.name,
    )
