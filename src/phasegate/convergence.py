from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from phasegate.errors import ProtocolError
from phasegate.gates import RetryController
from phasegate.protocol import parse_fixes, parse_issues, parse_score
from phasegate.scan import CanonicalFinding, FindingsDeduplicator
from phasegate.workers.base import WorkerClient

logger = logging.getLogger(__name__)

CONVERGENCE_CAP = 3

CONVERGED = "converged"
STAGNATED = "stagnated"
EXHAUSTED = "exhausted"


@dataclass(slots=True)
class ScoreRecord:
    iteration: int
    score: int
    open_issues: list[CanonicalFinding] = field(default_factory=list)
    applied_fixes: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "iteration": self.iteration,
            "score": self.score,
            "open_issues": len(self.open_issues),
            "applied_fixes": len(self.applied_fixes),
        }


@dataclass(slots=True)
class ConvergenceResult:
    status: str
    records: list[ScoreRecord]

    @property
    def final(self) -> ScoreRecord:
        return self.records[-1]

    @property
    def final_score(self) -> int:
        return self.final.score

    @property
    def residual_issues(self) -> list[CanonicalFinding]:
        return list(self.final.open_issues)

    @property
    def iterations(self) -> int:
        return self.final.iteration

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "final_score": self.final_score,
            "iterations": self.iterations,
            "residual_issues": [item.to_dict() for item in self.residual_issues],
            "records": [record.to_dict() for record in self.records],
        }


def fix_task(issues: Sequence[CanonicalFinding], marker: str) -> str:
    lines = "\n".join(issue.render() for issue in issues)
    return (
        "Fix every issue below in one pass.\n"
        f"{lines}\n\n"
        f"Report each change as `FIX_APPLIED: <file:line> | <description>` and end with {marker}."
    )


def score_task(marker: str) -> str:
    return (
        "Re-assess the workspace. Report `SCORE: <0-100>` and every remaining "
        f"defect as an ISSUE line, then end with {marker}."
    )


class ConvergenceLoop:
    """Fix, rescore, repeat until clean, no longer improving, or capped.

    Stagnation and exhaustion are ordinary outcomes, reported with the last
    score and the issues still open.
    """

    def __init__(
        self,
        fixer: WorkerClient,
        scorer: WorkerClient,
        retry: RetryController,
        *,
        deduplicator: FindingsDeduplicator | None = None,
        fix_marker: str = "FIXES_COMPLETE",
        score_marker: str = "SCORE_COMPLETE",
        max_retries: int = 2,
        cap: int = CONVERGENCE_CAP,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        if cap < 1:
            raise ValueError("Convergence cap must be >= 1.")
        self.fixer = fixer
        self.scorer = scorer
        self.retry = retry
        self.deduplicator = deduplicator or FindingsDeduplicator()
        self.fix_marker = fix_marker
        self.score_marker = score_marker
        self.max_retries = max_retries
        self.cap = cap
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def score(
        self,
        iteration: int,
        scope: dict[str, Any] | None = None,
        *,
        applied_fixes: list[str] | None = None,
    ) -> ScoreRecord:
        scorer = self.scorer
        task = score_task(self.score_marker)
        score_scope = {**(scope or {}), "iteration": iteration}

        async def invoke() -> str:
            return await scorer.execute(task, score_scope)

        outcome = await self.retry.run(
            invoke,
            self.score_marker,
            self.max_retries,
            required_fields=("SCORE",),
            label=f"score#{iteration}",
        )
        score = parse_score(outcome.output)
        if score is None:
            raise ProtocolError("Scoring output carried no SCORE field.")
        issues = self.deduplicator.merge(parse_issues(outcome.output, source=scorer.name))
        return ScoreRecord(
            iteration=iteration,
            score=score,
            open_issues=issues,
            applied_fixes=list(applied_fixes or []),
        )

    async def fix(
        self, issues: list[CanonicalFinding], scope: dict[str, Any] | None = None
    ) -> list[str]:
        fixer = self.fixer
        task = fix_task(issues, self.fix_marker)
        fix_scope = {**(scope or {}), "issues": [issue.to_dict() for issue in issues]}

        async def invoke() -> str:
            return await fixer.execute(task, fix_scope)

        outcome = await self.retry.run(invoke, self.fix_marker, self.max_retries, label="fix")
        return parse_fixes(outcome.output)

    async def run(
        self, initial: ScoreRecord, scope: dict[str, Any] | None = None
    ) -> ConvergenceResult:
        records = [initial]
        if not initial.open_issues:
            return ConvergenceResult(status=CONVERGED, records=records)

        previous = initial
        iteration = 0
        while True:
            iteration += 1
            fixes = await self.fix(previous.open_issues, scope)
            current = await self.score(iteration, scope, applied_fixes=fixes)
            records.append(current)
            self._emit({"event": "convergence_iteration", **current.to_dict()})
            logger.info(
                "Convergence iteration %d: score %d, %d open issue(s)",
                iteration,
                current.score,
                len(current.open_issues),
            )

            if not current.open_issues:
                status = CONVERGED
            elif current.score <= previous.score:
                status = STAGNATED
            elif iteration >= self.cap:
                status = EXHAUSTED
            else:
                previous = current
                continue
            return ConvergenceResult(status=status, records=records)
