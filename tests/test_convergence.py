import asyncio
from typing import Any

import pytest

from phasegate.convergence import ConvergenceLoop, ScoreRecord
from phasegate.errors import GateFailure
from phasegate.gates import RetryController
from phasegate.scan import CanonicalFinding
from phasegate.workers.base import WorkerClient


class Fixer(WorkerClient):
    name = "fixer"

    def __init__(self) -> None:
        self.tasks: list[str] = []

    async def execute(self, task: str, scope: dict[str, Any]) -> str:
        _ = scope
        self.tasks.append(task)
        return "FIX_APPLIED: src/app.py:1 | patched\nFIXES_COMPLETE"


class Scorer(WorkerClient):
    """Replays (score, open issue count) pairs, repeating the last one."""

    name = "scorer"

    def __init__(self, script: list[tuple[int, int]]) -> None:
        self.script = list(script)
        self.calls = 0

    async def execute(self, task: str, scope: dict[str, Any]) -> str:
        _ = task, scope
        score, issues = self.script[min(self.calls, len(self.script) - 1)]
        self.calls += 1
        lines = [f"ISSUE: src/mod{n}.py:{n} — defect number {n}" for n in range(1, issues + 1)]
        return "\n".join([*lines, f"SCORE: {score}", "SCORE_COMPLETE"])


def _issues(count: int) -> list[CanonicalFinding]:
    return [
        CanonicalFinding(f"src/mod{n}.py", n, f"defect number {n}", "MEDIUM", ("scan",), 1)
        for n in range(1, count + 1)
    ]


def test_stagnation_stops_with_last_score_and_residual_issues() -> None:
    fixer = Fixer()
    scorer = Scorer([(60, 2), (60, 1)])
    loop = ConvergenceLoop(fixer, scorer, RetryController())

    result = asyncio.run(loop.run(ScoreRecord(iteration=0, score=40, open_issues=_issues(5))))

    assert result.status == "stagnated"
    assert result.iterations == 2
    assert result.final_score == 60
    assert len(result.residual_issues) == 1
    assert len(fixer.tasks) == 2
    assert scorer.calls == 2
    assert "src/mod5.py:5" in fixer.tasks[0]


def test_zero_issues_converges_without_invocations() -> None:
    fixer = Fixer()
    scorer = Scorer([(90, 0)])
    loop = ConvergenceLoop(fixer, scorer, RetryController())

    result = asyncio.run(loop.run(ScoreRecord(iteration=0, score=95)))

    assert result.status == "converged"
    assert result.final_score == 95
    assert fixer.tasks == []
    assert scorer.calls == 0


def test_emptied_issue_list_converges() -> None:
    loop = ConvergenceLoop(Fixer(), Scorer([(99, 0)]), RetryController())

    result = asyncio.run(loop.run(ScoreRecord(iteration=0, score=50, open_issues=_issues(3))))

    assert result.status == "converged"
    assert result.residual_issues == []


@pytest.mark.parametrize("cap", [1, 3])
def test_improving_scores_stop_at_cap(cap: int) -> None:
    scorer = Scorer([(50 + 10 * n, 4) for n in range(1, 10)])
    loop = ConvergenceLoop(Fixer(), scorer, RetryController(), cap=cap)

    result = asyncio.run(loop.run(ScoreRecord(iteration=0, score=10, open_issues=_issues(4))))

    assert result.status == "exhausted"
    assert result.iterations == cap
    # The initial record plus one scoring per iteration.
    assert len(result.records) == cap + 1
    assert scorer.calls == cap


def test_initial_score_counts_toward_scoring_limit() -> None:
    scorer = Scorer([(20, 3), (30, 3), (40, 3), (50, 3), (60, 3)])
    loop = ConvergenceLoop(Fixer(), scorer, RetryController())

    async def _run() -> int:
        initial = await loop.score(0)
        await loop.run(initial)
        return scorer.calls

    assert asyncio.run(_run()) == loop.cap + 1


def test_scoring_without_score_field_halts() -> None:
    class Mute(WorkerClient):
        name = "mute"

        async def execute(self, task: str, scope: dict[str, Any]) -> str:
            _ = task, scope
            return "SCORE_COMPLETE"

    loop = ConvergenceLoop(Fixer(), Mute(), RetryController(), max_retries=1)

    with pytest.raises(GateFailure) as exc_info:
        asyncio.run(loop.score(0))

    assert exc_info.value.missing_fields == ["SCORE"]
