from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from phasegate.gates import RetryController
from phasegate.protocol import parse_remaining
from phasegate.workers.base import WorkerClient

logger = logging.getLogger(__name__)

LOOP_MAX_ITERATIONS = 5


class PhaseKind:
    NORMAL = "normal"
    LOOPABLE = "loopable"
    APPROVAL_GATED = "approval-gated"

    ALL = (NORMAL, LOOPABLE, APPROVAL_GATED)


@dataclass(frozen=True, slots=True)
class Phase:
    name: str
    worker: str
    completion_marker: str
    max_retries: int = 2
    kind: str = PhaseKind.NORMAL
    task: str = ""
    continue_marker: str = ""
    quality_gate: bool = False
    mutates: bool = True

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Phase name must be non-empty.")
        if not self.completion_marker:
            raise ValueError(f"Phase {self.name} requires a completion marker.")
        if self.kind not in PhaseKind.ALL:
            raise ValueError(f"Phase {self.name} has unknown kind: {self.kind}")
        if self.max_retries < 0:
            raise ValueError(f"Phase {self.name} max_retries must be >= 0.")
        if self.kind == PhaseKind.LOOPABLE and not self.continue_marker:
            raise ValueError(f"Loopable phase {self.name} requires a continue marker.")

    @property
    def markers(self) -> tuple[str, ...]:
        if self.kind == PhaseKind.LOOPABLE:
            return (self.completion_marker, self.continue_marker)
        return (self.completion_marker,)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "worker": self.worker,
            "kind": self.kind,
            "completion_marker": self.completion_marker,
            "continue_marker": self.continue_marker,
            "max_retries": self.max_retries,
            "quality_gate": self.quality_gate,
            "mutates": self.mutates,
        }


@dataclass(slots=True)
class PhaseResult:
    phase: str
    status: str
    output: str
    attempts: int
    iterations: int = 1
    remaining: list[str] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def completed(self) -> bool:
        return self.status == "completed"

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "status": self.status,
            "attempts": self.attempts,
            "iterations": self.iterations,
            "remaining": list(self.remaining),
            "duration_ms": self.duration_ms,
        }


def continuation_task(task: str, remaining: list[str]) -> str:
    items = "\n".join(f"- {item}" for item in remaining)
    return f"{task}\n\nContinue with only the remaining work:\n{items}"


class PhaseRunner:
    """Runs one phase through the retry gate and reports how it ended."""

    def __init__(
        self,
        workers: Mapping[str, WorkerClient],
        retry: RetryController,
        *,
        loop_max_iterations: int = LOOP_MAX_ITERATIONS,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.workers = workers
        self.retry = retry
        self.loop_max_iterations = loop_max_iterations
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _worker(self, phase: Phase) -> WorkerClient:
        try:
            return self.workers[phase.worker]
        except KeyError as exc:
            raise ValueError(
                f"Phase {phase.name} references unknown worker: {phase.worker}"
            ) from exc

    async def run(self, phase: Phase, scope: dict[str, Any]) -> PhaseResult:
        worker = self._worker(phase)
        started = time.monotonic()
        base_task = phase.task or f"Perform the {phase.name} phase."
        task = base_task
        phase_scope = {**scope, "phase": phase.name}
        total_attempts = 0
        remaining: list[str] = []
        output = ""
        iteration = 0

        # Each iteration is one gated call; GateFailure propagates unchanged.
        while True:
            iteration += 1

            async def invoke(current: str = task) -> str:
                return await worker.execute(current, phase_scope)

            outcome = await self.retry.run(
                invoke,
                phase.markers,
                phase.max_retries,
                label=f"{phase.name}#{iteration}",
            )
            total_attempts += outcome.attempts
            output = outcome.output

            if outcome.marker == phase.completion_marker or phase.kind != PhaseKind.LOOPABLE:
                remaining = []
                status = "completed"
                break

            remaining = parse_remaining(output)
            self._emit(
                {
                    "event": "phase_continued",
                    "phase": phase.name,
                    "iteration": iteration,
                    "remaining": len(remaining),
                }
            )
            if iteration >= self.loop_max_iterations:
                status = "incomplete"
                logger.warning(
                    "Phase %s still has %d remaining item(s) after %d iterations",
                    phase.name,
                    len(remaining),
                    iteration,
                )
                break
            task = continuation_task(base_task, remaining)

        duration_ms = int((time.monotonic() - started) * 1000)
        result = PhaseResult(
            phase=phase.name,
            status=status,
            output=output,
            attempts=total_attempts,
            iterations=iteration,
            remaining=remaining,
            duration_ms=duration_ms,
        )
        self._emit({"event": f"phase_{status}", **result.to_dict()})
        return result
