"""Error taxonomy for pipeline runs.

Failures that a component can bound locally (gate, partial completion,
quality, scanner availability) are raised only once that bound is
exhausted. ``PipelineHalt`` subclasses carry the diagnostics the
orchestrator attaches to a halted run.
"""

from __future__ import annotations

from typing import Any


class PhasegateError(RuntimeError):
    """Base error for all phasegate failures."""


class ProtocolError(PhasegateError):
    """Raised when a worker response is missing a field the current step requires."""


class WorkspaceBusyError(PhasegateError):
    """Raised when write access to the workspace overlaps another holder."""


class SnapshotError(PhasegateError):
    """Raised when a snapshot cannot be captured or restored."""


class PipelineHalt(PhasegateError):
    """A failure that stops the run and is reported with diagnostics."""

    kind = "halt"

    def diagnostics(self) -> dict[str, Any]:
        return {}


class GateFailure(PipelineHalt):
    """Worker output never carried the completion marker within the retry bound."""

    kind = "gate_failure"

    def __init__(
        self,
        message: str,
        *,
        marker: str | tuple[str, ...],
        attempts: int,
        last_output: str,
        missing_fields: list[str] | None = None,
    ) -> None:
        super().__init__(message)
        self.marker = marker
        self.attempts = attempts
        self.last_output = last_output
        self.missing_fields = list(missing_fields or [])

    def diagnostics(self) -> dict[str, Any]:
        return {
            "marker": self.marker,
            "attempts": self.attempts,
            "missing_fields": list(self.missing_fields),
            "last_output": self.last_output,
        }


class PartialCompletion(PipelineHalt):
    """A loopable phase still reported remaining work after its iteration bound."""

    kind = "partial_completion"

    def __init__(self, message: str, *, phase: str, iterations: int, remaining: list[str]) -> None:
        super().__init__(message)
        self.phase = phase
        self.iterations = iterations
        self.remaining = list(remaining)

    def diagnostics(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "iterations": self.iterations,
            "remaining": list(self.remaining),
        }


class QualityGateViolation(PipelineHalt):
    """Deterministic checks kept failing after the correction bound."""

    kind = "quality_gate_violation"

    def __init__(self, message: str, *, violations: list[Any], corrections: int) -> None:
        super().__init__(message)
        self.violations = list(violations)
        self.corrections = corrections

    def diagnostics(self) -> dict[str, Any]:
        return {
            "corrections": self.corrections,
            "violations": [
                item.to_dict() if hasattr(item, "to_dict") else item for item in self.violations
            ],
        }


class RollbackRequested(PipelineHalt):
    """An approval gate rejected the run; the snapshot has been restored."""

    kind = "rollback_requested"

    def __init__(
        self, message: str, *, phase: str, snapshot_id: str | None, note: str = ""
    ) -> None:
        super().__init__(message)
        self.phase = phase
        self.snapshot_id = snapshot_id
        self.note = note

    def diagnostics(self) -> dict[str, Any]:
        return {"phase": self.phase, "snapshot_id": self.snapshot_id, "note": self.note}


class ScanUnavailable(PhasegateError):
    """A single review worker could not run. Recorded, never fatal to the scan."""

    def __init__(self, scanner: str, reason: str) -> None:
        super().__init__(f"Scanner '{scanner}' unavailable: {reason}")
        self.scanner = scanner
        self.reason = reason
