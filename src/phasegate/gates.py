from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from phasegate.errors import GateFailure
from phasegate.protocol import has_field
from phasegate.workers.base import WorkerExecutionError

logger = logging.getLogger(__name__)

EventHook = Callable[[dict[str, Any]], None]
Invoke = Callable[[], Awaitable[str]]


class GateValidator:
    """Exact completion-marker checks. No case folding, no partial matches."""

    @staticmethod
    def check(raw_output: str, marker: str) -> bool:
        if not marker:
            raise ValueError("Completion marker must be a non-empty string.")
        return marker in raw_output

    @classmethod
    def check_any(cls, raw_output: str, markers: Sequence[str]) -> str | None:
        for marker in markers:
            if cls.check(raw_output, marker):
                return marker
        return None

    @staticmethod
    def missing_fields(raw_output: str, required_fields: Sequence[str]) -> list[str]:
        return [key for key in required_fields if not has_field(raw_output, key)]


@dataclass(slots=True)
class GateOutcome:
    output: str
    attempts: int
    marker: str
    outputs: list[str] = field(default_factory=list)


class RetryController:
    """Re-invokes the same task until its output passes the gate.

    Workers are treated as deterministic: there is no backoff and no task
    escalation between attempts.
    """

    def __init__(self, event_hook: EventHook | None = None) -> None:
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def run(
        self,
        invoke: Invoke,
        marker: str | Sequence[str],
        max_retries: int,
        *,
        required_fields: Sequence[str] = (),
        label: str = "",
    ) -> GateOutcome:
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        markers = (marker,) if isinstance(marker, str) else tuple(marker)
        if not markers:
            raise ValueError("At least one completion marker is required.")

        outputs: list[str] = []
        missing: list[str] = []
        for attempt in range(1, max_retries + 2):
            try:
                output = await invoke()
            except WorkerExecutionError as exc:
                # A failed transport counts as an attempt without a marker.
                outputs.append(f"[worker error] {exc}")
                matched = None
                missing = []
                reason = f"worker error: {exc}"
            else:
                outputs.append(output)
                matched = GateValidator.check_any(output, markers)
                missing = GateValidator.missing_fields(output, required_fields) if matched else []
                if matched is not None and not missing:
                    self._emit({"event": "gate_passed", "label": label, "attempt": attempt})
                    return GateOutcome(
                        output=output, attempts=attempt, marker=matched, outputs=outputs
                    )
                reason = (
                    f"missing fields {missing}"
                    if matched is not None
                    else "completion marker absent"
                )
            logger.info("Gate %s failed on attempt %d: %s", label or markers[0], attempt, reason)
            self._emit(
                {
                    "event": "gate_attempt_failed",
                    "label": label,
                    "attempt": attempt,
                    "reason": reason,
                    "max_retries": max_retries,
                }
            )

        attempts = max_retries + 1
        expected = markers[0] if len(markers) == 1 else markers
        raise GateFailure(
            f"Gate {label or markers[0]} failed after {attempts} attempt(s).",
            marker=expected,
            attempts=attempts,
            last_output=outputs[-1],
            missing_fields=missing,
        )
