from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from phasegate.state.ledger import RunLedger

logger = logging.getLogger(__name__)

APPROVE = "approve"
REJECT = "reject"
REVISE = "revise"
VERDICTS = (APPROVE, REJECT, REVISE)


@dataclass(frozen=True, slots=True)
class Decision:
    verdict: str
    note: str = ""

    def __post_init__(self) -> None:
        if self.verdict not in VERDICTS:
            raise ValueError(f"Unknown approval verdict: {self.verdict}")

    def to_dict(self) -> dict[str, Any]:
        return {"verdict": self.verdict, "note": self.note}


DecisionProvider = Callable[[dict[str, Any]], Decision | Awaitable[Decision]]


def auto_approve(context: dict[str, Any]) -> Decision:
    return Decision(APPROVE, "auto-approved")


class ApprovalGate:
    """Suspends the run after a gated phase until an external decision arrives.

    The decision is written to the run ledger before it is returned, so the
    caller can never advance past an unrecorded verdict.
    """

    def __init__(
        self,
        provider: DecisionProvider,
        ledger: RunLedger | None = None,
        *,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.provider = provider
        self.ledger = ledger
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def await_decision(self, context: dict[str, Any]) -> Decision:
        decision = self.provider(context)
        if inspect.isawaitable(decision):
            decision = await decision
        if not isinstance(decision, Decision):
            raise TypeError(f"Approval provider returned {type(decision).__name__}, not Decision.")

        record = {
            "run_id": context.get("run_id"),
            "phase": context.get("phase"),
            "cursor": context.get("cursor"),
            **decision.to_dict(),
        }
        if self.ledger is not None:
            self.ledger.add_decision(record)
        logger.info("Approval decision for %s: %s", context.get("phase"), decision.verdict)
        self._emit({"event": "approval_decision", **record})
        return decision
