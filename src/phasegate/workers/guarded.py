from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

from phasegate.workers.base import WorkerClient, WorkerExecutionError, WorkerTimeoutError

WorkerEventHook = Callable[[dict[str, Any]], None]


class GuardedWorker(WorkerClient):
    """Wraps a worker with an invocation timeout and an optional transport failover.

    Output validation and re-invocation belong to ``RetryController``; this
    wrapper only turns hung or crashed transports into ``WorkerExecutionError``.
    """

    def __init__(
        self,
        primary: WorkerClient,
        *,
        timeout_seconds: float = 900.0,
        fallback: WorkerClient | None = None,
        event_hook: WorkerEventHook | None = None,
    ) -> None:
        self.primary = primary
        self.fallback = fallback
        self.timeout_seconds = timeout_seconds
        self.event_hook = event_hook
        self.name = primary.name

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def _call(self, worker: WorkerClient, task: str, scope: dict[str, Any]) -> str:
        try:
            return await asyncio.wait_for(
                worker.execute(task, scope), timeout=self.timeout_seconds
            )
        except TimeoutError as exc:
            raise WorkerTimeoutError(
                f"Worker {worker.name} timed out after {self.timeout_seconds:.1f}s",
                worker=worker.name,
            ) from exc

    async def preflight(self) -> tuple[bool, str]:
        ok, reason = await self.primary.preflight()
        if ok or self.fallback is None:
            return ok, reason
        fallback_ok, fallback_reason = await self.fallback.preflight()
        if fallback_ok:
            return True, ""
        return False, f"{reason}; fallback: {fallback_reason}"

    async def execute(self, task: str, scope: dict[str, Any]) -> str:
        try:
            return await self._call(self.primary, task, scope)
        except WorkerExecutionError as exc:
            self._emit(
                {
                    "event": "worker_invocation_failed",
                    "worker": self.primary.name,
                    "error": str(exc),
                }
            )
            if self.fallback is None:
                raise
            primary_error = exc

        try:
            output = await self._call(self.fallback, task, scope)
        except WorkerExecutionError as exc:
            self._emit(
                {
                    "event": "worker_invocation_failed",
                    "worker": self.fallback.name,
                    "error": str(exc),
                }
            )
            raise WorkerExecutionError(
                f"All workers failed for {self.name}. "
                f"{self.primary.name}: {primary_error}; {self.fallback.name}: {exc}",
                worker=self.name,
            ) from exc
        self._emit({"event": "worker_fallback_success", "worker": self.fallback.name})
        return output
