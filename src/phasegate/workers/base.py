from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class WorkerExecutionError(RuntimeError):
    """Raised when a worker invocation fails at the transport level."""

    def __init__(
        self,
        message: str,
        *,
        worker: str | None = None,
        exit_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.worker = worker
        self.exit_code = exit_code


class WorkerTimeoutError(WorkerExecutionError):
    """Raised when a worker invocation exceeds its configured timeout."""


class WorkerProcessError(WorkerExecutionError):
    """Raised when a worker process cannot be started or exposes no output."""


class WorkerClient(ABC):
    """Opaque capability that performs the work of a phase.

    The orchestrator only relies on the returned text and the response
    grammar in :mod:`phasegate.protocol`.
    """

    name: str = "worker"

    @abstractmethod
    async def execute(self, task: str, scope: dict[str, Any]) -> str:
        """Run ``task`` against ``scope`` and return the complete raw output."""

    async def preflight(self) -> tuple[bool, str]:
        """Report whether the worker can run at all, with a diagnostic reason."""
        return True, ""
