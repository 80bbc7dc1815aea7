from phasegate.workers.base import (
    WorkerClient,
    WorkerExecutionError,
    WorkerProcessError,
    WorkerTimeoutError,
)
from phasegate.workers.claude import ClaudeCodeWorker
from phasegate.workers.command import CommandWorker
from phasegate.workers.guarded import GuardedWorker

__all__ = [
    "ClaudeCodeWorker",
    "CommandWorker",
    "GuardedWorker",
    "WorkerClient",
    "WorkerExecutionError",
    "WorkerProcessError",
    "WorkerTimeoutError",
]
