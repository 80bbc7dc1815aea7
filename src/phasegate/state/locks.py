from __future__ import annotations

import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from phasegate.errors import PhasegateError


class LockTimeoutError(PhasegateError):
    """Raised when an exclusive lock file stays held past the timeout."""


@contextmanager
def exclusive_lock(lock_file: Path, timeout_seconds: float = 3.0) -> Iterator[None]:
    """Single-writer lock backed by an ``O_EXCL`` lock file."""
    lock_file.parent.mkdir(parents=True, exist_ok=True)
    start = time.monotonic()
    while True:
        try:
            fd = os.open(lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            os.write(fd, str(os.getpid()).encode("utf-8"))
            os.close(fd)
            break
        except FileExistsError as exc:
            if time.monotonic() - start > timeout_seconds:
                raise LockTimeoutError(f"Timed out waiting for lock: {lock_file}") from exc
            time.sleep(0.02)

    try:
        yield
    finally:
        try:
            lock_file.unlink()
        except FileNotFoundError:
            pass
