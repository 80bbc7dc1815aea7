from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from phasegate.errors import WorkspaceBusyError


class WorkspaceGuard:
    """Tracks who may touch the workspace right now.

    One writer at a time, or any number of readers, never both. Runs are
    single-threaded so overlap is a programming error and fails fast
    instead of waiting.
    """

    def __init__(self, root: Path) -> None:
        self.root = root.resolve()
        self._writer: str | None = None
        self._readers = 0

    @property
    def writer_owner(self) -> str | None:
        return self._writer

    @property
    def reader_count(self) -> int:
        return self._readers

    @contextmanager
    def writer(self, owner: str) -> Iterator[Path]:
        if self._writer is not None:
            raise WorkspaceBusyError(
                f"Workspace is already held for writing by {self._writer}; {owner} must wait."
            )
        if self._readers:
            raise WorkspaceBusyError(
                f"Workspace has {self._readers} active reader(s); {owner} cannot write."
            )
        self._writer = owner
        try:
            yield self.root
        finally:
            self._writer = None

    @contextmanager
    def readers(self) -> Iterator[Path]:
        if self._writer is not None:
            raise WorkspaceBusyError(
                f"Workspace is held for writing by {self._writer}; readers cannot start."
            )
        self._readers += 1
        try:
            yield self.root
        finally:
            self._readers -= 1
