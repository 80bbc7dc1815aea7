from __future__ import annotations

import logging
import re
import shutil
import subprocess
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from phasegate.errors import SnapshotError
from phasegate.state.ledger import RUNTIME_DIRNAME, RunLedger, utcnow_iso

logger = logging.getLogger(__name__)

SNAPSHOT_MODES = {"auto", "git", "copy"}
COPY_EXCLUDES = {RUNTIME_DIRNAME, ".git"}
PATHSPEC_EXCLUDE = f":(exclude){RUNTIME_DIRNAME}"


@dataclass(slots=True)
class Snapshot:
    id: str
    label: str
    mode: str
    created_at: str
    head: str | None = None
    stash: str | None = None
    path: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "mode": self.mode,
            "created_at": self.created_at,
            "head": self.head,
            "stash": self.stash,
            "path": self.path,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Snapshot:
        return cls(
            id=str(payload["id"]),
            label=str(payload.get("label", "")),
            mode=str(payload.get("mode", "copy")),
            created_at=str(payload.get("created_at", "")),
            head=payload.get("head"),
            stash=payload.get("stash"),
            path=payload.get("path"),
        )


class SnapshotStore:
    """Captures and restores the mutable workspace of a target.

    ``git`` mode stores uncommitted work, ignored files included, as a stash
    commit and re-applies it so capture leaves the tree untouched. It needs a
    repository root with at least one commit; ``auto`` falls back to ``copy``
    otherwise. ``copy`` mode keeps a full copy of the tree under the runtime
    directory. The runtime directory is never part of a snapshot.
    """

    def __init__(self, target: Path, ledger: RunLedger, *, mode: str = "auto") -> None:
        if mode not in SNAPSHOT_MODES:
            raise SnapshotError(f"Unsupported snapshot mode: {mode}")
        self.target = target.resolve()
        self.ledger = ledger
        self.snapshot_root = self.target / RUNTIME_DIRNAME / "snapshots"
        if mode == "auto":
            mode = "git" if self._is_git_root() and self._has_head() else "copy"
        elif mode == "git" and not self._is_git_root():
            raise SnapshotError(
                f"git snapshots require the target to be the repository root: {self.target}"
            )
        self.mode = mode

    def _git_output(self, args: list[str]) -> str | None:
        try:
            proc = subprocess.run(
                ["git", "--no-pager", *args],
                cwd=self.target,
                text=True,
                capture_output=True,
            )
        except FileNotFoundError:
            return None
        return proc.stdout.strip() if proc.returncode == 0 else None

    def _is_git_root(self) -> bool:
        # Restore resets the whole work tree.
        toplevel = self._git_output(["rev-parse", "--show-toplevel"])
        return bool(toplevel) and Path(toplevel).resolve() == self.target

    def _has_head(self) -> bool:
        return bool(self._git_output(["rev-parse", "--verify", "-q", "HEAD"]))

    def _run_git(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
        try:
            proc = subprocess.run(
                ["git", "--no-pager", *args],
                cwd=self.target,
                text=True,
                capture_output=True,
            )
        except FileNotFoundError as exc:
            raise SnapshotError("git executable not found.") from exc
        if check and proc.returncode != 0:
            raise SnapshotError(proc.stderr.strip() or proc.stdout.strip())
        return proc

    @staticmethod
    def _sanitize_label(name: str) -> str:
        safe = re.sub(r"[^a-zA-Z0-9._-]+", "-", name.strip().lower()).strip("-")
        return safe or "snapshot"

    def _new_id(self, label: str) -> str:
        timestamp = datetime.now(UTC).strftime("%Y%m%d%H%M%S")
        base = f"phasegate/{self._sanitize_label(label)}-{timestamp}"
        existing = {item.get("id") for item in self.ledger.get_snapshots()}
        snapshot_id = base
        counter = 2
        while snapshot_id in existing:
            snapshot_id = f"{base}-{counter}"
            counter += 1
        return snapshot_id

    # capture

    def capture(self, label: str) -> str:
        snapshot_id = self._new_id(label)
        if self.mode == "git":
            snapshot = self._capture_git(snapshot_id, label)
        else:
            snapshot = self._capture_copy(snapshot_id, label)
        self.ledger.add_snapshot(snapshot.to_dict())
        logger.info("Captured %s snapshot %s", snapshot.mode, snapshot.id)
        return snapshot.id

    def _capture_git(self, snapshot_id: str, label: str) -> Snapshot:
        if not self._has_head():
            raise SnapshotError("git snapshots need at least one commit; use copy mode.")
        head = self._run_git(["rev-parse", "HEAD"]).stdout.strip()
        status = self._run_git(
            [
                "status",
                "--porcelain",
                "--untracked-files=all",
                "--ignored",
                "--",
                ".",
                PATHSPEC_EXCLUDE,
            ]
        ).stdout.strip()
        stash: str | None = None
        if status:
            self._run_git(
                [
                    "stash",
                    "push",
                    "--all",
                    "-m",
                    snapshot_id,
                    "--",
                    ".",
                    PATHSPEC_EXCLUDE,
                ]
            )
            stash = self._run_git(["rev-parse", "stash@{0}"]).stdout.strip()
            # The stash entry stays in the list so the commit is never pruned.
            self._run_git(["stash", "apply", "--index", stash])
        return Snapshot(
            id=snapshot_id,
            label=label,
            mode="git",
            created_at=utcnow_iso(),
            head=head,
            stash=stash,
        )

    def _capture_copy(self, snapshot_id: str, label: str) -> Snapshot:
        tree = self.snapshot_root / snapshot_id / "tree"
        if tree.exists():
            raise SnapshotError(f"Snapshot directory already exists: {tree}")
        root = self.target

        def _ignore(directory: str, names: list[str]) -> set[str]:
            if Path(directory).resolve() == root:
                return {name for name in names if name in COPY_EXCLUDES}
            return set()

        try:
            shutil.copytree(root, tree, symlinks=True, ignore=_ignore)
        except OSError as exc:
            raise SnapshotError(f"Failed to copy workspace: {exc}") from exc
        return Snapshot(
            id=snapshot_id,
            label=label,
            mode="copy",
            created_at=utcnow_iso(),
            path=str(tree.relative_to(self.target)),
        )

    # restore

    def get(self, snapshot_id: str) -> Snapshot:
        for payload in self.ledger.get_snapshots():
            if payload.get("id") == snapshot_id:
                return Snapshot.from_dict(payload)
        raise SnapshotError(f"Unknown snapshot: {snapshot_id}")

    def restore(self, snapshot_id: str) -> Snapshot:
        snapshot = self.get(snapshot_id)
        if snapshot.mode == "git":
            self._restore_git(snapshot)
        else:
            self._restore_copy(snapshot)
        logger.info("Restored snapshot %s", snapshot.id)
        return snapshot

    def _restore_git(self, snapshot: Snapshot) -> None:
        if not snapshot.head:
            raise SnapshotError(f"Snapshot {snapshot.id} has no recorded HEAD.")
        self._run_git(["reset", "--hard", snapshot.head])
        self._run_git(["clean", "-fdx", "-e", RUNTIME_DIRNAME])
        if snapshot.stash:
            self._run_git(["stash", "apply", "--index", snapshot.stash])

    def _restore_copy(self, snapshot: Snapshot) -> None:
        if not snapshot.path:
            raise SnapshotError(f"Snapshot {snapshot.id} has no stored tree.")
        tree = self.target / snapshot.path
        if not tree.is_dir():
            raise SnapshotError(f"Snapshot tree missing: {tree}")
        try:
            for entry in self.target.iterdir():
                if entry.name in COPY_EXCLUDES:
                    continue
                if entry.is_dir() and not entry.is_symlink():
                    shutil.rmtree(entry)
                else:
                    entry.unlink()
            shutil.copytree(tree, self.target, symlinks=True, dirs_exist_ok=True)
        except OSError as exc:
            raise SnapshotError(f"Failed to restore snapshot {snapshot.id}: {exc}") from exc

    # index

    def list_snapshots(self) -> list[Snapshot]:
        snapshots = [
            Snapshot.from_dict(item) for item in self.ledger.get_snapshots() if "id" in item
        ]
        return list(reversed(snapshots))

    def latest(self) -> Snapshot | None:
        snapshots = self.list_snapshots()
        return snapshots[0] if snapshots else None
