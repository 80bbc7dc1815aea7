"""Concurrent review fan-out and findings deduplication.

Scanners run side by side over a read-only workspace; their findings are
merged into canonical records before a single fix pass is issued.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from difflib import SequenceMatcher
from typing import Any

from phasegate.errors import GateFailure, ScanUnavailable
from phasegate.gates import RetryController
from phasegate.protocol import (
    SEVERITY_ORDER,
    Finding,
    format_issue,
    normalize_path,
    parse_issues,
    severity_rank,
)
from phasegate.workers.base import WorkerClient
from phasegate.workspace import WorkspaceGuard

logger = logging.getLogger(__name__)

IDENTIFIER_PATTERN = re.compile(r"`[^`]+`|\b\w+\(\)|\b[A-Za-z_]\w*[._]\w+\b|\b\d+\b")
WHITESPACE_PATTERN = re.compile(r"\s+")


@dataclass(slots=True)
class ScanReport:
    findings: dict[str, list[Finding]] = field(default_factory=dict)
    unavailable: dict[str, str] = field(default_factory=dict)

    @property
    def finding_lists(self) -> list[list[Finding]]:
        return list(self.findings.values())

    @property
    def all_findings(self) -> list[Finding]:
        return [item for items in self.findings.values() for item in items]

    def to_dict(self) -> dict[str, Any]:
        return {
            "scanners": {name: len(items) for name, items in self.findings.items()},
            "unavailable": dict(self.unavailable),
        }


class ScanCoordinator:
    """Dispatches every scanner concurrently and waits for all of them.

    A scanner that fails preflight, raises, or never reaches its marker is
    recorded as unavailable; the scan itself still succeeds.
    """

    def __init__(
        self,
        guard: WorkspaceGuard,
        retry: RetryController,
        *,
        marker: str = "SCAN_COMPLETE",
        max_retries: int = 1,
        task: str = "Review the workspace and report every defect as ISSUE lines.",
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.guard = guard
        self.retry = retry
        self.marker = marker
        self.max_retries = max_retries
        self.task = task
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def _scan_one(
        self, name: str, scanner: WorkerClient, scope: dict[str, Any]
    ) -> list[Finding]:
        ok, reason = await scanner.preflight()
        if not ok:
            raise ScanUnavailable(name, reason or "preflight failed")

        async def invoke() -> str:
            return await scanner.execute(self.task, {**scope, "scanner": name})

        try:
            outcome = await self.retry.run(
                invoke, self.marker, self.max_retries, label=f"scan:{name}"
            )
        except GateFailure as exc:
            raise ScanUnavailable(name, f"{exc} Last output: {exc.last_output[-300:]}") from exc
        return parse_issues(outcome.output, source=name)

    async def scan_all(
        self,
        scanners: Mapping[str, WorkerClient],
        scope: dict[str, Any] | None = None,
    ) -> ScanReport:
        report = ScanReport()
        if not scanners:
            return report
        names = list(scanners)
        with self.guard.readers() as root:
            scan_scope = {**(scope or {}), "workspace": str(root), "read_only": True}
            results = await asyncio.gather(
                *(self._scan_one(name, scanners[name], scan_scope) for name in names),
                return_exceptions=True,
            )

        for name, result in zip(names, results, strict=True):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                reason = result.reason if isinstance(result, ScanUnavailable) else str(result)
                logger.warning("Scanner %s unavailable: %s", name, reason)
                report.unavailable[name] = reason
                self._emit({"event": "scan_unavailable", "scanner": name, "reason": reason})
                continue
            report.findings[name] = result
            self._emit({"event": "scan_completed", "scanner": name, "findings": len(result)})
        return report


@dataclass(frozen=True, slots=True)
class DedupPolicy:
    line_window: int = 5
    similarity: float = 0.6


@dataclass(frozen=True, slots=True)
class CanonicalFinding:
    file: str
    line: int
    description: str
    severity: str
    sources: tuple[str, ...] = ()
    merged_count: int = 1

    @property
    def location(self) -> str:
        return f"{self.file}:{self.line}" if self.line > 0 else self.file

    def render(self) -> str:
        return format_issue(self.file, self.line, self.description, self.severity)

    def to_dict(self) -> dict[str, Any]:
        return {
            "file": self.file,
            "line": self.line,
            "description": self.description,
            "severity": self.severity,
            "sources": list(self.sources),
            "merged_count": self.merged_count,
        }


def _normalize_description(text: str) -> str:
    return WHITESPACE_PATTERN.sub(" ", text.strip().lower())


def _specificity(description: str) -> tuple[int, int]:
    return len(IDENTIFIER_PATTERN.findall(description)), len(description)


class FindingsDeduplicator:
    """Merges findings that describe the same defect.

    Two findings are related when they share a file, their lines are within
    ``line_window`` and their descriptions are similar. Clusters are the
    connected components of that relation, so merging a merged list is a
    no-op.
    """

    def __init__(self, policy: DedupPolicy | None = None) -> None:
        self.policy = policy or DedupPolicy()

    def similar(self, left: str, right: str) -> bool:
        a = _normalize_description(left)
        b = _normalize_description(right)
        if a == b:
            return True
        first, second = sorted((a, b))
        return SequenceMatcher(None, first, second).ratio() >= self.policy.similarity

    def related(self, left: CanonicalFinding, right: CanonicalFinding) -> bool:
        if left.file != right.file:
            return False
        if abs(left.line - right.line) > self.policy.line_window:
            return False
        return self.similar(left.description, right.description)

    @staticmethod
    def _as_canonical(item: Finding | CanonicalFinding) -> CanonicalFinding:
        if isinstance(item, CanonicalFinding):
            return item
        return CanonicalFinding(
            file=normalize_path(item.file),
            line=item.line,
            description=item.description.strip(),
            severity=item.severity if item.severity in SEVERITY_ORDER else "MEDIUM",
            sources=(item.source,) if item.source else (),
            merged_count=1,
        )

    @staticmethod
    def _combine(cluster: list[CanonicalFinding]) -> CanonicalFinding:
        representative = max(
            cluster,
            key=lambda item: (*_specificity(item.description), item.description),
        )
        severity = max((item.severity for item in cluster), key=severity_rank)
        sources = sorted({source for item in cluster for source in item.sources})
        return CanonicalFinding(
            file=representative.file,
            line=representative.line,
            description=representative.description,
            severity=severity,
            sources=tuple(sources),
            merged_count=sum(item.merged_count for item in cluster),
        )

    def merge(self, findings: Iterable[Finding | CanonicalFinding]) -> list[CanonicalFinding]:
        items = [self._as_canonical(item) for item in findings]
        parent = list(range(len(items)))

        def find(index: int) -> int:
            while parent[index] != index:
                parent[index] = parent[parent[index]]
                index = parent[index]
            return index

        for i in range(len(items)):
            for j in range(i + 1, len(items)):
                if self.related(items[i], items[j]):
                    root_i, root_j = find(i), find(j)
                    if root_i != root_j:
                        parent[root_j] = root_i

        clusters: dict[int, list[CanonicalFinding]] = {}
        for index, item in enumerate(items):
            clusters.setdefault(find(index), []).append(item)
        merged = [self._combine(cluster) for cluster in clusters.values()]
        return sorted(merged, key=lambda item: (item.file, item.line, item.description))
