from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from difflib import SequenceMatcher
from pathlib import Path
from typing import Any

from phasegate.state.locks import exclusive_lock

logger = logging.getLogger(__name__)

SCOPES = ("project", "global")
LESSON_SIMILARITY = 0.85
ENTRY_PATTERN = re.compile(r"^-\s+\[(?P<category>[^\]]*)\]\s+(?P<text>.+?)\s*$")
NORMALIZE_PATTERN = re.compile(r"[^a-z0-9]+")
LOG_HEADER = "# Lessons\n\n"


@dataclass(frozen=True, slots=True)
class LessonEntry:
    scope: str
    category: str
    text: str

    def render(self) -> str:
        return f"- [{self.category}] {self.text}"

    def to_dict(self) -> dict[str, Any]:
        return {"scope": self.scope, "category": self.category, "text": self.text}


def normalize_lesson(text: str) -> str:
    return NORMALIZE_PATTERN.sub(" ", text.lower()).strip()


class LessonStore:
    """Append-only markdown lesson logs, one per scope.

    Each log is read in full before an append; a candidate that matches an
    existing entry after normalization, or nearly matches it, is dropped.
    """

    def __init__(
        self,
        project_log: Path,
        global_log: Path,
        *,
        similarity: float = LESSON_SIMILARITY,
    ) -> None:
        self.paths = {"project": project_log, "global": global_log}
        self.similarity = similarity

    def _path(self, scope: str) -> Path:
        try:
            return self.paths[scope]
        except KeyError as exc:
            raise ValueError(f"Unknown lesson scope: {scope}") from exc

    @staticmethod
    def _lock_file(path: Path) -> Path:
        return path.with_name(f".{path.name}.lock")

    def _read(self, scope: str) -> list[LessonEntry]:
        path = self._path(scope)
        if not path.exists():
            return []
        entries: list[LessonEntry] = []
        for raw_line in path.read_text(encoding="utf-8").splitlines():
            match = ENTRY_PATTERN.match(raw_line.strip())
            if match:
                entries.append(
                    LessonEntry(
                        scope=scope,
                        category=match.group("category"),
                        text=match.group("text"),
                    )
                )
        return entries

    def entries(self, scope: str) -> list[LessonEntry]:
        return self._read(scope)

    def is_duplicate(self, text: str, existing: list[LessonEntry]) -> bool:
        candidate = normalize_lesson(text)
        if not candidate:
            return True
        for entry in existing:
            current = normalize_lesson(entry.text)
            if current == candidate:
                return True
            first, second = sorted((current, candidate))
            if SequenceMatcher(None, first, second).ratio() >= self.similarity:
                return True
        return False

    def record(
        self, candidate: LessonEntry | str, scope: str, *, category: str = "general"
    ) -> bool:
        if isinstance(candidate, LessonEntry):
            category, text = candidate.category, candidate.text
        else:
            text = candidate
        text = " ".join(text.split())
        category = category.strip().replace("]", "") or "general"
        path = self._path(scope)
        path.parent.mkdir(parents=True, exist_ok=True)
        with exclusive_lock(self._lock_file(path)):
            if self.is_duplicate(text, self._read(scope)):
                logger.debug("Skipping duplicate %s lesson: %s", scope, text)
                return False
            entry = LessonEntry(scope=scope, category=category, text=text)
            needs_header = not path.exists() or path.stat().st_size == 0
            with path.open("a", encoding="utf-8") as handle:
                if needs_header:
                    handle.write(LOG_HEADER)
                handle.write(entry.render() + "\n")
        logger.info("Recorded %s lesson [%s]", scope, category)
        return True

    def record_both(
        self, candidate: LessonEntry | str, *, category: str = "general"
    ) -> dict[str, bool]:
        return {scope: self.record(candidate, scope, category=category) for scope in SCOPES}
