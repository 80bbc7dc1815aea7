"""Line-oriented response grammar shared by every worker.

A worker response is free text that may contain, anywhere on its own
line, ``KEY: value`` fields::

    ISSUE: src/app.py:42 — [HIGH] user input reaches eval()
    SCORE: 72
    FIX_APPLIED: src/app.py:42 | replaced eval() with ast.literal_eval()
    REMAINING: wire the retry flag into the CLI
    LESSON: global | security | never pass request data to eval()

Completion markers are checked separately by :mod:`phasegate.gates`.
A field that is absent is not an error here; steps that require a field
say so through ``required_fields``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

FIELD_PATTERN = re.compile(r"^\s*([A-Z][A-Z_]*):\s*(.*?)\s*$")
LOCATION_PATTERN = re.compile(
    r"^(?P<file>\S+?)(?::(?P<line>\d+))?\s+(?:—|–|--|-)\s+(?P<description>.+)$"
)
SEVERITY_PREFIX_PATTERN = re.compile(r"^\[(?P<severity>[A-Za-z]+)\]\s*(?P<rest>.*)$")
SCORE_PATTERN = re.compile(r"^(?P<score>\d{1,3})(?:\s*/\s*100)?$")

SEVERITY_ORDER = ("LOW", "MEDIUM", "HIGH", "CRITICAL")
DEFAULT_SEVERITY = "MEDIUM"
LESSON_SCOPES = {"project": ("project",), "global": ("global",), "both": ("project", "global")}


def severity_rank(severity: str) -> int:
    try:
        return SEVERITY_ORDER.index(severity.upper())
    except ValueError:
        return SEVERITY_ORDER.index(DEFAULT_SEVERITY)


@dataclass(frozen=True, slots=True)
class Finding:
    source: str
    file: str
    line: int
    description: str
    severity: str = DEFAULT_SEVERITY

    @property
    def location(self) -> str:
        return f"{self.file}:{self.line}" if self.line > 0 else self.file

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "file": self.file,
            "line": self.line,
            "description": self.description,
            "severity": self.severity,
        }


@dataclass(frozen=True, slots=True)
class LessonNote:
    scopes: tuple[str, ...]
    category: str
    text: str


def iter_fields(raw_output: str) -> list[tuple[str, str]]:
    fields: list[tuple[str, str]] = []
    for raw_line in raw_output.splitlines():
        match = FIELD_PATTERN.match(raw_line)
        if match:
            fields.append((match.group(1), match.group(2)))
    return fields


def has_field(raw_output: str, key: str) -> bool:
    if key == "SCORE":
        return parse_score(raw_output) is not None
    return any(name == key and value for name, value in iter_fields(raw_output))


def normalize_path(path: str) -> str:
    normalized = path.strip().strip("`'\"").replace("\\", "/")
    while normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized


def _split_severity(description: str) -> tuple[str, str]:
    match = SEVERITY_PREFIX_PATTERN.match(description)
    if not match:
        return DEFAULT_SEVERITY, description
    return match.group("severity").upper(), match.group("rest").strip()


def parse_issue(value: str, *, source: str = "") -> Finding | None:
    match = LOCATION_PATTERN.match(value.strip())
    if not match:
        return None
    severity, description = _split_severity(match.group("description").strip())
    if not description:
        return None
    line = int(match.group("line")) if match.group("line") else 0
    return Finding(
        source=source,
        file=normalize_path(match.group("file")),
        line=line,
        description=description,
        severity=severity,
    )


def parse_issues(raw_output: str, *, source: str = "") -> list[Finding]:
    findings: list[Finding] = []
    for key, value in iter_fields(raw_output):
        if key != "ISSUE":
            continue
        finding = parse_issue(value, source=source)
        if finding is not None:
            findings.append(finding)
    return findings


def parse_score(raw_output: str) -> int | None:
    score: int | None = None
    for key, value in iter_fields(raw_output):
        if key != "SCORE":
            continue
        match = SCORE_PATTERN.match(value)
        if not match:
            continue
        candidate = int(match.group("score"))
        if 0 <= candidate <= 100:
            # Last well-formed score wins.
            score = candidate
    return score


def parse_fixes(raw_output: str) -> list[str]:
    fixes: list[str] = []
    for key, value in iter_fields(raw_output):
        if key != "FIX_APPLIED" or not value:
            continue
        location, _, description = value.partition("|")
        location = normalize_path(location)
        description = description.strip()
        fixes.append(f"{location} | {description}" if description else location)
    return fixes


def parse_remaining(raw_output: str) -> list[str]:
    return [value for key, value in iter_fields(raw_output) if key == "REMAINING" and value]


def parse_lessons(raw_output: str) -> list[LessonNote]:
    lessons: list[LessonNote] = []
    for key, value in iter_fields(raw_output):
        if key != "LESSON":
            continue
        parts = [part.strip() for part in value.split("|", maxsplit=2)]
        if len(parts) != 3:
            continue
        scope, category, text = parts
        scopes = LESSON_SCOPES.get(scope.lower())
        if scopes is None or not text:
            continue
        lessons.append(LessonNote(scopes=scopes, category=category or "general", text=text))
    return lessons


def format_issue(file: str, line: int, description: str, severity: str) -> str:
    location = f"{file}:{line}" if line > 0 else file
    return f"ISSUE: {location} — [{severity}] {description}"
