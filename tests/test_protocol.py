from phasegate.protocol import (
    Finding,
    format_issue,
    has_field,
    parse_fixes,
    parse_issues,
    parse_lessons,
    parse_remaining,
    parse_score,
    severity_rank,
)

SAMPLE = """Reviewed the module.
ISSUE: ./src/app.py:42 — [HIGH] user input reaches eval()
ISSUE: src/db.py:7 -- connection is never closed
ISSUE: README.md - [low] typo in heading
ISSUE: not a location
SCORE: 72
FIX_APPLIED: src/app.py:42 | replaced eval() with ast.literal_eval()
REMAINING: wire the retry flag into the CLI
LESSON: both | security | never pass request data to eval()
LESSON: team | style | ignored because the scope is unknown
SCAN_COMPLETE
"""


def test_parse_issues_accepts_all_separators() -> None:
    issues = parse_issues(SAMPLE, source="security")

    assert issues == [
        Finding("security", "src/app.py", 42, "user input reaches eval()", "HIGH"),
        Finding("security", "src/db.py", 7, "connection is never closed", "MEDIUM"),
        Finding("security", "README.md", 0, "typo in heading", "LOW"),
    ]
    assert issues[0].location == "src/app.py:42"
    assert issues[2].location == "README.md"


def test_parse_score_uses_last_valid_value() -> None:
    assert parse_score("SCORE: 40\nSCORE: 250\nSCORE: 61/100") == 61
    assert parse_score("SCORE: high") is None
    assert parse_score("no score here") is None


def test_has_field_requires_valid_score() -> None:
    assert has_field(SAMPLE, "SCORE")
    assert not has_field("SCORE: n/a", "SCORE")
    assert has_field(SAMPLE, "REMAINING")
    assert not has_field(SAMPLE, "MISSING")


def test_fixes_remaining_and_lessons() -> None:
    assert parse_fixes(SAMPLE) == ["src/app.py:42 | replaced eval() with ast.literal_eval()"]
    assert parse_remaining(SAMPLE) == ["wire the retry flag into the CLI"]

    lessons = parse_lessons(SAMPLE)
    assert len(lessons) == 1
    assert lessons[0].scopes == ("project", "global")
    assert lessons[0].category == "security"
    assert lessons[0].text == "never pass request data to eval()"


def test_absent_fields_are_not_errors() -> None:
    assert parse_issues("DONE") == []
    assert parse_score("DONE") is None
    assert parse_fixes("DONE") == []
    assert parse_remaining("DONE") == []
    assert parse_lessons("DONE") == []


def test_format_issue_round_trips_through_parser() -> None:
    line = format_issue("src/app.py", 3, "unused import `os`", "LOW")

    assert line == "ISSUE: src/app.py:3 — [LOW] unused import `os`"
    assert parse_issues(line) == [Finding("", "src/app.py", 3, "unused import `os`", "LOW")]


def test_severity_rank_orders_and_defaults() -> None:
    assert severity_rank("critical") > severity_rank("HIGH") > severity_rank("low")
    assert severity_rank("weird") == severity_rank("MEDIUM")
