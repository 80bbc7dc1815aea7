from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from phasegate.errors import PhasegateError
from phasegate.phases import LOOP_MAX_ITERATIONS, Phase, PhaseKind

CONFIG_FILENAME = "phasegate.toml"

WorkerKind = Literal["claude", "command"]
SnapshotMode = Literal["auto", "git", "copy"]


class ConfigError(PhasegateError):
    """Raised when a configuration file is inconsistent."""


@dataclass(slots=True)
class ProjectConfig:
    """``name`` labels snapshots; empty means the target directory name."""

    name: str = ""


@dataclass(slots=True)
class WorkflowConfig:
    loop_max_iterations: int = LOOP_MAX_ITERATIONS
    convergence_cap: int = 3


@dataclass(slots=True)
class QualityConfig:
    commands: list[str] = field(default_factory=list)
    corrector: str = "implementer"
    marker: str = "CORRECTIONS_COMPLETE"
    correction_cycles: int = 2
    max_retries: int = 2


@dataclass(slots=True)
class ReviewConfig:
    enabled: bool = True
    scanners: list[str] = field(default_factory=lambda: ["reviewer"])
    fixer: str = "implementer"
    scorer: str = "reviewer"
    learner: str = ""
    scan_marker: str = "SCAN_COMPLETE"
    fix_marker: str = "FIXES_COMPLETE"
    score_marker: str = "SCORE_COMPLETE"
    learn_marker: str = "LESSONS_COMPLETE"
    scan_max_retries: int = 1
    max_retries: int = 2
    dedup_line_window: int = 5
    dedup_similarity: float = 0.6


@dataclass(slots=True)
class LessonsConfig:
    project_log: str = ".phasegate/lessons.md"
    global_log: str = "~/.phasegate/lessons.md"
    similarity: float = 0.85

    def project_path(self, target: Path) -> Path:
        path = Path(self.project_log).expanduser()
        return path if path.is_absolute() else target / path

    def global_path(self) -> Path:
        return Path(self.global_log).expanduser()


@dataclass(slots=True)
class StateConfig:
    snapshot_mode: SnapshotMode = "auto"


@dataclass(slots=True)
class WorkerConfig:
    kind: WorkerKind = "claude"
    binary: str = "claude"
    command: list[str] = field(default_factory=list)
    prompt: str = ""
    timeout_seconds: float = 900.0
    fallback: str = ""


@dataclass(slots=True)
class PhaseConfig:
    name: str
    worker: str
    completion_marker: str
    max_retries: int = 2
    kind: str = PhaseKind.NORMAL
    task: str = ""
    continue_marker: str = ""
    quality_gate: bool = False
    mutates: bool = True

    def to_phase(self) -> Phase:
        try:
            return Phase(
                name=self.name,
                worker=self.worker,
                completion_marker=self.completion_marker,
                max_retries=self.max_retries,
                kind=self.kind,
                task=self.task,
                continue_marker=self.continue_marker,
                quality_gate=self.quality_gate,
                mutates=self.mutates,
            )
        except ValueError as exc:
            raise ConfigError(str(exc)) from exc


def _default_workers() -> dict[str, WorkerConfig]:
    return {
        "planner": WorkerConfig(prompt="You plan changes. Do not edit files."),
        "implementer": WorkerConfig(prompt="You implement planned changes in the workspace."),
        "documenter": WorkerConfig(prompt="You update documentation for completed changes."),
        "reviewer": WorkerConfig(prompt="You review code. Do not edit files."),
    }


def _default_phases() -> list[PhaseConfig]:
    return [
        PhaseConfig(
            name="plan",
            worker="planner",
            completion_marker="PLAN_COMPLETE",
            kind=PhaseKind.APPROVAL_GATED,
            task="Write an implementation plan for the requested change.",
            mutates=False,
        ),
        PhaseConfig(
            name="implement",
            worker="implementer",
            completion_marker="IMPLEMENTATION_COMPLETE",
            kind=PhaseKind.LOOPABLE,
            continue_marker="IMPLEMENTATION_CONTINUE",
            task="Implement the approved plan. List unfinished work as REMAINING lines.",
            quality_gate=True,
        ),
        PhaseConfig(
            name="document",
            worker="documenter",
            completion_marker="DOCS_COMPLETE",
            task="Update documentation for the implemented change.",
        ),
    ]


@dataclass(slots=True)
class PhasegateConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    quality: QualityConfig = field(default_factory=QualityConfig)
    review: ReviewConfig = field(default_factory=ReviewConfig)
    lessons: LessonsConfig = field(default_factory=LessonsConfig)
    state: StateConfig = field(default_factory=StateConfig)
    workers: dict[str, WorkerConfig] = field(default_factory=_default_workers)
    phases: list[PhaseConfig] = field(default_factory=_default_phases)

    @classmethod
    def default(cls) -> PhasegateConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> PhasegateConfig:
        config = cls(
            project=ProjectConfig(**data.get("project", {})),
            workflow=WorkflowConfig(**data.get("workflow", {})),
            quality=QualityConfig(**data.get("quality", {})),
            review=ReviewConfig(**data.get("review", {})),
            lessons=LessonsConfig(**data.get("lessons", {})),
            state=StateConfig(**data.get("state", {})),
        )
        if "workers" in data:
            config.workers = {
                name: WorkerConfig(**payload) for name, payload in data["workers"].items()
            }
        if "phases" in data:
            config.phases = [PhaseConfig(**payload) for payload in data["phases"]]
        return config

    def pipeline(self) -> tuple[Phase, ...]:
        return tuple(phase.to_phase() for phase in self.phases)

    def validate(self) -> list[str]:
        problems: list[str] = []
        if not self.phases:
            problems.append("At least one phase is required.")
        seen: set[str] = set()
        for phase in self.phases:
            if phase.name in seen:
                problems.append(f"Duplicate phase name: {phase.name}")
            seen.add(phase.name)
            if phase.worker not in self.workers:
                problems.append(f"Phase {phase.name} uses unknown worker: {phase.worker}")
        for name, worker in self.workers.items():
            if worker.kind not in ("claude", "command"):
                problems.append(f"Worker {name} has unsupported kind: {worker.kind}")
            if worker.kind == "command" and not worker.command:
                problems.append(f"Worker {name} needs a command.")
            if worker.fallback and worker.fallback not in self.workers:
                problems.append(f"Worker {name} falls back to unknown worker: {worker.fallback}")
        if self.quality.commands and self.quality.corrector not in self.workers:
            problems.append(f"Quality corrector is not a worker: {self.quality.corrector}")
        if self.review.enabled and self.review.scanners:
            roles = [*self.review.scanners, self.review.fixer, self.review.scorer]
            if self.review.learner:
                roles.append(self.review.learner)
            for role in roles:
                if role not in self.workers:
                    problems.append(f"Review stage references unknown worker: {role}")
        return problems

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
            },
            "workflow": {
                "loop_max_iterations": self.workflow.loop_max_iterations,
                "convergence_cap": self.workflow.convergence_cap,
            },
            "quality": {
                "commands": list(self.quality.commands),
                "corrector": self.quality.corrector,
                "marker": self.quality.marker,
                "correction_cycles": self.quality.correction_cycles,
                "max_retries": self.quality.max_retries,
            },
            "review": {
                "enabled": self.review.enabled,
                "scanners": list(self.review.scanners),
                "fixer": self.review.fixer,
                "scorer": self.review.scorer,
                "learner": self.review.learner,
                "scan_marker": self.review.scan_marker,
                "fix_marker": self.review.fix_marker,
                "score_marker": self.review.score_marker,
                "learn_marker": self.review.learn_marker,
                "scan_max_retries": self.review.scan_max_retries,
                "max_retries": self.review.max_retries,
                "dedup_line_window": self.review.dedup_line_window,
                "dedup_similarity": self.review.dedup_similarity,
            },
            "lessons": {
                "project_log": self.lessons.project_log,
                "global_log": self.lessons.global_log,
                "similarity": self.lessons.similarity,
            },
            "state": {
                "snapshot_mode": self.state.snapshot_mode,
            },
            "workers": {
                name: {
                    "kind": worker.kind,
                    "binary": worker.binary,
                    "command": list(worker.command),
                    "prompt": worker.prompt,
                    "timeout_seconds": worker.timeout_seconds,
                    "fallback": worker.fallback,
                }
                for name, worker in self.workers.items()
            },
            "phases": [
                {
                    "name": phase.name,
                    "worker": phase.worker,
                    "completion_marker": phase.completion_marker,
                    "max_retries": phase.max_retries,
                    "kind": phase.kind,
                    "task": phase.task,
                    "continue_marker": phase.continue_marker,
                    "quality_gate": phase.quality_gate,
                    "mutates": phase.mutates,
                }
                for phase in self.phases
            ],
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def _toml_key(key: str) -> str:
    if key and all(char.isalnum() or char in "_-" for char in key):
        return key
    return json.dumps(key, ensure_ascii=False)


def _table_lines(header: str, values: dict[str, Any]) -> list[str]:
    lines = [header]
    for key, value in values.items():
        lines.append(f"{key} = {_toml_value(value)}")
    lines.append("")
    return lines


def dumps_toml(config: PhasegateConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["project", "workflow", "quality", "review", "lessons", "state"]
    for section in section_order:
        lines.extend(_table_lines(f"[{section}]", data[section]))
    for name, worker in data["workers"].items():
        lines.extend(_table_lines(f"[workers.{_toml_key(name)}]", worker))
    for phase in data["phases"]:
        lines.extend(_table_lines("[[phases]]", phase))
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> PhasegateConfig:
    if not path.exists():
        return PhasegateConfig.default()
    try:
        return PhasegateConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))
    except (tomllib.TOMLDecodeError, TypeError) as exc:
        raise ConfigError(f"Invalid config {path}: {exc}") from exc


def save_config(path: Path, config: PhasegateConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
