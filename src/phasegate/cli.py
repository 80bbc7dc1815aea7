from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

import click

from phasegate.approval import VERDICTS, Decision, auto_approve
from phasegate.config import (
    CONFIG_FILENAME,
    ConfigError,
    PhasegateConfig,
    WorkerConfig,
    load_config,
    save_config,
)
from phasegate.errors import PhasegateError
from phasegate.lessons import SCOPES, LessonStore
from phasegate.orchestrator import PipelineOrchestrator, RunReport, build_orchestrator
from phasegate.state.ledger import RUNTIME_DIRNAME, RunLedger
from phasegate.workers import (
    ClaudeCodeWorker,
    CommandWorker,
    GuardedWorker,
    WorkerClient,
    WorkerExecutionError,
)

OUTPUT_TAIL_CHARS = 1500


def _resolve_target(target_value: str) -> Path:
    target = Path(target_value).expanduser().resolve()
    if not target.is_dir():
        raise click.ClickException(f"Target is not a directory: {target}")
    return target


def _resolve_config_path(target: Path, config_value: str) -> Path:
    config_path = Path(config_value).expanduser()
    if not config_path.is_absolute():
        config_path = target / config_path
    return config_path.resolve()


def _load_checked_config(config_path: Path) -> PhasegateConfig:
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    problems = config.validate()
    if problems:
        raise click.ClickException("Invalid configuration:\n- " + "\n- ".join(problems))
    return config


def _build_single_worker(
    name: str, worker: WorkerConfig, target: Path, ledger: RunLedger
) -> WorkerClient:
    if worker.kind == "command":
        return CommandWorker(
            list(worker.command),
            name=name,
            working_directory=target,
            system_prompt=worker.prompt,
            event_hook=ledger.record_event,
        )
    return ClaudeCodeWorker(
        worker.binary,
        name=name,
        working_directory=target,
        system_prompt=worker.prompt,
        event_hook=ledger.record_event,
    )


def _build_workers(
    config: PhasegateConfig, target: Path, ledger: RunLedger
) -> dict[str, WorkerClient]:
    workers: dict[str, WorkerClient] = {}
    for name, worker in config.workers.items():
        fallback = None
        if worker.fallback:
            fallback = _build_single_worker(
                worker.fallback, config.workers[worker.fallback], target, ledger
            )
        workers[name] = GuardedWorker(
            _build_single_worker(name, worker, target, ledger),
            timeout_seconds=max(1.0, float(worker.timeout_seconds)),
            fallback=fallback,
            event_hook=ledger.record_event,
        )
    return workers


def _prompt_decision(context: dict[str, Any]) -> Decision:
    output = str(context.get("output", ""))
    click.echo(f"\nPhase '{context.get('phase')}' is waiting for approval.")
    if output:
        click.echo("--- output (tail) ---")
        click.echo(output[-OUTPUT_TAIL_CHARS:])
        click.echo("---------------------")
    verdict = click.prompt("Decision", type=click.Choice(VERDICTS), default="approve")
    note = click.prompt("Note", default="", show_default=False)
    return Decision(verdict, note)


def _load_orchestrator(
    target: Path, config_value: str, *, auto: bool = False
) -> PipelineOrchestrator:
    config = _load_checked_config(_resolve_config_path(target, config_value))
    ledger = RunLedger(target)
    workers = _build_workers(config, target, ledger)
    return build_orchestrator(
        target,
        config,
        workers,
        decision_provider=auto_approve if auto else _prompt_decision,
        ledger=ledger,
    )


def _echo_report(report: RunReport) -> None:
    if report.dry_run:
        click.echo("Dry run: planned steps")
        for index, step in enumerate(report.plan):
            kind = step.get("kind", "stage")
            click.echo(f"  {index}. {step['name']} ({kind})")
        return

    click.echo(f"Run ID: {report.run_id}")
    click.echo(f"Status: {report.status}")
    click.echo(f"Cursor: {report.cursor}")
    if report.snapshot_id:
        click.echo(f"Snapshot: {report.snapshot_id}")
    for metric in report.metrics:
        click.echo(
            f"  {metric['phase']}: found {metric['issues_found']}, "
            f"fixed {metric['issues_fixed']}, {metric['duration_ms']} ms"
        )
    totals = report.totals
    click.echo(
        f"Totals: found {totals['issues_found']}, fixed {totals['issues_fixed']}, "
        f"{totals['duration_ms']} ms"
    )
    if report.convergence:
        click.echo(
            f"Convergence: {report.convergence['status']} "
            f"(score {report.convergence['final_score']}, "
            f"{len(report.convergence['residual_issues'])} residual issue(s))"
        )
    if report.lessons_recorded:
        click.echo(f"Lessons recorded: {report.lessons_recorded}")


@click.group()
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable info logging.")
def cli(verbose: bool) -> None:
    """Phase-gated pipeline orchestrator."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.argument("target", default=".")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def init_command(target: str, config_value: str) -> None:
    target_path = _resolve_target(target)
    config_path = _resolve_config_path(target_path, config_value)
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    save_config(config_path, config)
    RunLedger(target_path).initialize()

    click.echo(f"Initialized phasegate in {target_path}")
    click.echo(f"Config: {config_path}")
    click.echo(f"State: {target_path / RUNTIME_DIRNAME / 'state'}")


@cli.command("run")
@click.argument("target", default=".")
@click.option("--dry-run", is_flag=True, default=False, help="Print the phase plan only.")
@click.option("--rollback", is_flag=True, default=False, help="Restore the latest snapshot.")
@click.option("--auto-approve", is_flag=True, default=False, help="Approve every gated phase.")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def run_command(
    target: str, dry_run: bool, rollback: bool, auto_approve: bool, config_value: str
) -> None:
    target_path = _resolve_target(target)
    orchestrator = _load_orchestrator(target_path, config_value, auto=auto_approve)

    if rollback:
        try:
            snapshot = orchestrator.rollback()
        except PhasegateError as exc:
            raise click.ClickException(str(exc)) from exc
        click.echo(f"Restored snapshot: {snapshot.id}")
        return

    try:
        report = asyncio.run(orchestrator.run(dry_run=dry_run))
    except (PhasegateError, WorkerExecutionError) as exc:
        raise click.ClickException(str(exc)) from exc

    _echo_report(report)
    if report.status == "awaiting-approval":
        click.echo("Run is awaiting a revised phase; re-run once the plan is revised.")
        return
    if not report.ok:
        halt = report.halt or {}
        details = json.dumps(halt.get("diagnostics", {}), ensure_ascii=False, indent=2)
        raise click.ClickException(
            f"Run halted ({halt.get('kind', 'unknown')}): {halt.get('message', '')}\n{details}"
        )


@cli.command("status")
@click.argument("target", default=".")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def status_command(target: str, config_value: str) -> None:
    target_path = _resolve_target(target)
    orchestrator = _load_orchestrator(target_path, config_value)
    click.echo(json.dumps(orchestrator.status(), ensure_ascii=False, indent=2))


@cli.command("snapshots")
@click.argument("target", default=".")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def snapshots_command(target: str, config_value: str) -> None:
    target_path = _resolve_target(target)
    orchestrator = _load_orchestrator(target_path, config_value)
    snapshots = orchestrator.snapshots.list_snapshots()
    if not snapshots:
        click.echo("No snapshots found.")
        return
    for snapshot in snapshots:
        click.echo(f"{snapshot.id}  {snapshot.mode}  {snapshot.created_at}")


@cli.command("lessons")
@click.argument("target", default=".")
@click.option("--scope", type=click.Choice([*SCOPES, "all"]), default="all", show_default=True)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def lessons_command(target: str, scope: str, config_value: str) -> None:
    target_path = _resolve_target(target)
    config = _load_checked_config(_resolve_config_path(target_path, config_value))
    store = LessonStore(
        config.lessons.project_path(target_path),
        config.lessons.global_path(),
        similarity=config.lessons.similarity,
    )
    scopes = SCOPES if scope == "all" else (scope,)
    found = False
    for name in scopes:
        for entry in store.entries(name):
            found = True
            click.echo(f"{name}: [{entry.category}] {entry.text}")
    if not found:
        click.echo("No lessons recorded.")
