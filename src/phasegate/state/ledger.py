from __future__ import annotations

import json
import time
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from phasegate.errors import PhasegateError
from phasegate.state.locks import exclusive_lock

RUNTIME_DIRNAME = ".phasegate"
EVENT_HISTORY_LIMIT = 200


class LedgerError(PhasegateError):
    """Raised when persisted run state cannot be read or updated."""


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class RunLedger:
    """Versioned JSON envelopes per namespace under ``<target>/.phasegate/state``.

    Every write bumps ``revision``; ``update_json`` re-reads and retries when
    another writer got there first. The state directory is created on the first
    write, so read-only callers leave the target untouched.
    """

    NAMESPACES = {"runs", "decisions", "snapshots", "metrics"}
    SCHEMA_VERSION = 1

    def __init__(self, target: Path) -> None:
        self.target = target.resolve()
        self.state_dir = self.target / RUNTIME_DIRNAME / "state"
        self.lock_file = self.state_dir / ".lock"

    def initialize(self) -> Path:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        return self.state_dir

    @staticmethod
    def _validate_namespace(namespace: str) -> None:
        if namespace not in RunLedger.NAMESPACES:
            raise LedgerError(f"Unsupported namespace: {namespace}")

    def _file(self, namespace: str) -> Path:
        return self.state_dir / f"{namespace}.json"

    def _read_raw_json(self, namespace: str) -> Any:
        path = self._file(namespace)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return None

    def _write_raw_json(self, namespace: str, payload: Any) -> None:
        path = self._file(namespace)
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(
            json.dumps(payload, ensure_ascii=False, indent=2, default=str), encoding="utf-8"
        )
        tmp_path.replace(path)

    def _normalize_envelope(self, raw_payload: Any, default: Any) -> dict[str, Any]:
        if (
            isinstance(raw_payload, dict)
            and "schema_version" in raw_payload
            and "data" in raw_payload
            and "revision" in raw_payload
        ):
            return {
                "schema_version": int(raw_payload.get("schema_version") or self.SCHEMA_VERSION),
                "revision": int(raw_payload.get("revision") or 1),
                "updated_at": raw_payload.get("updated_at") or utcnow_iso(),
                "data": raw_payload.get("data", default),
            }
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 1,
            "updated_at": utcnow_iso(),
            "data": default if raw_payload is None else raw_payload,
        }

    def get_envelope(self, namespace: str, default: Any | None = None) -> dict[str, Any]:
        self._validate_namespace(namespace)
        default_value = {} if default is None else default
        return self._normalize_envelope(self._read_raw_json(namespace), default_value)

    def get_json(self, namespace: str, default: Any | None = None) -> Any:
        return self.get_envelope(namespace, default=default).get("data")

    def set_json(self, namespace: str, data: Any, expected_revision: int | None = None) -> None:
        self._validate_namespace(namespace)
        with exclusive_lock(self.lock_file):
            current = self.get_envelope(namespace, default={})
            current_revision = int(current.get("revision", 1))
            if expected_revision is not None and expected_revision != current_revision:
                raise LedgerError(f"Concurrent state update detected for namespace '{namespace}'.")
            self._write_raw_json(
                namespace,
                {
                    "schema_version": self.SCHEMA_VERSION,
                    "revision": current_revision + 1,
                    "updated_at": utcnow_iso(),
                    "data": data,
                },
            )

    def update_json(
        self,
        namespace: str,
        updater: Callable[[Any], Any],
        default: Any | None = None,
    ) -> Any:
        default_value = {} if default is None else default
        last_error: Exception | None = None
        for _ in range(4):
            current = self.get_envelope(namespace, default=default_value)
            updated = updater(current.get("data", default_value))
            try:
                self.set_json(namespace, updated, expected_revision=int(current.get("revision", 1)))
                return updated
            except LedgerError as exc:
                last_error = exc
                if "Concurrent state update detected" not in str(exc):
                    raise
                time.sleep(0.01)
        raise LedgerError(str(last_error) if last_error else "State update failed.")

    def _append(self, namespace: str, key: str, item: dict[str, Any], limit: int | None) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {}
            items = result.get(key)
            if not isinstance(items, list):
                items = []
            items.append(item)
            result[key] = items[-limit:] if limit else items
            return result

        self.update_json(namespace, _updater, default={key: []})

    def _list(self, namespace: str, key: str) -> list[dict[str, Any]]:
        payload = self.get_json(namespace, default={key: []})
        if not isinstance(payload, dict):
            return []
        items = payload.get(key, [])
        return items if isinstance(items, list) else []

    # runs

    def upsert_run(self, run_id: str, updates: dict[str, Any]) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            runs = payload if isinstance(payload, dict) else {}
            run = runs.get(run_id)
            if not isinstance(run, dict):
                run = {"run_id": run_id, "created_at": utcnow_iso()}
            run.update(updates)
            run["updated_at"] = utcnow_iso()
            runs[run_id] = run
            return runs

        self.update_json("runs", _updater, default={})

    def get_run(self, run_id: str) -> dict[str, Any] | None:
        runs = self.get_json("runs", default={})
        run = runs.get(run_id) if isinstance(runs, dict) else None
        return run if isinstance(run, dict) else None

    def list_runs(self) -> list[dict[str, Any]]:
        runs = self.get_json("runs", default={})
        if not isinstance(runs, dict):
            return []
        items = [run for run in runs.values() if isinstance(run, dict)]
        return sorted(items, key=lambda run: str(run.get("created_at", "")))

    def latest_run(self) -> dict[str, Any] | None:
        runs = self.list_runs()
        return runs[-1] if runs else None

    # decisions

    def add_decision(self, decision: dict[str, Any]) -> None:
        self._append("decisions", "decisions", {**decision, "recorded_at": utcnow_iso()}, None)

    def get_decisions(self) -> list[dict[str, Any]]:
        return self._list("decisions", "decisions")

    # snapshots

    def add_snapshot(self, snapshot: dict[str, Any]) -> None:
        self._append("snapshots", "snapshots", snapshot, None)

    def get_snapshots(self) -> list[dict[str, Any]]:
        return self._list("snapshots", "snapshots")

    # metrics

    def get_metrics(self) -> dict[str, Any]:
        metrics = self.get_json("metrics", default={})
        return metrics if isinstance(metrics, dict) else {}

    def record_event(self, event: dict[str, Any]) -> None:
        self._append(
            "metrics",
            "events",
            {**event, "at": utcnow_iso()},
            EVENT_HISTORY_LIMIT,
        )

    def record_gate_result(self, gate: dict[str, Any]) -> None:
        self._append("metrics", "quality_gates", {**gate, "checked_at": utcnow_iso()}, 200)
        if not gate.get("passed"):
            self._append("metrics", "gate_failures", gate, 50)

    def record_phase_metrics(self, run_id: str, entries: list[dict[str, Any]]) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            metrics = payload if isinstance(payload, dict) else {}
            per_run = metrics.get("pipeline")
            if not isinstance(per_run, dict):
                per_run = {}
            per_run[run_id] = entries
            metrics["pipeline"] = per_run
            metrics["last_run_id"] = run_id
            return metrics

        self.update_json("metrics", _updater, default={})
