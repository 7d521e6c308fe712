from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, List, Optional

import typer

from infra.paths import get_data_root, snapshots_root
from infra.storage.errors import StorageError
from infra.storage.providers import (
    PROVIDER_ENV,
    ConfigurationError,
    StorageProvider,
    create_storage_provider,
    supabase_available,
)
from infra.storage.snapshot_store import SnapshotFilters, SnapshotStore
from reconciliation.alerts import AlertEmitter
from reconciliation.config import (
    ConfigValidationError,
    ReconciliationConfig,
    ReconciliationConfigStore,
    load_config_mapping,
    merge_config,
    validate_config,
)
from reconciliation.jobs import JobNotFoundError
from reconciliation.service import ReconciliationOrchestrator, snapshot_fetcher
from reconciliation.simulator import SCENARIOS, ReconciliationSimulator

app = typer.Typer(add_completion=False, help="District snapshot store and month-end reconciliation.")
snapshots_app = typer.Typer(add_completion=False, help="Inspect and manage stored snapshots.")
config_app = typer.Typer(add_completion=False, help="Reconciliation configuration.")
reconcile_app = typer.Typer(add_completion=False, help="Month-end reconciliation jobs.")
app.add_typer(snapshots_app, name="snapshots")
app.add_typer(config_app, name="config")
app.add_typer(reconcile_app, name="reconcile")


def _echo_json(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, sort_keys=True, default=str))


def _fail(message: str, code: int = 1) -> typer.Exit:
    typer.echo(message, err=True)
    return typer.Exit(code=code)


def _provider() -> StorageProvider:
    try:
        return create_storage_provider()
    except ConfigurationError as exc:
        raise _fail(str(exc), code=2) from exc


def _snapshot_store() -> SnapshotStore:
    return SnapshotStore(_provider())


def _orchestrator() -> ReconciliationOrchestrator:
    store = _snapshot_store()
    return ReconciliationOrchestrator(
        snapshot_store=store,
        fetcher=snapshot_fetcher(store),
        alert_emitter=AlertEmitter(store.provider),
    )


def _parse_assignment(raw: str) -> tuple[list[str], Any]:
    if "=" not in raw:
        raise typer.BadParameter(f"Expected KEY=VALUE, got '{raw}'")
    key, value = raw.split("=", 1)
    path = [part for part in key.strip().split(".") if part]
    if not path:
        raise typer.BadParameter(f"Missing key in '{raw}'")
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        parsed = value
    return path, parsed


def _assignments_to_changes(assignments: List[str]) -> dict[str, Any]:
    changes: dict[str, Any] = {}
    for raw in assignments:
        path, value = _parse_assignment(raw)
        target = changes
        for part in path[:-1]:
            target = target.setdefault(part, {})
        target[path[-1]] = value
    return changes


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", "--log-level", help="Python logging level."),
) -> None:
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command()
def doctor() -> None:
    """Check the data root and storage provider configuration."""

    failures: list[str] = []
    warnings: list[str] = []
    provider = (os.getenv(PROVIDER_ENV) or "local").strip().lower()
    if provider == "supabase":
        ok, reason = supabase_available()
        if not ok:
            failures.append(f"Supabase provider selected but unavailable: {reason}")
        for name in ("SUPABASE_URL", "SUPABASE_KEY"):
            if not os.getenv(name):
                failures.append(f"{name} is not set.")
    else:
        data_root = get_data_root()
        if not data_root.exists():
            warnings.append(f"Data root does not exist: {data_root}")
        elif not snapshots_root().exists():
            warnings.append(f"No snapshots stored under {snapshots_root()}")

    if not failures:
        try:
            store = SnapshotStore(create_storage_provider())
            if store.pointer.read() is None:
                warnings.append("No current snapshot pointer.")
        except (ConfigurationError, StorageError) as exc:
            failures.append(f"Storage check failed: {exc}")

    lines = ["Doctor checks failed:" if failures else "Doctor checks passed."]
    lines.extend(f"- {entry}" for entry in failures)
    if warnings:
        lines.append("Warnings:")
        lines.extend(f"- {entry}" for entry in warnings)
    typer.echo("\n".join(lines), err=bool(failures))
    if failures:
        raise typer.Exit(code=2)


# ----------------------------------------------------------------- snapshots
@snapshots_app.command("latest")
def snapshots_latest() -> None:
    snapshot = _snapshot_store().get_latest_successful()
    if snapshot is None:
        raise _fail("No successful snapshot found.")
    _echo_json(
        {
            "snapshot_id": snapshot.snapshot_id,
            "created_at": snapshot.created_at,
            "status": snapshot.status,
            "logical_date": snapshot.fetch_metadata.resolved_logical_date,
            "entity_count": len(snapshot.entities),
            "error_count": len(snapshot.errors),
            "schema_version": snapshot.schema_version,
            "calculation_version": snapshot.calculation_version,
            "ranking_version": snapshot.ranking_version,
        }
    )


@snapshots_app.command("list")
def snapshots_list(
    limit: Optional[int] = typer.Option(None, "--limit", min=0),
    status: Optional[str] = typer.Option(None, "--status"),
) -> None:
    filters = SnapshotFilters(status=status) if status else None
    summaries = _snapshot_store().list_snapshots(limit=limit, filters=filters)
    _echo_json([summary.to_dict() for summary in summaries])


@snapshots_app.command("show")
def snapshots_show(
    version: str = typer.Argument(..., help="Snapshot version (YYYY-MM-DD)."),
    entity: Optional[str] = typer.Option(None, "--entity", help="Show one entity's record."),
) -> None:
    store = _snapshot_store()
    try:
        if entity:
            data = store.read_entity(version, entity)
            if data is None:
                raise _fail(f"No data for entity {entity} in snapshot {version}.")
            _echo_json(data)
            return
        snapshot = store.read_snapshot(version)
    except StorageError as exc:
        raise _fail(str(exc)) from exc
    if snapshot is None:
        raise _fail(f"Snapshot {version} not found.")
    payload = snapshot.to_dict()
    payload["entity_ids"] = snapshot.entity_ids
    payload["fetch_metadata"] = snapshot.fetch_metadata.to_dict()
    payload.pop("payload", None)
    _echo_json(payload)


@snapshots_app.command("compat")
def snapshots_compat(version: str = typer.Argument(...)) -> None:
    result = _snapshot_store().check_version_compatibility(version)
    _echo_json(result.to_dict())
    if not result.is_compatible:
        raise typer.Exit(code=1)


@snapshots_app.command("set-current")
def snapshots_set_current(version: str = typer.Argument(...)) -> None:
    try:
        _snapshot_store().set_current_snapshot(version)
    except (ValueError, StorageError) as exc:
        raise _fail(str(exc)) from exc
    typer.echo(f"Current snapshot set to {version}")


# -------------------------------------------------------------------- config
@config_app.command("show")
def config_show() -> None:
    _echo_json(ReconciliationConfigStore(_provider()).load().to_dict())


@config_app.command("validate")
def config_validate(path: Path = typer.Argument(..., exists=True, dir_okay=False)) -> None:
    try:
        payload = load_config_mapping(path)
    except ValueError as exc:
        raise _fail(str(exc)) from exc
    result = validate_config(merge_config(ReconciliationConfig().to_dict(), payload))
    _echo_json({"is_valid": result.is_valid, "errors": result.errors, "warnings": result.warnings})
    if not result.is_valid:
        raise typer.Exit(code=1)


@config_app.command("update")
def config_update(
    assignments: List[str] = typer.Argument(..., help="KEY=VALUE pairs; nested keys use dots."),
    changed_by: str = typer.Option("cli", "--by"),
    reason: Optional[str] = typer.Option(None, "--reason"),
) -> None:
    store = ReconciliationConfigStore(_provider())
    try:
        updated = store.update(_assignments_to_changes(assignments), changed_by=changed_by, reason=reason)
    except ConfigValidationError as exc:
        raise _fail("\n".join(["Config rejected:"] + [f"- {error}" for error in exc.errors])) from exc
    _echo_json(updated.to_dict())


@config_app.command("history")
def config_history(limit: Optional[int] = typer.Option(None, "--limit", min=0)) -> None:
    _echo_json(ReconciliationConfigStore(_provider()).history(limit=limit))


# ----------------------------------------------------------------- reconcile
@reconcile_app.command("status")
def reconcile_status(job_id: str = typer.Argument(...)) -> None:
    orchestrator = _orchestrator()
    try:
        status = orchestrator.get_status(job_id)
        extension = orchestrator.get_extension_info(job_id)
    except JobNotFoundError as exc:
        raise _fail(str(exc)) from exc
    _echo_json({**status.to_dict(), "extension": extension.to_dict()})


@reconcile_app.command("list")
def reconcile_list(
    entity: Optional[str] = typer.Option(None, "--entity"),
    status: Optional[str] = typer.Option(None, "--status"),
) -> None:
    jobs = _orchestrator().list_jobs(entity_id=entity, status=status)
    _echo_json(
        [
            {
                "id": job.id,
                "status": job.status,
                "phase": job.phase,
                "stable_days": job.stable_days,
                "extension_days": job.extension_days,
                "start_date": job.start_date,
            }
            for job in jobs
        ]
    )


@reconcile_app.command("start")
def reconcile_start(
    entity: str = typer.Argument(...),
    period: str = typer.Argument(..., help="Target month (YYYY-MM)."),
) -> None:
    try:
        job = _orchestrator().start_reconciliation(entity, period, triggered_by="manual")
    except (ValueError, LookupError, StorageError) as exc:
        raise _fail(str(exc)) from exc
    _echo_json({"id": job.id, "status": job.status, "max_end_date": job.max_end_date})


@reconcile_app.command("sync")
def reconcile_sync() -> None:
    _echo_json(_orchestrator().sync_with_current().to_dict())


@reconcile_app.command("cancel")
def reconcile_cancel(
    job_id: str = typer.Argument(...),
    reason: str = typer.Option("cancelled from cli", "--reason"),
) -> None:
    try:
        job = _orchestrator().cancel_reconciliation(job_id, reason=reason)
    except JobNotFoundError as exc:
        raise _fail(str(exc)) from exc
    _echo_json({"id": job.id, "status": job.status})


@reconcile_app.command("extend")
def reconcile_extend(job_id: str = typer.Argument(...), days: int = typer.Argument(...)) -> None:
    try:
        job = _orchestrator().extend_reconciliation(job_id, days)
    except (JobNotFoundError, ValueError) as exc:
        raise _fail(str(exc)) from exc
    _echo_json({"id": job.id, "extension_days": job.extension_days})


@reconcile_app.command("finalize")
def reconcile_finalize(job_id: str = typer.Argument(...)) -> None:
    try:
        job = _orchestrator().finalize_reconciliation(job_id)
    except (JobNotFoundError, ValueError) as exc:
        raise _fail(str(exc)) from exc
    _echo_json({"id": job.id, "status": job.status})


@reconcile_app.command("run-due")
def reconcile_run_due(workers: int = typer.Option(4, "--workers", min=1)) -> None:
    summary = _orchestrator().run_due_cycles(max_workers=workers)
    _echo_json(summary.to_dict())
    if summary.failures:
        raise typer.Exit(code=1)


@reconcile_app.command("simulate")
def reconcile_simulate(
    scenario: str = typer.Argument(..., help=f"One of: {', '.join(sorted(SCENARIOS))}, or 'all'."),
    seed: int = typer.Option(7, "--seed"),
) -> None:
    simulator = ReconciliationSimulator(seed=seed)
    try:
        results = simulator.simulate_all() if scenario == "all" else [simulator.simulate(scenario)]
    except KeyError as exc:
        raise _fail(str(exc.args[0]) if exc.args else str(exc)) from exc
    _echo_json(
        [
            {
                "scenario": result.scenario,
                "outcome": result.outcome,
                "expected_outcome": result.expected_outcome,
                "total_days": result.total_days,
                "extension_days": result.job.extension_days,
            }
            for result in results
        ]
    )


if __name__ == "__main__":
    app()
