"""Cycle execution for reconciliation jobs (fetch, detect, decide, persist)."""

from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass, replace
from datetime import datetime
from typing import Any, Callable, Mapping

from infra.storage.snapshot_store import SnapshotComparisonResult, SnapshotStore
from infra.timestamps import coerce_timestamp, month_end, now_utc
from reconciliation.alerts import AlertEmitter
from reconciliation.jobs import ReconciliationJob, ReconciliationJobStore
from reconciliation.state_machine import CycleDecision, ReconciliationStateMachine

LOGGER = logging.getLogger(__name__)

Fetcher = Callable[[str, str], Mapping[str, Any]]

CYCLE_STAGES = ("fetch", "detect", "persist")


class ReconciliationCycleError(RuntimeError):
    """Raised when a cycle fails; the job keeps its prior persisted state."""

    def __init__(self, message: str, *, job_id: str, stage: str, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.job_id = job_id
        self.stage = stage
        self.cause = cause


@dataclass(frozen=True)
class CycleReport:
    job_id: str
    status: str
    phase: str
    transition: str | None = None
    is_significant: bool = False
    cache_updated: bool = False
    extended_by: int = 0
    overwrite: SnapshotComparisonResult | None = None
    skipped: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class JobLocks:
    """Per-job locks; a cycle and a cancel on the same job never interleave."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def get(self, job_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(job_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[job_id] = lock
            return lock


def snapshot_version_for(job: ReconciliationJob) -> str:
    """Version key a job's late changes are written back to."""

    pinned = job.metadata.get("snapshot_version")
    if pinned:
        return str(pinned)
    return month_end(job.target_period).isoformat()


def _mark_not_written(decision: CycleDecision, version: str) -> CycleDecision:
    note = f"not written: no per-entity snapshot at {version}"
    entry = replace(
        decision.entry,
        cache_updated=False,
        notes=f"{decision.entry.notes}; {note}" if decision.entry.notes else note,
    )
    job = replace(decision.job, timeline=decision.job.timeline[:-1] + (entry,))
    return replace(decision, job=job, entry=entry)


class ReconciliationCycleRunner:
    """Runs single check cycles for persisted jobs.

    There is no retry inside a cycle: a failing fetch, detection, or write
    leaves the stored job untouched and raises ``ReconciliationCycleError``
    so the next scheduled cycle can try again.
    """

    def __init__(
        self,
        *,
        job_store: ReconciliationJobStore,
        snapshot_store: SnapshotStore,
        fetcher: Fetcher,
        state_machine: ReconciliationStateMachine | None = None,
        alert_emitter: AlertEmitter | None = None,
        locks: JobLocks | None = None,
    ) -> None:
        self._jobs = job_store
        self._snapshots = snapshot_store
        self._fetch = fetcher
        self._machine = state_machine or ReconciliationStateMachine()
        self._alerts = alert_emitter
        self.locks = locks or JobLocks()

    def run_cycle(self, job_id: str, *, now: datetime | None = None) -> CycleReport:
        moment = coerce_timestamp(now or now_utc())
        with self.locks.get(job_id):
            job = self._jobs.require(job_id)
            if job.is_terminal():
                LOGGER.debug("Skipping cycle for terminal job %s (%s)", job_id, job.status)
                return CycleReport(job_id=job_id, status=job.status, phase=job.phase, skipped=True)

            try:
                current = self._fetch(job.entity_id, job.target_period)
            except Exception as exc:
                raise self._failure(job, "fetch", exc, moment) from exc

            try:
                decision = self._machine.evaluate_cycle(job, current, now=moment)
            except Exception as exc:
                raise self._failure(job, "detect", exc, moment) from exc

            overwrite = None
            try:
                if decision.changes.has_changes:
                    overwrite = self._write_back(job, current, decision, moment)
                    if overwrite is None:
                        decision = _mark_not_written(decision, snapshot_version_for(job))
                self._jobs.save(decision.job)
            except Exception as exc:
                raise self._failure(job, "persist", exc, moment) from exc

        self._emit_transition_alerts(decision, moment)
        return CycleReport(
            job_id=job_id,
            status=decision.job.status,
            phase=decision.job.phase,
            transition=decision.transition,
            is_significant=decision.is_significant,
            cache_updated=decision.entry.cache_updated,
            extended_by=decision.extended_by,
            overwrite=overwrite,
        )

    def _write_back(
        self,
        job: ReconciliationJob,
        current: Mapping[str, Any],
        decision: CycleDecision,
        moment: datetime,
    ) -> SnapshotComparisonResult | None:
        """Write changed data back to the job's snapshot; ``None`` if it has no per-entity target."""

        version = snapshot_version_for(job)
        try:
            result = self._snapshots.overwrite_entity(
                version,
                current,
                collection_date=moment.date(),
                reason=f"{job.id}: {decision.entry.notes}",
                source_data_date=decision.changes.source_data_date,
            )
        except FileNotFoundError:
            # A missing target is permanent; the cycle still commits.
            LOGGER.warning("Late data for %s not written: no per-entity snapshot at %s", job.id, version)
            return None
        if not result.should_update:
            LOGGER.warning(
                "Late data for %s not written to %s: %s", job.id, version, result.reason
            )
        return result

    def _failure(
        self,
        job: ReconciliationJob,
        stage: str,
        exc: BaseException,
        moment: datetime,
    ) -> ReconciliationCycleError:
        LOGGER.error("Reconciliation cycle failed job=%s stage=%s", job.id, stage, exc_info=True)
        self._emit(
            severity="soft",
            kind="reconciliation_cycle_failed",
            message=f"{job.id} {stage} failed: {exc}",
            job=job,
            context={"stage": stage, "error": str(exc)},
            timestamp=moment,
        )
        return ReconciliationCycleError(
            f"Cycle for {job.id} failed during {stage}: {exc}",
            job_id=job.id,
            stage=stage,
            cause=exc,
        )

    def _emit_transition_alerts(self, decision: CycleDecision, moment: datetime) -> None:
        job = decision.job
        if decision.transition == "timeout":
            self._emit(
                severity="hard",
                kind="reconciliation_timeout",
                message=f"{job.id} did not stabilize within {job.config.max_reconciliation_days + job.extension_days} days",
                job=job,
                context={"extension_days": job.extension_days, "stable_days": job.stable_days},
                timestamp=moment,
            )
        if decision.extended_by:
            self._emit(
                severity="soft",
                kind="reconciliation_extended",
                message=f"{job.id} extended by {decision.extended_by} days",
                job=job,
                context={"extension_days": job.extension_days, "extension_count": job.extension_count},
                timestamp=moment,
            )

    def _emit(
        self,
        *,
        severity: str,
        kind: str,
        message: str,
        job: ReconciliationJob,
        context: Mapping[str, Any],
        timestamp: datetime,
    ) -> None:
        if self._alerts is None:
            return
        try:
            self._alerts.emit(
                severity=severity,
                kind=kind,
                message=message,
                job_id=job.id,
                entity_id=job.entity_id,
                context=context,
                timestamp=timestamp,
            )
        except Exception:  # alerts never decide a cycle outcome
            LOGGER.warning("Alert emission failed for %s (%s)", job.id, kind, exc_info=True)


__all__ = [
    "CYCLE_STAGES",
    "CycleReport",
    "Fetcher",
    "JobLocks",
    "ReconciliationCycleError",
    "ReconciliationCycleRunner",
    "snapshot_version_for",
]
