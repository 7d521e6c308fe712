"""Orchestration for month-end reconciliation jobs."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

from infra.storage.schema import entity_id_of
from infra.storage.snapshot_store import SnapshotStore
from infra.timestamps import coerce_timestamp, now_utc, period_of
from reconciliation.alerts import AlertEmitter
from reconciliation.config import ReconciliationConfig, ReconciliationConfigStore, merge_config
from reconciliation.jobs import (
    ReconciliationJob,
    ReconciliationJobStore,
    TRIGGERS,
    create_job,
    job_id_for,
)
from reconciliation.runtime import CycleReport, Fetcher, ReconciliationCycleRunner
from reconciliation.scheduler import DispatchSummary, ReconciliationScheduler
from reconciliation.state_machine import (
    ExtensionInfo,
    ReconciliationStateMachine,
    ReconciliationStatus,
    describe,
    get_extension_info,
)

LOGGER = logging.getLogger(__name__)


def snapshot_fetcher(store: SnapshotStore) -> Fetcher:
    """Fetcher that serves an entity's record from the current snapshot."""

    def fetch(entity_id: str, target_period: str) -> Mapping[str, Any]:
        snapshot = store.get_latest_successful()
        if snapshot is None:
            raise LookupError("No successful snapshot is available")
        entity = snapshot.entity(entity_id)
        if entity is None:
            raise LookupError(f"Entity {entity_id} missing from snapshot {snapshot.snapshot_id}")
        return entity

    return fetch


@dataclass(frozen=True)
class SyncReport:
    """Jobs touched when aligning with the current snapshot."""

    snapshot_id: str | None
    target_period: str | None
    created: list[str] = field(default_factory=list)
    existing: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "snapshot_id": self.snapshot_id,
            "target_period": self.target_period,
            "created": list(self.created),
            "existing": list(self.existing),
        }


class ReconciliationOrchestrator:
    """Coordinates job creation, check cycles, and manual controls."""

    def __init__(
        self,
        *,
        snapshot_store: SnapshotStore,
        fetcher: Fetcher,
        job_store: ReconciliationJobStore | None = None,
        config_store: ReconciliationConfigStore | None = None,
        state_machine: ReconciliationStateMachine | None = None,
        alert_emitter: AlertEmitter | None = None,
    ) -> None:
        self._snapshots = snapshot_store
        self._fetch = fetcher
        self._jobs = job_store or ReconciliationJobStore(snapshot_store.provider)
        self._configs = config_store or ReconciliationConfigStore(snapshot_store.provider)
        self._machine = state_machine or ReconciliationStateMachine()
        self.runner = ReconciliationCycleRunner(
            job_store=self._jobs,
            snapshot_store=snapshot_store,
            fetcher=fetcher,
            state_machine=self._machine,
            alert_emitter=alert_emitter,
        )
        self.scheduler = ReconciliationScheduler(self._jobs)

    @property
    def job_store(self) -> ReconciliationJobStore:
        return self._jobs

    def start_reconciliation(
        self,
        entity_id: str,
        target_period: str,
        *,
        baseline: Mapping[str, Any] | None = None,
        config_override: Mapping[str, Any] | None = None,
        triggered_by: str = "manual",
        snapshot_version: str | None = None,
        now: datetime | None = None,
    ) -> ReconciliationJob:
        """Create (or return the active) job for an entity and period.

        A finished job is only replaced when the start is manual.
        """

        if triggered_by not in TRIGGERS:
            raise ValueError(f"Unsupported trigger '{triggered_by}'")
        job_id = job_id_for(entity_id, target_period)
        moment = coerce_timestamp(now or now_utc())
        with self.runner.locks.get(job_id):
            existing = self._jobs.get(job_id)
            if existing is not None and (not existing.is_terminal() or triggered_by == "automatic"):
                return existing

            config = self._configs.load()
            if config_override:
                config = ReconciliationConfig.from_mapping(merge_config(config.to_dict(), config_override))
            if baseline is None:
                baseline = self._fetch(entity_id, target_period)
            metadata = {"snapshot_version": snapshot_version} if snapshot_version else {}
            job = create_job(
                entity_id,
                target_period,
                config=config,
                baseline=baseline,
                start=moment,
                triggered_by=triggered_by,
                metadata=metadata,
            )
            self._jobs.save(job)
        LOGGER.info(
            "Started reconciliation %s (%s), hard deadline %s", job.id, triggered_by, job.max_end_date
        )
        return job

    def sync_with_current(self, *, now: datetime | None = None) -> SyncReport:
        """Start jobs for every entity in the current snapshot's logical month."""

        snapshot = self._snapshots.get_latest_successful()
        if snapshot is None:
            return SyncReport(snapshot_id=None, target_period=None)
        period = period_of(snapshot.fetch_metadata.resolved_logical_date)
        report = SyncReport(snapshot_id=snapshot.snapshot_id, target_period=period)
        for entity in snapshot.entities:
            entity_id = entity_id_of(entity)
            job_id = job_id_for(entity_id, period)
            if self._jobs.get(job_id) is not None:
                report.existing.append(job_id)
                continue
            self.start_reconciliation(
                entity_id,
                period,
                baseline=entity,
                triggered_by="automatic",
                snapshot_version=snapshot.snapshot_id,
                now=now,
            )
            report.created.append(job_id)
        return report

    def process_cycle(self, job_id: str, *, now: datetime | None = None) -> CycleReport:
        return self.runner.run_cycle(job_id, now=now)

    def run_due_cycles(self, *, now: datetime | None = None, max_workers: int = 4) -> DispatchSummary:
        return self.scheduler.run_due(self.runner, now=now, max_workers=max_workers)

    def cancel_reconciliation(
        self,
        job_id: str,
        *,
        reason: str = "cancelled",
        now: datetime | None = None,
    ) -> ReconciliationJob:
        with self.runner.locks.get(job_id):
            job = self._jobs.require(job_id)
            updated = self._machine.cancel(job, reason=reason, now=now)
            if updated is not job:
                self._jobs.save(updated)
                LOGGER.info("Cancelled reconciliation %s: %s", job_id, reason)
        return updated

    def extend_reconciliation(
        self,
        job_id: str,
        days: int,
        *,
        now: datetime | None = None,
    ) -> ReconciliationJob:
        with self.runner.locks.get(job_id):
            job = self._jobs.require(job_id)
            updated = self._machine.extend(job, days, now=now)
            self._jobs.save(updated)
        LOGGER.info("Extended reconciliation %s by %d days", job_id, days)
        return updated

    def finalize_reconciliation(self, job_id: str, *, now: datetime | None = None) -> ReconciliationJob:
        with self.runner.locks.get(job_id):
            job = self._jobs.require(job_id)
            updated = self._machine.finalize(job, now=now)
            self._jobs.save(updated)
        LOGGER.info("Finalized reconciliation %s", job_id)
        return updated

    def get_status(self, job_id: str, *, now: datetime | None = None) -> ReconciliationStatus:
        return describe(self._jobs.require(job_id), now=now)

    def get_extension_info(self, job_id: str) -> ExtensionInfo:
        return get_extension_info(self._jobs.require(job_id))

    def list_jobs(self, *, entity_id: str | None = None, status: str | None = None) -> list[ReconciliationJob]:
        return self._jobs.list_jobs(entity_id=entity_id, status=status)


__all__ = ["ReconciliationOrchestrator", "SyncReport", "snapshot_fetcher"]
