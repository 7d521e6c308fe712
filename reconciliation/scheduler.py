"""Check cadence and parallel dispatch for active reconciliation jobs."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from infra.timestamps import coerce_timestamp, now_utc
from reconciliation.jobs import ReconciliationJob, ReconciliationJobStore
from reconciliation.runtime import CycleReport, ReconciliationCycleError, ReconciliationCycleRunner
from reconciliation.state_machine import next_check_at

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class DispatchSummary:
    """Outcome of one scheduler pass over due jobs."""

    evaluated_at: str
    reports: list[CycleReport] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)

    @property
    def dispatched(self) -> int:
        return len(self.reports) + len(self.failures)

    def to_dict(self) -> dict[str, Any]:
        return {
            "evaluated_at": self.evaluated_at,
            "reports": [report.to_dict() for report in self.reports],
            "failures": dict(self.failures),
        }


class ReconciliationScheduler:
    """Decides which active jobs are due for a check cycle."""

    def __init__(self, job_store: ReconciliationJobStore) -> None:
        self._jobs = job_store

    @staticmethod
    def next_check_at(job: ReconciliationJob) -> datetime | None:
        return next_check_at(job)

    @staticmethod
    def is_due(job: ReconciliationJob, now: datetime) -> bool:
        upcoming = next_check_at(job)
        return upcoming is not None and upcoming <= coerce_timestamp(now)

    def due_jobs(self, now: datetime | None = None) -> list[ReconciliationJob]:
        moment = coerce_timestamp(now or now_utc())
        due = [job for job in self._jobs.list_jobs(status="active") if self.is_due(job, moment)]
        due.sort(key=lambda job: (next_check_at(job) or moment, job.id))
        return due

    def run_due(
        self,
        runner: ReconciliationCycleRunner,
        *,
        now: datetime | None = None,
        max_workers: int = 4,
    ) -> DispatchSummary:
        """Run one cycle for every due job; a failing job never affects the others."""

        moment = coerce_timestamp(now or now_utc())
        jobs = self.due_jobs(moment)
        summary = DispatchSummary(evaluated_at=moment.isoformat())
        if not jobs:
            return summary
        with ThreadPoolExecutor(max_workers=max(1, max_workers)) as pool:
            futures = {job.id: pool.submit(runner.run_cycle, job.id, now=moment) for job in jobs}
            for job_id, future in futures.items():
                try:
                    summary.reports.append(future.result())
                except ReconciliationCycleError as exc:
                    summary.failures[job_id] = f"{exc.stage}: {exc.cause or exc}"
                except Exception as exc:
                    LOGGER.error("Unexpected failure dispatching %s", job_id, exc_info=True)
                    summary.failures[job_id] = f"unexpected: {exc}"
        LOGGER.info(
            "Reconciliation dispatch at %s: %d ran, %d failed",
            summary.evaluated_at,
            len(summary.reports),
            len(summary.failures),
        )
        return summary


__all__ = ["DispatchSummary", "ReconciliationScheduler"]
