"""Per-cycle reconciliation decisions.

The state machine is pure: it takes a job and freshly fetched data and
returns the job as it should look after the cycle, plus the timeline entry
describing the cycle. Persistence and fetching live in ``runtime``.

Rules applied once per cycle, in order:

1. detect changes against the data seen on the previous cycle;
2. a significant change resets the stable counter and, inside the last
   ``extension_window_days`` of the current deadline, extends it by up to
   ``extension_increment_days`` (never past ``max_extension_days`` in total);
3. otherwise the stable counter increments;
4. reaching ``stability_period_days`` completes the job;
5. else reaching ``max_reconciliation_days`` plus extensions so far, or the
   fixed ``max_end_date``, fails it as a timeout.

The deadline is always derived from ``start_date`` and the extension total;
no absolute deadline is stored besides the fixed hard cap.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Mapping

from infra.timestamps import add_days, coerce_timestamp, days_between, now_iso, now_utc
from reconciliation.change_detection import ChangeDetector, DataChanges
from reconciliation.jobs import JobProgress, ReconciliationJob, TimelineEntry

LOGGER = logging.getLogger(__name__)

OUTCOMES = ("completed", "extended", "timeout", "cancelled")


@dataclass(frozen=True)
class CycleDecision:
    job: ReconciliationJob
    entry: TimelineEntry
    changes: DataChanges
    is_significant: bool
    transition: str | None
    extended_by: int = 0


@dataclass(frozen=True)
class ExtensionInfo:
    current_extension_days: int
    max_extension_days: int
    remaining_extension_days: int
    can_extend: bool
    auto_extension_enabled: bool

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ReconciliationStatus:
    job_id: str
    phase: str
    status: str
    days_active: int
    days_stable: int
    next_check_date: str | None
    message: str
    outcome: str | None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def current_deadline(job: ReconciliationJob) -> datetime:
    days = job.config.max_reconciliation_days + job.extension_days
    return add_days(job.start_date, days)


def classify_outcome(job: ReconciliationJob) -> str | None:
    if job.status == "completed":
        return "extended" if job.extension_count > 0 else "completed"
    if job.status == "failed":
        return "timeout"
    if job.status == "cancelled":
        return "cancelled"
    return None


def compute_progress(job: ReconciliationJob) -> int:
    if job.is_terminal():
        return 100
    required = max(job.config.stability_period_days, 1)
    return min(99, int(job.stable_days * 100 / required))


def get_extension_info(job: ReconciliationJob) -> ExtensionInfo:
    remaining = max(job.config.max_extension_days - job.extension_days, 0)
    return ExtensionInfo(
        current_extension_days=job.extension_days,
        max_extension_days=job.config.max_extension_days,
        remaining_extension_days=remaining,
        can_extend=job.status == "active" and remaining > 0,
        auto_extension_enabled=job.config.auto_extension_enabled,
    )


def next_check_at(job: ReconciliationJob) -> datetime | None:
    if job.is_terminal():
        return None
    anchor = job.last_checked_at or job.start_date
    return coerce_timestamp(anchor) + timedelta(hours=job.config.check_frequency_hours)


def describe(job: ReconciliationJob, *, now: datetime | None = None) -> ReconciliationStatus:
    moment = coerce_timestamp(now or now_utc())
    end = coerce_timestamp(job.end_date) if job.end_date else moment
    days_active = max(int(days_between(job.start_date, end)), 0)
    outcome = classify_outcome(job)
    if job.status == "active":
        required = job.config.stability_period_days
        message = (
            f"{job.progress.phase}: {job.stable_days}/{required} stable cycles, "
            f"deadline {current_deadline(job).date().isoformat()}"
        )
    elif job.status == "cancelled":
        message = f"cancelled: {job.metadata.get('cancel_reason') or 'no reason given'}"
    else:
        message = f"{outcome} after {days_active} days"
    upcoming = next_check_at(job)
    return ReconciliationStatus(
        job_id=job.id,
        phase=job.progress.phase,
        status=job.status,
        days_active=days_active,
        days_stable=job.stable_days,
        next_check_date=upcoming.isoformat() if upcoming else None,
        message=message,
        outcome=outcome,
    )


class ReconciliationStateMachine:
    """Decides each cycle's transition from detector output."""

    def __init__(self, detector: ChangeDetector | None = None) -> None:
        self.detector = detector or ChangeDetector()

    def extension_for(self, job: ReconciliationJob, now: datetime) -> int:
        """Days to add if a significant change lands at *now*, else 0."""

        config = job.config
        if not config.auto_extension_enabled:
            return 0
        remaining = config.max_extension_days - job.extension_days
        if remaining <= 0:
            return 0
        deadline_days = config.max_reconciliation_days + job.extension_days
        elapsed = days_between(job.start_date, now)
        if deadline_days - elapsed >= config.extension_window_days:
            return 0
        return min(config.extension_increment_days, remaining)

    def evaluate_cycle(
        self,
        job: ReconciliationJob,
        current_data: Mapping[str, Any],
        *,
        now: datetime | None = None,
    ) -> CycleDecision:
        if job.is_terminal():
            raise ValueError(f"Job {job.id} is already {job.status}")
        moment = coerce_timestamp(now or now_utc())
        config = job.config
        previous = job.last_data if job.last_data is not None else current_data

        changes = self.detector.detect_changes(job.entity_id, previous, current_data)
        significant = self.detector.is_significant_change(changes, config.significant_change_thresholds)

        stable_days = job.stable_days
        extension_days = job.extension_days
        extension_count = job.extension_count
        extended_by = 0
        notes: list[str] = []
        if significant:
            stable_days = 0
            notes.append("Significant change in " + ", ".join(changes.changed_fields))
            extended_by = self.extension_for(job, moment)
            if extended_by:
                extension_days += extended_by
                extension_count += 1
                notes.append(f"Deadline extended by {extended_by} days")
        else:
            stable_days += 1
            if changes.has_changes:
                notes.append("Minor change in " + ", ".join(changes.changed_fields))
            else:
                notes.append("No changes")

        elapsed = days_between(job.start_date, moment)
        hard_cap = coerce_timestamp(job.max_end_date)
        status, phase, transition = "active", "monitoring", None
        if stable_days >= config.stability_period_days:
            status, phase, transition = "completed", "completed", "completed"
            notes.append("Stability period reached")
        elif elapsed >= config.max_reconciliation_days + extension_days or moment >= hard_cap:
            status, phase, transition = "failed", "failed", "timeout"
            notes.append("Reconciliation window exhausted")
        elif stable_days > 0:
            phase = "stabilizing"

        timestamp = now_iso(moment)
        entry = TimelineEntry(
            date=timestamp,
            source_data_date=changes.source_data_date,
            changes=changes,
            is_significant=significant,
            cache_updated=changes.has_changes,
            notes="; ".join(notes),
        )
        updated = replace(
            job,
            status=status,
            stable_days=stable_days,
            extension_days=extension_days,
            extension_count=extension_count,
            last_data=dict(current_data),
            current_data_date=changes.source_data_date or job.current_data_date,
            last_checked_at=timestamp,
            updated_at=timestamp,
            end_date=timestamp if status != "active" else None,
            timeline=job.timeline + (entry,),
        )
        updated = replace(
            updated,
            progress=JobProgress(phase=phase, completion_percentage=compute_progress(updated)),
        )
        if transition:
            LOGGER.info("Reconciliation %s -> %s (%s)", job.id, phase, classify_outcome(updated))
        return CycleDecision(
            job=updated,
            entry=entry,
            changes=changes,
            is_significant=significant,
            transition=transition,
            extended_by=extended_by,
        )

    def extend(self, job: ReconciliationJob, days: int, *, now: datetime | None = None) -> ReconciliationJob:
        """Manually extend an active job within its remaining extension budget."""

        if job.is_terminal():
            raise ValueError(f"Job {job.id} is already {job.status}")
        if days <= 0:
            raise ValueError("Extension days must be positive")
        info = get_extension_info(job)
        if days > info.remaining_extension_days:
            raise ValueError(
                f"Cannot extend {job.id} by {days} days; "
                f"{info.remaining_extension_days} extension days remain"
            )
        timestamp = now_iso(now)
        return replace(
            job,
            extension_days=job.extension_days + days,
            extension_count=job.extension_count + 1,
            updated_at=timestamp,
        )

    def cancel(self, job: ReconciliationJob, *, reason: str, now: datetime | None = None) -> ReconciliationJob:
        if job.is_terminal():
            return job
        timestamp = now_iso(now)
        return replace(
            job,
            status="cancelled",
            progress=JobProgress(phase="failed", completion_percentage=100),
            end_date=timestamp,
            updated_at=timestamp,
            metadata={**job.metadata, "cancel_reason": reason},
        )

    def finalize(self, job: ReconciliationJob, *, now: datetime | None = None) -> ReconciliationJob:
        """Force an active job to completion."""

        if job.is_terminal():
            raise ValueError(f"Job {job.id} is already {job.status}")
        timestamp = now_iso(now)
        return replace(
            job,
            status="completed",
            progress=JobProgress(phase="completed", completion_percentage=100),
            end_date=timestamp,
            updated_at=timestamp,
            metadata={**job.metadata, "finalized_manually": True},
        )


__all__ = [
    "CycleDecision",
    "ExtensionInfo",
    "OUTCOMES",
    "ReconciliationStateMachine",
    "ReconciliationStatus",
    "classify_outcome",
    "compute_progress",
    "current_deadline",
    "describe",
    "get_extension_info",
    "next_check_at",
]
