"""Tabular views over reconciliation jobs and snapshot listings."""

from __future__ import annotations

from typing import Iterable, Sequence

import pandas as pd

from infra.storage.snapshot_store import SnapshotSummary
from infra.timestamps import days_between
from reconciliation.change_detection import ChangeDetector
from reconciliation.jobs import ReconciliationJob
from reconciliation.state_machine import OUTCOMES, classify_outcome

TIMELINE_COLUMNS = [
    "date",
    "source_data_date",
    "is_significant",
    "cache_updated",
    "changed_fields",
    "membership_impact",
    "club_count_impact",
    "distinguished_impact",
    "overall_significance",
    "notes",
]

OUTCOME_COLUMNS = ["outcome", "jobs", "avg_extension_days", "avg_duration_days"]

SNAPSHOT_COLUMNS = [
    "snapshot_id",
    "created_at",
    "status",
    "schema_version",
    "calculation_version",
    "entity_count",
    "successful_count",
    "failed_count",
    "error_count",
    "storage_format",
]


def timeline_frame(job: ReconciliationJob, *, detector: ChangeDetector | None = None) -> pd.DataFrame:
    detector = detector or ChangeDetector()
    rows = []
    for entry in job.timeline:
        metrics = detector.calculate_change_metrics(entry.changes)
        rows.append(
            {
                "date": pd.Timestamp(entry.date),
                "source_data_date": entry.source_data_date,
                "is_significant": entry.is_significant,
                "cache_updated": entry.cache_updated,
                "changed_fields": ",".join(entry.changes.changed_fields),
                **metrics.to_dict(),
                "notes": entry.notes,
            }
        )
    return pd.DataFrame(rows, columns=TIMELINE_COLUMNS)


def outcome_summary(jobs: Iterable[ReconciliationJob]) -> pd.DataFrame:
    """Count finished jobs per outcome with mean extension and duration.

    Active jobs have no outcome yet and are left out.
    """

    rows = []
    for job in jobs:
        outcome = classify_outcome(job)
        if outcome is None or job.end_date is None:
            continue
        rows.append(
            {
                "outcome": outcome,
                "extension_days": job.extension_days,
                "duration_days": days_between(job.start_date, job.end_date),
            }
        )
    if not rows:
        return pd.DataFrame(columns=OUTCOME_COLUMNS)
    frame = pd.DataFrame(rows)
    summary = (
        frame.groupby("outcome")
        .agg(
            jobs=("outcome", "size"),
            avg_extension_days=("extension_days", "mean"),
            avg_duration_days=("duration_days", "mean"),
        )
        .reset_index()
    )
    order = {name: idx for idx, name in enumerate(OUTCOMES)}
    summary["_order"] = summary["outcome"].map(order)
    summary = summary.sort_values("_order").drop(columns="_order").reset_index(drop=True)
    return summary[OUTCOME_COLUMNS]


def snapshot_frame(summaries: Sequence[SnapshotSummary]) -> pd.DataFrame:
    frame = pd.DataFrame([summary.to_dict() for summary in summaries], columns=SNAPSHOT_COLUMNS)
    if not frame.empty:
        frame["created_at"] = pd.to_datetime(frame["created_at"], utc=True, errors="coerce")
    return frame


__all__ = [
    "OUTCOME_COLUMNS",
    "SNAPSHOT_COLUMNS",
    "TIMELINE_COLUMNS",
    "outcome_summary",
    "snapshot_frame",
    "timeline_frame",
]
