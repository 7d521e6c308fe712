"""Reconciliation job model and persistence."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

from infra.paths import RECONCILIATION_PREFIX
from infra.storage.documents import dump_document, load_document
from infra.storage.errors import CorruptDocumentError
from infra.storage.providers import StorageProvider, create_storage_provider
from infra.storage.schema import is_safe_key, validate_entity_id
from infra.timestamps import add_days, now_iso, parse_period
from reconciliation.change_detection import DataChanges
from reconciliation.config import ReconciliationConfig

LOGGER = logging.getLogger(__name__)

JOB_STATUSES = {"active", "completed", "failed", "cancelled"}
TERMINAL_STATUSES = {"completed", "failed", "cancelled"}
PHASES = {"monitoring", "stabilizing", "completed", "failed"}
TERMINAL_PHASES = {"completed", "failed"}
TRIGGERS = {"automatic", "manual"}

JOBS_PREFIX = f"{RECONCILIATION_PREFIX}/jobs"


class JobNotFoundError(LookupError):
    """Raised when an operation targets a job that does not exist."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Reconciliation job '{job_id}' not found")
        self.job_id = job_id


def job_id_for(entity_id: str, target_period: str) -> str:
    entity = validate_entity_id(entity_id)
    parse_period(target_period)
    return f"reconciliation-{entity}-{target_period}"


def job_key(job_id: str) -> str:
    if not is_safe_key(job_id):
        raise ValueError(f"Invalid job id '{job_id}'; expected [A-Za-z0-9_-]+")
    return f"{JOBS_PREFIX}/{job_id}.json"


@dataclass(frozen=True)
class JobProgress:
    phase: str = "monitoring"
    completion_percentage: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"phase": self.phase, "completion_percentage": self.completion_percentage}


@dataclass(frozen=True)
class TimelineEntry:
    """One check cycle's observation."""

    date: str
    source_data_date: str | None
    changes: DataChanges
    is_significant: bool
    cache_updated: bool
    notes: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.date,
            "source_data_date": self.source_data_date,
            "changes": self.changes.to_dict(),
            "is_significant": self.is_significant,
            "cache_updated": self.cache_updated,
            "notes": self.notes,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "TimelineEntry":
        return cls(
            date=str(payload["date"]),
            source_data_date=payload.get("source_data_date"),
            changes=DataChanges.from_dict(payload.get("changes") or {}),
            is_significant=bool(payload.get("is_significant")),
            cache_updated=bool(payload.get("cache_updated")),
            notes=str(payload.get("notes", "")),
        )


@dataclass(frozen=True)
class ReconciliationJob:
    id: str
    entity_id: str
    target_period: str
    status: str
    start_date: str
    max_end_date: str
    config: ReconciliationConfig
    progress: JobProgress = field(default_factory=JobProgress)
    stable_days: int = 0
    extension_days: int = 0
    extension_count: int = 0
    last_data: dict[str, Any] | None = None
    current_data_date: str | None = None
    last_checked_at: str | None = None
    end_date: str | None = None
    triggered_by: str = "automatic"
    created_at: str = ""
    updated_at: str = ""
    timeline: tuple[TimelineEntry, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.status not in JOB_STATUSES:
            raise ValueError(f"Unsupported job status '{self.status}'")
        if self.progress.phase not in PHASES:
            raise ValueError(f"Unsupported reconciliation phase '{self.progress.phase}'")
        if self.triggered_by not in TRIGGERS:
            raise ValueError(f"Unsupported trigger '{self.triggered_by}'")

    @property
    def phase(self) -> str:
        return self.progress.phase

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "entity_id": self.entity_id,
            "target_period": self.target_period,
            "status": self.status,
            "start_date": self.start_date,
            "max_end_date": self.max_end_date,
            "end_date": self.end_date,
            "config": self.config.to_dict(),
            "progress": self.progress.to_dict(),
            "stable_days": self.stable_days,
            "extension_days": self.extension_days,
            "extension_count": self.extension_count,
            "last_data": self.last_data,
            "current_data_date": self.current_data_date,
            "last_checked_at": self.last_checked_at,
            "triggered_by": self.triggered_by,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "timeline": [entry.to_dict() for entry in self.timeline],
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ReconciliationJob":
        progress = payload.get("progress") or {}
        return cls(
            id=str(payload["id"]),
            entity_id=str(payload["entity_id"]),
            target_period=str(payload["target_period"]),
            status=str(payload["status"]),
            start_date=str(payload["start_date"]),
            max_end_date=str(payload["max_end_date"]),
            end_date=payload.get("end_date"),
            # Jobs keep the config they started with, so a later config change
            # cannot move their windows.
            config=ReconciliationConfig.from_mapping(payload.get("config") or {}),
            progress=JobProgress(
                phase=str(progress.get("phase", "monitoring")),
                completion_percentage=int(progress.get("completion_percentage", 0)),
            ),
            stable_days=int(payload.get("stable_days", 0)),
            extension_days=int(payload.get("extension_days", 0)),
            extension_count=int(payload.get("extension_count", 0)),
            last_data=payload.get("last_data"),
            current_data_date=payload.get("current_data_date"),
            last_checked_at=payload.get("last_checked_at"),
            triggered_by=str(payload.get("triggered_by", "automatic")),
            created_at=str(payload.get("created_at", "")),
            updated_at=str(payload.get("updated_at", "")),
            timeline=tuple(TimelineEntry.from_dict(item) for item in payload.get("timeline", [])),
            metadata=dict(payload.get("metadata", {})),
        )


def create_job(
    entity_id: str,
    target_period: str,
    *,
    config: ReconciliationConfig,
    baseline: Mapping[str, Any] | None = None,
    start: datetime | str | None = None,
    triggered_by: str = "automatic",
    metadata: Mapping[str, Any] | None = None,
) -> ReconciliationJob:
    """Build a new active job whose hard deadline is fixed at creation."""

    started = now_iso(start) if isinstance(start, datetime) else (start or now_iso())
    window = config.max_reconciliation_days + config.max_extension_days
    as_of = baseline.get("as_of_date") if baseline else None
    return ReconciliationJob(
        id=job_id_for(entity_id, target_period),
        entity_id=entity_id,
        target_period=target_period,
        status="active",
        start_date=started,
        max_end_date=add_days(started, window).isoformat(),
        config=config,
        last_data=dict(baseline) if baseline else None,
        current_data_date=str(as_of) if as_of else None,
        triggered_by=triggered_by,
        created_at=started,
        updated_at=started,
        metadata=dict(metadata or {}),
    )


class ReconciliationJobStore:
    """One atomically replaced document per job; state and timeline commit together."""

    def __init__(self, provider: StorageProvider | None = None) -> None:
        self.provider = provider or create_storage_provider()

    def save(self, job: ReconciliationJob) -> None:
        self.provider.write_text_atomic(job_key(job.id), dump_document(job.to_dict()))

    def get(self, job_id: str) -> ReconciliationJob | None:
        key = job_key(job_id)
        payload = load_document(self.provider, key, operation="load_job")
        if payload is None:
            return None
        try:
            return ReconciliationJob.from_dict(payload)
        except (KeyError, TypeError, ValueError) as exc:
            raise CorruptDocumentError(key, operation="load_job", provider=self.provider.name, cause=exc) from exc

    def require(self, job_id: str) -> ReconciliationJob:
        job = self.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def list_jobs(
        self,
        *,
        entity_id: str | None = None,
        status: str | None = None,
    ) -> list[ReconciliationJob]:
        jobs: list[ReconciliationJob] = []
        for name in self.provider.list_children(JOBS_PREFIX):
            if not name.endswith(".json"):
                continue
            job = self.get(name[: -len(".json")])
            if job is None:
                continue
            if entity_id and job.entity_id != entity_id:
                continue
            if status and job.status != status:
                continue
            jobs.append(job)
        jobs.sort(key=lambda item: (item.created_at, item.id), reverse=True)
        return jobs

    def delete(self, job_id: str) -> None:
        self.provider.delete(job_key(job_id))
        LOGGER.info("Deleted reconciliation job %s", job_id)


__all__ = [
    "JOB_STATUSES",
    "JOBS_PREFIX",
    "JobNotFoundError",
    "JobProgress",
    "PHASES",
    "ReconciliationJob",
    "ReconciliationJobStore",
    "TERMINAL_PHASES",
    "TERMINAL_STATUSES",
    "TimelineEntry",
    "create_job",
    "job_id_for",
    "job_key",
]
