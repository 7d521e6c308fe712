from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from infra.timestamps import UTC
from reconciliation.config import ReconciliationConfig
from reconciliation.jobs import ReconciliationJob, create_job
from tests.storage.snapshot_helpers import district

START = datetime(2024, 2, 1, tzinfo=UTC)


def day(n: float) -> datetime:
    return START + timedelta(days=n)


def revised(stats: dict[str, Any], *, members: int | None = None, clubs: int | None = None) -> dict[str, Any]:
    updated = {**stats, "membership": dict(stats["membership"]), "clubs": dict(stats["clubs"])}
    if members is not None:
        updated["membership"]["total"] = members
    if clubs is not None:
        updated["clubs"]["total"] = clubs
    return updated


def new_job(
    entity_id: str = "42",
    *,
    config: ReconciliationConfig | None = None,
    baseline: dict[str, Any] | None = None,
    **kwargs: Any,
) -> ReconciliationJob:
    return create_job(
        entity_id,
        "2024-01",
        config=config or ReconciliationConfig(),
        baseline=district(entity_id) if baseline is None else baseline,
        start=START,
        **kwargs,
    )


class FeedFetcher:
    """Fetcher serving per-entity payloads from a dict; listed ids raise."""

    def __init__(self, payloads: dict[str, dict[str, Any]], *, failing: tuple[str, ...] = ()) -> None:
        self.payloads = payloads
        self.failing = set(failing)
        self.calls: list[tuple[str, str]] = []

    def __call__(self, entity_id: str, target_period: str) -> dict[str, Any]:
        self.calls.append((entity_id, target_period))
        if entity_id in self.failing:
            raise ConnectionError(f"upstream unavailable for {entity_id}")
        return self.payloads[entity_id]
