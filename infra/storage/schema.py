"""Snapshot payload schema shared by the storage modules."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Mapping

from infra.timestamps import resolve_logical_date

CURRENT_SCHEMA_VERSION = "1.0.0"
CURRENT_CALCULATION_VERSION = "1.0.0"
CURRENT_RANKING_VERSION = "2.0"

SNAPSHOT_STATUSES = ("success", "partial", "failed")
ENTITY_ID_FIELD = "district_id"

_SAFE_KEY_RE = re.compile(r"^[A-Za-z0-9_-]+$")
_VERSION_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def validate_entity_id(entity_id: Any) -> str:
    text = str(entity_id or "").strip()
    if not _SAFE_KEY_RE.match(text):
        raise ValueError(f"Invalid entity id '{entity_id}'; expected [A-Za-z0-9_-]+")
    return text


def validate_version_id(version: Any) -> str:
    """Return a canonical ``YYYY-MM-DD`` version key or raise ``ValueError``."""

    text = str(version or "").strip()
    if not _VERSION_RE.match(text):
        raise ValueError(f"Invalid snapshot version '{version}'; expected YYYY-MM-DD")
    try:
        date.fromisoformat(text)
    except ValueError as exc:
        raise ValueError(f"Invalid snapshot version '{version}': {exc}") from exc
    return text


def is_safe_key(value: str) -> bool:
    return bool(_SAFE_KEY_RE.match(value or ""))


def entity_id_of(entity: Mapping[str, Any]) -> str:
    if not isinstance(entity, Mapping):
        raise ValueError("entity statistics must be a mapping")
    if ENTITY_ID_FIELD not in entity:
        raise ValueError(f"entity statistics missing '{ENTITY_ID_FIELD}'")
    return validate_entity_id(entity[ENTITY_ID_FIELD])


@dataclass(frozen=True)
class FetchMetadata:
    """Provenance of a snapshot's payload."""

    source: str
    fetched_at: str
    data_as_of_date: str
    is_closing_period_data: bool = False
    collection_date: str | None = None
    logical_date: str | None = None

    @property
    def resolved_logical_date(self) -> str:
        if self.logical_date:
            return self.logical_date
        return resolve_logical_date(
            self.data_as_of_date, is_closing_period_data=self.is_closing_period_data
        )

    @property
    def resolved_collection_date(self) -> str:
        return self.collection_date or self.data_as_of_date

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "fetched_at": self.fetched_at,
            "data_as_of_date": self.data_as_of_date,
            "is_closing_period_data": self.is_closing_period_data,
            "collection_date": self.collection_date,
            "logical_date": self.resolved_logical_date,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "FetchMetadata":
        data_as_of = payload.get("data_as_of_date") or payload.get("dataAsOfDate") or ""
        return cls(
            source=str(payload.get("source", "unknown")),
            fetched_at=str(payload.get("fetched_at") or payload.get("fetchedAt") or ""),
            data_as_of_date=str(data_as_of),
            is_closing_period_data=bool(
                payload.get("is_closing_period_data", payload.get("isClosingPeriodData", False))
            ),
            collection_date=payload.get("collection_date") or payload.get("collectionDate"),
            logical_date=payload.get("logical_date") or payload.get("logicalDate"),
        )


@dataclass(frozen=True)
class Snapshot:
    """One dated capture of all entities' statistics."""

    snapshot_id: str
    created_at: str
    status: str
    fetch_metadata: FetchMetadata
    entities: list[dict[str, Any]] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    schema_version: str = CURRENT_SCHEMA_VERSION
    calculation_version: str = CURRENT_CALCULATION_VERSION
    ranking_version: str | None = None

    def __post_init__(self) -> None:
        if self.status not in SNAPSHOT_STATUSES:
            raise ValueError(f"Unsupported snapshot status '{self.status}'")

    @property
    def entity_ids(self) -> list[str]:
        return [entity_id_of(entity) for entity in self.entities]

    def entity(self, entity_id: str) -> dict[str, Any] | None:
        for entity in self.entities:
            if str(entity.get(ENTITY_ID_FIELD)) == entity_id:
                return entity
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "snapshot_id": self.snapshot_id,
            "created_at": self.created_at,
            "status": self.status,
            "schema_version": self.schema_version,
            "calculation_version": self.calculation_version,
            "ranking_version": self.ranking_version,
            "errors": list(self.errors),
            "payload": {
                "districts": [dict(entity) for entity in self.entities],
                "metadata": self.fetch_metadata.to_dict(),
            },
        }


__all__ = [
    "CURRENT_CALCULATION_VERSION",
    "CURRENT_RANKING_VERSION",
    "CURRENT_SCHEMA_VERSION",
    "ENTITY_ID_FIELD",
    "FetchMetadata",
    "SNAPSHOT_STATUSES",
    "Snapshot",
    "entity_id_of",
    "is_safe_key",
    "validate_entity_id",
    "validate_version_id",
]
