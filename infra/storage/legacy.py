"""Readers for pre-migration storage formats.

Two legacy shapes survive in stored data:

* single-blob snapshots (``snapshots/<version>.json``) holding every
  district in one document, written before per-district files existed;
* distinguished-club breakdowns stored as a list of club summaries rather
  than a counts object.

Both are detected explicitly and converted one way into the current shape.
Callers never coerce structurally.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping

from infra.paths import SNAPSHOTS_PREFIX
from infra.storage.documents import load_document
from infra.storage.errors import CorruptDocumentError
from infra.storage.providers import StorageProvider
from infra.storage.schema import (
    CURRENT_CALCULATION_VERSION,
    CURRENT_SCHEMA_VERSION,
    ENTITY_ID_FIELD,
    FetchMetadata,
    Snapshot,
    is_safe_key,
)

LOGGER = logging.getLogger(__name__)

LEGACY_SUFFIX = ".json"
DISTINGUISHED_STATUSES = ("smedley", "president", "select", "distinguished", "none")

_COUNT_FIELDS = {
    "smedley": "smedley",
    "president": "presidents",
    "select": "select",
    "distinguished": "distinguished",
}


def legacy_key(version: str) -> str:
    return f"{SNAPSHOTS_PREFIX}/{version}{LEGACY_SUFFIX}"


def _field(item: Mapping[str, Any], snake: str, camel: str) -> Any:
    if snake in item:
        return item[snake]
    return item.get(camel)


def _is_club_summary(item: Any) -> bool:
    if not isinstance(item, Mapping):
        return False
    club_id = _field(item, "club_id", "clubId")
    club_name = _field(item, "club_name", "clubName")
    status = item.get("status")
    return (
        isinstance(club_id, str)
        and isinstance(club_name, str)
        and status in DISTINGUISHED_STATUSES
    )


def is_legacy_distinguished_format(value: Any) -> bool:
    """True when *value* is the legacy list of club summaries (an empty list counts)."""

    if not isinstance(value, list):
        return False
    return all(_is_club_summary(item) for item in value)


def transform_legacy_distinguished(items: Iterable[Mapping[str, Any]]) -> dict[str, Any]:
    """Count legacy club summaries by status into the current counts object.

    Clubs with status ``none`` are kept in the preserved list but are not
    part of any count. The original list is returned under
    ``distinguished_clubs_list``.
    """

    summaries = [dict(item) for item in items]
    counts = {"smedley": 0, "presidents": 0, "select": 0, "distinguished": 0}
    for item in summaries:
        target = _COUNT_FIELDS.get(str(item.get("status")))
        if target:
            counts[target] += 1
    return {
        **counts,
        "total": sum(counts.values()),
        "distinguished_clubs_list": summaries,
    }


def _normalize_entity(item: Mapping[str, Any]) -> dict[str, Any]:
    entity = dict(item)
    if ENTITY_ID_FIELD not in entity and "districtId" in entity:
        entity[ENTITY_ID_FIELD] = entity["districtId"]
    return entity


class LegacySnapshotReader:
    """Reads single-document snapshots written before per-district storage."""

    def __init__(self, provider: StorageProvider) -> None:
        self.provider = provider

    def list_versions(self) -> list[str]:
        versions: list[str] = []
        for name in self.provider.list_children(SNAPSHOTS_PREFIX):
            if not name.endswith(LEGACY_SUFFIX):
                continue
            stem = name[: -len(LEGACY_SUFFIX)]
            if is_safe_key(stem):
                versions.append(stem)
        return versions

    def exists(self, version: str) -> bool:
        return self.provider.exists(legacy_key(version))

    def read(self, version: str) -> Snapshot | None:
        key = legacy_key(version)
        payload = load_document(self.provider, key, operation="read_legacy_snapshot")
        if payload is None:
            return None
        try:
            snapshot = self._to_snapshot(version, payload)
        except (KeyError, TypeError, ValueError) as exc:
            raise CorruptDocumentError(
                key, operation="read_legacy_snapshot", provider=self.provider.name, cause=exc
            ) from exc
        LOGGER.debug("Read legacy snapshot %s with %d districts", version, len(snapshot.entities))
        return snapshot

    @staticmethod
    def _to_snapshot(version: str, payload: Mapping[str, Any]) -> Snapshot:
        body = payload.get("payload") or {}
        if not isinstance(body, Mapping):
            raise TypeError("legacy payload must be an object")
        districts = body.get("districts", [])
        if not isinstance(districts, list):
            raise TypeError("legacy districts must be a list")
        meta = FetchMetadata.from_dict(body.get("metadata") or {})
        return Snapshot(
            snapshot_id=version,
            created_at=str(payload.get("created_at") or payload.get("createdAt") or ""),
            status=str(payload.get("status", "success")),
            schema_version=str(
                payload.get("schema_version") or payload.get("schemaVersion") or CURRENT_SCHEMA_VERSION
            ),
            calculation_version=str(
                payload.get("calculation_version")
                or payload.get("calculationVersion")
                or CURRENT_CALCULATION_VERSION
            ),
            ranking_version=payload.get("ranking_version") or payload.get("rankingVersion"),
            errors=list(payload.get("errors", [])),
            entities=[_normalize_entity(item) for item in districts],
            fetch_metadata=meta,
        )


__all__ = [
    "DISTINGUISHED_STATUSES",
    "LegacySnapshotReader",
    "is_legacy_distinguished_format",
    "legacy_key",
    "transform_legacy_distinguished",
]
