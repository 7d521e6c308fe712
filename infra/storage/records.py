"""Per-entity JSON records keyed by (snapshot version, entity id)."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Mapping

from infra.paths import SNAPSHOTS_PREFIX
from infra.storage.documents import dump_document, load_document
from infra.storage.errors import CorruptDocumentError
from infra.storage.providers import StorageProvider
from infra.storage.schema import validate_entity_id
from infra.timestamps import now_iso

LOGGER = logging.getLogger(__name__)

RECORD_STATUSES = ("success", "failed")


def record_file_name(entity_id: str) -> str:
    return f"district_{validate_entity_id(entity_id)}.json"


def record_key(version: str, entity_id: str) -> str:
    return f"{SNAPSHOTS_PREFIX}/{version}/{record_file_name(entity_id)}"


@dataclass(frozen=True)
class EntityRecord:
    entity_id: str
    collected_at: str
    status: str
    data: dict[str, Any] | None = None
    error_message: str | None = None
    revisions: tuple[dict[str, Any], ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if self.status not in RECORD_STATUSES:
            raise ValueError(f"Unsupported entity record status '{self.status}'")
        validate_entity_id(self.entity_id)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "entity_id": self.entity_id,
            "collected_at": self.collected_at,
            "status": self.status,
            "data": self.data,
            "revisions": [dict(entry) for entry in self.revisions],
        }
        if self.error_message:
            payload["error_message"] = self.error_message
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "EntityRecord":
        entity_id = payload.get("entity_id", payload.get("district_id"))
        return cls(
            entity_id=str(entity_id),
            collected_at=str(payload.get("collected_at", "")),
            status=str(payload.get("status", "failed")),
            data=payload.get("data"),
            error_message=payload.get("error_message"),
            revisions=tuple(dict(entry) for entry in payload.get("revisions", []) or []),
        )


class EntityRecordStore:
    """Reads and writes entity records through a storage provider."""

    def __init__(self, provider: StorageProvider) -> None:
        self.provider = provider

    def write_record(self, version: str, record: EntityRecord) -> int:
        """Persist *record* and return the number of bytes written."""

        key = record_key(version, record.entity_id)
        return self.provider.write_text_atomic(key, dump_document(record.to_dict()))

    def read_record(self, version: str, entity_id: str) -> EntityRecord | None:
        key = record_key(version, entity_id)
        payload = load_document(self.provider, key, operation="read_record")
        if payload is None:
            return None
        try:
            return EntityRecord.from_dict(payload)
        except ValueError as exc:
            raise CorruptDocumentError(
                key, operation="read_record", provider=self.provider.name, cause=exc
            ) from exc

    def read_data(self, version: str, entity_id: str) -> dict[str, Any] | None:
        record = self.read_record(version, entity_id)
        if record is None or record.status != "success":
            return None
        return record.data

    def overwrite_record(
        self,
        version: str,
        record: EntityRecord,
        *,
        reason: str,
        source_data_date: str | None = None,
    ) -> EntityRecord:
        """Replace a record in place, appending why it changed to its revisions."""

        if not reason:
            raise ValueError("reason is required for an in-place overwrite")
        existing = self.read_record(version, record.entity_id)
        history = list(existing.revisions) if existing else []
        history.append(
            {
                "revised_at": now_iso(),
                "reason": reason,
                "source_data_date": source_data_date,
                "previous_collected_at": existing.collected_at if existing else None,
            }
        )
        updated = replace(record, revisions=tuple(history))
        self.write_record(version, updated)
        LOGGER.info(
            "Overwrote entity record version=%s entity=%s revisions=%d",
            version,
            record.entity_id,
            len(history),
        )
        return updated


__all__ = ["EntityRecord", "EntityRecordStore", "RECORD_STATUSES", "record_file_name", "record_key"]
