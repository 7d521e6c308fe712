"""Atomic pointer naming the latest successful snapshot version."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping

from infra.storage.documents import dump_document, load_document
from infra.storage.errors import CorruptDocumentError, PointerUpdateError, StorageError
from infra.storage.manifest import SnapshotMetadata
from infra.storage.providers import StorageProvider
from infra.storage.schema import Snapshot
from infra.timestamps import now_iso

LOGGER = logging.getLogger(__name__)

POINTER_KEY = "current.json"


@dataclass(frozen=True)
class CurrentPointer:
    snapshot_id: str
    updated_at: str
    schema_version: str
    calculation_version: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "snapshot_id": self.snapshot_id,
            "updated_at": self.updated_at,
            "schema_version": self.schema_version,
            "calculation_version": self.calculation_version,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "CurrentPointer":
        return cls(
            snapshot_id=str(payload["snapshot_id"]),
            updated_at=str(payload["updated_at"]),
            schema_version=str(payload.get("schema_version", "")),
            calculation_version=str(payload.get("calculation_version", "")),
        )


class CurrentPointerManager:
    """Owns the single ``current.json`` document at the collection root.

    Readers treat the pointer as advisory: a missing pointer reads as
    ``None`` and a corrupt one raises ``CorruptDocumentError`` so the caller
    can fall back to a scan.
    """

    def __init__(self, provider: StorageProvider, *, key: str = POINTER_KEY) -> None:
        self.provider = provider
        self.key = key

    def read(self) -> CurrentPointer | None:
        payload = load_document(self.provider, self.key, operation="read_pointer")
        if payload is None:
            return None
        try:
            return CurrentPointer.from_dict(payload)
        except (KeyError, TypeError) as exc:
            raise CorruptDocumentError(
                self.key,
                operation="read_pointer",
                provider=self.provider.name,
                cause=exc,
                reason="missing pointer fields",
            ) from exc

    def update(self, metadata: SnapshotMetadata | Snapshot) -> CurrentPointer:
        """Atomically point at *metadata*'s snapshot; only successful snapshots qualify."""

        if metadata.status != "success":
            raise ValueError(
                f"Current pointer only tracks successful snapshots; "
                f"'{metadata.snapshot_id}' has status '{metadata.status}'"
            )
        pointer = CurrentPointer(
            snapshot_id=metadata.snapshot_id,
            updated_at=now_iso(),
            schema_version=metadata.schema_version,
            calculation_version=metadata.calculation_version,
        )
        try:
            self.provider.write_text_atomic(self.key, dump_document(pointer.to_dict()))
        except StorageError as exc:
            raise PointerUpdateError(
                f"Failed to move current pointer to '{metadata.snapshot_id}'",
                operation="update_pointer",
                provider=self.provider.name,
                cause=exc,
            ) from exc
        LOGGER.info("Current pointer updated to snapshot %s", metadata.snapshot_id)
        return pointer


__all__ = ["CurrentPointer", "CurrentPointerManager", "POINTER_KEY"]
