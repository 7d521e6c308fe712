"""Manifest and metadata documents for per-entity snapshot versions."""

from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import dataclass, field, replace
from typing import Any, Iterable, Mapping, Sequence

from infra.paths import SNAPSHOTS_PREFIX
from infra.storage.documents import dump_document, load_document
from infra.storage.errors import CorruptDocumentError
from infra.storage.providers import StorageProvider

LOGGER = logging.getLogger(__name__)

MANIFEST_FILE = "manifest.json"
METADATA_FILE = "metadata.json"
SIDE_ARTIFACT_FILE = "all-districts-rankings.json"

_ENTITY_ERROR_RE = re.compile(r"^([^:]+):\s*([^-]+?)\s*-\s*(.+)$")


def manifest_key(version: str) -> str:
    return f"{SNAPSHOTS_PREFIX}/{version}/{MANIFEST_FILE}"


def metadata_key(version: str) -> str:
    return f"{SNAPSHOTS_PREFIX}/{version}/{METADATA_FILE}"


def parse_entity_errors(errors: Iterable[str]) -> list[dict[str, str]]:
    """Extract ``{entity_id, operation, error}`` from ``"<id>: <op> - <error>"`` strings.

    Strings that do not follow the pattern are snapshot-level errors and are
    skipped.
    """

    parsed: list[dict[str, str]] = []
    for raw in errors:
        match = _ENTITY_ERROR_RE.match(str(raw).strip())
        if not match:
            continue
        parsed.append(
            {
                "entity_id": match.group(1).strip(),
                "operation": match.group(2).strip(),
                "error": match.group(3).strip(),
            }
        )
    return parsed


@dataclass(frozen=True)
class ManifestEntry:
    entity_id: str
    file_name: str
    status: str
    size: int
    last_modified: str
    error_message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "entity_id": self.entity_id,
            "file_name": self.file_name,
            "status": self.status,
            "size": self.size,
            "last_modified": self.last_modified,
        }
        if self.error_message:
            payload["error_message"] = self.error_message
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ManifestEntry":
        return cls(
            entity_id=str(payload["entity_id"]),
            file_name=str(payload["file_name"]),
            status=str(payload["status"]),
            size=int(payload.get("size", 0)),
            last_modified=str(payload.get("last_modified", "")),
            error_message=payload.get("error_message"),
        )


@dataclass(frozen=True)
class SideArtifactDescriptor:
    file_name: str
    size: int
    status: str

    def to_dict(self) -> dict[str, Any]:
        return {"file_name": self.file_name, "size": self.size, "status": self.status}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "SideArtifactDescriptor":
        return cls(
            file_name=str(payload.get("file_name", SIDE_ARTIFACT_FILE)),
            size=int(payload.get("size", 0)),
            status=str(payload.get("status", "missing")),
        )


MISSING_SIDE_ARTIFACT = SideArtifactDescriptor(file_name=SIDE_ARTIFACT_FILE, size=0, status="missing")


@dataclass(frozen=True)
class SnapshotManifest:
    snapshot_id: str
    created_at: str
    entries: tuple[ManifestEntry, ...]
    total_entities: int
    successful_entities: int
    failed_entities: int
    side_artifact: SideArtifactDescriptor = MISSING_SIDE_ARTIFACT
    write_complete: bool = True

    def entry(self, entity_id: str) -> ManifestEntry | None:
        for item in self.entries:
            if item.entity_id == entity_id:
                return item
        return None

    @property
    def successful_ids(self) -> list[str]:
        return [item.entity_id for item in self.entries if item.status == "success"]

    def to_dict(self) -> dict[str, Any]:
        return {
            "snapshot_id": self.snapshot_id,
            "created_at": self.created_at,
            "entries": [item.to_dict() for item in self.entries],
            "total_entities": self.total_entities,
            "successful_entities": self.successful_entities,
            "failed_entities": self.failed_entities,
            "side_artifact": self.side_artifact.to_dict(),
            "write_complete": self.write_complete,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "SnapshotManifest":
        side = payload.get("side_artifact")
        return cls(
            snapshot_id=str(payload["snapshot_id"]),
            created_at=str(payload.get("created_at", "")),
            entries=tuple(ManifestEntry.from_dict(item) for item in payload.get("entries", [])),
            total_entities=int(payload.get("total_entities", 0)),
            successful_entities=int(payload.get("successful_entities", 0)),
            failed_entities=int(payload.get("failed_entities", 0)),
            side_artifact=SideArtifactDescriptor.from_dict(side) if side else MISSING_SIDE_ARTIFACT,
            # Documents written before the flag existed are complete by construction.
            write_complete=bool(payload.get("write_complete", True)),
        )


def build_manifest(
    *,
    snapshot_id: str,
    created_at: str,
    entries: Sequence[ManifestEntry],
    configured_entities: Sequence[str],
    side_artifact: SideArtifactDescriptor | None = None,
    write_complete: bool = True,
) -> SnapshotManifest:
    """Compose a manifest, enforcing that every configured entity is accounted for."""

    successful = sum(1 for item in entries if item.status == "success")
    failed = sum(1 for item in entries if item.status != "success")
    total = len(entries)
    configured = len(configured_entities)
    if successful + failed != total or total != configured:
        raise ValueError(
            f"Manifest counts inconsistent: successful={successful} failed={failed} "
            f"total={total} configured={configured}"
        )
    unaccounted = Counter(configured_entities) - Counter(item.entity_id for item in entries)
    if unaccounted:
        raise ValueError(f"Manifest missing entries for configured entities: {sorted(unaccounted)}")
    return SnapshotManifest(
        snapshot_id=snapshot_id,
        created_at=created_at,
        entries=tuple(entries),
        total_entities=total,
        successful_entities=successful,
        failed_entities=failed,
        side_artifact=side_artifact or MISSING_SIDE_ARTIFACT,
        write_complete=write_complete,
    )


@dataclass(frozen=True)
class SnapshotMetadata:
    snapshot_id: str
    created_at: str
    schema_version: str
    calculation_version: str
    status: str
    source: str
    data_as_of_date: str
    logical_date: str
    ranking_version: str | None = None
    configured_entities: tuple[str, ...] = ()
    successful_entities: tuple[str, ...] = ()
    failed_entities: tuple[str, ...] = ()
    errors: tuple[str, ...] = ()
    entity_errors: tuple[dict[str, str], ...] = ()
    processing_duration_ms: int = 0
    is_closing_period_data: bool = False
    collection_date: str | None = None
    fetched_at: str | None = None
    write_complete: bool = True
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def effective_collection_date(self) -> str:
        return self.collection_date or self.data_as_of_date

    def to_dict(self) -> dict[str, Any]:
        payload = {
            "snapshot_id": self.snapshot_id,
            "created_at": self.created_at,
            "schema_version": self.schema_version,
            "calculation_version": self.calculation_version,
            "ranking_version": self.ranking_version,
            "status": self.status,
            "configured_entities": list(self.configured_entities),
            "successful_entities": list(self.successful_entities),
            "failed_entities": list(self.failed_entities),
            "errors": list(self.errors),
            "entity_errors": [dict(item) for item in self.entity_errors],
            "processing_duration_ms": self.processing_duration_ms,
            "source": self.source,
            "data_as_of_date": self.data_as_of_date,
            "is_closing_period_data": self.is_closing_period_data,
            "collection_date": self.collection_date,
            "logical_date": self.logical_date,
            "fetched_at": self.fetched_at,
            "write_complete": self.write_complete,
        }
        if self.extra:
            payload["extra"] = dict(self.extra)
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "SnapshotMetadata":
        data_as_of = str(payload.get("data_as_of_date", ""))
        return cls(
            snapshot_id=str(payload["snapshot_id"]),
            created_at=str(payload.get("created_at", "")),
            schema_version=str(payload.get("schema_version", "")),
            calculation_version=str(payload.get("calculation_version", "")),
            ranking_version=payload.get("ranking_version"),
            status=str(payload.get("status", "failed")),
            configured_entities=tuple(payload.get("configured_entities", [])),
            successful_entities=tuple(payload.get("successful_entities", [])),
            failed_entities=tuple(payload.get("failed_entities", [])),
            errors=tuple(payload.get("errors", [])),
            entity_errors=tuple(dict(item) for item in payload.get("entity_errors", [])),
            processing_duration_ms=int(payload.get("processing_duration_ms", 0)),
            source=str(payload.get("source", "unknown")),
            data_as_of_date=data_as_of,
            is_closing_period_data=bool(payload.get("is_closing_period_data", False)),
            collection_date=payload.get("collection_date"),
            logical_date=str(payload.get("logical_date") or data_as_of),
            fetched_at=payload.get("fetched_at"),
            write_complete=bool(payload.get("write_complete", True)),
            extra=dict(payload.get("extra", {})),
        )


class ManifestWriter:
    """Persists manifest and metadata documents for a snapshot version."""

    def __init__(self, provider: StorageProvider) -> None:
        self.provider = provider

    def write_manifest(self, manifest: SnapshotManifest) -> int:
        key = manifest_key(manifest.snapshot_id)
        return self.provider.write_text_atomic(key, dump_document(manifest.to_dict()))

    def read_manifest(self, version: str) -> SnapshotManifest | None:
        key = manifest_key(version)
        payload = load_document(self.provider, key, operation="read_manifest")
        if payload is None:
            return None
        try:
            return SnapshotManifest.from_dict(payload)
        except (KeyError, TypeError, ValueError) as exc:
            raise CorruptDocumentError(
                key, operation="read_manifest", provider=self.provider.name, cause=exc
            ) from exc

    def write_metadata(self, metadata: SnapshotMetadata) -> int:
        key = metadata_key(metadata.snapshot_id)
        return self.provider.write_text_atomic(key, dump_document(metadata.to_dict()))

    def read_metadata(self, version: str) -> SnapshotMetadata | None:
        key = metadata_key(version)
        payload = load_document(self.provider, key, operation="read_metadata")
        if payload is None:
            return None
        try:
            return SnapshotMetadata.from_dict(payload)
        except (KeyError, TypeError, ValueError) as exc:
            raise CorruptDocumentError(
                key, operation="read_metadata", provider=self.provider.name, cause=exc
            ) from exc

    def update_entry(self, version: str, entry: ManifestEntry) -> SnapshotManifest:
        """Replace (or append) one entry and recompute the aggregate counts."""

        manifest = self.read_manifest(version)
        if manifest is None:
            raise FileNotFoundError(f"No manifest for snapshot version '{version}'")
        entries = [item for item in manifest.entries if item.entity_id != entry.entity_id]
        position = next(
            (idx for idx, item in enumerate(manifest.entries) if item.entity_id == entry.entity_id),
            len(entries),
        )
        entries.insert(position, entry)
        successful = sum(1 for item in entries if item.status == "success")
        updated = replace(
            manifest,
            entries=tuple(entries),
            total_entities=len(entries),
            successful_entities=successful,
            failed_entities=len(entries) - successful,
        )
        self.write_manifest(updated)
        LOGGER.info(
            "Updated manifest entry version=%s entity=%s status=%s",
            version,
            entry.entity_id,
            entry.status,
        )
        return updated


__all__ = [
    "MANIFEST_FILE",
    "METADATA_FILE",
    "MISSING_SIDE_ARTIFACT",
    "ManifestEntry",
    "ManifestWriter",
    "SIDE_ARTIFACT_FILE",
    "SideArtifactDescriptor",
    "SnapshotManifest",
    "SnapshotMetadata",
    "build_manifest",
    "manifest_key",
    "metadata_key",
    "parse_entity_errors",
]
