"""Versioned per-district snapshot store.

Layout under the provider root::

    current.json                              pointer to latest successful version
    snapshots/<YYYY-MM-DD>/manifest.json      per-entity write outcomes
    snapshots/<YYYY-MM-DD>/metadata.json      versions, counts, provenance
    snapshots/<YYYY-MM-DD>/district_<id>.json one record per entity
    snapshots/<YYYY-MM-DD>/all-districts-rankings.json   optional side artifact
    snapshots/<version>.json                  legacy single-document snapshot

Entity writes run concurrently and fail independently; the manifest records
each outcome. The pointer is only moved for successful snapshots and only
through an atomic replace.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from typing import Any, Mapping, Sequence

from infra.paths import SNAPSHOTS_PREFIX
from infra.storage.documents import dump_document, load_document
from infra.storage.errors import CorruptDocumentError, StorageError
from infra.storage.legacy import LegacySnapshotReader
from infra.storage.manifest import (
    ManifestEntry,
    ManifestWriter,
    SIDE_ARTIFACT_FILE,
    SideArtifactDescriptor,
    SnapshotManifest,
    SnapshotMetadata,
    build_manifest,
    metadata_key,
    parse_entity_errors,
)
from infra.storage.pointer import CurrentPointerManager
from infra.storage.providers import StorageProvider, create_storage_provider
from infra.storage.records import EntityRecord, EntityRecordStore, record_file_name
from infra.storage.schema import (
    CURRENT_CALCULATION_VERSION,
    CURRENT_RANKING_VERSION,
    CURRENT_SCHEMA_VERSION,
    ENTITY_ID_FIELD,
    FetchMetadata,
    Snapshot,
    entity_id_of,
    is_safe_key,
    validate_version_id,
)
from infra.timestamps import coerce_date, coerce_timestamp, iso_date, now_iso

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 4
OVERWRITE_REASONS = ("no_existing", "newer_data", "same_day_refresh", "existing_is_newer")


@dataclass(frozen=True)
class SnapshotWriteResult:
    snapshot_id: str
    manifest: SnapshotManifest
    metadata: SnapshotMetadata
    pointer_updated: bool


@dataclass(frozen=True)
class SnapshotFilters:
    status: str | None = None
    schema_version: str | None = None
    calculation_version: str | None = None
    created_after: str | datetime | None = None
    created_before: str | datetime | None = None
    min_entity_count: int | None = None

    def matches(self, summary: "SnapshotSummary") -> bool:
        if self.status and summary.status != self.status:
            return False
        if self.schema_version and summary.schema_version != self.schema_version:
            return False
        if self.calculation_version and summary.calculation_version != self.calculation_version:
            return False
        if self.created_after or self.created_before:
            if not summary.created_at:
                return False
            created = coerce_timestamp(summary.created_at)
            if self.created_after and created < coerce_timestamp(self.created_after):
                return False
            if self.created_before and created > coerce_timestamp(self.created_before):
                return False
        if self.min_entity_count is not None and summary.entity_count < self.min_entity_count:
            return False
        return True


@dataclass(frozen=True)
class SnapshotSummary:
    snapshot_id: str
    created_at: str
    status: str
    schema_version: str
    calculation_version: str
    entity_count: int
    successful_count: int
    failed_count: int
    error_count: int
    storage_format: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class SnapshotComparisonResult:
    should_update: bool
    reason: str
    new_collection_date: str
    existing_collection_date: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class VersionCompatibility:
    is_compatible: bool
    schema_compatible: bool
    calculation_compatible: bool
    ranking_compatible: bool
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_compatible": self.is_compatible,
            "schema_compatible": self.schema_compatible,
            "calculation_compatible": self.calculation_compatible,
            "ranking_compatible": self.ranking_compatible,
            "warnings": list(self.warnings),
        }


def side_artifact_key(version: str) -> str:
    return f"{SNAPSHOTS_PREFIX}/{version}/{SIDE_ARTIFACT_FILE}"


def _entity_label(index: int, entity: Any) -> str:
    """Manifest id for an input entity, even when its id is unusable."""

    try:
        return entity_id_of(entity)
    except ValueError:
        raw = entity.get(ENTITY_ID_FIELD) if isinstance(entity, Mapping) else None
        return str(raw) if raw not in (None, "") else f"index-{index}"


def _upstream_failures(errors: Sequence[str], written_ids: set[str]) -> dict[str, list[str]]:
    """Messages per entity that failed upstream and never reached the store."""

    messages: dict[str, list[str]] = {}
    for item in parse_entity_errors(errors):
        entity_id = item["entity_id"]
        if entity_id in written_ids or not is_safe_key(entity_id):
            continue
        messages.setdefault(entity_id, []).append(f"{item['operation']} - {item['error']}")
    return messages


class SnapshotStore:
    """Public versioned store composed of records, manifests, and the pointer."""

    def __init__(
        self,
        provider: StorageProvider | None = None,
        *,
        max_workers: int = DEFAULT_MAX_WORKERS,
        schema_version: str = CURRENT_SCHEMA_VERSION,
        calculation_version: str = CURRENT_CALCULATION_VERSION,
        ranking_version: str = CURRENT_RANKING_VERSION,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.provider = provider or create_storage_provider()
        self.max_workers = max_workers
        self.schema_version = schema_version
        self.calculation_version = calculation_version
        self.ranking_version = ranking_version
        self.records = EntityRecordStore(self.provider)
        self.manifests = ManifestWriter(self.provider)
        self.pointer = CurrentPointerManager(self.provider)
        self.legacy = LegacySnapshotReader(self.provider)
        self._locks_guard = threading.Lock()
        self._version_locks: dict[str, threading.Lock] = {}

    def _version_lock(self, version: str) -> threading.Lock:
        """Serialises manifest and metadata updates to one version within this store."""

        with self._locks_guard:
            lock = self._version_locks.get(version)
            if lock is None:
                lock = threading.Lock()
                self._version_locks[version] = lock
            return lock

    # ------------------------------------------------------------------ writes
    def write_snapshot(
        self,
        snapshot: Snapshot,
        side_artifact: Mapping[str, Any] | None = None,
        *,
        skip_pointer_update: bool = False,
        override_version_date: str | None = None,
    ) -> SnapshotWriteResult:
        """Persist *snapshot* as one record per entity plus manifest and metadata.

        Entity write failures are recorded in the manifest and never raised.
        A failing side-artifact, manifest, metadata, or pointer write raises
        ``StorageError``.
        """

        started = time.monotonic()
        version = validate_version_id(override_version_date or snapshot.snapshot_id)
        created_at = now_iso()
        collected_at = snapshot.fetch_metadata.fetched_at or created_at

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures = [
                pool.submit(self._write_entity, version, index, entity, collected_at)
                for index, entity in enumerate(snapshot.entities)
            ]
            entries = [future.result() for future in futures]

        written_ids = {entry.entity_id for entry in entries}
        upstream = _upstream_failures(snapshot.errors, written_ids)
        entries.extend(self._record_upstream_failures(version, upstream, collected_at))
        configured = [_entity_label(index, entity) for index, entity in enumerate(snapshot.entities)]
        configured.extend(upstream)

        descriptor = None
        if side_artifact is not None:
            descriptor = self._write_side_artifact(version, side_artifact)

        manifest = build_manifest(
            snapshot_id=version,
            created_at=created_at,
            entries=entries,
            configured_entities=configured,
            side_artifact=descriptor,
            write_complete=True,
        )

        write_errors = [
            f"{entry.entity_id}: write - {entry.error_message}"
            for entry in entries
            if entry.status != "success" and entry.error_message and entry.entity_id in written_ids
        ]
        errors = list(snapshot.errors) + write_errors
        meta = snapshot.fetch_metadata
        metadata = SnapshotMetadata(
            snapshot_id=version,
            created_at=created_at,
            schema_version=snapshot.schema_version,
            calculation_version=snapshot.calculation_version,
            ranking_version=snapshot.ranking_version,
            status=snapshot.status,
            configured_entities=tuple(configured),
            successful_entities=tuple(manifest.successful_ids),
            failed_entities=tuple(e.entity_id for e in entries if e.status != "success"),
            errors=tuple(errors),
            entity_errors=tuple(parse_entity_errors(errors)),
            processing_duration_ms=int((time.monotonic() - started) * 1000),
            source=meta.source,
            data_as_of_date=meta.data_as_of_date,
            is_closing_period_data=meta.is_closing_period_data,
            collection_date=meta.collection_date,
            logical_date=meta.resolved_logical_date,
            fetched_at=meta.fetched_at or None,
            write_complete=True,
        )
        # Metadata lands first: a manifest is only ever visible with its metadata.
        with self._version_lock(version):
            self.manifests.write_metadata(metadata)
            self.manifests.write_manifest(manifest)

        pointer_updated = False
        if snapshot.status == "success" and not skip_pointer_update:
            self.pointer.update(metadata)
            pointer_updated = True

        LOGGER.info(
            "Wrote snapshot %s status=%s successful=%d failed=%d pointer_updated=%s",
            version,
            snapshot.status,
            manifest.successful_entities,
            manifest.failed_entities,
            pointer_updated,
        )
        return SnapshotWriteResult(
            snapshot_id=version,
            manifest=manifest,
            metadata=metadata,
            pointer_updated=pointer_updated,
        )

    def _write_entity(
        self,
        version: str,
        index: int,
        entity: Mapping[str, Any],
        collected_at: str,
    ) -> ManifestEntry:
        label = _entity_label(index, entity)
        try:
            entity_id = entity_id_of(entity)
            record = EntityRecord(
                entity_id=entity_id,
                collected_at=collected_at,
                status="success",
                data=dict(entity),
            )
            size = self.records.write_record(version, record)
        except (StorageError, ValueError, TypeError) as exc:
            LOGGER.warning("Entity write failed version=%s entity=%s: %s", version, label, exc)
            return ManifestEntry(
                entity_id=label,
                file_name="",
                status="failed",
                size=0,
                last_modified=now_iso(),
                error_message=str(exc),
            )
        return ManifestEntry(
            entity_id=entity_id,
            file_name=record_file_name(entity_id),
            status="success",
            size=size,
            last_modified=now_iso(),
        )

    def _record_upstream_failures(
        self,
        version: str,
        messages: Mapping[str, list[str]],
        collected_at: str,
    ) -> list[ManifestEntry]:
        """Write ``failed`` records for entities that failed before reaching the store."""

        entries: list[ManifestEntry] = []
        for entity_id, parts in messages.items():
            message = "; ".join(parts)
            record = EntityRecord(
                entity_id=entity_id,
                collected_at=collected_at,
                status="failed",
                error_message=message,
            )
            file_name = record_file_name(entity_id)
            try:
                size = self.records.write_record(version, record)
            except StorageError as exc:
                LOGGER.warning("Failed-entity record write failed version=%s entity=%s: %s", version, entity_id, exc)
                size, file_name = 0, ""
            entries.append(
                ManifestEntry(
                    entity_id=entity_id,
                    file_name=file_name,
                    status="failed",
                    size=size,
                    last_modified=now_iso(),
                    error_message=message,
                )
            )
        return entries

    def _write_side_artifact(self, version: str, payload: Mapping[str, Any]) -> SideArtifactDescriptor:
        try:
            size = self.provider.write_text_atomic(side_artifact_key(version), dump_document(payload))
        except StorageError as exc:
            LOGGER.error("Side artifact write failed for snapshot %s; aborting write", version)
            raise StorageError(
                f"Side artifact write failed for snapshot '{version}'",
                operation="write_side_artifact",
                provider=self.provider.name,
                cause=exc,
            ) from exc
        return SideArtifactDescriptor(file_name=SIDE_ARTIFACT_FILE, size=size, status="present")

    # ------------------------------------------------------------------- reads
    def read_snapshot(self, version: str) -> Snapshot | None:
        """Reconstruct a snapshot from its manifest, falling back to the legacy blob."""

        manifest = self.manifests.read_manifest(version)
        if manifest is None:
            return self.legacy.read(version)

        metadata = self.manifests.read_metadata(version)
        if metadata is None:
            raise CorruptDocumentError(
                metadata_key(version),
                operation="read_snapshot",
                provider=self.provider.name,
                reason="manifest present without metadata",
            )

        successful = manifest.successful_ids
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            records = list(pool.map(lambda entity_id: self._read_listed_record(version, entity_id), successful))
        entities = [dict(record.data or {}) for record in records if record.status == "success"]

        return Snapshot(
            snapshot_id=metadata.snapshot_id,
            created_at=metadata.created_at,
            status=metadata.status,
            schema_version=metadata.schema_version,
            calculation_version=metadata.calculation_version,
            ranking_version=metadata.ranking_version,
            errors=list(metadata.errors),
            entities=entities,
            fetch_metadata=FetchMetadata(
                source=metadata.source,
                fetched_at=metadata.fetched_at or metadata.created_at,
                data_as_of_date=metadata.data_as_of_date,
                is_closing_period_data=metadata.is_closing_period_data,
                collection_date=metadata.collection_date,
                logical_date=metadata.logical_date,
            ),
        )

    def _read_listed_record(self, version: str, entity_id: str) -> EntityRecord:
        record = self.records.read_record(version, entity_id)
        if record is None:
            raise CorruptDocumentError(
                f"{SNAPSHOTS_PREFIX}/{version}/{record_file_name(entity_id)}",
                operation="read_snapshot",
                provider=self.provider.name,
                reason="record listed as success in manifest is missing",
            )
        return record

    def read_entity(self, version: str, entity_id: str) -> dict[str, Any] | None:
        if self.manifests.read_manifest(version) is not None:
            return self.records.read_data(version, entity_id)
        legacy = self.legacy.read(version)
        if legacy is None:
            return None
        return legacy.entity(entity_id)

    def read_side_artifact(self, version: str) -> dict[str, Any] | None:
        return load_document(self.provider, side_artifact_key(version), operation="read_side_artifact")

    def get_latest_successful(self) -> Snapshot | None:
        """Return the newest successful snapshot, repairing the pointer if needed."""

        try:
            pointer = self.pointer.read()
        except CorruptDocumentError as exc:
            LOGGER.warning("Current pointer unreadable, falling back to scan: %s", exc)
            pointer = None

        if pointer is not None:
            try:
                snapshot = self.read_snapshot(pointer.snapshot_id)
            except StorageError as exc:
                LOGGER.warning("Snapshot %s named by pointer is unreadable: %s", pointer.snapshot_id, exc)
                snapshot = None
            if snapshot is not None and snapshot.status == "success":
                return snapshot
            LOGGER.warning("Current pointer names non-successful snapshot %s", pointer.snapshot_id)

        return self._scan_for_latest_successful(skip=pointer.snapshot_id if pointer else None)

    def _scan_for_latest_successful(self, *, skip: str | None = None) -> Snapshot | None:
        for version in self.list_versions():
            if version == skip:
                continue
            try:
                snapshot = self.read_snapshot(version)
            except StorageError as exc:
                LOGGER.warning("Skipping corrupt snapshot %s during scan: %s", version, exc)
                continue
            if snapshot is None or snapshot.status != "success":
                continue
            self.pointer.update(snapshot)
            LOGGER.info("Repaired current pointer to snapshot %s", version)
            return snapshot
        return None

    def list_versions(self) -> list[str]:
        """All stored version keys, per-entity and legacy, newest first."""

        versions: set[str] = set(self.legacy.list_versions())
        for name in self.provider.list_children(SNAPSHOTS_PREFIX):
            if "." not in name and is_safe_key(name):
                versions.add(name)
        return sorted(versions, reverse=True)

    def list_snapshots(
        self,
        limit: int | None = None,
        filters: SnapshotFilters | None = None,
    ) -> list[SnapshotSummary]:
        summaries: list[SnapshotSummary] = []
        for version in self.list_versions():
            try:
                summary = self._summarize(version)
            except StorageError as exc:
                LOGGER.warning("Skipping unreadable snapshot %s while listing: %s", version, exc)
                continue
            if summary is None:
                continue
            if filters is None or filters.matches(summary):
                summaries.append(summary)
        summaries.sort(key=lambda item: (item.created_at, item.snapshot_id), reverse=True)
        if limit is not None:
            summaries = summaries[: max(limit, 0)]
        return summaries

    def _summarize(self, version: str) -> SnapshotSummary | None:
        manifest = self.manifests.read_manifest(version)
        if manifest is not None:
            metadata = self.manifests.read_metadata(version)
            if metadata is None:
                raise CorruptDocumentError(
                    metadata_key(version),
                    operation="list_snapshots",
                    provider=self.provider.name,
                    reason="manifest present without metadata",
                )
            return SnapshotSummary(
                snapshot_id=version,
                created_at=metadata.created_at,
                status=metadata.status,
                schema_version=metadata.schema_version,
                calculation_version=metadata.calculation_version,
                entity_count=manifest.total_entities,
                successful_count=manifest.successful_entities,
                failed_count=manifest.failed_entities,
                error_count=len(metadata.errors),
                storage_format="per_entity",
            )
        legacy = self.legacy.read(version)
        if legacy is None:
            return None
        return SnapshotSummary(
            snapshot_id=version,
            created_at=legacy.created_at,
            status=legacy.status,
            schema_version=legacy.schema_version,
            calculation_version=legacy.calculation_version,
            entity_count=len(legacy.entities),
            successful_count=len(legacy.entities),
            failed_count=0,
            error_count=len(legacy.errors),
            storage_format="legacy",
        )

    # --------------------------------------------------- closing-period rules
    def _existing_collection_date(self, version: str) -> str | None:
        metadata = self.manifests.read_metadata(version)
        if metadata is not None:
            return metadata.effective_collection_date
        legacy = self.legacy.read(version)
        if legacy is not None:
            meta = legacy.fetch_metadata
            return meta.collection_date or meta.data_as_of_date or None
        return None

    def should_overwrite_closing_period_snapshot(
        self,
        version: str,
        new_collection_date: Any,
    ) -> SnapshotComparisonResult:
        """Decide whether data collected on *new_collection_date* may replace *version*.

        Freshness per version never decreases: equal dates refresh, newer
        dates replace, and only a strictly older candidate is rejected.
        """

        candidate = iso_date(new_collection_date)
        existing = self._existing_collection_date(version)
        if existing is None:
            return SnapshotComparisonResult(True, "no_existing", candidate)

        existing_day = coerce_date(existing)
        candidate_day = coerce_date(candidate)
        if candidate_day > existing_day:
            reason, should_update = "newer_data", True
        elif candidate_day == existing_day:
            reason, should_update = "same_day_refresh", True
        else:
            reason, should_update = "existing_is_newer", False
            LOGGER.info(
                "Rejecting closing-period overwrite of %s: existing %s is newer than %s",
                version,
                existing_day.isoformat(),
                candidate,
            )
        return SnapshotComparisonResult(should_update, reason, candidate, existing_day.isoformat())

    def overwrite_entity(
        self,
        version: str,
        entity_data: Mapping[str, Any],
        *,
        collection_date: Any,
        reason: str,
        source_data_date: str | None = None,
    ) -> SnapshotComparisonResult:
        """Replace one entity's record inside an existing version during reconciliation.

        Arbitration and the manifest and metadata updates run under the
        version's lock, so concurrent overwrites of different entities in one
        version all land. Raises ``FileNotFoundError`` when *version* has no
        per-entity manifest (absent, or stored in the legacy format).
        """

        entity_id = entity_id_of(entity_data)
        with self._version_lock(version):
            return self._overwrite_entity_locked(
                version, entity_id, entity_data, collection_date, reason, source_data_date
            )

    def _overwrite_entity_locked(
        self,
        version: str,
        entity_id: str,
        entity_data: Mapping[str, Any],
        collection_date: Any,
        reason: str,
        source_data_date: str | None,
    ) -> SnapshotComparisonResult:
        decision = self.should_overwrite_closing_period_snapshot(version, collection_date)
        if not decision.should_update:
            return decision

        metadata = self.manifests.read_metadata(version)
        if metadata is None or self.manifests.read_manifest(version) is None:
            raise FileNotFoundError(f"No per-entity snapshot stored at version '{version}'")

        record = EntityRecord(
            entity_id=entity_id,
            collected_at=now_iso(),
            status="success",
            data=dict(entity_data),
        )
        updated = self.records.overwrite_record(
            version, record, reason=reason, source_data_date=source_data_date or decision.new_collection_date
        )
        self.manifests.update_entry(
            version,
            ManifestEntry(
                entity_id=entity_id,
                file_name=record_file_name(entity_id),
                status="success",
                size=len(dump_document(updated.to_dict()).encode("utf-8")),
                last_modified=updated.collected_at,
            ),
        )
        successful = [item for item in metadata.successful_entities if item != entity_id] + [entity_id]
        configured = list(metadata.configured_entities)
        if entity_id not in configured:
            configured.append(entity_id)
        self.manifests.write_metadata(
            replace(
                metadata,
                collection_date=decision.new_collection_date,
                configured_entities=tuple(configured),
                successful_entities=tuple(successful),
                failed_entities=tuple(item for item in metadata.failed_entities if item != entity_id),
            )
        )
        LOGGER.info(
            "Closing-period overwrite version=%s entity=%s reason=%s (%s)",
            version,
            entity_id,
            reason,
            decision.reason,
        )
        return decision

    # ------------------------------------------------------ version metadata
    def check_version_compatibility(self, version: str) -> VersionCompatibility:
        metadata = self.manifests.read_metadata(version)
        if metadata is not None:
            tags = (metadata.schema_version, metadata.calculation_version, metadata.ranking_version)
        else:
            legacy = self.legacy.read(version)
            if legacy is None:
                return VersionCompatibility(False, False, False, False, ["Snapshot metadata not found"])
            tags = (legacy.schema_version, legacy.calculation_version, legacy.ranking_version)

        schema, calculation, ranking = tags
        warnings: list[str] = []
        schema_ok = schema == self.schema_version
        if not schema_ok:
            warnings.append(
                f"Schema version mismatch: snapshot has {schema}, current is {self.schema_version}"
            )
        calculation_ok = calculation == self.calculation_version
        if not calculation_ok:
            warnings.append(
                f"Calculation version difference: snapshot has {calculation}, "
                f"current is {self.calculation_version}"
            )
        ranking_ok = True
        if not ranking:
            warnings.append("Snapshot has no ranking data (pre-ranking implementation)")
        elif ranking != self.ranking_version:
            ranking_ok = False
            warnings.append(
                f"Ranking version difference: snapshot has {ranking}, current is {self.ranking_version}"
            )
        return VersionCompatibility(
            is_compatible=schema_ok,
            schema_compatible=schema_ok,
            calculation_compatible=calculation_ok,
            ranking_compatible=ranking_ok,
            warnings=warnings,
        )

    def set_current_snapshot(self, version: str) -> None:
        """Point ``current.json`` at an existing successful snapshot."""

        metadata = self.manifests.read_metadata(version)
        target: SnapshotMetadata | Snapshot | None = metadata
        if target is None:
            target = self.legacy.read(version)
        if target is None:
            raise ValueError(f"Snapshot '{version}' not found")
        if target.status != "success":
            raise ValueError(f"Snapshot '{version}' has status '{target.status}', expected 'success'")
        self.pointer.update(target)

    def is_write_complete(self, version: str) -> bool:
        manifest = self.manifests.read_manifest(version)
        if manifest is not None:
            return manifest.write_complete
        return self.legacy.exists(version)


__all__ = [
    "OVERWRITE_REASONS",
    "SnapshotComparisonResult",
    "SnapshotFilters",
    "SnapshotStore",
    "SnapshotSummary",
    "SnapshotWriteResult",
    "VersionCompatibility",
    "side_artifact_key",
]
