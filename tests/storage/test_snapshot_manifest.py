from __future__ import annotations

import json

import pytest

from infra.storage.manifest import (
    ManifestEntry,
    ManifestWriter,
    SnapshotManifest,
    SnapshotMetadata,
    build_manifest,
    parse_entity_errors,
)
from infra.storage.providers import LocalFileStorage


def _entry(entity_id: str, status: str = "success") -> ManifestEntry:
    return ManifestEntry(
        entity_id=entity_id,
        file_name=f"district_{entity_id}.json" if status == "success" else "",
        status=status,
        size=10 if status == "success" else 0,
        last_modified="2024-02-01T05:00:00+00:00",
        error_message=None if status == "success" else "boom",
    )


def test_parse_entity_errors_skips_snapshot_level_messages():
    parsed = parse_entity_errors(
        [
            "42: fetch - HTTP 500 from dashboard",
            "F: parse - unexpected column - membership",
            "rankings unavailable",
        ]
    )
    assert parsed == [
        {"entity_id": "42", "operation": "fetch", "error": "HTTP 500 from dashboard"},
        {"entity_id": "F", "operation": "parse", "error": "unexpected column - membership"},
    ]


def test_build_manifest_counts():
    manifest = build_manifest(
        snapshot_id="2024-01-31",
        created_at="2024-02-01T06:00:00+00:00",
        entries=[_entry("1"), _entry("2", "failed"), _entry("3")],
        configured_entities=["1", "2", "3"],
    )
    assert (manifest.total_entities, manifest.successful_entities, manifest.failed_entities) == (3, 2, 1)
    assert manifest.successful_ids == ["1", "3"]
    assert manifest.entry("2").error_message == "boom"
    assert manifest.side_artifact.status == "missing"


def test_build_manifest_rejects_unaccounted_entities():
    with pytest.raises(ValueError, match="inconsistent"):
        build_manifest(
            snapshot_id="2024-01-31",
            created_at="2024-02-01T06:00:00+00:00",
            entries=[_entry("1")],
            configured_entities=["1", "2"],
        )


def test_build_manifest_rejects_entries_for_other_entities():
    with pytest.raises(ValueError, match=r"missing entries.*\['2'\]"):
        build_manifest(
            snapshot_id="2024-01-31",
            created_at="2024-02-01T06:00:00+00:00",
            entries=[_entry("1"), _entry("3")],
            configured_entities=["1", "2"],
        )


def test_manifest_without_write_complete_reads_as_complete():
    manifest = SnapshotManifest.from_dict(
        {"snapshot_id": "2023-12-31", "created_at": "", "entries": [], "total_entities": 0}
    )
    assert manifest.write_complete is True


def test_update_entry_recomputes_counts(tmp_path):
    writer = ManifestWriter(LocalFileStorage(tmp_path))
    writer.write_manifest(
        build_manifest(
            snapshot_id="2024-01-31",
            created_at="2024-02-01T06:00:00+00:00",
            entries=[_entry("1"), _entry("2", "failed")],
            configured_entities=["1", "2"],
        )
    )
    updated = writer.update_entry("2024-01-31", _entry("2"))
    assert [item.entity_id for item in updated.entries] == ["1", "2"]
    assert (updated.successful_entities, updated.failed_entities) == (2, 0)
    assert writer.read_manifest("2024-01-31") == updated

    appended = writer.update_entry("2024-01-31", _entry("9"))
    assert appended.total_entities == 3


def test_update_entry_requires_existing_manifest(tmp_path):
    writer = ManifestWriter(LocalFileStorage(tmp_path))
    with pytest.raises(FileNotFoundError):
        writer.update_entry("2024-01-31", _entry("1"))


def test_metadata_round_trip_and_collection_date(tmp_path):
    writer = ManifestWriter(LocalFileStorage(tmp_path))
    metadata = SnapshotMetadata(
        snapshot_id="2024-01-31",
        created_at="2024-02-03T06:00:00+00:00",
        schema_version="1.0.0",
        calculation_version="1.0.0",
        status="success",
        source="dashboard",
        data_as_of_date="2024-01-31",
        logical_date="2024-01-31",
        is_closing_period_data=True,
        collection_date="2024-02-03",
        errors=("42: fetch - timeout",),
        entity_errors=({"entity_id": "42", "operation": "fetch", "error": "timeout"},),
    )
    writer.write_metadata(metadata)
    loaded = writer.read_metadata("2024-01-31")
    assert loaded == metadata
    assert loaded.effective_collection_date == "2024-02-03"

    raw = json.loads((tmp_path / "snapshots" / "2024-01-31" / "metadata.json").read_text(encoding="utf-8"))
    raw.pop("collection_date")
    legacy = SnapshotMetadata.from_dict(raw)
    assert legacy.effective_collection_date == "2024-01-31"
