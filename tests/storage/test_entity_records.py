from __future__ import annotations

import pytest

from infra.storage.errors import CorruptDocumentError
from infra.storage.providers import LocalFileStorage
from infra.storage.records import EntityRecord, EntityRecordStore, record_file_name, record_key


def _store(tmp_path) -> EntityRecordStore:
    return EntityRecordStore(LocalFileStorage(tmp_path))


def test_record_key_layout():
    assert record_file_name("42") == "district_42.json"
    assert record_key("2024-01-31", "F") == "snapshots/2024-01-31/district_F.json"


def test_record_key_rejects_unsafe_ids():
    with pytest.raises(ValueError):
        record_key("2024-01-31", "../42")


def test_write_and_read_record(tmp_path):
    store = _store(tmp_path)
    record = EntityRecord(
        entity_id="42",
        collected_at="2024-02-01T05:00:00+00:00",
        status="success",
        data={"district_id": "42", "membership": {"total": 1000}},
    )
    size = store.write_record("2024-01-31", record)
    assert size > 0
    assert store.read_record("2024-01-31", "42") == record
    assert store.read_data("2024-01-31", "42") == {"district_id": "42", "membership": {"total": 1000}}
    assert store.read_record("2024-01-31", "7") is None


def test_failed_record_has_no_data(tmp_path):
    store = _store(tmp_path)
    store.write_record(
        "2024-01-31",
        EntityRecord(entity_id="9", collected_at="2024-02-01T05:00:00+00:00", status="failed", error_message="timeout"),
    )
    assert store.read_data("2024-01-31", "9") is None
    assert store.read_record("2024-01-31", "9").error_message == "timeout"


def test_overwrite_appends_revision_history(tmp_path):
    store = _store(tmp_path)
    first = EntityRecord(entity_id="42", collected_at="2024-02-01T05:00:00+00:00", status="success", data={"v": 1})
    store.write_record("2024-01-31", first)
    second = EntityRecord(entity_id="42", collected_at="2024-02-04T05:00:00+00:00", status="success", data={"v": 2})
    updated = store.overwrite_record("2024-01-31", second, reason="late revision", source_data_date="2024-02-03")
    third = EntityRecord(entity_id="42", collected_at="2024-02-06T05:00:00+00:00", status="success", data={"v": 3})
    final = store.overwrite_record("2024-01-31", third, reason="another revision")

    assert len(updated.revisions) == 1
    assert updated.revisions[0]["previous_collected_at"] == "2024-02-01T05:00:00+00:00"
    assert updated.revisions[0]["source_data_date"] == "2024-02-03"
    stored = store.read_record("2024-01-31", "42")
    assert stored == final
    assert [entry["reason"] for entry in stored.revisions] == ["late revision", "another revision"]
    assert stored.data == {"v": 3}


def test_overwrite_requires_reason(tmp_path):
    store = _store(tmp_path)
    record = EntityRecord(entity_id="42", collected_at="2024-02-01T05:00:00+00:00", status="success", data={})
    with pytest.raises(ValueError, match="reason"):
        store.overwrite_record("2024-01-31", record, reason="")


def test_corrupt_records_raise(tmp_path):
    store = _store(tmp_path)
    path = tmp_path / "snapshots" / "2024-01-31" / "district_42.json"
    path.parent.mkdir(parents=True)
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(CorruptDocumentError) as excinfo:
        store.read_record("2024-01-31", "42")
    assert excinfo.value.key == "snapshots/2024-01-31/district_42.json"

    path.write_text('{"entity_id": "42", "status": "pending"}', encoding="utf-8")
    with pytest.raises(CorruptDocumentError):
        store.read_record("2024-01-31", "42")
