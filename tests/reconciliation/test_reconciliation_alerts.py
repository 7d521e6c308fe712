from __future__ import annotations

import json
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

import pytest

from infra.paths import snapshots_root
from infra.storage.providers import PROVIDER_ENV, LocalFileStorage, SupabaseStorage
from reconciliation.alerts import AlertEmitter, alert_key
from tests.storage.snapshot_helpers import FakeBucket, fake_supabase_client

TS = datetime(2024, 2, 16, tzinfo=timezone.utc)


def test_alert_emission(tmp_path):
    emitter = AlertEmitter(LocalFileStorage(tmp_path))
    key = emitter.emit(
        severity="hard",
        kind="reconciliation_timeout",
        message="Reconciliation timed out",
        job_id="reconciliation-42-2024-01",
        entity_id="42",
        context={"extension_days": 5},
        timestamp=TS,
    )
    assert key == "monitoring/alerts/20240216.json"
    payload = json.loads((tmp_path / key).read_text(encoding="utf-8"))
    assert payload[0]["severity"] == "hard"
    assert payload[0]["entity_id"] == "42"
    assert payload[0]["context"]["extension_days"] == 5

    emitter.emit(severity="SOFT", kind="reconciliation_extended", message="extended", job_id="j", timestamp=TS)
    assert [item["severity"] for item in emitter.read(TS)] == ["hard", "soft"]


def test_default_provider_follows_data_root(tmp_path, monkeypatch):
    monkeypatch.setenv("DISTRICT_DATA_ROOT", str(tmp_path))
    monkeypatch.delenv(PROVIDER_ENV, raising=False)
    AlertEmitter().emit(severity="soft", kind="x", message="x", job_id="j", timestamp=TS)
    assert (tmp_path / "monitoring" / "alerts" / "20240216.json").exists()


def test_unknown_severity_is_rejected(tmp_path):
    with pytest.raises(ValueError):
        AlertEmitter(LocalFileStorage(tmp_path)).emit(severity="fatal", kind="x", message="x", job_id="j")


def test_unreadable_day_document_is_set_aside(tmp_path):
    path = tmp_path / alert_key(TS)
    path.parent.mkdir(parents=True)
    path.write_text("{'half': written", encoding="utf-8")
    emitter = AlertEmitter(LocalFileStorage(tmp_path))

    assert emitter.read(TS) == []
    emitter.emit(severity="hard", kind="reconciliation_timeout", message="late", job_id="j", timestamp=TS)

    assert [item["kind"] for item in emitter.read(TS)] == ["reconciliation_timeout"]
    assert (path.parent / "20240216.json.corrupt").read_text(encoding="utf-8") == "{'half': written"


def test_parallel_emits_keep_every_alert(tmp_path):
    emitter = AlertEmitter(LocalFileStorage(tmp_path))

    def emit(n: int) -> str:
        return emitter.emit(severity="soft", kind="reconciliation_extended", message="x", job_id=f"job-{n}", timestamp=TS)

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(emit, range(20)))

    assert sorted(item["job_id"] for item in emitter.read(TS)) == sorted(f"job-{n}" for n in range(20))


def test_alerts_on_supabase_bucket():
    bucket = FakeBucket()
    emitter = AlertEmitter(SupabaseStorage("alerts", client=fake_supabase_client(bucket)))
    emitter.emit(severity="hard", kind="reconciliation_timeout", message="late", job_id="j", timestamp=TS)
    assert "monitoring/alerts/20240216.json" in bucket.files
    assert [item["job_id"] for item in emitter.read(TS)] == ["j"]


def test_snapshots_root_follows_override(tmp_path, monkeypatch):
    monkeypatch.setenv("DISTRICT_DATA_ROOT", str(tmp_path))
    assert snapshots_root("2024-01-31") == tmp_path / "snapshots" / "2024-01-31"
