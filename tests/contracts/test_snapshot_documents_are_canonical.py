from __future__ import annotations

import json
from pathlib import Path
import sys

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:  # pragma: no cover - import guard
    sys.path.insert(0, str(PROJECT_ROOT))

from infra.storage.providers import LocalFileStorage
from infra.storage.snapshot_store import SnapshotStore
from tests.storage.snapshot_helpers import district, make_snapshot


def _assert_canonical(path: Path) -> None:
    written_text = path.read_text(encoding="utf-8")
    expected = json.dumps(json.loads(written_text), indent=2, sort_keys=True)
    assert written_text == expected, f"{path.name} is not canonical JSON"


def test_snapshot_documents_are_canonical(tmp_path) -> None:
    store = SnapshotStore(LocalFileStorage(tmp_path))
    store.write_snapshot(
        make_snapshot("2024-01-31", [district("42"), district("F")]),
        side_artifact={"rankings": [{"rank": 1, "district_id": "42"}]},
    )
    version_dir = tmp_path / "snapshots" / "2024-01-31"
    for name in ("manifest.json", "metadata.json", "district_42.json", "district_F.json", "all-districts-rankings.json"):
        _assert_canonical(version_dir / name)
    _assert_canonical(tmp_path / "current.json")


def test_manifest_field_contract(tmp_path) -> None:
    store = SnapshotStore(LocalFileStorage(tmp_path))
    store.write_snapshot(make_snapshot("2024-01-31", [district("42")]))
    manifest = json.loads((tmp_path / "snapshots" / "2024-01-31" / "manifest.json").read_text(encoding="utf-8"))
    assert {
        "snapshot_id",
        "created_at",
        "entries",
        "total_entities",
        "successful_entities",
        "failed_entities",
        "write_complete",
    } <= set(manifest)
    assert set(manifest["entries"][0]) >= {"entity_id", "file_name", "status", "size", "last_modified"}

    pointer = json.loads((tmp_path / "current.json").read_text(encoding="utf-8"))
    assert set(pointer) == {"snapshot_id", "updated_at", "schema_version", "calculation_version"}
