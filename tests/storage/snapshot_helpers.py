from __future__ import annotations

import json
from types import SimpleNamespace
from typing import Any, Iterable

from infra.storage.errors import StorageError
from infra.storage.providers import LocalFileStorage
from infra.storage.schema import FetchMetadata, Snapshot


def district(
    entity_id: str,
    *,
    members: int = 1000,
    clubs: int = 50,
    distinguished: int = 10,
    as_of: str = "2024-01-31",
) -> dict[str, Any]:
    return {
        "district_id": entity_id,
        "as_of_date": as_of,
        "membership": {"total": members},
        "clubs": {"total": clubs, "distinguished": distinguished},
    }


def make_snapshot(
    version: str,
    entities: Iterable[dict[str, Any]],
    *,
    status: str = "success",
    errors: Iterable[str] = (),
    as_of: str | None = None,
    closing: bool = False,
    collection_date: str | None = None,
    schema_version: str = "1.0.0",
    calculation_version: str = "1.0.0",
    ranking_version: str | None = "2.0",
) -> Snapshot:
    return Snapshot(
        snapshot_id=version,
        created_at=f"{version}T06:00:00+00:00",
        status=status,
        fetch_metadata=FetchMetadata(
            source="dashboard",
            fetched_at=f"{version}T05:00:00+00:00",
            data_as_of_date=as_of or version,
            is_closing_period_data=closing,
            collection_date=collection_date,
        ),
        entities=list(entities),
        errors=list(errors),
        schema_version=schema_version,
        calculation_version=calculation_version,
        ranking_version=ranking_version,
    )


def write_legacy_blob(root, version: str, districts: list[dict[str, Any]], **fields: Any) -> None:
    payload = {
        "createdAt": fields.pop("created_at", f"{version}T06:00:00+00:00"),
        "status": fields.pop("status", "success"),
        "schemaVersion": fields.pop("schema_version", "1.0.0"),
        "calculationVersion": fields.pop("calculation_version", "1.0.0"),
        "errors": fields.pop("errors", []),
        "payload": {
            "districts": districts,
            "metadata": {
                "source": "dashboard",
                "fetchedAt": f"{version}T05:00:00+00:00",
                "dataAsOfDate": fields.pop("data_as_of_date", version),
                **fields,
            },
        },
    }
    path = root / "snapshots" / f"{version}.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload), encoding="utf-8")


class FailingLocalStorage(LocalFileStorage):
    """Local storage whose writes fail for keys containing any of *fail_on*."""

    def __init__(self, root, *, fail_on: Iterable[str] = ()) -> None:
        super().__init__(root)
        self.fail_on = list(fail_on)

    def _check(self, key: str) -> None:
        if any(marker in key for marker in self.fail_on):
            raise StorageError(f"simulated failure for {key}", operation="atomic_write", provider=self.name)

    def write_text_atomic(self, key: str, text: str) -> int:
        self._check(key)
        return super().write_text_atomic(key, text)


class FakeBucketError(Exception):
    def __init__(self, message: str, status: int) -> None:
        super().__init__(message)
        self.status = status


class FakeBucket:
    """In-memory stand-in for a Supabase storage bucket API."""

    def __init__(self) -> None:
        self.files: dict[str, bytes] = {}
        self.list_calls: list[dict[str, Any]] = []

    def upload(self, path: str, data: bytes, file_options: dict[str, str] | None = None):
        if file_options is None or file_options.get("upsert") != "true":
            raise FakeBucketError("Duplicate", 409)
        self.files[path] = bytes(data)
        return SimpleNamespace(path=path)

    def download(self, path: str) -> bytes:
        if path not in self.files:
            raise FakeBucketError("Object not found", 404)
        return self.files[path]

    def list(self, path: str = "", options: dict[str, Any] | None = None):
        options = options or {}
        self.list_calls.append({"path": path, **options})
        prefix = f"{path}/" if path else ""
        names = sorted({key[len(prefix):].split("/")[0] for key in self.files if key.startswith(prefix)})
        offset = int(options.get("offset", 0))
        limit = int(options.get("limit", 100))
        return [{"name": name} for name in names[offset : offset + limit]]

    def remove(self, paths: list[str]):
        for path in paths:
            self.files.pop(path, None)
        return []


def fake_supabase_client(bucket: FakeBucket):
    return SimpleNamespace(storage=SimpleNamespace(from_=lambda name: bucket))
