"""Key/value document storage backends (local filesystem or Supabase)."""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Any, List

from infra.paths import get_data_root
from infra.storage.errors import StorageError

LOGGER = logging.getLogger(__name__)

try:
    from supabase import Client, create_client  # type: ignore
except Exception as exc:  # pragma: no cover - supabase optional
    Client = Any  # type: ignore[assignment,misc]
    create_client = None  # type: ignore[assignment]
    _SUPABASE_IMPORT_ERROR: Exception | None = exc
else:  # pragma: no cover
    _SUPABASE_IMPORT_ERROR = None

DEFAULT_BUCKET = "district-snapshots"
PROVIDER_ENV = "DISTRICT_STORAGE_PROVIDER"
PROVIDERS = {"local", "supabase"}

_NOT_FOUND_MARKERS = ("not found", "not_found", "404", "does not exist")


class ConfigurationError(RuntimeError):
    pass


def _normalize_key(raw: Any) -> str:
    text = os.fspath(raw) if isinstance(raw, os.PathLike) else str(raw or "")
    parts: list[str] = []
    for part in text.replace("\\", "/").split("/"):
        piece = part.strip()
        if not piece or piece == ".":
            continue
        if piece == "..":
            raise ValueError(f"Storage key '{raw}' must not traverse upwards")
        parts.append(piece)
    return "/".join(parts)


def supabase_available() -> tuple[bool, str]:
    if create_client is None:
        reason = (
            "supabase python client not installed"
            if _SUPABASE_IMPORT_ERROR is None
            else str(_SUPABASE_IMPORT_ERROR)
        )
        return False, reason
    return True, ""


class StorageProvider:
    """Interface shared by storage backends.

    Keys are ``/``-separated and relative to the provider root. Absence is
    never an error: ``read_text`` returns ``None`` and ``list_children``
    returns an empty list. Every other failure surfaces as ``StorageError``.
    """

    name = "abstract"

    def read_text(self, key: str) -> str | None:
        raise NotImplementedError

    def write_text(self, key: str, text: str) -> int:
        raise NotImplementedError

    def write_text_atomic(self, key: str, text: str) -> int:
        raise NotImplementedError

    def append_line(self, key: str, line: str) -> None:
        raise NotImplementedError

    def list_children(self, prefix: str) -> List[str]:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def _wrap(self, operation: str, key: str, exc: BaseException) -> StorageError:
        LOGGER.error("%s storage %s failed for key=%s", self.name, operation, key, exc_info=True)
        return StorageError(
            f"{operation} failed for '{key}'",
            operation=operation,
            provider=self.name,
            cause=exc,
        )


class LocalFileStorage(StorageProvider):
    """Filesystem-backed provider rooted at the runtime data directory."""

    name = "local"

    def __init__(self, root: Path | str | None = None) -> None:
        self.root = Path(root) if root is not None else get_data_root()

    def path_for(self, key: str) -> Path:
        rel = _normalize_key(key)
        return self.root / rel if rel else self.root

    def read_text(self, key: str) -> str | None:
        path = self.path_for(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise self._wrap("read", key, exc) from exc

    def write_text(self, key: str, text: str) -> int:
        path = self.path_for(key)
        data = text.encode("utf-8")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as exc:
            raise self._wrap("write", key, exc) from exc
        return len(data)

    def write_text_atomic(self, key: str, text: str) -> int:
        path = self.path_for(key)
        data = text.encode("utf-8")
        temp_name: str | None = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "wb", dir=path.parent, prefix=f".{path.name}.", suffix=".tmp", delete=False
            ) as handle:
                temp_name = handle.name
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_name, path)
        except OSError as exc:
            if temp_name and os.path.exists(temp_name):
                os.unlink(temp_name)
            raise self._wrap("atomic_write", key, exc) from exc
        return len(data)

    def append_line(self, key: str, line: str) -> None:
        path = self.path_for(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as handle:
                handle.write(line.rstrip("\n") + "\n")
        except OSError as exc:
            raise self._wrap("append", key, exc) from exc

    def list_children(self, prefix: str) -> List[str]:
        base = self.path_for(prefix)
        if not base.is_dir():
            return []
        try:
            return sorted(child.name for child in base.iterdir() if not child.name.startswith("."))
        except OSError as exc:
            raise self._wrap("list", prefix, exc) from exc

    def exists(self, key: str) -> bool:
        return self.path_for(key).exists()

    def delete(self, key: str) -> None:
        path = self.path_for(key)
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            raise self._wrap("delete", key, exc) from exc


class SupabaseStorage(StorageProvider):
    """Supabase storage bucket provider.

    A single object upload with ``upsert`` is atomic from a reader's point
    of view, so ``write_text_atomic`` is a plain upload. Appends are
    read-modify-write and are only safe with a single writer per key.
    """

    name = "supabase"

    def __init__(
        self,
        bucket: str | None = None,
        *,
        client: Client | None = None,
        url: str | None = None,
        key: str | None = None,
    ) -> None:
        self.bucket = bucket or os.getenv("DISTRICT_STORAGE_BUCKET") or DEFAULT_BUCKET
        if client is None:
            ok, reason = supabase_available()
            if not ok:
                raise ConfigurationError(f"Supabase client unavailable: {reason}")
            cfg_url = url or os.getenv("SUPABASE_URL")
            cfg_key = key or os.getenv("SUPABASE_KEY")
            if not (cfg_url and cfg_key):
                raise ConfigurationError("Supabase configuration requires SUPABASE_URL and SUPABASE_KEY")
            assert create_client is not None
            client = create_client(cfg_url, cfg_key)  # type: ignore[misc]
        self.client = client

    def _bucket_api(self):  # type: ignore[no-untyped-def]
        return self.client.storage.from_(self.bucket)

    @staticmethod
    def _is_not_found(exc: BaseException) -> bool:
        status = getattr(exc, "status", None) or getattr(exc, "status_code", None)
        if str(status) == "404":
            return True
        text = str(exc).lower()
        return any(marker in text for marker in _NOT_FOUND_MARKERS)

    def read_text(self, key: str) -> str | None:
        norm = _normalize_key(key)
        try:
            result = self._bucket_api().download(norm)
        except Exception as exc:
            if self._is_not_found(exc):
                return None
            raise self._wrap("read", norm, exc) from exc
        data = getattr(result, "data", result)
        if hasattr(data, "read"):
            data = data.read()
        if isinstance(data, (bytes, bytearray)):
            return bytes(data).decode("utf-8")
        if isinstance(data, str):
            return data
        raise self._wrap("read", norm, TypeError(f"Unsupported download response: {type(result)!r}"))

    def write_text(self, key: str, text: str) -> int:
        norm = _normalize_key(key)
        data = text.encode("utf-8")
        options = {"content-type": "application/json", "upsert": "true"}
        try:
            self._bucket_api().upload(norm, data, file_options=options)
        except Exception as exc:
            raise self._wrap("write", norm, exc) from exc
        return len(data)

    def write_text_atomic(self, key: str, text: str) -> int:
        return self.write_text(key, text)

    def append_line(self, key: str, line: str) -> None:
        existing = self.read_text(key) or ""
        if existing and not existing.endswith("\n"):
            existing += "\n"
        self.write_text(key, existing + line.rstrip("\n") + "\n")

    def list_children(self, prefix: str) -> List[str]:
        norm = _normalize_key(prefix)
        api = self._bucket_api()
        limit = 1000
        offset = 0
        names: list[str] = []
        while True:
            try:
                response = api.list(
                    path=norm,
                    options={
                        "limit": limit,
                        "offset": offset,
                        "sortBy": {"column": "name", "order": "asc"},
                    },
                )
            except Exception as exc:
                if self._is_not_found(exc):
                    return []
                raise self._wrap("list", norm, exc) from exc
            items = getattr(response, "data", response)
            if isinstance(items, dict):
                items = items.get("data")
            raw_items = list(items or [])
            for item in raw_items:
                name = item.get("name") if isinstance(item, dict) else getattr(item, "name", None)
                if name and not str(name).startswith("."):
                    names.append(str(name).strip("/"))
            if len(raw_items) < limit:
                break
            offset += limit
        return sorted(set(names))

    def exists(self, key: str) -> bool:
        norm = _normalize_key(key)
        parent, _, name = norm.rpartition("/")
        return name in set(self.list_children(parent))

    def delete(self, key: str) -> None:
        norm = _normalize_key(key)
        try:
            self._bucket_api().remove([norm])
        except Exception as exc:
            if self._is_not_found(exc):
                return
            raise self._wrap("delete", norm, exc) from exc


def create_storage_provider(
    kind: str | None = None,
    *,
    root: Path | str | None = None,
    bucket: str | None = None,
    client: Client | None = None,
) -> StorageProvider:
    """Build the configured provider, defaulting to the local filesystem."""

    selected = (kind or os.getenv(PROVIDER_ENV) or "local").strip().lower()
    if selected not in PROVIDERS:
        raise ConfigurationError(f"Unknown storage provider '{selected}'; expected one of {sorted(PROVIDERS)}")
    if selected == "supabase":
        return SupabaseStorage(bucket, client=client)
    return LocalFileStorage(root)


__all__ = [
    "ConfigurationError",
    "LocalFileStorage",
    "PROVIDERS",
    "PROVIDER_ENV",
    "StorageProvider",
    "SupabaseStorage",
    "create_storage_provider",
    "supabase_available",
]
