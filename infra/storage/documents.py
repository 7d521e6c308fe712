"""JSON document encoding shared by the storage modules."""

from __future__ import annotations

import json
from typing import Any, Iterator, Mapping

from infra.storage.errors import CorruptDocumentError
from infra.storage.providers import StorageProvider


def dump_document(payload: Mapping[str, Any]) -> str:
    return json.dumps(payload, indent=2, sort_keys=True)


def dump_line(record: Mapping[str, Any]) -> str:
    return json.dumps(record, sort_keys=True, separators=(",", ":"))


def load_document(provider: StorageProvider, key: str, *, operation: str) -> dict[str, Any] | None:
    """Read a JSON object, returning ``None`` if absent and raising if corrupt."""

    text = provider.read_text(key)
    if text is None:
        return None
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise CorruptDocumentError(
            key, operation=operation, provider=provider.name, cause=exc, reason="invalid JSON"
        ) from exc
    if not isinstance(payload, dict):
        raise CorruptDocumentError(
            key,
            operation=operation,
            provider=provider.name,
            reason=f"expected a JSON object, got {type(payload).__name__}",
        )
    return payload


def iter_lines(provider: StorageProvider, key: str, *, operation: str) -> Iterator[dict[str, Any]]:
    """Yield JSONL records in file order; blank lines are ignored."""

    text = provider.read_text(key)
    if not text:
        return
    for number, line in enumerate(text.splitlines(), start=1):
        if not line.strip():
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError as exc:
            raise CorruptDocumentError(
                key,
                operation=operation,
                provider=provider.name,
                cause=exc,
                reason=f"invalid JSON on line {number}",
            ) from exc
        yield record


__all__ = ["dump_document", "dump_line", "iter_lines", "load_document"]
