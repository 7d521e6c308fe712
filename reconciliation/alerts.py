"""Hard and soft alerts raised by reconciliation cycles."""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime
from typing import Any, Mapping

from infra.paths import ALERTS_PREFIX
from infra.storage.providers import StorageProvider, create_storage_provider
from infra.timestamps import coerce_timestamp, now_utc

LOGGER = logging.getLogger(__name__)

SEVERITIES = {"hard", "soft"}


def alert_key(day: datetime) -> str:
    return f"{ALERTS_PREFIX}/{coerce_timestamp(day).strftime('%Y%m%d')}.json"


class AlertEmitter:
    """Keeps one JSON list of alerts per UTC day next to the snapshots.

    Emits through one emitter are serialised, so parallel cycles sharing it
    never drop each other's alerts. A day document that does not parse is
    copied to ``<day>.json.corrupt`` and a new list is started in its place.
    """

    def __init__(self, provider: StorageProvider | None = None) -> None:
        self.provider = provider or create_storage_provider()
        self._lock = threading.Lock()

    def emit(
        self,
        *,
        severity: str,
        kind: str,
        message: str,
        job_id: str,
        entity_id: str | None = None,
        context: Mapping[str, Any] | None = None,
        timestamp: datetime | None = None,
    ) -> str:
        normalized = severity.lower()
        if normalized not in SEVERITIES:
            raise ValueError("severity must be 'hard' or 'soft'")
        ts = coerce_timestamp(timestamp or now_utc())
        entry = {
            "timestamp": ts.isoformat(),
            "severity": normalized,
            "kind": kind,
            "message": message,
            "job_id": job_id,
            "entity_id": entity_id,
            "context": dict(context or {}),
        }
        key = alert_key(ts)
        with self._lock:
            text = self.provider.read_text(key)
            alerts = self._parse(key, text)
            if text is not None and alerts is None:
                self.provider.write_text_atomic(f"{key}.corrupt", text)
            alerts = alerts or []
            alerts.append(entry)
            self.provider.write_text_atomic(key, json.dumps(alerts, indent=2, sort_keys=True))
        LOGGER.info("Alert %s/%s for %s: %s", normalized, kind, job_id, message)
        return key

    def read(self, day: datetime) -> list[dict[str, Any]]:
        key = alert_key(day)
        return self._parse(key, self.provider.read_text(key)) or []

    @staticmethod
    def _parse(key: str, text: str | None) -> list[dict[str, Any]] | None:
        """Alerts stored under *key*; ``None`` when the document is unreadable."""

        if text is None:
            return []
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            LOGGER.warning("Alert document %s is not valid JSON", key)
            return None
        if not isinstance(payload, list):
            LOGGER.warning("Alert document %s is not a list", key)
            return None
        return [item for item in payload if isinstance(item, dict)]


__all__ = ["AlertEmitter", "SEVERITIES", "alert_key"]
