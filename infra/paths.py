"""Shared helpers for resolving deterministic runtime storage roots."""

from __future__ import annotations

import os
from pathlib import Path


_REPO_ROOT = Path(__file__).resolve().parents[1]

SNAPSHOTS_PREFIX = "snapshots"
RECONCILIATION_PREFIX = "reconciliation"
ALERTS_PREFIX = "monitoring/alerts"


def get_repo_root() -> Path:
    """Return the repository root for callers that need absolute resolution."""

    return _REPO_ROOT


def get_data_root() -> Path:
    """Resolve the runtime data root honoring the DISTRICT_DATA_ROOT override."""

    override = os.environ.get("DISTRICT_DATA_ROOT")
    if override:
        return Path(override).expanduser()
    return get_repo_root() / ".district_data"


def snapshots_root(*segments: str) -> Path:
    """Base directory for versioned snapshot storage."""

    base = get_data_root() / SNAPSHOTS_PREFIX
    return base.joinpath(*segments) if segments else base


__all__ = [
    "ALERTS_PREFIX",
    "RECONCILIATION_PREFIX",
    "SNAPSHOTS_PREFIX",
    "get_data_root",
    "get_repo_root",
    "snapshots_root",
]
