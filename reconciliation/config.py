"""Reconciliation configuration: defaults, validation, persistence and audit."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Mapping

from infra.paths import RECONCILIATION_PREFIX
from infra.storage.documents import dump_document, dump_line, iter_lines, load_document
from infra.storage.errors import StorageError
from infra.storage.providers import StorageProvider, create_storage_provider
from infra.timestamps import now_iso

try:  # Optional dependency.
    import yaml  # type: ignore
except Exception:  # pragma: no cover - PyYAML is optional
    yaml = None

LOGGER = logging.getLogger(__name__)

CONFIG_KEY = f"{RECONCILIATION_PREFIX}/config.json"
AUDIT_KEY = f"{RECONCILIATION_PREFIX}/config-audit.jsonl"

_THRESHOLD_FIELDS = ("membership_percent", "club_count_absolute", "distinguished_percent")


@dataclass(frozen=True)
class SignificantChangeThresholds:
    """Per-dimension thresholds; a change meeting any one is significant."""

    membership_percent: float = 1.0
    club_count_absolute: int = 1
    distinguished_percent: float = 2.0


@dataclass(frozen=True)
class ReconciliationConfig:
    """Windows and thresholds for month-end reconciliation."""

    max_reconciliation_days: int = 15
    stability_period_days: int = 3
    check_frequency_hours: int = 24
    significant_change_thresholds: SignificantChangeThresholds = field(
        default_factory=SignificantChangeThresholds
    )
    auto_extension_enabled: bool = True
    max_extension_days: int = 5
    extension_increment_days: int = 3
    extension_window_days: int = 3

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "ReconciliationConfig":
        """Build a config from *payload*, raising ``ConfigValidationError`` if invalid.

        Missing keys take their default values. Invalid values are rejected,
        never clamped.
        """

        merged = merge_config(cls().to_dict(), payload)
        result = validate_config(merged)
        if not result.is_valid:
            raise ConfigValidationError(result.errors, warnings=result.warnings)
        thresholds = merged["significant_change_thresholds"]
        return cls(
            max_reconciliation_days=merged["max_reconciliation_days"],
            stability_period_days=merged["stability_period_days"],
            check_frequency_hours=merged["check_frequency_hours"],
            significant_change_thresholds=SignificantChangeThresholds(
                membership_percent=float(thresholds["membership_percent"]),
                club_count_absolute=thresholds["club_count_absolute"],
                distinguished_percent=float(thresholds["distinguished_percent"]),
            ),
            auto_extension_enabled=merged["auto_extension_enabled"],
            max_extension_days=merged["max_extension_days"],
            extension_increment_days=merged["extension_increment_days"],
            extension_window_days=merged["extension_window_days"],
        )


class ConfigValidationError(ValueError):
    """Raised when a reconciliation config fails validation."""

    def __init__(self, errors: list[str], *, warnings: list[str] | None = None) -> None:
        super().__init__("Invalid reconciliation config: " + "; ".join(errors))
        self.errors = list(errors)
        self.warnings = list(warnings or [])


@dataclass(frozen=True)
class ConfigValidationResult:
    is_valid: bool
    errors: list[str]
    warnings: list[str]


def merge_config(base: Mapping[str, Any], changes: Mapping[str, Any]) -> dict[str, Any]:
    """Overlay *changes* onto *base*; the thresholds block merges key by key."""

    merged = dict(base)
    for key, value in changes.items():
        if key == "significant_change_thresholds" and isinstance(value, Mapping):
            block = dict(merged.get(key) or {})
            block.update(value)
            merged[key] = block
        else:
            merged[key] = value
    return merged


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_config(payload: Mapping[str, Any]) -> ConfigValidationResult:
    """Check a full config mapping; returns every error and warning found."""

    errors: list[str] = []
    warnings: list[str] = []

    max_days = payload.get("max_reconciliation_days")
    if not _is_int(max_days) or max_days <= 0:
        errors.append("max_reconciliation_days must be a positive integer")
    elif max_days > 30:
        warnings.append("max_reconciliation_days is unusually long (> 30 days)")

    stability = payload.get("stability_period_days")
    if not _is_int(stability) or stability <= 0:
        errors.append("stability_period_days must be a positive integer")
    elif _is_int(max_days) and stability > max_days:
        errors.append("stability_period_days cannot exceed max_reconciliation_days")

    frequency = payload.get("check_frequency_hours")
    if not _is_int(frequency) or frequency <= 0:
        errors.append("check_frequency_hours must be a positive integer")
    elif frequency < 6:
        warnings.append("check_frequency_hours below 6 may cause excessive upstream load")
    elif frequency > 48:
        warnings.append("check_frequency_hours above 48 may miss late changes")

    extension = payload.get("max_extension_days")
    if not _is_int(extension) or extension < 0:
        errors.append("max_extension_days must be a non-negative integer")
    elif extension > 15:
        warnings.append("max_extension_days is unusually long (> 15 days)")

    for name in ("extension_increment_days", "extension_window_days"):
        value = payload.get(name)
        if not _is_int(value) or value <= 0:
            errors.append(f"{name} must be a positive integer")

    auto_extension = payload.get("auto_extension_enabled")
    if not isinstance(auto_extension, bool):
        errors.append("auto_extension_enabled must be a boolean")
    elif not auto_extension and _is_int(extension) and extension > 0:
        warnings.append("max_extension_days is set but auto_extension_enabled is false")

    thresholds = payload.get("significant_change_thresholds")
    if not isinstance(thresholds, Mapping):
        errors.append("significant_change_thresholds must be a mapping")
    else:
        unknown = sorted(set(thresholds) - set(_THRESHOLD_FIELDS))
        if unknown:
            errors.append(f"significant_change_thresholds has unknown keys: {', '.join(unknown)}")
        membership = thresholds.get("membership_percent")
        if not _is_number(membership) or membership < 0:
            errors.append("significant_change_thresholds.membership_percent must be a non-negative number")
        elif membership > 10:
            warnings.append("significant_change_thresholds.membership_percent above 10 may hide real changes")
        clubs = thresholds.get("club_count_absolute")
        if not _is_int(clubs) or clubs < 0:
            errors.append("significant_change_thresholds.club_count_absolute must be a non-negative integer")
        distinguished = thresholds.get("distinguished_percent")
        if not _is_number(distinguished) or distinguished < 0:
            errors.append("significant_change_thresholds.distinguished_percent must be a non-negative number")
        elif distinguished > 20:
            warnings.append("significant_change_thresholds.distinguished_percent above 20 may hide real changes")

    known = set(asdict(ReconciliationConfig()))
    unknown_top = sorted(set(payload) - known)
    if unknown_top:
        errors.append(f"unknown config keys: {', '.join(unknown_top)}")

    return ConfigValidationResult(is_valid=not errors, errors=errors, warnings=warnings)


def load_config_mapping(path: Path) -> Mapping[str, Any]:
    text = path.read_text(encoding="utf-8")
    suffix = path.suffix.lower()
    if suffix in {".yml", ".yaml"}:
        if yaml is None:
            raise RuntimeError("PyYAML is required to parse YAML configs, but it is not installed.")
        payload = yaml.safe_load(text)
    else:
        payload = json.loads(text)
    if not isinstance(payload, Mapping):
        raise ValueError("Reconciliation config must map keys to values.")
    return payload


def load_config_file(path: Path | str) -> ReconciliationConfig:
    """Load and validate a JSON or YAML config file."""

    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Reconciliation configuration not found at {config_path}")
    return ReconciliationConfig.from_mapping(load_config_mapping(config_path))


class ReconciliationConfigStore:
    """Persists the active config document and its append-only change log."""

    def __init__(
        self,
        provider: StorageProvider | None = None,
        *,
        defaults: ReconciliationConfig | None = None,
    ) -> None:
        self.provider = provider or create_storage_provider()
        self.defaults = defaults or ReconciliationConfig()

    def load(self) -> ReconciliationConfig:
        """Return the persisted config, or the defaults if absent or invalid.

        A document that fails to parse or validate is discarded as a whole;
        it is never merged field by field with the defaults.
        """

        try:
            payload = load_document(self.provider, CONFIG_KEY, operation="load_config")
        except StorageError as exc:
            LOGGER.warning("Reconciliation config unreadable, using defaults: %s", exc)
            return self.defaults
        if payload is None:
            return self.defaults
        result = validate_config(payload)
        if not result.is_valid:
            LOGGER.warning(
                "Reconciliation config failed validation, using defaults: %s", "; ".join(result.errors)
            )
            return self.defaults
        for warning in result.warnings:
            LOGGER.warning("Reconciliation config: %s", warning)
        return ReconciliationConfig.from_mapping(payload)

    def save(self, config: ReconciliationConfig) -> None:
        self.provider.write_text_atomic(CONFIG_KEY, dump_document(config.to_dict()))

    def update(
        self,
        changes: Mapping[str, Any],
        *,
        changed_by: str,
        reason: str | None = None,
    ) -> ReconciliationConfig:
        """Apply *changes* to the active config, persist it, and audit the change."""

        previous = self.load()
        merged = merge_config(previous.to_dict(), changes)
        updated = ReconciliationConfig.from_mapping(merged)
        self.save(updated)
        before, after = previous.to_dict(), updated.to_dict()
        record = {
            "timestamp": now_iso(),
            "changed_by": changed_by,
            "reason": reason,
            "changed_fields": sorted(key for key in after if before.get(key) != after.get(key)),
            "previous": before,
            "updated": after,
        }
        self.provider.append_line(AUDIT_KEY, dump_line(record))
        LOGGER.info("Reconciliation config updated by %s: %s", changed_by, record["changed_fields"])
        return updated

    def reset(self, *, changed_by: str) -> ReconciliationConfig:
        return self.update(self.defaults.to_dict(), changed_by=changed_by, reason="reset to defaults")

    def history(self, limit: int | None = None) -> list[dict[str, Any]]:
        """Audit records, most recent first."""

        records = list(iter_lines(self.provider, AUDIT_KEY, operation="config_history"))
        records.reverse()
        if limit is not None:
            records = records[: max(limit, 0)]
        return records


__all__ = [
    "AUDIT_KEY",
    "CONFIG_KEY",
    "ConfigValidationError",
    "ConfigValidationResult",
    "ReconciliationConfig",
    "ReconciliationConfigStore",
    "SignificantChangeThresholds",
    "load_config_file",
    "load_config_mapping",
    "merge_config",
    "validate_config",
]
