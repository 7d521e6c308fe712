from __future__ import annotations

import pytest

from infra.storage.providers import LocalFileStorage
from reconciliation.config import (
    ConfigValidationError,
    ReconciliationConfig,
    ReconciliationConfigStore,
    SignificantChangeThresholds,
    load_config_file,
    merge_config,
    validate_config,
)


def test_defaults_are_valid():
    result = validate_config(ReconciliationConfig().to_dict())
    assert result.is_valid
    assert result.errors == []
    assert result.warnings == []


def test_validation_reports_every_error():
    payload = merge_config(
        ReconciliationConfig().to_dict(),
        {
            "max_reconciliation_days": 5,
            "stability_period_days": 7,
            "check_frequency_hours": 0,
            "auto_extension_enabled": "yes",
            "significant_change_thresholds": {"membership_percent": -1, "typo": 3},
            "surprise": True,
        },
    )
    result = validate_config(payload)
    assert not result.is_valid
    assert "stability_period_days cannot exceed max_reconciliation_days" in result.errors
    assert "check_frequency_hours must be a positive integer" in result.errors
    assert "auto_extension_enabled must be a boolean" in result.errors
    assert "significant_change_thresholds has unknown keys: typo" in result.errors
    assert "unknown config keys: surprise" in result.errors
    assert len(result.errors) == 6


def test_booleans_are_not_integers():
    payload = merge_config(ReconciliationConfig().to_dict(), {"max_reconciliation_days": True})
    assert "max_reconciliation_days must be a positive integer" in validate_config(payload).errors


def test_out_of_range_values_only_warn():
    payload = merge_config(
        ReconciliationConfig().to_dict(),
        {"max_reconciliation_days": 45, "check_frequency_hours": 2, "auto_extension_enabled": False},
    )
    result = validate_config(payload)
    assert result.is_valid
    assert len(result.warnings) == 3


def test_from_mapping_fills_defaults_and_rejects_invalid():
    config = ReconciliationConfig.from_mapping(
        {"max_reconciliation_days": 20, "significant_change_thresholds": {"membership_percent": 2}}
    )
    assert config.max_reconciliation_days == 20
    assert config.stability_period_days == 3
    assert config.significant_change_thresholds == SignificantChangeThresholds(membership_percent=2.0)

    with pytest.raises(ConfigValidationError) as excinfo:
        ReconciliationConfig.from_mapping({"max_extension_days": -1})
    assert excinfo.value.errors == ["max_extension_days must be a non-negative integer"]


def test_store_falls_back_to_defaults(tmp_path):
    store = ReconciliationConfigStore(LocalFileStorage(tmp_path))
    assert store.load() == ReconciliationConfig()

    path = tmp_path / "reconciliation" / "config.json"
    path.parent.mkdir(parents=True)
    path.write_text("{not json", encoding="utf-8")
    assert store.load() == ReconciliationConfig()

    path.write_text('{"max_reconciliation_days": 0}', encoding="utf-8")
    assert store.load() == ReconciliationConfig()


def test_update_persists_and_audits(tmp_path):
    store = ReconciliationConfigStore(LocalFileStorage(tmp_path))
    store.update({"stability_period_days": 4}, changed_by="ops", reason="slow revisions")
    store.update(
        {"significant_change_thresholds": {"club_count_absolute": 2}},
        changed_by="ops",
    )

    loaded = store.load()
    assert loaded.stability_period_days == 4
    assert loaded.significant_change_thresholds.club_count_absolute == 2
    assert loaded.significant_change_thresholds.membership_percent == 1.0

    history = store.history()
    assert [item["changed_fields"] for item in history] == [
        ["significant_change_thresholds"],
        ["stability_period_days"],
    ]
    assert history[1]["reason"] == "slow revisions"
    assert history[1]["previous"]["stability_period_days"] == 3
    assert len(store.history(limit=1)) == 1


def test_invalid_update_changes_nothing(tmp_path):
    store = ReconciliationConfigStore(LocalFileStorage(tmp_path))
    with pytest.raises(ConfigValidationError):
        store.update({"stability_period_days": 40}, changed_by="ops")
    assert store.history() == []
    assert not (tmp_path / "reconciliation" / "config.json").exists()


def test_reset_restores_defaults(tmp_path):
    store = ReconciliationConfigStore(LocalFileStorage(tmp_path))
    store.update({"max_extension_days": 10}, changed_by="ops")
    assert store.reset(changed_by="ops") == ReconciliationConfig()
    assert store.history()[0]["reason"] == "reset to defaults"


def test_load_config_file_yaml_and_json(tmp_path):
    yaml_path = tmp_path / "reconciliation.yaml"
    yaml_path.write_text(
        "max_reconciliation_days: 12\nsignificant_change_thresholds:\n  distinguished_percent: 5\n",
        encoding="utf-8",
    )
    config = load_config_file(yaml_path)
    assert config.max_reconciliation_days == 12
    assert config.significant_change_thresholds.distinguished_percent == 5.0

    json_path = tmp_path / "reconciliation.json"
    json_path.write_text('{"check_frequency_hours": 12}', encoding="utf-8")
    assert load_config_file(json_path).check_frequency_hours == 12

    with pytest.raises(FileNotFoundError):
        load_config_file(tmp_path / "missing.yaml")
