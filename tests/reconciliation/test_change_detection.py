from __future__ import annotations

import pytest

from reconciliation.change_detection import (
    ChangeDetectionError,
    ChangeDetector,
    DataChanges,
    extract_distinguished_counts,
    percent_change,
)
from reconciliation.config import SignificantChangeThresholds
from tests.reconciliation.reconciliation_helpers import revised
from tests.storage.snapshot_helpers import district

THRESHOLDS = SignificantChangeThresholds()


def _detect(previous, current) -> DataChanges:
    return ChangeDetector().detect_changes("42", previous, current)


def test_identical_payloads_have_no_changes():
    changes = _detect(district("42"), district("42"))
    assert not changes.has_changes
    assert changes.changed_fields == []
    assert not ChangeDetector().is_significant_change(changes, THRESHOLDS)


def test_small_membership_change_is_not_significant():
    changes = _detect(district("42"), district("42", members=1005, as_of="2024-02-03"))
    assert changes.changed_fields == ["membership"]
    assert changes.membership_change.percent_change == 0.5
    assert changes.source_data_date == "2024-02-03"
    assert not ChangeDetector().is_significant_change(changes, THRESHOLDS)


@pytest.mark.parametrize("members, significant", [(1020, True), (1010, True), (1009, False), (990, True)])
def test_membership_threshold_is_inclusive(members, significant):
    changes = _detect(district("42"), district("42", members=members))
    assert ChangeDetector().is_significant_change(changes, THRESHOLDS) is significant


def test_single_club_change_is_significant():
    changes = _detect(district("42"), revised(district("42"), clubs=49))
    assert changes.changed_fields == ["club_count"]
    assert changes.club_count_change.absolute_change == -1
    assert ChangeDetector().is_significant_change(changes, THRESHOLDS)


def test_distinguished_change_uses_percent():
    previous = district("42", distinguished=50)
    changes = _detect(previous, district("42", distinguished=51))
    assert changes.distinguished_change.percent_change == 2.0
    assert ChangeDetector().is_significant_change(changes, THRESHOLDS)

    minor = _detect(district("42", distinguished=100), district("42", distinguished=101))
    assert not ChangeDetector().is_significant_change(minor, THRESHOLDS)


def test_legacy_distinguished_list_is_normalised():
    legacy = district("42")
    legacy["clubs"] = {
        "total": 50,
        "distinguished": [
            {"clubId": "1", "clubName": "A", "status": "select"},
            {"clubId": "2", "clubName": "B", "status": "distinguished"},
            {"clubId": "3", "clubName": "C", "status": "none"},
        ],
    }
    assert extract_distinguished_counts(legacy)["total"] == 2

    current = district("42", distinguished=2)
    changes = _detect(legacy, current)
    assert "distinguished" in changes.changed_fields
    assert changes.distinguished_change.percent_change == 0.0


def test_zero_baseline_yields_zero_percent():
    assert percent_change(0, 25) == 0.0
    changes = _detect(district("42", members=0), district("42", members=25))
    assert changes.has_changes
    assert changes.membership_change.percent_change == 0.0


def test_non_mapping_payloads_raise():
    with pytest.raises(ChangeDetectionError):
        _detect(district("42"), ["not", "a", "mapping"])
    with pytest.raises(ChangeDetectionError, match="numeric"):
        _detect(district("42"), {**district("42"), "membership": {"total": "many"}})


def test_change_metrics_are_weighted():
    changes = _detect(district("42", members=1000, clubs=50), revised(district("42", members=1020), clubs=48))
    metrics = ChangeDetector().calculate_change_metrics(changes)
    assert metrics.membership_impact == 2.0
    assert metrics.club_count_impact == 4.0
    assert metrics.distinguished_impact == 0.0
    assert metrics.overall_significance == 2.0


def test_changes_round_trip_through_dict():
    changes = _detect(district("42"), revised(district("42", members=1020), clubs=49))
    assert DataChanges.from_dict(changes.to_dict()) == changes
