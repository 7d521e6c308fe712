"""Field-level change detection between two district statistics payloads."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Mapping

from infra.storage.legacy import is_legacy_distinguished_format, transform_legacy_distinguished
from infra.timestamps import now_iso
from reconciliation.config import SignificantChangeThresholds

MEMBERSHIP_FIELD = "membership"
CLUB_COUNT_FIELD = "club_count"
DISTINGUISHED_FIELD = "distinguished"

METRIC_WEIGHTS = {"membership": 0.4, "club_count": 0.3, "distinguished": 0.3}

_COUNT_KEYS = ("smedley", "presidents", "select", "distinguished")


class ChangeDetectionError(ValueError):
    """Raised when a statistics payload cannot be compared."""


def percent_change(previous: float, current: float) -> float:
    if previous == 0:
        return 0.0
    return round((current - previous) / previous * 100, 2)


@dataclass(frozen=True)
class MembershipChange:
    previous: int
    current: int
    percent_change: float


@dataclass(frozen=True)
class ClubCountChange:
    previous: int
    current: int
    absolute_change: int


@dataclass(frozen=True)
class DistinguishedChange:
    previous: dict[str, int]
    current: dict[str, int]
    percent_change: float


@dataclass(frozen=True)
class DataChanges:
    has_changes: bool
    changed_fields: list[str]
    timestamp: str
    source_data_date: str | None
    membership_change: MembershipChange | None = None
    club_count_change: ClubCountChange | None = None
    distinguished_change: DistinguishedChange | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "DataChanges":
        membership = payload.get("membership_change")
        clubs = payload.get("club_count_change")
        distinguished = payload.get("distinguished_change")
        return cls(
            has_changes=bool(payload.get("has_changes")),
            changed_fields=list(payload.get("changed_fields", [])),
            timestamp=str(payload.get("timestamp", "")),
            source_data_date=payload.get("source_data_date"),
            membership_change=MembershipChange(**membership) if membership else None,
            club_count_change=ClubCountChange(**clubs) if clubs else None,
            distinguished_change=DistinguishedChange(**distinguished) if distinguished else None,
        )


@dataclass(frozen=True)
class ChangeMetrics:
    membership_impact: float
    club_count_impact: float
    distinguished_impact: float
    overall_significance: float

    def to_dict(self) -> dict[str, float]:
        return asdict(self)


def _require_mapping(value: Any, label: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise ChangeDetectionError(f"{label} statistics must be a mapping, got {type(value).__name__}")
    return value


def _as_int(value: Any, label: str) -> int:
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ChangeDetectionError(f"{label} must be numeric, got {value!r}")
    return int(value)


def extract_membership_total(stats: Mapping[str, Any]) -> int:
    membership = stats.get("membership")
    if isinstance(membership, Mapping):
        return _as_int(membership.get("total"), "membership.total")
    return _as_int(membership, "membership")


def extract_club_count(stats: Mapping[str, Any]) -> int:
    clubs = stats.get("clubs")
    if isinstance(clubs, Mapping):
        return _as_int(clubs.get("total"), "clubs.total")
    return _as_int(clubs, "clubs")


def extract_distinguished_counts(stats: Mapping[str, Any]) -> dict[str, int]:
    """Normalise the distinguished breakdown to a counts object with a ``total``.

    Accepts a bare total, a counts object, or the legacy list of club
    summaries.
    """

    clubs = stats.get("clubs")
    raw = clubs.get("distinguished") if isinstance(clubs, Mapping) else None
    if raw is None:
        raw = stats.get("distinguished_clubs")
    if raw is None:
        return {"total": 0}
    if is_legacy_distinguished_format(raw):
        raw = transform_legacy_distinguished(raw)
    if isinstance(raw, Mapping):
        counts = {key: _as_int(raw[key], f"distinguished.{key}") for key in _COUNT_KEYS if key in raw}
        if "total" in raw:
            counts["total"] = _as_int(raw["total"], "distinguished.total")
        else:
            counts["total"] = sum(counts.values())
        return counts
    return {"total": _as_int(raw, "clubs.distinguished")}


class ChangeDetector:
    """Compares membership, club count, and distinguished breakdown."""

    def detect_changes(
        self,
        entity_id: str,
        previous: Mapping[str, Any],
        current: Mapping[str, Any],
    ) -> DataChanges:
        previous = _require_mapping(previous, f"previous ({entity_id})")
        current = _require_mapping(current, f"current ({entity_id})")
        changed: list[str] = []

        membership_change = None
        prev_members, cur_members = extract_membership_total(previous), extract_membership_total(current)
        if prev_members != cur_members:
            membership_change = MembershipChange(
                previous=prev_members,
                current=cur_members,
                percent_change=percent_change(prev_members, cur_members),
            )
            changed.append(MEMBERSHIP_FIELD)

        club_change = None
        prev_clubs, cur_clubs = extract_club_count(previous), extract_club_count(current)
        if prev_clubs != cur_clubs:
            club_change = ClubCountChange(
                previous=prev_clubs,
                current=cur_clubs,
                absolute_change=cur_clubs - prev_clubs,
            )
            changed.append(CLUB_COUNT_FIELD)

        distinguished_change = None
        prev_dist, cur_dist = extract_distinguished_counts(previous), extract_distinguished_counts(current)
        if prev_dist != cur_dist:
            distinguished_change = DistinguishedChange(
                previous=prev_dist,
                current=cur_dist,
                percent_change=percent_change(prev_dist["total"], cur_dist["total"]),
            )
            changed.append(DISTINGUISHED_FIELD)

        source_date = current.get("as_of_date")
        return DataChanges(
            has_changes=bool(changed),
            changed_fields=changed,
            timestamp=now_iso(),
            source_data_date=str(source_date) if source_date else None,
            membership_change=membership_change,
            club_count_change=club_change,
            distinguished_change=distinguished_change,
        )

    def is_significant_change(
        self,
        changes: DataChanges,
        thresholds: SignificantChangeThresholds,
    ) -> bool:
        if not changes.has_changes:
            return False
        if changes.membership_change is not None:
            if abs(changes.membership_change.percent_change) >= thresholds.membership_percent:
                return True
        if changes.club_count_change is not None:
            if abs(changes.club_count_change.absolute_change) >= thresholds.club_count_absolute:
                return True
        if changes.distinguished_change is not None:
            if abs(changes.distinguished_change.percent_change) >= thresholds.distinguished_percent:
                return True
        return False

    def calculate_change_metrics(self, changes: DataChanges) -> ChangeMetrics:
        """Weighted impact score for trend reporting; not used for significance."""

        membership = abs(changes.membership_change.percent_change) if changes.membership_change else 0.0
        clubs = 0.0
        if changes.club_count_change and changes.club_count_change.previous > 0:
            clubs = round(
                abs(changes.club_count_change.absolute_change) / changes.club_count_change.previous * 100, 2
            )
        distinguished = (
            abs(changes.distinguished_change.percent_change) if changes.distinguished_change else 0.0
        )
        overall = (
            membership * METRIC_WEIGHTS["membership"]
            + clubs * METRIC_WEIGHTS["club_count"]
            + distinguished * METRIC_WEIGHTS["distinguished"]
        )
        return ChangeMetrics(
            membership_impact=membership,
            club_count_impact=clubs,
            distinguished_impact=distinguished,
            overall_significance=round(overall, 2),
        )


__all__ = [
    "CLUB_COUNT_FIELD",
    "ChangeDetectionError",
    "ChangeDetector",
    "ChangeMetrics",
    "ClubCountChange",
    "DISTINGUISHED_FIELD",
    "DataChanges",
    "DistinguishedChange",
    "MEMBERSHIP_FIELD",
    "METRIC_WEIGHTS",
    "MembershipChange",
    "extract_club_count",
    "extract_distinguished_counts",
    "extract_membership_total",
    "percent_change",
]
