"""Tests for infra.timestamps shared coercion and period helpers."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest

from infra.timestamps import (
    add_days,
    coerce_date,
    coerce_timestamp,
    days_between,
    month_end,
    now_iso,
    parse_period,
    period_of,
    resolve_logical_date,
)

UTC = timezone.utc


# --- datetime passthrough ---

class TestDatetimeInput:
    def test_aware_datetime_returned_as_utc(self):
        dt = datetime(2024, 6, 15, 12, 0, tzinfo=UTC)
        assert coerce_timestamp(dt) == dt

    def test_naive_datetime_gets_utc(self):
        naive = datetime(2024, 6, 15, 12, 0)
        result = coerce_timestamp(naive)
        assert result == datetime(2024, 6, 15, 12, 0, tzinfo=UTC)
        assert result.tzinfo is UTC

    def test_non_utc_datetime_converted(self):
        est = timezone(timedelta(hours=-5))
        dt = datetime(2024, 6, 15, 12, 0, tzinfo=est)
        result = coerce_timestamp(dt)
        assert result == datetime(2024, 6, 15, 17, 0, tzinfo=UTC)


# --- date input ---

class TestDateInput:
    def test_date_becomes_midnight_utc(self):
        d = date(2024, 6, 15)
        result = coerce_timestamp(d)
        assert result == datetime(2024, 6, 15, 0, 0, tzinfo=UTC)


# --- string input ---

class TestStringInput:
    def test_iso_string(self):
        result = coerce_timestamp("2024-06-15T12:00:00+00:00")
        assert result == datetime(2024, 6, 15, 12, 0, tzinfo=UTC)

    def test_z_suffix(self):
        result = coerce_timestamp("2024-06-15T12:00:00Z")
        assert result == datetime(2024, 6, 15, 12, 0, tzinfo=UTC)

    def test_naive_iso_string_gets_utc(self):
        result = coerce_timestamp("2024-06-15T12:00:00")
        assert result == datetime(2024, 6, 15, 12, 0, tzinfo=UTC)

    def test_bare_date_string(self):
        result = coerce_timestamp("2024-06-15")
        assert result == datetime(2024, 6, 15, 0, 0, tzinfo=UTC)

    def test_whitespace_stripped(self):
        result = coerce_timestamp("  2024-06-15T12:00:00Z  ")
        assert result == datetime(2024, 6, 15, 12, 0, tzinfo=UTC)

    def test_empty_string_raises(self):
        with pytest.raises(ValueError, match="empty"):
            coerce_timestamp("")

    def test_invalid_string_raises(self):
        with pytest.raises(ValueError, match="Invalid"):
            coerce_timestamp("not-a-date")


# --- pandas Timestamp-like ---

class TestPandasLike:
    def test_to_pydatetime_called(self):
        class FakeTimestamp:
            def to_pydatetime(self):
                return datetime(2024, 6, 15, 12, 0, tzinfo=UTC)

        result = coerce_timestamp(FakeTimestamp())
        assert result == datetime(2024, 6, 15, 12, 0, tzinfo=UTC)


# --- error handling ---

class TestErrors:
    def test_unsupported_type_raises(self):
        with pytest.raises(TypeError, match="Unsupported"):
            coerce_timestamp([1, 2, 3])

    def test_index_in_error_message(self):
        with pytest.raises(TypeError, match="at index 5"):
            coerce_timestamp([1, 2, 3], index=5)

    def test_epoch_numbers_are_rejected(self):
        with pytest.raises(TypeError):
            coerce_timestamp(1704067200)


# --- periods ---

class TestPeriods:
    def test_parse_period(self):
        assert parse_period("2024-02") == (2024, 2)

    @pytest.mark.parametrize("raw", ["2024-13", "2024-2", "24-02", "", "2024-02-01"])
    def test_parse_period_rejects_malformed(self, raw):
        with pytest.raises(ValueError):
            parse_period(raw)

    def test_period_of_date_and_timestamp(self):
        assert period_of("2024-02-29") == "2024-02"
        assert period_of(datetime(2024, 3, 1, 23, 0, tzinfo=UTC)) == "2024-03"

    def test_month_end_handles_leap_years(self):
        assert month_end("2024-02") == date(2024, 2, 29)
        assert month_end("2023-02") == date(2023, 2, 28)
        assert month_end(date(2024, 12, 5)) == date(2024, 12, 31)


class TestLogicalDate:
    def test_closing_period_maps_to_month_end(self):
        assert resolve_logical_date("2024-01-10", is_closing_period_data=True) == "2024-01-31"

    def test_regular_data_keeps_as_of_date(self):
        assert resolve_logical_date("2024-01-10") == "2024-01-10"


class TestArithmetic:
    def test_days_between_is_fractional(self):
        start = datetime(2024, 1, 1, tzinfo=UTC)
        assert days_between(start, start + timedelta(hours=36)) == pytest.approx(1.5)

    def test_add_days_accepts_iso_strings(self):
        assert add_days("2024-01-30T00:00:00+00:00", 3) == datetime(2024, 2, 2, tzinfo=UTC)

    def test_coerce_date_from_timestamp_string(self):
        assert coerce_date("2024-01-05T23:00:00Z") == date(2024, 1, 5)

    def test_now_iso_normalizes_naive(self):
        assert now_iso(datetime(2024, 1, 1, 12, 0)) == "2024-01-01T12:00:00+00:00"
