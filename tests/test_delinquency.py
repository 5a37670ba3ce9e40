"""
Test suite for delinquency module

Tests days-past-due derivation and the intake stage thresholds.
"""

import pytest
from datetime import datetime, timezone, date, timedelta

from collections_core.delinquency import (
    CaseStage, calculate_days_past_due, stage_for_days_past_due
)


NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)


class TestDaysPastDue:
    """Test days past due calculation"""

    def test_whole_days_are_counted(self):
        """Test dpd for a due date exactly N days ago"""
        assert calculate_days_past_due(NOW - timedelta(days=12), NOW) == 12
        assert calculate_days_past_due(NOW - timedelta(days=40), NOW) == 40

    def test_partial_days_are_floored(self):
        """Test that an incomplete day does not count"""
        assert calculate_days_past_due(NOW - timedelta(days=7, hours=23), NOW) == 7
        assert calculate_days_past_due(NOW - timedelta(hours=23, minutes=59), NOW) == 0

    def test_future_due_date_is_zero(self):
        """Test that a due date in the future gives zero, never negative"""
        assert calculate_days_past_due(NOW + timedelta(days=3), NOW) == 0
        assert calculate_days_past_due(NOW, NOW) == 0

    def test_dates_and_naive_datetimes(self):
        """Test that plain dates and naive datetimes are treated as UTC"""
        assert calculate_days_past_due(date(2024, 6, 1), date(2024, 6, 15)) == 14
        assert calculate_days_past_due(datetime(2024, 6, 5, 12, 0), NOW) == 10
        assert calculate_days_past_due(date(2024, 6, 5), NOW) == 10

    def test_defaults_to_now(self):
        """Test that the reference time defaults to the current time"""
        due = datetime.now(timezone.utc) - timedelta(days=3, hours=1)
        assert calculate_days_past_due(due) == 3

    def test_invalid_input_rejected(self):
        """Test that non-date input is rejected"""
        with pytest.raises(ValueError, match="due_date must be a date or datetime"):
            calculate_days_past_due("2024-06-01", NOW)

        with pytest.raises(ValueError, match="now must be a date or datetime"):
            calculate_days_past_due(NOW, 12345)


class TestIntakeStage:
    """Test stage thresholds at intake"""

    @pytest.mark.parametrize("dpd,expected", [
        (0, CaseStage.SOFT),
        (7, CaseStage.SOFT),
        (8, CaseStage.HARD),
        (30, CaseStage.HARD),
        (31, CaseStage.LEGAL),
        (400, CaseStage.LEGAL),
    ])
    def test_stage_boundaries(self, dpd, expected):
        """Test SOFT/HARD/LEGAL boundaries"""
        assert stage_for_days_past_due(dpd) == expected

    def test_negative_dpd_rejected(self):
        with pytest.raises(ValueError, match="cannot be negative"):
            stage_for_days_past_due(-1)

    def test_non_integer_dpd_rejected(self):
        with pytest.raises(ValueError, match="must be an integer"):
            stage_for_days_past_due(7.5)
        with pytest.raises(ValueError, match="must be an integer"):
            stage_for_days_past_due(True)
