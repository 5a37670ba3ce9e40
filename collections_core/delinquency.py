"""
Delinquency Module

Derives days-past-due from a loan due date and maps it to the delinquency
stage a new case starts in. Pure functions, no state.
"""

from datetime import datetime, timezone, date, time
from enum import Enum
from typing import Optional, Union


SECONDS_PER_DAY = 24 * 60 * 60

HARD_STAGE_MIN_DPD = 8
LEGAL_STAGE_MIN_DPD = 31


class CaseStage(Enum):
    """Delinquency severity bucket driving escalation policy"""
    SOFT = "SOFT"      # 0-7 days past due
    HARD = "HARD"      # 8-30 days past due
    LEGAL = "LEGAL"    # 31+ days past due


def to_utc_datetime(value: Union[date, datetime], label: str = "value") -> datetime:
    """Normalize a date or datetime to an aware UTC datetime"""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    raise ValueError(f"{label} must be a date or datetime, got {type(value).__name__}")


def calculate_days_past_due(
    due_date: Union[date, datetime],
    now: Optional[Union[date, datetime]] = None
) -> int:
    """
    Calculate whole days past due.

    Args:
        due_date: Loan due date (date or datetime)
        now: Reference time, defaults to the current UTC time

    Returns:
        max(0, floor(now - due_date) in days)
    """
    due = to_utc_datetime(due_date, "due_date")
    reference = to_utc_datetime(now, "now") if now is not None else datetime.now(timezone.utc)

    elapsed = (reference - due).total_seconds()
    return max(0, int(elapsed // SECONDS_PER_DAY))


def stage_for_days_past_due(days_past_due: int) -> CaseStage:
    """Initial stage for a case at intake"""
    if isinstance(days_past_due, bool) or not isinstance(days_past_due, int):
        raise ValueError(f"days_past_due must be an integer, got {days_past_due!r}")
    if days_past_due < 0:
        raise ValueError(f"days_past_due cannot be negative: {days_past_due}")

    if days_past_due >= LEGAL_STAGE_MIN_DPD:
        return CaseStage.LEGAL
    elif days_past_due >= HARD_STAGE_MIN_DPD:
        return CaseStage.HARD
    else:
        return CaseStage.SOFT
