"""
Schedule — when a rule is due and when the nightly budget reset runs.
"""

from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Optional

from app.config import parse_hhmm
from app.schemas import Frequency
from app.utils import as_aware_utc

UNIT_DELTAS = {
    "minutes": timedelta(minutes=1),
    "hours": timedelta(hours=1),
    "days": timedelta(days=1),
}


def duration(unit: str, value: int) -> timedelta:
    return UNIT_DELTAS[unit] * value


def is_rule_due(
    frequency: Frequency,
    last_run_at: Optional[datetime],
    now: datetime,
    schedule_tz: tzinfo = timezone.utc,
) -> bool:
    """
    minutes / hours, and days without a start time: rolling interval since
    the last run. days with a start time: due once the local wall clock is
    past the start time today and at least ``value`` calendar days have
    passed since the local date of the last run.
    """
    now = as_aware_utc(now)

    if frequency.unit == "days" and frequency.start_time:
        local_now = now.astimezone(schedule_tz)
        if local_now.time() < parse_hhmm(frequency.start_time):
            return False
        if last_run_at is None:
            return True
        last_local_date = as_aware_utc(last_run_at).astimezone(schedule_tz).date()
        return (local_now.date() - last_local_date).days >= frequency.value

    if last_run_at is None:
        return True
    return now - as_aware_utc(last_run_at) >= duration(frequency.unit, frequency.value)


def budget_reset_due(
    now: datetime,
    reset_at: time,
    reporting_tz: tzinfo,
    last_reset_date: Optional[date],
) -> Optional[date]:
    """
    The reporting date to reset if the nightly sweep should run now, else None.
    Runs at most once per reporting day, any time after ``reset_at``.
    """
    local_now = as_aware_utc(now).astimezone(reporting_tz)
    if local_now.time() < reset_at:
        return None
    if last_reset_date is not None and last_reset_date >= local_now.date():
        return None
    return local_now.date()
