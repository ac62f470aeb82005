from __future__ import annotations

from calendar import monthrange
from datetime import date, timedelta

WEEKLY_DAYS = 7
SUPPORTED_FREQUENCIES = {"weekly", "monthly", "yearly", "custom"}
MAX_CUSTOM_INTERVAL_DAYS = 3660


def validate_frequency(frequency: str) -> str:
    normalized = _normalize_frequency(frequency)
    if normalized not in SUPPORTED_FREQUENCIES:
        raise ValueError("Only weekly, monthly, yearly, or custom renewal frequencies are supported.")
    return normalized


def validate_custom_interval(frequency: str, custom_interval_days: int | None) -> int | None:
    """Custom schedules must carry their interval; the others must not."""
    if frequency == "custom":
        if custom_interval_days is None:
            raise ValueError("custom_interval_days is required for custom renewal frequency.")
        if custom_interval_days < 1 or custom_interval_days > MAX_CUSTOM_INTERVAL_DAYS:
            raise ValueError(
                f"custom_interval_days must be between 1 and {MAX_CUSTOM_INTERVAL_DAYS}."
            )
        return custom_interval_days
    if custom_interval_days is not None:
        raise ValueError("custom_interval_days is only allowed for custom renewal frequency.")
    return None


def advance_renewal_date(
    current: date, frequency: str, custom_interval_days: int | None = None
) -> date:
    """Move a renewal date forward by exactly one period.

    Monthly and yearly steps keep the day of month, clamped to the last day of
    shorter months (Jan 31 -> Feb 28).
    """
    normalized = validate_frequency(frequency)
    if normalized == "weekly":
        return current + timedelta(days=WEEKLY_DAYS)
    if normalized == "monthly":
        return add_months(current, 1, current.day)
    if normalized == "yearly":
        return add_months(current, 12, current.day)
    interval = validate_custom_interval(normalized, custom_interval_days)
    return current + timedelta(days=interval)


def next_renewal_after(
    current: date,
    frequency: str,
    on_or_after: date,
    custom_interval_days: int | None = None,
) -> date:
    """Advance at least once, then keep advancing until the date reaches ``on_or_after``."""
    candidate = advance_renewal_date(current, frequency, custom_interval_days)
    while candidate < on_or_after:
        candidate = advance_renewal_date(candidate, frequency, custom_interval_days)
    return candidate


def reminder_date_for(renewal_date: date, reminder_days: int) -> date:
    return renewal_date - timedelta(days=reminder_days)


def add_months(start_date: date, months: int, anchor_day: int) -> date:
    total_month = start_date.month - 1 + months
    year = start_date.year + total_month // 12
    month = total_month % 12 + 1
    last_day = monthrange(year, month)[1]
    day = min(anchor_day, last_day)
    return date(year, month, day)


def _normalize_frequency(value: str) -> str:
    return "".join(ch for ch in value.strip().lower() if ch.isalnum())
