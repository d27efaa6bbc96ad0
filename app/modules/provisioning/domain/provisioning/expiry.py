"""
Expiry and traffic-credit arithmetic.

All datetimes handled here are timezone-aware UTC. The subscriber backend
speaks naive `YYYY-MM-DD HH:MM:SS` strings, which are read as UTC.
"""

from __future__ import annotations

from datetime import datetime, time, timedelta, timezone
from typing import Any, Optional

BACKEND_DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"
UNSET_EXPIRY_SENTINELS = frozenset({"", "0000-00-00", "0000-00-00 00:00:00"})
BYTES_PER_TRAFFIC_UNIT = 1_048_576


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_backend_datetime(raw: Any) -> Optional[datetime]:
    """Returns None for sentinels, blanks and anything that is not a real date."""
    if raw is None:
        return None
    if isinstance(raw, datetime):
        return _as_utc(raw)
    text = str(raw).strip()
    if text in UNSET_EXPIRY_SENTINELS:
        return None
    for fmt in (BACKEND_DATETIME_FORMAT, "%Y-%m-%d"):
        try:
            return datetime.strptime(text, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    try:
        return _as_utc(datetime.fromisoformat(text.replace("Z", "+00:00")))
    except ValueError:
        return None


def format_backend_datetime(value: datetime) -> str:
    return _as_utc(value).strftime(BACKEND_DATETIME_FORMAT)


def compute_new_expiry(
    current_expiry: Optional[datetime], plan_days: int, now: Optional[datetime] = None
) -> datetime:
    """
    New expiry after crediting `plan_days`.

    A set expiry is always extended from itself, past or future, so a lapsed
    subscriber keeps their original due date cycle. Only an unset expiry starts
    from `now`.
    """
    if plan_days < 0:
        raise ValueError("plan_days must be non-negative")
    base = _as_utc(current_expiry) if current_expiry is not None else _as_utc(now or utcnow())
    return base + timedelta(days=plan_days)


def credit_days(new_expiry: datetime, now: Optional[datetime] = None) -> int:
    """
    Whole days to send with add_credits so the backend lands on `new_expiry`.

    The backend counts days from the current date. Partial days are dropped and
    an expiry already in the past credits nothing.
    """
    delta = _as_utc(new_expiry) - _as_utc(now or utcnow())
    return max(delta.days, 0)


def traffic_credit_bytes(trafficunitcomb: int, limitcomb: int) -> int:
    """Unlimited plans (limitcomb == 0) never carry a traffic credit."""
    if limitcomb == 0:
        return 0
    return max(trafficunitcomb, 0) * BYTES_PER_TRAFFIC_UNIT


def placeholder_expiry(window_minutes: int, now: Optional[datetime] = None) -> datetime:
    """Minimal access window for an account that is about to be topped up."""
    return _as_utc(now or utcnow()) + timedelta(minutes=window_minutes)


def same_day_expiry(now: Optional[datetime] = None) -> datetime:
    """23:59:59 today, used for accounts registered without a plan credit."""
    current = _as_utc(now or utcnow())
    return datetime.combine(current.date(), time(23, 59, 59), tzinfo=timezone.utc)
