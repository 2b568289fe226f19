# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# kdcube_credits/economics/expiration.py
from __future__ import annotations

from calendar import monthrange
from datetime import datetime, timedelta, timezone
from typing import Optional

from kdcube_credits.economics.errors import InvalidTimestamp


def _now() -> datetime:
    return datetime.now(timezone.utc)


def require_aware(dt: Optional[datetime], *, field: str) -> Optional[datetime]:
    # stored expiries are compared with the aware clock on every read
    if dt is not None and (dt.tzinfo is None or dt.utcoffset() is None):
        raise InvalidTimestamp(dt, field=field)
    return dt


def compute_expiration(
        validity_days: Optional[int],
        period_end: Optional[datetime] = None,
        *,
        now: Optional[datetime] = None,
) -> Optional[datetime]:
    """
    Expiration timestamp for a new grant.

      - validity_days <= 0 (or None)  -> None, never expires
      - period_end given              -> period_end (credits die with the billing period)
      - otherwise                     -> now + validity_days
    """
    require_aware(period_end, field="period_end")
    require_aware(now, field="now")
    if not validity_days or int(validity_days) <= 0:
        return None
    if period_end is not None:
        return period_end
    now = now or _now()
    return now + timedelta(days=int(validity_days))


def add_one_month(dt: datetime) -> datetime:
    # Preserve time + tz, clamp day (e.g. Jan 31 -> Feb 28/29)
    dt = dt.astimezone(timezone.utc)
    y = dt.year + (dt.month // 12)
    m = (dt.month % 12) + 1
    last_day = monthrange(y, m)[1]
    d = min(dt.day, last_day)
    return dt.replace(year=y, month=m, day=d)


def end_of_day(dt: datetime) -> datetime:
    return dt.astimezone(timezone.utc).replace(hour=23, minute=59, second=59, microsecond=999000)


def end_of_month(dt: datetime) -> datetime:
    """Last millisecond of dt's calendar month (UTC); used for monthly gift credits."""
    dt = dt.astimezone(timezone.utc)
    last_day = monthrange(dt.year, dt.month)[1]
    return end_of_day(dt.replace(day=last_day))


def month_window(dt: datetime) -> tuple[datetime, datetime]:
    """[start, end) of dt's calendar month in UTC."""
    dt = dt.astimezone(timezone.utc)
    start = datetime(dt.year, dt.month, 1, tzinfo=timezone.utc)
    if dt.month == 12:
        end = datetime(dt.year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        end = datetime(dt.year, dt.month + 1, 1, tzinfo=timezone.utc)
    return start, end
