"""Canonical ID, day-bucket, timestamp and clock helpers.

All modules import from here instead of defining local copies.

ID Categories
-------------
1. Internal IDs: UUID v4 strings (pass_id).
2. External IDs: exchange-assigned, opaque strings (position_id, order_id).
3. Synthetic trade IDs: deterministic in (close-day bucket, position_id),
   used as the day-ledger merge key.

Timestamp Rule
--------------
All timestamps are ``datetime`` with ``tzinfo=timezone.utc``, never naive.
Exchanges speak epoch milliseconds; day buckets are epoch seconds of
UTC midnight.  Time-dependent code reads the time from an ``IClock``
so tests can pin it with a ``SimClock``.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Protocol

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def new_id() -> str:
    """Generate a new UUID v4 string."""
    return str(uuid.uuid4())


def utc_now() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(ts: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on the way back)."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def ms_to_datetime(value: int | str | None) -> datetime | None:
    """Convert epoch milliseconds (int or numeric string) to UTC datetime."""
    if value in (None, ""):
        return None
    return _EPOCH + timedelta(milliseconds=int(value))


def datetime_to_ms(ts: datetime) -> int:
    """Convert a datetime to epoch milliseconds."""
    return int(ensure_utc(ts).timestamp() * 1000)


def day_bucket(ts: datetime) -> int:
    """Epoch seconds of the UTC calendar day containing *ts*."""
    utc = ensure_utc(ts)
    midnight = utc.replace(hour=0, minute=0, second=0, microsecond=0)
    return int(midnight.timestamp())


def day_label(day: int) -> str:
    """``YYYY-MM-DD`` for a day bucket."""
    return (_EPOCH + timedelta(seconds=day)).strftime("%Y-%m-%d")


def synthetic_trade_id(day: int, position_id: str) -> str:
    """Deterministic trade id for a position closed on *day*.

    Retries of the same close always yield the same id, so the day ledger
    can deduplicate on it.
    """
    return f"t{day}_0_{position_id}"


# ---------------------------------------------------------------------------
# Clocks
# ---------------------------------------------------------------------------

class IClock(Protocol):
    def now(self) -> datetime: ...

    def now_ms(self) -> int: ...


class WallClock:
    """System time; used outside tests."""

    def now(self) -> datetime:
        return utc_now()

    def now_ms(self) -> int:
        return datetime_to_ms(utc_now())


class SimClock:
    """Pinned time that only moves forward on request.

    Signing timestamps, ``created_at``/``updated_at`` and close-attempt
    bookkeeping all become deterministic under this clock.
    """

    def __init__(self, start: datetime | None = None) -> None:
        self._now = ensure_utc(start) if start else datetime(2024, 1, 1, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._now

    def now_ms(self) -> int:
        return datetime_to_ms(self._now)

    def set_time(self, ts: datetime) -> None:
        ts = ensure_utc(ts)
        if ts < self._now:
            raise ValueError(f"SimClock cannot go backwards: {ts} < {self._now}")
        self._now = ts

    def advance(self, seconds: float) -> None:
        self.set_time(self._now + timedelta(seconds=seconds))
