"""Tiny time helpers for window arithmetic and stored timestamps."""

from datetime import date, datetime, time, timezone


def at(day: date, t: time) -> datetime:
    return datetime.combine(day, t)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_utc(dt: datetime) -> datetime:
    # naive values are read as local time
    return dt.astimezone(timezone.utc)


def minutes_between(a: datetime, b: datetime) -> float:
    return (b - a).total_seconds() / 60.0  # negative when b precedes a


def overlap_minutes(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> float:
    # half-open intervals: touching endpoints give 0
    latest_start = max(a_start, b_start)
    earliest_end = min(a_end, b_end)
    return max(0.0, minutes_between(latest_start, earliest_end))
