from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from .models import PauseWindow, TimingConfig

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
ONE_MS = timedelta(milliseconds=1)

Interval = tuple[int, int]


def to_millis(value: datetime) -> int:
    """Normalize a datetime to integer epoch milliseconds; naive values are read as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return (value - EPOCH) // ONE_MS


def parse_clock(value: str | None) -> time | None:
    """Parse an ``HH:MM`` clock-of-day string, returning None for anything malformed."""
    if not value:
        return None

    hours, sep, minutes = value.strip().partition(":")
    if not sep:
        return None
    try:
        hh = int(hours)
        mm = int(minutes)
    except ValueError:
        return None

    if not (0 <= hh <= 23 and 0 <= mm <= 59):
        return None
    return time(hh, mm)


def break_intervals(
    start_ms: int,
    end_ms: int,
    break_start_time: str | None,
    break_end_time: str | None,
    tz: ZoneInfo,
) -> list[Interval]:
    """Daily break windows, one per local day touched by ``[start_ms, end_ms]``.

    The first window is anchored to the local calendar day of ``start_ms``; spans
    that cross local midnight pick up the following days' windows too.
    """
    break_start = parse_clock(break_start_time)
    break_end = parse_clock(break_end_time)
    if break_start is None or break_end is None or break_end <= break_start:
        return []

    low, high = min(start_ms, end_ms), max(start_ms, end_ms)
    first_day = _local_day(low, tz)
    last_day = _local_day(high, tz)

    intervals: list[Interval] = []
    day = first_day
    while day <= last_day:
        window_start = to_millis(datetime.combine(day, break_start, tzinfo=tz))
        window_end = to_millis(datetime.combine(day, break_end, tzinfo=tz))
        if window_end > low and window_start < high:
            intervals.append((window_start, window_end))
        day += timedelta(days=1)

    return intervals


def pause_intervals(pause_windows: tuple[PauseWindow, ...] | list[PauseWindow], fallback_end_ms: int) -> list[Interval]:
    # An ongoing pause runs until the instant being measured; it is never given a stored end.
    intervals: list[Interval] = []
    for window in pause_windows:
        start = to_millis(window.start_at)
        end = to_millis(window.end_at) if window.end_at is not None else fallback_end_ms
        if end > start:
            intervals.append((start, end))
    return intervals


def merge_intervals(intervals: list[Interval]) -> list[Interval]:
    """Coalesce overlapping or touching intervals into a sorted, disjoint list."""
    if not intervals:
        return []

    ordered = sorted(intervals)
    merged: list[Interval] = [ordered[0]]
    for start, end in ordered[1:]:
        prev_start, prev_end = merged[-1]
        if start <= prev_end:
            merged[-1] = (prev_start, max(prev_end, end))
        else:
            merged.append((start, end))
    return merged


def overlap_millis(start_ms: int, end_ms: int, intervals: list[Interval]) -> int:
    low, high = min(start_ms, end_ms), max(start_ms, end_ms)
    total = 0
    for interval_start, interval_end in merge_intervals(intervals):
        chunk_start = max(low, interval_start)
        chunk_end = min(high, interval_end)
        if chunk_end > chunk_start:
            total += chunk_end - chunk_start
    return total


def effective_seconds(
    in_at: datetime,
    out_at_or_now: datetime,
    timing: TimingConfig | None = None,
    min_seconds: int = 0,
) -> int:
    """Elapsed whole seconds between ``in_at`` and ``out_at_or_now`` net of downtime.

    Downtime is the daily break plus every pause window, merged first so that a
    pause declared during the break is not subtracted twice. The result is
    floored and never below ``min_seconds`` (nor below zero).
    """
    floor_seconds = max(0, min_seconds)
    start_ms = to_millis(in_at)
    end_ms = to_millis(out_at_or_now)
    if end_ms <= start_ms:
        return floor_seconds

    timing = timing or TimingConfig()
    downtime = break_intervals(start_ms, end_ms, timing.break_start_time, timing.break_end_time, timing.tz)
    downtime.extend(pause_intervals(timing.pause_windows, end_ms))

    effective_ms = max(0, (end_ms - start_ms) - overlap_millis(start_ms, end_ms, downtime))
    return max(floor_seconds, effective_ms // 1000)


def _local_day(epoch_ms: int, tz: ZoneInfo) -> date:
    return (EPOCH + timedelta(milliseconds=epoch_ms)).astimezone(tz).date()
