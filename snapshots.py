"""Window arithmetic and aggregation for hourly / daily usage snapshots."""
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from models import UsageRecord, UsageSnapshot, ensure_utc

PERIOD_LENGTHS = {
    "hourly": timedelta(hours=1),
    "daily": timedelta(days=1),
}


@dataclass(frozen=True)
class Window:
    period: str
    start: datetime
    end: datetime

    def contains(self, timestamp: datetime) -> bool:
        return self.start <= ensure_utc(timestamp) < self.end

    def next(self) -> "Window":
        return window_starting(self.period, self.end)


def floor_to_period(period: str, moment: datetime) -> datetime:
    moment = ensure_utc(moment)
    if period == "hourly":
        return moment.replace(minute=0, second=0, microsecond=0)
    if period == "daily":
        return moment.replace(hour=0, minute=0, second=0, microsecond=0)
    raise ValueError(f"Unknown period: {period}")


def window_starting(period: str, start: datetime) -> Window:
    start = floor_to_period(period, start)
    return Window(period=period, start=start, end=start + PERIOD_LENGTHS[period])


def last_closed_window(period: str, now: datetime) -> Window:
    """The most recent window whose end is not after ``now``."""
    start = floor_to_period(period, now) - PERIOD_LENGTHS[period]
    return window_starting(period, start)


def at_boundary(period: str, now: datetime) -> bool:
    """Wall-clock trigger: minute 0 for hourly, 00:00 for daily."""
    now = ensure_utc(now)
    if period == "hourly":
        return now.minute == 0
    return now.hour == 0 and now.minute == 0


def windows_to_materialize(period: str, now: datetime, last_done: Optional[datetime],
                           max_windows: int = 48, settle: timedelta = timedelta(0)) -> List[Window]:
    """Closed windows strictly after ``last_done``, oldest first.

    A window only counts as closed once ``settle`` has passed since its end,
    so records stamped just before the boundary and persisted just after it
    still land in their window. With no marker yet only the last closed
    window is returned; history before the first run is not backfilled.
    """
    latest = last_closed_window(period, ensure_utc(now) - settle)
    if last_done is None:
        return [latest]
    last_done = floor_to_period(period, last_done)
    windows: List[Window] = []
    window = window_starting(period, last_done).next()
    while window.start <= latest.start:
        windows.append(window)
        window = window.next()
    # A long outage is caught up over several ticks
    return windows[:max_windows]


def histogram(values: Iterable) -> "OrderedDict[str, int]":
    """Count occurrences; keys are strings in ascending order."""
    counts: Dict[str, int] = {}
    for value in values:
        key = str(value)
        counts[key] = counts.get(key, 0) + 1
    return OrderedDict(sorted(counts.items(), key=lambda item: _histogram_sort_key(item[0])))


def _histogram_sort_key(key: str) -> Tuple[int, object]:
    # numeric keys (status codes) sort numerically, everything else lexically
    return (0, int(key)) if key.isdigit() else (1, key)


def build_snapshot(user_id: str, api_id: str, window: Window, records: List[UsageRecord]) -> UsageSnapshot:
    """Aggregate the records of one (user, api) group inside one window."""
    request_count = len(records)
    total_duration = sum(r.duration_ms for r in records)
    error_count = sum(1 for r in records if r.status_code >= 400)
    return UsageSnapshot(
        user_id=user_id,
        api_id=api_id,
        period=window.period,
        period_start=window.start,
        period_end=window.end,
        request_count=request_count,
        total_duration=total_duration,
        total_bytes_in=sum(r.bytes_in for r in records),
        total_bytes_out=sum(r.bytes_out for r in records),
        total_cost=round(sum(r.cost for r in records), 6),
        average_duration=(total_duration / request_count) if request_count else 0.0,
        error_count=error_count,
        success_count=request_count - error_count,
        status_codes=histogram(r.status_code for r in records),
        endpoints=histogram(r.endpoint for r in records),
    )


def aggregate_window(window: Window, records: Iterable[UsageRecord]) -> List[UsageSnapshot]:
    """One snapshot per (user, api) pair among the records inside the window."""
    groups: Dict[Tuple[str, str], List[UsageRecord]] = {}
    for record in records:
        if window.contains(record.timestamp):
            groups.setdefault((record.user_id, record.api_id), []).append(record)
    return [
        build_snapshot(user_id, api_id, window, group)
        for (user_id, api_id), group in sorted(groups.items())
    ]
