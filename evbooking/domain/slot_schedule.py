# File: evbooking/domain/slot_schedule.py
"""
Slot Schedule Generation

Turns a station's capacity configuration into discrete, non-overlapping
bookable windows:

1. Each operating day (in the station's local timezone) is partitioned
   into slots_per_day equal windows, aligned to the local day boundary.
2. Every physical socket gets its own lane of windows.
3. The schedule is a lazy, finite, restartable sequence: iterating a
   SlotSchedule twice yields the same windows in the same order.

Gap filling (plan_missing_slots) makes persistence idempotent: a window is
only materialized when no existing slot on the same lane overlaps it.
"""

from bisect import bisect_left
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from .aggregates import Station
from .exceptions import ValidationError
from .models import Slot


@dataclass(frozen=True)
class SlotWindow:
    """Value Object: one generated window on one socket lane"""
    socket_number: int
    start: datetime
    end: datetime

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return self.start < end and self.end > start

    def to_slot(self, station_id: str) -> Slot:
        return Slot(
            station_id=station_id,
            socket_number=self.socket_number,
            start_time=self.start,
            end_time=self.end
        )


def day_windows(station: Station, day: date) -> List[Tuple[datetime, datetime]]:
    """
    Partition one local operating day into slots_per_day equal windows
    Boundaries are returned as UTC instants; the last boundary is exactly
    the local closing time even across DST changes.
    """
    zone = station.zone
    opening = datetime.combine(day, time(station.operating_start_hour), tzinfo=zone)
    if station.operating_end_hour == 24:
        closing = datetime.combine(day + timedelta(days=1), time(0), tzinfo=zone)
    else:
        closing = datetime.combine(day, time(station.operating_end_hour), tzinfo=zone)

    opening = opening.astimezone(timezone.utc)
    closing = closing.astimezone(timezone.utc)
    total_seconds = int((closing - opening).total_seconds())

    count = station.slots_per_day
    boundaries = [opening + timedelta(seconds=total_seconds * i // count) for i in range(count)]
    boundaries.append(closing)
    return list(zip(boundaries[:-1], boundaries[1:]))


class SlotSchedule:
    """
    Lazy, finite, restartable schedule of slot windows for a station

    Windows are yielded day by day, window by window, socket by socket.
    Windows that end at or before not_before are skipped.
    """

    def __init__(
        self,
        station: Station,
        first_day: date,
        horizon_days: int,
        not_before: Optional[datetime] = None
    ):
        if horizon_days < 1:
            raise ValidationError(f"Horizon must be at least 1 day, got {horizon_days}")
        self.station = station
        self.first_day = first_day
        self.horizon_days = horizon_days
        self.not_before = not_before

    @classmethod
    def starting_at(cls, station: Station, now: datetime, horizon_days: int) -> 'SlotSchedule':
        """Schedule covering horizon_days local days starting with today"""
        local_today = now.astimezone(station.zone).date()
        return cls(station, local_today, horizon_days, not_before=now)

    def __iter__(self) -> Iterator[SlotWindow]:
        return self._generate()

    def _generate(self) -> Iterator[SlotWindow]:
        for offset in range(self.horizon_days):
            day = self.first_day + timedelta(days=offset)
            for start, end in day_windows(self.station, day):
                if self.not_before is not None and end <= self.not_before:
                    continue
                for socket_number in range(1, self.station.total_sockets + 1):
                    yield SlotWindow(socket_number, start, end)

    @property
    def range_start(self) -> datetime:
        return datetime.combine(self.first_day, time(0), tzinfo=self.station.zone).astimezone(timezone.utc)

    @property
    def range_end(self) -> datetime:
        last = self.first_day + timedelta(days=self.horizon_days)
        return datetime.combine(last, time(0), tzinfo=self.station.zone).astimezone(timezone.utc)


# ============================================================================
# GAP FILLING
# ============================================================================

class _Lane:
    """Sorted, non-overlapping intervals already occupied on one socket lane"""

    def __init__(self, intervals: Iterable[Tuple[datetime, datetime]]):
        ordered = sorted(intervals)
        self.starts = [s for s, _ in ordered]
        self.intervals = ordered

    def overlaps(self, start: datetime, end: datetime) -> bool:
        index = bisect_left(self.starts, end)
        # only the interval just before `end` can overlap since lanes never overlap
        if index == 0:
            return False
        _, previous_end = self.intervals[index - 1]
        return previous_end > start

    def add(self, start: datetime, end: datetime) -> None:
        index = bisect_left(self.starts, start)
        self.starts.insert(index, start)
        self.intervals.insert(index, (start, end))


def plan_missing_slots(
    station: Station,
    schedule: Iterable[SlotWindow],
    existing: Iterable[Slot]
) -> List[Slot]:
    """
    Return the new slots needed to cover the schedule

    A window is skipped when any existing slot on the same socket lane
    overlaps it, so re-running is a no-op and booked slots retained across
    a reconfiguration are never doubled up.
    """
    by_socket: Dict[int, List[Tuple[datetime, datetime]]] = defaultdict(list)
    for slot in existing:
        by_socket[slot.socket_number].append((slot.start_time, slot.end_time))

    lanes: Dict[int, _Lane] = {}
    missing: List[Slot] = []
    for window in schedule:
        lane = lanes.get(window.socket_number)
        if lane is None:
            lane = lanes[window.socket_number] = _Lane(by_socket.get(window.socket_number, []))
        if lane.overlaps(window.start, window.end):
            continue
        lane.add(window.start, window.end)
        missing.append(window.to_slot(station.id))
    return missing


# ============================================================================
# SPAN RESOLUTION
# ============================================================================

def resolve_span(lane_slots: Sequence[Slot], start: datetime, end: datetime) -> Optional[List[Slot]]:
    """
    Find the contiguous run of slots on one lane covering [start, end)

    The first slot must contain start; each following slot must begin
    exactly where the previous one ends.
    Returns: the span, or None if the lane cannot cover the interval
    """
    ordered = sorted(lane_slots, key=lambda s: s.start_time)
    span: List[Slot] = []
    for slot in ordered:
        if not span:
            if slot.contains(start):
                span.append(slot)
        elif slot.start_time == span[-1].end_time:
            span.append(slot)
        else:
            return None

        if span and span[-1].end_time >= end:
            return span
    return None
