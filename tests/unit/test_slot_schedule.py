#!/usr/bin/env python3
"""
Slot Schedule Unit Tests

Window partitioning, lazy restartable schedules, idempotent gap filling
and contiguous span resolution.
"""

from datetime import date, datetime, timedelta, timezone
import unittest

from evbooking.domain.aggregates import Station
from evbooking.domain.exceptions import ValidationError
from evbooking.domain.models import Location, Slot, StationType
from evbooking.domain.slot_schedule import (
    SlotSchedule, day_windows, plan_missing_slots, resolve_span
)

NOW = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)
DAY = date(2026, 3, 3)


def make_station(**overrides):
    data = dict(
        name="Colombo Central",
        station_type=StationType.AC,
        location=Location("12 Galle Road", "Colombo"),
        total_sockets=2,
        slots_per_day=10
    )
    data.update(overrides)
    return Station(**data)


def utc(hour, minute=0, day=DAY):
    return datetime(day.year, day.month, day.day, hour, minute, tzinfo=timezone.utc)


class TestDayWindows(unittest.TestCase):

    def test_windows_partition_the_day(self):
        windows = day_windows(make_station(), DAY)

        self.assertEqual(len(windows), 10)
        self.assertEqual(windows[0], (utc(0), utc(2, 24)))
        self.assertEqual(windows[-1][1], utc(0) + timedelta(days=1))
        for (_, end), (start, _) in zip(windows, windows[1:]):
            self.assertEqual(end, start)

    def test_uneven_partition_uses_whole_seconds(self):
        windows = day_windows(make_station(slots_per_day=7), DAY)
        total = sum((end - start).total_seconds() for start, end in windows)
        self.assertEqual(total, 24 * 3600)
        self.assertTrue(all(start.microsecond == 0 for start, _ in windows))

    def test_operating_hours_in_local_time(self):
        station = make_station(operating_start_hour=6, operating_end_hour=22, slots_per_day=4,
                               timezone="Asia/Colombo")
        windows = day_windows(station, DAY)
        self.assertEqual(windows[0][0], utc(0, 30))
        self.assertEqual(windows[-1][1], utc(16, 30))
        self.assertEqual(windows[0][1] - windows[0][0], timedelta(hours=4))

    def test_short_dst_day(self):
        station = make_station(slots_per_day=24, timezone="Europe/London")
        spring_forward = date(2026, 3, 29)

        windows = day_windows(station, spring_forward)

        self.assertEqual(len(windows), 24)
        self.assertEqual(windows[0][0], utc(0, day=spring_forward))
        self.assertEqual(windows[-1][1], utc(23, day=spring_forward))


class TestSlotSchedule(unittest.TestCase):

    def setUp(self):
        self.station = make_station()

    def test_schedule_is_restartable(self):
        schedule = SlotSchedule(self.station, DAY, horizon_days=2)
        first = list(schedule)
        second = list(schedule)

        self.assertEqual(len(first), 2 * 10 * 2)
        self.assertEqual(first, second)
        self.assertEqual([w.socket_number for w in first[:2]], [1, 2])

    def test_starting_at_skips_elapsed_windows(self):
        schedule = SlotSchedule.starting_at(self.station, NOW, horizon_days=1)
        windows = list(schedule)

        self.assertEqual(len(windows), 7 * 2)
        self.assertEqual(windows[0].start, datetime(2026, 3, 2, 7, 12, tzinfo=timezone.utc))
        self.assertEqual(schedule.range_start, datetime(2026, 3, 2, tzinfo=timezone.utc))
        self.assertEqual(schedule.range_end, datetime(2026, 3, 3, tzinfo=timezone.utc))

    def test_horizon_must_be_positive(self):
        with self.assertRaises(ValidationError):
            SlotSchedule(self.station, DAY, horizon_days=0)


class TestPlanMissingSlots(unittest.TestCase):

    def setUp(self):
        self.station = make_station()
        self.schedule = SlotSchedule(self.station, DAY, horizon_days=1)

    def test_gap_filling_is_idempotent(self):
        created = plan_missing_slots(self.station, self.schedule, [])
        self.assertEqual(len(created), 20)
        self.assertEqual(plan_missing_slots(self.station, self.schedule, created), [])

    def test_windows_overlapping_existing_slots_are_skipped(self):
        retained = Slot(self.station.id, 1, utc(1), utc(3), is_available=False, booking_id="b-1")

        created = plan_missing_slots(self.station, self.schedule, [retained])

        lane_one = [s for s in created if s.socket_number == 1]
        self.assertEqual(len(lane_one), 8)
        self.assertTrue(all(not s.window.overlaps(retained.window) for s in lane_one))
        self.assertEqual(len([s for s in created if s.socket_number == 2]), 10)


class TestResolveSpan(unittest.TestCase):

    def setUp(self):
        self.lane = [
            Slot("station-1", 1, utc(0), utc(2, 24)),
            Slot("station-1", 1, utc(2, 24), utc(4, 48)),
            Slot("station-1", 1, utc(4, 48), utc(7, 12)),
        ]

    def test_single_slot(self):
        self.assertEqual(resolve_span(self.lane, utc(1), utc(2)), self.lane[:1])

    def test_contiguous_span(self):
        self.assertEqual(resolve_span(list(reversed(self.lane)), utc(2), utc(5)), self.lane)

    def test_span_beyond_lane(self):
        self.assertIsNone(resolve_span(self.lane, utc(6), utc(8)))

    def test_gap_breaks_span(self):
        lane = [self.lane[0], self.lane[2]]
        self.assertIsNone(resolve_span(lane, utc(1), utc(5)))

    def test_start_outside_lane(self):
        self.assertIsNone(resolve_span(self.lane, utc(8), utc(9)))


if __name__ == '__main__':
    unittest.main()
