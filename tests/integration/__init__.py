"""
Integration Tests Package for the EV Charging Booking Platform

These tests drive the application services end to end against a real
SQLAlchemy database (in-memory SQLite unless a test needs a file).

Test Categories:
- Station directory and slot generation
- Booking lifecycle scenarios
- Verification tokens
- Concurrent reservation and redemption races
- Command line entry point
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
import unittest

from evbooking.application.dtos import OperationResult, StationDTO
from evbooking.config import Settings
from evbooking.domain.clock import FixedClock
from evbooking.domain.models import ActorContext, ActorRole
from evbooking.main import create_platform

# Monday 08:00 UTC
NOW = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)

BACKOFFICE = ActorContext("admin-1", ActorRole.BACKOFFICE)
OPERATOR = ActorContext("op-1", ActorRole.STATION_OPERATOR)
OTHER_OPERATOR = ActorContext("op-2", ActorRole.STATION_OPERATOR)
OWNER = ActorContext("199012345678", ActorRole.EV_OWNER)
OTHER_OWNER = ActorContext("200045678901", ActorRole.EV_OWNER)


class TestDataGenerator:
    """Builds request payloads for tests"""

    __test__ = False

    @staticmethod
    def station_config(overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        data = {
            "name": "Colombo Central",
            "station_type": "DC",
            "address": "12 Galle Road",
            "city": "Colombo",
            "latitude": 6.9271,
            "longitude": 79.8612,
            "total_sockets": 4,
            "slots_per_day": 10,
        }
        data.update(overrides or {})
        return data

    @staticmethod
    def booking_request(
        station_id: str,
        start: datetime,
        duration_minutes: int = 60,
        owner_id: str = OWNER.actor_id,
        slot_id: Optional[str] = None
    ) -> Dict[str, Any]:
        return {
            "owner_id": owner_id,
            "station_id": station_id,
            "slot_id": slot_id,
            "reservation_start": start,
            "duration_minutes": duration_minutes,
        }


class PlatformTestCase(unittest.TestCase):
    """Base class wiring a platform with a fixed clock"""

    database_url = "sqlite://"
    retry_backoff_ms = 0

    def setUp(self):
        self.clock = FixedClock(NOW)
        self.settings = Settings(database_url=self.database_url, conflict_retry_backoff_ms=self.retry_backoff_ms)
        self.platform = create_platform(self.settings, clock=self.clock)
        self.addCleanup(self.platform.close)

    # Fixtures

    def create_station(self, operator: Optional[ActorContext] = OPERATOR, **overrides) -> StationDTO:
        result = self.platform.stations.create_station(BACKOFFICE, TestDataGenerator.station_config(overrides))
        self.assertSuccess(result)
        station = result.data
        if operator is not None:
            assigned = self.platform.stations.assign_operator(BACKOFFICE, station.id, operator.actor_id, "operator")
            self.assertSuccess(assigned)
            station = assigned.data
        return station

    def book(
        self,
        station_id: str,
        start: datetime,
        duration_minutes: int = 60,
        actor: ActorContext = OWNER,
        slot_id: Optional[str] = None
    ) -> OperationResult:
        request = TestDataGenerator.booking_request(
            station_id, start, duration_minutes, owner_id=actor.actor_id, slot_id=slot_id
        )
        return self.platform.bookings.create_booking(actor, request)

    def approved_booking(self, station_id: str, start: Optional[datetime] = None, **kwargs):
        created = self.book(station_id, start or NOW + timedelta(days=2), **kwargs)
        self.assertSuccess(created)
        approved = self.platform.bookings.approve_booking(OPERATOR, created.data.id)
        self.assertSuccess(approved)
        return approved.data

    def slot_at(self, station_id: str, instant: datetime, socket_number: int = 1):
        slots = self.platform.stations.list_slots(BACKOFFICE, station_id, start=instant, end=instant + timedelta(seconds=1))
        self.assertSuccess(slots)
        return next(s for s in slots.data if s.socket_number == socket_number)

    # Assertions

    def assertSuccess(self, result: OperationResult):
        self.assertTrue(result.success, f"Expected success, got {result.error}")

    def assertFailure(self, result: OperationResult, kind: str):
        self.assertFalse(result.success, f"Expected {kind}, got success")
        self.assertEqual(result.error.kind, kind, result.error.message)
