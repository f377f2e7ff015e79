# File: evbooking/application/slot_allocator.py
"""
Slot Allocator

Owns slot generation and slot reservation for all stations:
1. generate_slots  - lazy schedule of windows for a station
2. materialize     - idempotently persist the missing windows of a horizon
3. resolve_span    - contiguous run of slots covering a requested interval
4. reserve/release - atomic available <-> held transitions

The allocator never decides booking status; it only moves slots between
available and held on behalf of the Booking State Machine.
"""

from datetime import datetime, timedelta
from itertools import groupby
from typing import Callable, Dict, List, Optional, Sequence
import logging

from ..domain.aggregates import Station
from ..domain.clock import Clock
from ..domain.exceptions import CapacityExceeded, NotFound, ValidationError
from ..domain.models import Slot
from ..domain.slot_schedule import SlotSchedule, plan_missing_slots, resolve_span
from ..infrastructure.repositories import UnitOfWork
from .dtos import OperationResult, SlotGenerationDTO


class SlotAllocator:
    """Application component for slot generation and reservation"""

    def __init__(
        self,
        uow_factory: Callable[[], UnitOfWork],
        clock: Clock,
        horizon_days: int = 8
    ):
        self.uow_factory = uow_factory
        self.clock = clock
        self.horizon_days = horizon_days
        self.logger = logging.getLogger(self.__class__.__name__)

    # ========================================================================
    # GENERATION
    # ========================================================================

    def generate_slots(self, station: Station, horizon_days: Optional[int] = None) -> SlotSchedule:
        """Lazy, restartable schedule from today (station-local) over the horizon"""
        return SlotSchedule.starting_at(station, self.clock.now(), self.horizon_days if horizon_days is None else horizon_days)

    def materialize(self, uow: UnitOfWork, station: Station, horizon_days: Optional[int] = None) -> int:
        """
        Persist the windows of the horizon that do not exist yet
        Returns: number of slots created
        """
        schedule = self.generate_slots(station, horizon_days)
        existing = uow.slots.find_by_station(station.id, schedule.range_start, schedule.range_end)
        missing = plan_missing_slots(station, schedule, existing)
        created = uow.slots.add_all(missing)
        if created:
            self.logger.info(f"Created {created} slots for station {station.id}")
        return created

    def extend_horizon(self, station_ids: Optional[Sequence[str]] = None, horizon_days: Optional[int] = None) -> OperationResult:
        """
        Fill the slot horizon of active stations (all of them by default)
        Safe to run repeatedly, e.g. from a daily job.
        """
        days = self.horizon_days if horizon_days is None else horizon_days
        try:
            if days < 1:
                raise ValidationError(f"Horizon must be at least 1 day, got {days}")
            with self.uow_factory() as uow:
                if station_ids is None:
                    stations = uow.stations.find(active_only=True)
                else:
                    stations = [s for s in (uow.stations.get(i) for i in station_ids) if s is not None]
                results = [
                    SlotGenerationDTO(
                        station_id=station.id,
                        slots_created=self.materialize(uow, station, days),
                        horizon_days=days
                    )
                    for station in stations
                ]
            return OperationResult.ok(results)
        except ValidationError as e:
            self.logger.warning(f"Horizon extension rejected: {e}")
            return OperationResult.fail(e)
        except Exception as e:
            self.logger.error(f"Error extending slot horizon: {e}", exc_info=True)
            raise

    # ========================================================================
    # SPAN RESOLUTION
    # ========================================================================

    def resolve_span(
        self,
        uow: UnitOfWork,
        station: Station,
        slot_id: Optional[str],
        start: datetime,
        duration_minutes: int,
        holder_booking_id: Optional[str] = None,
        preferred_socket: Optional[int] = None
    ) -> List[Slot]:
        """
        Find the contiguous slots on one socket lane covering
        [start, start + duration)

        Slots already held by holder_booking_id count as available, so a
        booking can be rescheduled onto slots it partly holds.

        Raises:
            NotFound: slot_id does not exist
            ValidationError: slot/start mismatch or interval beyond the schedule
            CapacityExceeded: no lane has the whole span available
        """
        end = start + timedelta(minutes=duration_minutes)

        def usable(span: List[Slot]) -> bool:
            return all(
                s.is_available or (holder_booking_id is not None and s.booking_id == holder_booking_id)
                for s in span
            )

        if slot_id is not None:
            slot = uow.slots.get(slot_id)
            if slot is None:
                raise NotFound(f"Slot {slot_id} not found")
            if slot.station_id != station.id:
                raise ValidationError(f"Slot {slot_id} does not belong to station {station.id}")
            if slot.socket_number > station.total_sockets:
                raise ValidationError(f"Slot {slot_id} is on socket {slot.socket_number}, which the station no longer has")
            if not slot.contains(start):
                raise ValidationError("Reservation start must fall inside the chosen slot")

            lane = uow.slots.find_by_station(station.id, start, end, socket_number=slot.socket_number)
            span = resolve_span(lane, start, end)
            if span is None:
                raise ValidationError("Requested time extends beyond the generated slot schedule")
            if not usable(span):
                raise CapacityExceeded(f"Slot span starting at {slot.start_time.isoformat()} is not available")
            return span

        candidates = sorted(
            (s for s in uow.slots.find_by_station(station.id, start, end) if s.socket_number <= station.total_sockets),
            key=lambda s: s.socket_number
        )
        lanes: Dict[int, List[Slot]] = {
            socket: list(slots) for socket, slots in groupby(candidates, key=lambda s: s.socket_number)
        }
        order = sorted(lanes, key=lambda socket: (socket != preferred_socket, socket))

        covered = False
        for socket in order:
            span = resolve_span(lanes[socket], start, end)
            if span is None:
                continue
            covered = True
            if usable(span):
                return span

        if not covered:
            raise ValidationError("No generated slots cover the requested time")
        raise CapacityExceeded("All sockets are booked for the requested time")

    # ========================================================================
    # RESERVATION
    # ========================================================================

    def reserve(self, uow: UnitOfWork, slot_ids: Sequence[str], booking_id: str) -> None:
        """All-or-nothing; raises SlotConflict when any slot was taken meanwhile"""
        uow.slots.reserve(slot_ids, booking_id)

    def release(self, uow: UnitOfWork, booking_id: str, slot_ids: Optional[Sequence[str]] = None) -> int:
        return uow.slots.release_for_booking(booking_id, slot_ids)
