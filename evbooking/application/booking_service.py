# File: evbooking/application/booking_service.py
"""
Booking Service

Drives the booking state machine through its use cases:
1. Create a Pending booking holding a contiguous slot span
2. Approve (operator of the station or back-office)
3. Reschedule (owner or back-office, outside the cut-off window)
4. Cancel (owner, operator or back-office, outside the cut-off window)
5. Role-scoped queries

Completion is not exposed here: a booking only becomes Completed by
redeeming its verification token (see verification_service.py).
"""

from typing import Any, Dict, List, Optional, Union

from ..domain.access_policy import Action
from ..domain.aggregates import Booking, Station
from ..domain.exceptions import Forbidden, NotFound, SlotConflict, StationInactive, ValidationError
from ..domain.models import ActorContext, BookingStatus
from ..infrastructure.repositories import UnitOfWork
from .base_service import ApplicationService
from .dtos import (
    BookingDTO, BookingRequestDTO, BookingUpdateDTO, ModifiabilityDTO, OperationResult
)
from .slot_allocator import SlotAllocator


class BookingService(ApplicationService):
    """Application service for the booking lifecycle"""

    def __init__(self, allocator: SlotAllocator, **kwargs):
        super().__init__(**kwargs)
        self.allocator = allocator

    # ========================================================================
    # HELPERS
    # ========================================================================

    @staticmethod
    def _load(uow: UnitOfWork, booking_id: str) -> Booking:
        booking = uow.bookings.get(booking_id)
        if booking is None:
            raise NotFound(f"Booking {booking_id} not found")
        return booking

    @staticmethod
    def _load_station(uow: UnitOfWork, station_id: str) -> Station:
        station = uow.stations.get(station_id)
        if station is None:
            raise NotFound(f"Station {station_id} not found")
        return station

    # ========================================================================
    # COMMANDS
    # ========================================================================

    def create_booking(self, actor: ActorContext, request: Union[BookingRequestDTO, Dict[str, Any]]) -> OperationResult:
        """
        Create a Pending booking

        Use Case: Reservation Request
        1. Check the caller may book for this owner
        2. Validate duration and start against the service clock
        3. Check the station exists and is active
        4. Resolve the slot span covering [start, start + duration)
        5. Atomically reserve the span and insert the booking
        """
        def work(uow: UnitOfWork) -> BookingDTO:
            dto = request if isinstance(request, BookingRequestDTO) else BookingRequestDTO(**request)

            # Step 1: Authorization
            self.access_policy.require(actor, Action.CREATE_BOOKING, owner_id=dto.owner_id)

            # Step 2: Temporal rules
            now = self.clock.now()
            self.policies.validate_duration(dto.duration_minutes)
            self.policies.validate_reservation_start(dto.reservation_start, now)

            # Step 3: Station
            station = self._load_station(uow, dto.station_id)
            if not station.is_active:
                raise StationInactive(f"Station {station.name} is not accepting bookings")

            # Step 4: Slot span
            span = self.allocator.resolve_span(
                uow, station, dto.slot_id, dto.reservation_start, dto.duration_minutes
            )

            # Step 5: Reserve and persist
            booking = Booking.request(
                owner_id=dto.owner_id,
                station_id=station.id,
                slot_ids=[slot.id for slot in span],
                reservation_start=dto.reservation_start,
                duration_minutes=dto.duration_minutes,
                policies=self.policies,
                now=now,
                actor_id=actor.actor_id
            )
            self.allocator.reserve(uow, booking.slot_ids, booking.id)
            uow.bookings.add(booking)

            self.logger.info(
                f"Created booking {booking.booking_reference} for {booking.owner_id} "
                f"at station {station.id} (socket {span[0].socket_number})"
            )
            return BookingDTO.from_domain(booking)

        return self._execute("create_booking", lambda: self._transaction(work, SlotConflict))

    def approve_booking(self, actor: ActorContext, booking_id: str) -> OperationResult:
        """Pending -> Approved by the station's operator or back-office"""
        def work(uow: UnitOfWork) -> BookingDTO:
            booking = self._load(uow, booking_id)
            station = uow.stations.get(booking.station_id)
            self.access_policy.require(actor, Action.APPROVE_BOOKING, booking=booking, station=station)

            booking.approve(actor.actor_id, self.clock.now())
            uow.bookings.save(booking)
            return BookingDTO.from_domain(booking)

        return self._execute("approve_booking", lambda: self._transaction(work))

    def update_booking(
        self,
        actor: ActorContext,
        booking_id: str,
        changes: Union[BookingUpdateDTO, Dict[str, Any]]
    ) -> OperationResult:
        """
        Reschedule a Pending or Approved booking

        Use Case: Booking Modification
        1. Check ownership, status and the modification cut-off
        2. Validate the new time and duration
        3. Resolve the new slot span (preferring the current socket)
        4. Reserve newly needed slots, then release the ones no longer needed
        5. Revoke outstanding tokens when time or slots changed
        """
        def work(uow: UnitOfWork) -> BookingDTO:
            dto = changes if isinstance(changes, BookingUpdateDTO) else BookingUpdateDTO(**changes)

            # Step 1: Authorization and lifecycle checks
            booking = self._load(uow, booking_id)
            station = self._load_station(uow, booking.station_id)
            self.access_policy.require(actor, Action.UPDATE_BOOKING, booking=booking, station=station)
            now = self.clock.now()
            booking.ensure_modifiable(self.policies, now)

            # Step 2: New values
            start = dto.reservation_start or booking.reservation_start
            duration = dto.duration_minutes if dto.duration_minutes is not None else booking.duration_minutes
            self.policies.validate_duration(duration)
            if start != booking.reservation_start:
                self.policies.validate_reservation_start(start, now)

            if start == booking.reservation_start and duration == booking.duration_minutes and dto.slot_id is None:
                return BookingDTO.from_domain(booking)

            # Step 3: Span
            if not station.is_active:
                raise StationInactive(f"Station {station.name} is not accepting new reservations")
            current = uow.slots.get(booking.slot_id)
            span = self.allocator.resolve_span(
                uow, station, dto.slot_id, start, duration,
                holder_booking_id=booking.id,
                preferred_socket=current.socket_number if current else None
            )
            new_ids = [slot.id for slot in span]
            to_acquire = [i for i in new_ids if i not in booking.slot_ids]
            to_release = [i for i in booking.slot_ids if i not in new_ids]
            slots_changed = bool(to_acquire or to_release)
            time_changed = start != booking.reservation_start or duration != booking.duration_minutes

            if not booking.reschedule(start, duration, new_ids, self.policies, now, actor.actor_id):
                return BookingDTO.from_domain(booking)

            # Step 4: Swap slots; any failure rolls back and keeps the old reservation
            self.allocator.reserve(uow, to_acquire, booking.id)
            self.allocator.release(uow, booking.id, to_release)
            uow.bookings.save(booking)

            # Step 5: Tokens describe the old reservation
            if time_changed or slots_changed:
                revoked = uow.tokens.revoke_outstanding(booking.id, now)
                if revoked:
                    self.logger.info(f"Revoked {revoked} token(s) of booking {booking.booking_reference}")

            self.logger.info(f"Rescheduled booking {booking.booking_reference} to {start.isoformat()} ({duration} min)")
            return BookingDTO.from_domain(booking)

        return self._execute("update_booking", lambda: self._transaction(work, SlotConflict))

    def cancel_booking(self, actor: ActorContext, booking_id: str) -> OperationResult:
        """
        Pending/Approved -> Cancelled

        The cut-off applies to every role, back-office included.
        """
        def work(uow: UnitOfWork) -> BookingDTO:
            booking = self._load(uow, booking_id)
            station = uow.stations.get(booking.station_id)
            self.access_policy.require(actor, Action.CANCEL_BOOKING, booking=booking, station=station)

            now = self.clock.now()
            booking.cancel(actor.actor_id, now, self.policies)
            uow.bookings.save(booking)
            released = self.allocator.release(uow, booking.id)
            uow.tokens.revoke_outstanding(booking.id, now)

            self.logger.info(f"Cancelled booking {booking.booking_reference}; released {released} slot(s)")
            return BookingDTO.from_domain(booking)

        return self._execute("cancel_booking", lambda: self._transaction(work))

    # ========================================================================
    # QUERIES
    # ========================================================================

    def get_booking(self, actor: ActorContext, booking_id: str) -> OperationResult:
        def work(uow: UnitOfWork) -> BookingDTO:
            booking = self._load(uow, booking_id)
            station = uow.stations.get(booking.station_id)
            self.access_policy.require(actor, Action.VIEW_BOOKING, booking=booking, station=station)
            return BookingDTO.from_domain(booking)

        return self._execute("get_booking", lambda: self._read(work))

    def list_bookings(
        self,
        actor: ActorContext,
        status: Optional[str] = None,
        station_id: Optional[str] = None
    ) -> OperationResult:
        """
        Bookings visible to the caller:
        - back-office: all
        - station operator: bookings of their stations
        - EV owner: their own
        """
        def work(uow: UnitOfWork) -> List[BookingDTO]:
            statuses = None
            if status is not None:
                try:
                    statuses = [BookingStatus(status)]
                except ValueError as e:
                    raise ValidationError(f"Unknown booking status: {status!r}") from e

            owner_id = None
            station_ids = [station_id] if station_id is not None else None
            if actor.is_station_operator:
                operated = uow.stations.find_ids_by_operator(actor.actor_id)
                station_ids = [s for s in (station_ids or operated) if s in operated]
            elif actor.is_ev_owner:
                owner_id = actor.actor_id

            bookings = uow.bookings.find(owner_id=owner_id, station_ids=station_ids, statuses=statuses)
            return [BookingDTO.from_domain(b) for b in bookings]

        return self._execute("list_bookings", lambda: self._read(work))

    def list_upcoming(self, actor: ActorContext, owner_id: Optional[str] = None) -> OperationResult:
        """Pending/Approved bookings of an owner that have not started yet"""
        def work(uow: UnitOfWork) -> List[BookingDTO]:
            owner = owner_id or actor.actor_id
            if owner != actor.actor_id and not actor.is_backoffice:
                raise Forbidden("Only back-office can list another owner's bookings")
            active = [s for s in BookingStatus if s.is_active]
            bookings = uow.bookings.find(owner_id=owner, statuses=active, start_after=self.clock.now())
            return [BookingDTO.from_domain(b) for b in bookings]

        return self._execute("list_upcoming", lambda: self._read(work))

    def can_modify(self, actor: ActorContext, booking_id: str) -> OperationResult:
        """Whether the booking may still be rescheduled or cancelled, and until when"""
        def work(uow: UnitOfWork) -> ModifiabilityDTO:
            booking = self._load(uow, booking_id)
            station = uow.stations.get(booking.station_id)
            self.access_policy.require(actor, Action.VIEW_BOOKING, booking=booking, station=station)

            deadline = self.policies.modification_deadline(booking.reservation_start)
            reason = None
            if booking.status.is_terminal:
                reason = f"Booking is {booking.status.value}"
            elif not self.policies.can_modify(booking.reservation_start, self.clock.now()):
                reason = f"Changes close {self.policies.modification_cutoff_hours} hours before the reservation"
            return ModifiabilityDTO(
                booking_id=booking.id,
                can_modify=reason is None,
                reason=reason,
                deadline=deadline
            )

        return self._execute("can_modify", lambda: self._read(work))
