# File: evbooking/domain/aggregates.py
"""
Aggregate Roots for the EV Charging Booking Platform
Following Domain-Driven Design (DDD) Aggregate Pattern

Aggregates:
1. Station - charging station capacity and schedule configuration
2. Booking - reservation lifecycle (the booking state machine)

Key Concepts:
- Aggregate roots enforce business invariants
- Domain events are raised for important state changes
- All modifications go through aggregate root methods
- Versions support optimistic concurrency at the persistence boundary
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any, Dict, List, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import logging

from .exceptions import (
    InvalidConfiguration, InvalidTransition, TooLateToModify, ValidationError
)
from .models import (
    Entity, Location, StationType, BookingStatus, VerificationToken,
    DomainEvent, BookingStatusChangedEvent, BookingRescheduledEvent,
    ensure_aware, generate_booking_reference
)


# ============================================================================
# BASE AGGREGATE ROOT
# ============================================================================

class AggregateRoot(Entity):
    """
    Base class for all aggregate roots
    Provides domain event collection and versioning
    """

    def __init__(self, id: Optional[str] = None, version: int = 1):
        super().__init__(id)
        self._version: int = version
        self._persisted_version: int = version
        self._changes: List[DomainEvent] = []
        self._logger = logging.getLogger(self.__class__.__name__)

    @property
    def version(self) -> int:
        """Get current aggregate version"""
        return self._version

    @property
    def persisted_version(self) -> int:
        """Version the aggregate had when it was loaded or last saved"""
        return self._persisted_version

    def mark_persisted(self) -> None:
        self._persisted_version = self._version

    def _increment_version(self) -> None:
        """Increment version after state change"""
        self._version += 1

    def _add_domain_event(self, event: DomainEvent) -> None:
        """Add a domain event to the list of changes"""
        self._changes.append(event)
        self._logger.debug(f"Added domain event: {event.__class__.__name__}")

    def clear_events(self) -> List[DomainEvent]:
        """Clear and return all domain events"""
        events = self._changes.copy()
        self._changes.clear()
        return events

    @property
    def has_changes(self) -> bool:
        """Check if aggregate has pending domain events"""
        return len(self._changes) > 0

    def _validate_invariants(self) -> None:
        """Validate aggregate invariants - to be overridden by subclasses"""
        pass


# ============================================================================
# BOOKING POLICIES
# ============================================================================

@dataclass(frozen=True)
class BookingPolicies:
    """Value Object: Temporal and duration rules for bookings"""
    max_advance_days: int = 7
    modification_cutoff_hours: int = 12
    min_duration_minutes: int = 30
    max_duration_minutes: int = 240
    duration_step_minutes: int = 30

    def __post_init__(self):
        """Validate policy values"""
        if self.max_advance_days <= 0:
            raise InvalidConfiguration("Max advance days must be positive")

        if self.modification_cutoff_hours < 0:
            raise InvalidConfiguration("Modification cut-off cannot be negative")

        if self.duration_step_minutes <= 0:
            raise InvalidConfiguration("Duration step must be positive")

        if not 0 < self.min_duration_minutes <= self.max_duration_minutes:
            raise InvalidConfiguration("Duration bounds must satisfy 0 < min <= max")

    @property
    def max_advance(self) -> timedelta:
        return timedelta(days=self.max_advance_days)

    @property
    def modification_cutoff(self) -> timedelta:
        return timedelta(hours=self.modification_cutoff_hours)

    def validate_duration(self, duration_minutes: Any) -> int:
        """Duration must be an integer number of minutes on the configured step"""
        if isinstance(duration_minutes, bool) or not isinstance(duration_minutes, int):
            raise ValidationError(f"Duration must be a whole number of minutes, got {duration_minutes!r}")

        if not self.min_duration_minutes <= duration_minutes <= self.max_duration_minutes:
            raise ValidationError(
                f"Duration must be between {self.min_duration_minutes} and "
                f"{self.max_duration_minutes} minutes, got {duration_minutes}"
            )

        if duration_minutes % self.duration_step_minutes != 0:
            raise ValidationError(
                f"Duration must be a multiple of {self.duration_step_minutes} minutes, got {duration_minutes}"
            )
        return duration_minutes

    def validate_reservation_start(self, start: datetime, now: datetime) -> datetime:
        """Start must be strictly in the future and within the advance window"""
        ensure_aware(start, "Reservation start")

        if start <= now:
            raise ValidationError("Reservation must be in the future")

        if start > now + self.max_advance:
            raise ValidationError(
                f"Reservation must be within {self.max_advance_days} days from now"
            )
        return start

    def modification_deadline(self, reservation_start: datetime) -> datetime:
        return reservation_start - self.modification_cutoff

    def can_modify(self, reservation_start: datetime, now: datetime) -> bool:
        return now < self.modification_deadline(reservation_start)

    def ensure_modifiable(self, reservation_start: datetime, now: datetime) -> None:
        if not self.can_modify(reservation_start, now):
            raise TooLateToModify(
                f"Bookings can only be changed at least {self.modification_cutoff_hours} "
                f"hours before the reservation"
            )


# ============================================================================
# STATION AGGREGATE
# ============================================================================

MAX_SLOTS_PER_DAY = 48


def resolve_timezone(name: str) -> tzinfo:
    """Resolve an IANA timezone name for station-local day boundaries"""
    if not name or name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise InvalidConfiguration(f"Unknown timezone: {name}") from e


class Station(AggregateRoot):
    """
    Aggregate Root: Charging station with its capacity configuration

    Capacity:
    - total_sockets bounds how many slots may be held concurrently
    - slots_per_day partitions each operating day into equal windows
    """

    RECONFIGURABLE_FIELDS = (
        "name", "station_type", "location", "total_sockets", "slots_per_day",
        "operating_start_hour", "operating_end_hour", "timezone"
    )
    SCHEDULE_FIELDS = (
        "total_sockets", "slots_per_day", "operating_start_hour",
        "operating_end_hour", "timezone"
    )

    def __init__(
        self,
        name: str,
        station_type: StationType,
        location: Location,
        total_sockets: int,
        slots_per_day: int,
        operating_start_hour: int = 0,
        operating_end_hour: int = 24,
        timezone: str = "UTC",
        is_active: bool = True,
        assigned_operator_id: Optional[str] = None,
        operator_username: Optional[str] = None,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
        id: Optional[str] = None,
        version: int = 1
    ):
        super().__init__(id, version)
        self.name = name
        self.station_type = station_type
        self.location = location
        self.total_sockets = total_sockets
        self.slots_per_day = slots_per_day
        self.operating_start_hour = operating_start_hour
        self.operating_end_hour = operating_end_hour
        self.timezone = timezone
        self.is_active = is_active
        self.assigned_operator_id = assigned_operator_id
        self.operator_username = operator_username
        self.created_at = created_at
        self.updated_at = updated_at or created_at

        self._validate_invariants()

    def _validate_invariants(self) -> None:
        """Validate station configuration bounds"""
        if not self.name or not self.name.strip():
            raise InvalidConfiguration("Station name is required")

        if not isinstance(self.station_type, StationType):
            try:
                self.station_type = StationType(self.station_type)
            except ValueError as e:
                raise InvalidConfiguration(f"Station type must be AC or DC, got {self.station_type!r}") from e

        if not isinstance(self.location, Location):
            raise InvalidConfiguration("Station location is required")

        if isinstance(self.total_sockets, bool) or not isinstance(self.total_sockets, int) or self.total_sockets < 1:
            raise InvalidConfiguration(f"Total sockets must be at least 1, got {self.total_sockets!r}")

        if (isinstance(self.slots_per_day, bool) or not isinstance(self.slots_per_day, int)
                or not 1 <= self.slots_per_day <= MAX_SLOTS_PER_DAY):
            raise InvalidConfiguration(
                f"Slots per day must be between 1 and {MAX_SLOTS_PER_DAY}, got {self.slots_per_day!r}"
            )

        if not 0 <= self.operating_start_hour <= 23:
            raise InvalidConfiguration("Operating start hour must be between 0 and 23")

        if not self.operating_start_hour < self.operating_end_hour <= 24:
            raise InvalidConfiguration("Operating end hour must be after start hour and at most 24")

        resolve_timezone(self.timezone)

    # ========================================================================
    # SCHEDULE CONFIGURATION
    # ========================================================================

    @property
    def zone(self) -> tzinfo:
        return resolve_timezone(self.timezone)

    @property
    def operating_minutes(self) -> int:
        return (self.operating_end_hour - self.operating_start_hour) * 60

    @property
    def slot_length(self) -> timedelta:
        """Nominal slot length (actual windows absorb DST shifts)"""
        return timedelta(minutes=self.operating_minutes) / self.slots_per_day

    def schedule_signature(self) -> Tuple[Any, ...]:
        return tuple(getattr(self, name) for name in self.SCHEDULE_FIELDS)

    def reconfigure(self, now: datetime, **changes: Any) -> bool:
        """
        Apply a full back-office edit
        Returns: True if the slot schedule configuration changed
        """
        unknown = set(changes) - set(self.RECONFIGURABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown station fields: {', '.join(sorted(unknown))}")

        previous = {name: getattr(self, name) for name in self.RECONFIGURABLE_FIELDS}
        old_signature = self.schedule_signature()

        for name, value in changes.items():
            setattr(self, name, value)

        try:
            self._validate_invariants()
        except InvalidConfiguration:
            for name, value in previous.items():
                setattr(self, name, value)
            raise

        self.updated_at = now
        self._increment_version()
        schedule_changed = self.schedule_signature() != old_signature
        self._logger.info(
            f"Station {self.id} reconfigured (schedule changed: {schedule_changed})"
        )
        return schedule_changed

    # ========================================================================
    # ACTIVATION AND OPERATOR
    # ========================================================================

    def activate(self, now: datetime) -> None:
        self.is_active = True
        self.updated_at = now
        self._increment_version()

    def deactivate(self, now: datetime) -> None:
        """Inactive stations accept no new bookings; existing ones stay valid"""
        self.is_active = False
        self.updated_at = now
        self._increment_version()

    def assign_operator(self, operator_id: str, username: Optional[str], now: datetime) -> None:
        if not operator_id or not operator_id.strip():
            raise ValidationError("Operator id is required")
        self.assigned_operator_id = operator_id
        self.operator_username = username
        self.updated_at = now
        self._increment_version()

    def is_operated_by(self, actor_id: str) -> bool:
        return self.assigned_operator_id is not None and self.assigned_operator_id == actor_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "station_type": self.station_type.value,
            "location": self.location.to_dict(),
            "total_sockets": self.total_sockets,
            "slots_per_day": self.slots_per_day,
            "operating_start_hour": self.operating_start_hour,
            "operating_end_hour": self.operating_end_hour,
            "timezone": self.timezone,
            "is_active": self.is_active,
            "assigned_operator_id": self.assigned_operator_id,
            "operator_username": self.operator_username
        }

    def __str__(self) -> str:
        state = "active" if self.is_active else "inactive"
        return f"{self.name} [{self.station_type}] {self.total_sockets} sockets ({state})"


# ============================================================================
# BOOKING AGGREGATE
# ============================================================================

class Booking(AggregateRoot):
    """
    Aggregate Root: Booking state machine

    States:
    - Pending -> Approved -> Completed (terminal)
    - Pending -> Cancelled (terminal)
    - Approved -> Cancelled (terminal)

    A booking holds an ordered run of contiguous slots on one socket lane.
    The reservation is represented as start + duration only.
    """

    def __init__(
        self,
        owner_id: str,
        station_id: str,
        slot_ids: Sequence[str],
        reservation_start: datetime,
        duration_minutes: int,
        status: BookingStatus = BookingStatus.PENDING,
        booking_reference: Optional[str] = None,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
        approved_at: Optional[datetime] = None,
        approved_by: Optional[str] = None,
        cancelled_at: Optional[datetime] = None,
        cancelled_by: Optional[str] = None,
        completed_at: Optional[datetime] = None,
        id: Optional[str] = None,
        version: int = 1
    ):
        super().__init__(id, version)
        self.owner_id = owner_id
        self.station_id = station_id
        self.slot_ids: Tuple[str, ...] = tuple(slot_ids)
        self.reservation_start = reservation_start
        self.duration_minutes = duration_minutes
        self.status = status
        self.created_at = created_at
        self.updated_at = updated_at or created_at
        self.booking_reference = booking_reference or generate_booking_reference(
            created_at or reservation_start
        )
        self.approved_at = approved_at
        self.approved_by = approved_by
        self.cancelled_at = cancelled_at
        self.cancelled_by = cancelled_by
        self.completed_at = completed_at

        self._validate_invariants()

    @classmethod
    def request(
        cls,
        owner_id: str,
        station_id: str,
        slot_ids: Sequence[str],
        reservation_start: datetime,
        duration_minutes: int,
        policies: BookingPolicies,
        now: datetime,
        actor_id: Optional[str] = None
    ) -> 'Booking':
        """Create a new Pending booking after validating temporal rules"""
        policies.validate_duration(duration_minutes)
        policies.validate_reservation_start(reservation_start, now)

        booking = cls(
            owner_id=owner_id,
            station_id=station_id,
            slot_ids=slot_ids,
            reservation_start=reservation_start,
            duration_minutes=duration_minutes,
            created_at=now
        )
        booking._add_domain_event(BookingStatusChangedEvent(
            booking_id=booking.id,
            booking_reference=booking.booking_reference,
            station_id=station_id,
            owner_id=owner_id,
            old_status=None,
            new_status=BookingStatus.PENDING,
            actor_id=actor_id or owner_id,
            occurred_at=now
        ))
        return booking

    def _validate_invariants(self) -> None:
        """Validate booking invariants"""
        # Invariant 1: owner and station must be known
        if not self.owner_id or not str(self.owner_id).strip():
            raise ValidationError("Owner id (NIC) is required")
        if not self.station_id:
            raise ValidationError("Station id is required")

        # Invariant 2: at least one slot is held
        if not self.slot_ids:
            raise ValidationError("Booking must reference at least one slot")

        # Invariant 3: timezone-aware start
        ensure_aware(self.reservation_start, "Reservation start")

        if not isinstance(self.status, BookingStatus):
            self.status = BookingStatus(self.status)

    # ========================================================================
    # DERIVED PROPERTIES
    # ========================================================================

    @property
    def slot_id(self) -> str:
        """First slot of the reserved span"""
        return self.slot_ids[0]

    @property
    def reservation_end(self) -> datetime:
        return self.reservation_start + timedelta(minutes=self.duration_minutes)

    def is_upcoming(self, now: datetime) -> bool:
        return self.status.is_active and self.reservation_start > now

    # ========================================================================
    # STATE MACHINE
    # ========================================================================

    def _transition(self, target: BookingStatus, now: datetime, actor_id: Optional[str]) -> None:
        if not self.status.can_transition_to(target):
            raise InvalidTransition(
                f"Booking {self.booking_reference} is {self.status.value}; "
                f"cannot move to {target.value}"
            )

        old_status = self.status
        self.status = target
        self.updated_at = now
        self._increment_version()
        self._add_domain_event(BookingStatusChangedEvent(
            booking_id=self.id,
            booking_reference=self.booking_reference,
            station_id=self.station_id,
            owner_id=self.owner_id,
            old_status=old_status,
            new_status=target,
            actor_id=actor_id,
            occurred_at=now
        ))
        self._logger.info(
            f"Booking {self.booking_reference}: {old_status.value} -> {target.value}"
        )

    def approve(self, actor_id: str, now: datetime) -> None:
        """Pending -> Approved"""
        if self.status != BookingStatus.PENDING:
            raise InvalidTransition(
                f"Only Pending bookings can be approved; {self.booking_reference} is {self.status.value}"
            )
        self._transition(BookingStatus.APPROVED, now, actor_id)
        self.approved_at = now
        self.approved_by = actor_id

    def cancel(self, actor_id: str, now: datetime, policies: BookingPolicies) -> None:
        """Pending/Approved -> Cancelled, only outside the cut-off window"""
        if not self.status.can_transition_to(BookingStatus.CANCELLED):
            raise InvalidTransition(
                f"Booking {self.booking_reference} is {self.status.value} and cannot be cancelled"
            )
        policies.ensure_modifiable(self.reservation_start, now)
        self._transition(BookingStatus.CANCELLED, now, actor_id)
        self.cancelled_at = now
        self.cancelled_by = actor_id

    def complete(self, redemption_proof: VerificationToken, now: datetime, actor_id: Optional[str] = None) -> None:
        """
        Approved -> Completed
        Only reachable through a consumed verification token for this booking
        """
        if redemption_proof is None or redemption_proof.booking_id != self.id:
            raise InvalidTransition("Completion requires a redemption token bound to this booking")
        if not redemption_proof.is_redeemed:
            raise InvalidTransition("Completion requires a consumed redemption token")

        self._transition(BookingStatus.COMPLETED, now, actor_id)
        self.completed_at = now

    def ensure_modifiable(self, policies: BookingPolicies, now: datetime) -> None:
        if self.status.is_terminal:
            raise InvalidTransition(
                f"Booking {self.booking_reference} is {self.status.value} and cannot be modified"
            )
        policies.ensure_modifiable(self.reservation_start, now)

    def reschedule(
        self,
        reservation_start: datetime,
        duration_minutes: int,
        slot_ids: Sequence[str],
        policies: BookingPolicies,
        now: datetime,
        actor_id: Optional[str] = None
    ) -> bool:
        """
        Change time, duration and/or slot span
        Returns: True if anything changed
        """
        self.ensure_modifiable(policies, now)
        policies.validate_duration(duration_minutes)
        if reservation_start != self.reservation_start:
            policies.validate_reservation_start(reservation_start, now)

        slot_ids = tuple(slot_ids)
        if not slot_ids:
            raise ValidationError("Booking must reference at least one slot")

        changed = (
            reservation_start != self.reservation_start
            or duration_minutes != self.duration_minutes
            or slot_ids != self.slot_ids
        )
        if not changed:
            return False

        self.reservation_start = reservation_start
        self.duration_minutes = duration_minutes
        self.slot_ids = slot_ids
        self.updated_at = now
        self._increment_version()
        self._add_domain_event(BookingRescheduledEvent(
            booking_id=self.id,
            booking_reference=self.booking_reference,
            station_id=self.station_id,
            owner_id=self.owner_id,
            reservation_start=reservation_start,
            duration_minutes=duration_minutes,
            slot_ids=slot_ids,
            actor_id=actor_id,
            occurred_at=now
        ))
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "booking_reference": self.booking_reference,
            "owner_id": self.owner_id,
            "station_id": self.station_id,
            "slot_id": self.slot_id,
            "slot_ids": list(self.slot_ids),
            "reservation_start": self.reservation_start.isoformat(),
            "duration_minutes": self.duration_minutes,
            "status": self.status.value
        }

    def __str__(self) -> str:
        return (
            f"Booking {self.booking_reference} at {self.reservation_start.isoformat()} "
            f"for {self.duration_minutes} min ({self.status.value})"
        )
