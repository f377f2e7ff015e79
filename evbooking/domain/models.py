# File: evbooking/domain/models.py
"""
Domain Models for the EV Charging Booking Platform
Following Domain-Driven Design (DDD) principles with rich domain models

This module contains:
1. Value Objects: Location, ActorContext, TimeWindow
2. Enums: StationType, BookingStatus, ActorRole
3. Entities: Slot, VerificationToken
4. Domain Events: BookingStatusChangedEvent, BookingRescheduledEvent

Station and Booking are aggregate roots and live in aggregates.py.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple
import secrets
import uuid

from .exceptions import InvalidToken, TokenAlreadyRedeemed, ValidationError


# ============================================================================
# DOMAIN PRIMITIVES / VALUE OBJECTS
# ============================================================================

@dataclass(frozen=True)
class Location:
    """
    Value Object: Physical station location
    Coordinates are optional but validated when present
    """
    address: str
    city: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    def __post_init__(self):
        """Validate location data"""
        if not self.address or not self.address.strip():
            raise ValidationError("Address is required")

        if not self.city or not self.city.strip():
            raise ValidationError("City is required")

        object.__setattr__(self, 'address', self.address.strip())
        object.__setattr__(self, 'city', self.city.strip())

        if self.latitude is not None and not -90 <= self.latitude <= 90:
            raise ValidationError(f"Latitude must be between -90 and 90: {self.latitude}")

        if self.longitude is not None and not -180 <= self.longitude <= 180:
            raise ValidationError(f"Longitude must be between -180 and 180: {self.longitude}")

    def __str__(self) -> str:
        return f"{self.address}, {self.city}"

    def get_coordinates(self) -> Optional[Tuple[float, float]]:
        """Get coordinates as tuple if available"""
        if self.latitude is not None and self.longitude is not None:
            return (self.latitude, self.longitude)
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "city": self.city,
            "latitude": self.latitude,
            "longitude": self.longitude
        }


@dataclass(frozen=True)
class TimeWindow:
    """
    Value Object: Half-open time window [start, end)
    Both ends must be timezone-aware instants
    """
    start: datetime
    end: datetime

    def __post_init__(self):
        ensure_aware(self.start, "Window start")
        ensure_aware(self.end, "Window end")
        if self.end <= self.start:
            raise ValidationError("Window end must be after window start")

    @property
    def duration_minutes(self) -> float:
        return (self.end - self.start).total_seconds() / 60

    def contains(self, instant: datetime) -> bool:
        """Check if instant falls inside the window (start inclusive)"""
        return self.start <= instant < self.end

    def overlaps(self, other: 'TimeWindow') -> bool:
        return self.start < other.end and self.end > other.start

    def __str__(self) -> str:
        return f"{self.start.isoformat()} to {self.end.isoformat()}"


# ============================================================================
# ENUMS FOR DOMAIN TYPES
# ============================================================================

class StationType(Enum):
    """Charging current type offered by a station"""
    AC = "AC"
    DC = "DC"

    def __str__(self) -> str:
        return self.value


class BookingStatus(Enum):
    """
    Booking lifecycle states

    Pending -> Approved -> Completed
    Pending -> Cancelled
    Approved -> Cancelled
    """
    PENDING = "Pending"
    APPROVED = "Approved"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (BookingStatus.COMPLETED, BookingStatus.CANCELLED)

    @property
    def is_active(self) -> bool:
        """Active bookings still hold their slots and can change"""
        return not self.is_terminal

    def can_transition_to(self, target: 'BookingStatus') -> bool:
        return target in _ALLOWED_TRANSITIONS.get(self, frozenset())

    def __str__(self) -> str:
        return self.value


_ALLOWED_TRANSITIONS = {
    BookingStatus.PENDING: frozenset({BookingStatus.APPROVED, BookingStatus.CANCELLED}),
    BookingStatus.APPROVED: frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED}),
}


class ActorRole(Enum):
    """Roles supplied by the identity provider"""
    BACKOFFICE = "Backoffice"
    STATION_OPERATOR = "StationOperator"
    EV_OWNER = "EVOwner"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class ActorContext:
    """
    Value Object: Authenticated caller identity
    Issued by the external identity/session provider for every call
    """
    actor_id: str
    role: ActorRole

    def __post_init__(self):
        if not self.actor_id or not str(self.actor_id).strip():
            raise ValidationError("Actor id is required")
        if not isinstance(self.role, ActorRole):
            object.__setattr__(self, 'role', ActorRole(self.role))

    @property
    def is_backoffice(self) -> bool:
        return self.role == ActorRole.BACKOFFICE

    @property
    def is_station_operator(self) -> bool:
        return self.role == ActorRole.STATION_OPERATOR

    @property
    def is_ev_owner(self) -> bool:
        return self.role == ActorRole.EV_OWNER

    def __str__(self) -> str:
        return f"{self.role}:{self.actor_id}"


# ============================================================================
# DOMAIN ENTITIES
# ============================================================================

class Entity:
    """
    Base class for all domain entities
    Provides common functionality for entities with identity
    """

    def __init__(self, id: Optional[str] = None):
        self._id = id or str(uuid.uuid4())

    @property
    def id(self) -> str:
        """Get entity ID"""
        return self._id

    def __eq__(self, other: object) -> bool:
        """Entities are equal if they have the same ID and type"""
        if not isinstance(other, Entity):
            return False
        return self.id == other.id and type(self) == type(other)

    def __hash__(self) -> int:
        return hash((self.id, type(self).__name__))

    def __repr__(self) -> str:
        return f"{type(self).__name__}(id={self.id})"


class Slot(Entity):
    """
    Entity: Discrete bookable time window on one socket lane of a station

    A slot is held by at most one non-cancelled booking. Each physical
    socket owns its own lane of slots, so the number of slots held at any
    instant never exceeds the station's socket count.
    """

    def __init__(
        self,
        station_id: str,
        socket_number: int,
        start_time: datetime,
        end_time: datetime,
        is_available: bool = True,
        booking_id: Optional[str] = None,
        id: Optional[str] = None
    ):
        super().__init__(id)
        self.station_id = station_id
        self.socket_number = socket_number
        self.window = TimeWindow(start_time, end_time)
        self.is_available = is_available
        self.booking_id = booking_id

        if socket_number < 1:
            raise ValidationError(f"Socket number must be positive, got {socket_number}")

    @property
    def start_time(self) -> datetime:
        return self.window.start

    @property
    def end_time(self) -> datetime:
        return self.window.end

    @property
    def duration_minutes(self) -> float:
        return self.window.duration_minutes

    def contains(self, instant: datetime) -> bool:
        return self.window.contains(instant)

    def has_started(self, now: datetime) -> bool:
        return self.start_time <= now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "station_id": self.station_id,
            "socket_number": self.socket_number,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "is_available": self.is_available,
            "booking_id": self.booking_id
        }

    def __str__(self) -> str:
        state = "available" if self.is_available else "held"
        return f"Slot socket {self.socket_number} {self.window} ({state})"


class VerificationToken(Entity):
    """
    Entity: Single-use redemption token bound to an Approved booking

    The token string itself is the identity presented at check-in.
    """

    def __init__(
        self,
        token: str,
        booking_id: str,
        issued_at: datetime,
        expires_at: datetime,
        redeemed_at: Optional[datetime] = None,
        revoked_at: Optional[datetime] = None
    ):
        super().__init__(token)
        self.booking_id = booking_id
        self.issued_at = issued_at
        self.expires_at = expires_at
        self.redeemed_at = redeemed_at
        self.revoked_at = revoked_at

    @classmethod
    def mint(cls, booking_id: str, issued_at: datetime, expires_at: datetime) -> 'VerificationToken':
        """Create a fresh opaque token"""
        return cls(
            token=secrets.token_urlsafe(32),
            booking_id=booking_id,
            issued_at=issued_at,
            expires_at=expires_at
        )

    @property
    def token(self) -> str:
        return self.id

    @property
    def is_redeemed(self) -> bool:
        return self.redeemed_at is not None

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def check_usable(self, now: datetime) -> None:
        """Raise if the token can no longer be presented"""
        if self.is_redeemed:
            raise TokenAlreadyRedeemed(f"Token was already redeemed at {self.redeemed_at.isoformat()}")
        if self.is_revoked:
            raise InvalidToken("Token has been revoked")
        if self.is_expired(now):
            raise InvalidToken("Token has expired")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token": self.token,
            "booking_id": self.booking_id,
            "issued_at": self.issued_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "redeemed_at": self.redeemed_at.isoformat() if self.redeemed_at else None,
            "revoked_at": self.revoked_at.isoformat() if self.revoked_at else None
        }

    def __repr__(self) -> str:
        # never log the full credential
        return f"VerificationToken(booking_id={self.booking_id}, token={self.token[:6]}...)"


# ============================================================================
# DOMAIN EVENTS
# ============================================================================

class DomainEvent(ABC):
    """
    Base class for all domain events
    Events represent something that happened in the domain
    """

    event_type = "domain.event"

    def __init__(self, occurred_at: datetime):
        self.event_id = str(uuid.uuid4())
        self.timestamp = occurred_at
        self.version = "1.0"

    @abstractmethod
    def to_dict(self) -> Dict[str, Any]:
        """Convert event to dictionary for serialization"""
        pass

    def __str__(self) -> str:
        return f"{self.__class__.__name__} at {self.timestamp}"


class BookingStatusChangedEvent(DomainEvent):
    """Event raised whenever a booking enters a new status"""

    event_type = "booking.status_changed"

    def __init__(
        self,
        booking_id: str,
        booking_reference: str,
        station_id: str,
        owner_id: str,
        old_status: Optional[BookingStatus],
        new_status: BookingStatus,
        actor_id: Optional[str],
        occurred_at: datetime
    ):
        super().__init__(occurred_at)
        self.booking_id = booking_id
        self.booking_reference = booking_reference
        self.station_id = station_id
        self.owner_id = owner_id
        self.old_status = old_status
        self.new_status = new_status
        self.actor_id = actor_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type,
            "event_id": self.event_id,
            "timestamp": self.timestamp.isoformat(),
            "version": self.version,
            "data": {
                "booking_id": self.booking_id,
                "booking_reference": self.booking_reference,
                "station_id": self.station_id,
                "owner_id": self.owner_id,
                "old_status": self.old_status.value if self.old_status else None,
                "new_status": self.new_status.value,
                "actor_id": self.actor_id
            }
        }


class BookingRescheduledEvent(DomainEvent):
    """Event raised when a booking's time, duration or slots change"""

    event_type = "booking.rescheduled"

    def __init__(
        self,
        booking_id: str,
        booking_reference: str,
        station_id: str,
        owner_id: str,
        reservation_start: datetime,
        duration_minutes: int,
        slot_ids: Tuple[str, ...],
        actor_id: Optional[str],
        occurred_at: datetime
    ):
        super().__init__(occurred_at)
        self.booking_id = booking_id
        self.booking_reference = booking_reference
        self.station_id = station_id
        self.owner_id = owner_id
        self.reservation_start = reservation_start
        self.duration_minutes = duration_minutes
        self.slot_ids = slot_ids
        self.actor_id = actor_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type,
            "event_id": self.event_id,
            "timestamp": self.timestamp.isoformat(),
            "version": self.version,
            "data": {
                "booking_id": self.booking_id,
                "booking_reference": self.booking_reference,
                "station_id": self.station_id,
                "owner_id": self.owner_id,
                "reservation_start": self.reservation_start.isoformat(),
                "duration_minutes": self.duration_minutes,
                "slot_ids": list(self.slot_ids),
                "actor_id": self.actor_id
            }
        }


# ============================================================================
# UTILITY FUNCTIONS
# ============================================================================

def ensure_aware(value: datetime, label: str = "Datetime") -> datetime:
    """
    Reject naive datetimes
    All instants crossing the domain boundary must carry a timezone
    """
    if not isinstance(value, datetime):
        raise ValidationError(f"{label} must be a datetime")
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        raise ValidationError(f"{label} must be timezone-aware")
    return value


def generate_booking_reference(created_at: datetime) -> str:
    """Human-readable booking reference, e.g. BK-20261019-4F9A1C"""
    return f"BK-{created_at.strftime('%Y%m%d')}-{secrets.token_hex(3).upper()}"


