# File: evbooking/application/dtos.py
"""
Data Transfer Objects (DTOs) for the EV Charging Booking Platform

This module defines DTOs for data transfer between layers:
1. Input DTOs - requests received from clients (station config, booking requests)
2. Output DTOs - snapshots of stations, slots, bookings and tokens
3. Result DTOs - OperationResult wrapping every application-service call

DTO Principles:
- Validation of shape and types at creation; business rules stay in the domain
- No business logic, only data
- Serialization/deserialization support
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import json

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..domain.aggregates import Booking, Station
from ..domain.exceptions import BookingError
from ..domain.models import Slot, VerificationToken


# ============================================================================
# BASE DTO CLASSES
# ============================================================================

class BaseDTO(BaseModel):
    """Base DTO with common functionality"""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        use_enum_values=True
    )

    def to_dict(self, exclude_none: bool = False, **kwargs) -> Dict[str, Any]:
        """Convert DTO to dictionary"""
        data = self.model_dump(**kwargs)
        if exclude_none:
            data = {k: v for k, v in data.items() if v is not None}
        return data

    def to_json(self, **kwargs) -> str:
        """Convert DTO to JSON string"""
        return self.model_dump_json(**kwargs)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BaseDTO':
        """Create DTO from dictionary"""
        return cls(**data)

    @classmethod
    def from_json(cls, json_str: str) -> 'BaseDTO':
        """Create DTO from JSON string"""
        return cls(**json.loads(json_str))


# ============================================================================
# STATION DTOs
# ============================================================================

class StationConfigDTO(BaseDTO):
    """DTO for creating a station; bounds are enforced by the Station aggregate"""
    name: str = Field(description="Station display name")
    station_type: str = Field(description="AC or DC")
    address: str = Field(description="Street address")
    city: str = Field(description="City")
    latitude: Optional[float] = Field(default=None, description="Latitude")
    longitude: Optional[float] = Field(default=None, description="Longitude")
    total_sockets: int = Field(description="Physical sockets")
    slots_per_day: int = Field(description="Slots each operating day is divided into")
    operating_start_hour: int = Field(default=0, description="Local opening hour")
    operating_end_hour: int = Field(default=24, description="Local closing hour")
    timezone: str = Field(default="UTC", description="IANA timezone of the station")

    @field_validator('station_type')
    @classmethod
    def normalize_station_type(cls, v):
        return v.strip().upper()


class StationUpdateDTO(BaseDTO):
    """DTO for a back-office station edit; omitted fields are unchanged"""
    name: Optional[str] = None
    station_type: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    total_sockets: Optional[int] = None
    slots_per_day: Optional[int] = None
    operating_start_hour: Optional[int] = None
    operating_end_hour: Optional[int] = None
    timezone: Optional[str] = None

    @field_validator('station_type')
    @classmethod
    def normalize_station_type(cls, v):
        return v.strip().upper() if v is not None else v


class LocationDTO(BaseDTO):
    """Location DTO"""
    address: str
    city: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class StationDTO(BaseDTO):
    """Station snapshot"""
    id: str
    name: str
    station_type: str
    location: LocationDTO
    total_sockets: int
    slots_per_day: int
    operating_start_hour: int
    operating_end_hour: int
    timezone: str
    is_active: bool
    assigned_operator_id: Optional[str] = None
    operator_username: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, station: Station) -> 'StationDTO':
        return cls(
            id=station.id,
            name=station.name,
            station_type=station.station_type.value,
            location=LocationDTO(**station.location.to_dict()),
            total_sockets=station.total_sockets,
            slots_per_day=station.slots_per_day,
            operating_start_hour=station.operating_start_hour,
            operating_end_hour=station.operating_end_hour,
            timezone=station.timezone,
            is_active=station.is_active,
            assigned_operator_id=station.assigned_operator_id,
            operator_username=station.operator_username,
            created_at=station.created_at,
            updated_at=station.updated_at
        )


class OperatorCredentialsDTO(BaseDTO):
    """One-time operator credentials; the password is shown once and never stored"""
    operator_id: str
    username: str
    password: str


class StationWithOperatorDTO(BaseDTO):
    station: StationDTO
    operator: OperatorCredentialsDTO
    slots_created: int = 0


class SlotDTO(BaseDTO):
    """Slot snapshot"""
    id: str
    station_id: str
    socket_number: int
    start_time: datetime
    end_time: datetime
    is_available: bool
    booking_id: Optional[str] = None

    @classmethod
    def from_domain(cls, slot: Slot) -> 'SlotDTO':
        return cls(
            id=slot.id,
            station_id=slot.station_id,
            socket_number=slot.socket_number,
            start_time=slot.start_time,
            end_time=slot.end_time,
            is_available=slot.is_available,
            booking_id=slot.booking_id
        )


class SlotGenerationDTO(BaseDTO):
    """Result of filling a station's slot horizon"""
    station_id: str
    slots_created: int
    horizon_days: int


# ============================================================================
# BOOKING DTOs
# ============================================================================

class BookingRequestDTO(BaseDTO):
    """DTO for a booking request"""
    owner_id: str = Field(description="EV owner NIC")
    station_id: str = Field(description="Station ID")
    slot_id: Optional[str] = Field(default=None, description="Slot containing the start; chosen automatically when omitted")
    reservation_start: datetime = Field(description="Timezone-aware reservation start")
    duration_minutes: int = Field(description="Reservation length in minutes")


class BookingUpdateDTO(BaseDTO):
    """DTO for rescheduling a booking; omitted fields are unchanged"""
    reservation_start: Optional[datetime] = None
    duration_minutes: Optional[int] = None
    slot_id: Optional[str] = None


class BookingDTO(BaseDTO):
    """Booking snapshot"""
    id: str
    booking_reference: str
    owner_id: str
    station_id: str
    slot_id: str
    slot_ids: List[str]
    reservation_start: datetime
    reservation_end: datetime
    duration_minutes: int
    status: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    completed_at: Optional[datetime] = None
    version: int = 1

    @classmethod
    def from_domain(cls, booking: Booking) -> 'BookingDTO':
        return cls(
            id=booking.id,
            booking_reference=booking.booking_reference,
            owner_id=booking.owner_id,
            station_id=booking.station_id,
            slot_id=booking.slot_id,
            slot_ids=list(booking.slot_ids),
            reservation_start=booking.reservation_start,
            reservation_end=booking.reservation_end,
            duration_minutes=booking.duration_minutes,
            status=booking.status.value,
            created_at=booking.created_at,
            updated_at=booking.updated_at,
            approved_at=booking.approved_at,
            approved_by=booking.approved_by,
            cancelled_at=booking.cancelled_at,
            cancelled_by=booking.cancelled_by,
            completed_at=booking.completed_at,
            version=booking.version
        )


class ModifiabilityDTO(BaseDTO):
    """Whether a booking can still be changed or cancelled"""
    booking_id: str
    can_modify: bool
    reason: Optional[str] = None
    deadline: datetime


# ============================================================================
# VERIFICATION TOKEN DTOs
# ============================================================================

class TokenDTO(BaseDTO):
    """Issued token payload presented at check-in"""
    token: str
    booking_id: str
    booking_reference: str
    owner_id: str
    station_id: str
    station_name: Optional[str] = None
    reservation_start: datetime
    duration_minutes: int
    status: str
    issued_at: datetime
    expires_at: datetime

    @classmethod
    def from_domain(cls, token: VerificationToken, booking: Booking, station: Optional[Station]) -> 'TokenDTO':
        return cls(
            token=token.token,
            booking_id=booking.id,
            booking_reference=booking.booking_reference,
            owner_id=booking.owner_id,
            station_id=booking.station_id,
            station_name=station.name if station else None,
            reservation_start=booking.reservation_start,
            duration_minutes=booking.duration_minutes,
            status=booking.status.value,
            issued_at=token.issued_at,
            expires_at=token.expires_at
        )


class TokenValidationDTO(BaseDTO):
    """Result of a read-only token check"""
    valid: bool = True
    expires_at: datetime
    booking: BookingDTO


class RedemptionDTO(BaseDTO):
    """Result of consuming a token at the station"""
    redeemed_at: datetime
    redeemed_by: str
    booking: BookingDTO


# ============================================================================
# RESULT DTOs
# ============================================================================

class ErrorDTO(BaseDTO):
    """Typed error returned instead of raising across the service boundary"""
    kind: str = Field(description="Stable error kind, e.g. CapacityExceeded")
    message: str = Field(description="Human-readable reason")
    details: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_error(cls, error: BookingError) -> 'ErrorDTO':
        return cls(kind=error.kind, message=error.reason, details=error.details)


class OperationResult(BaseDTO):
    """Standard response of every application-service call"""
    success: bool = Field(description="Success flag")
    data: Optional[Any] = Field(default=None, description="Response data")
    error: Optional[ErrorDTO] = Field(default=None, description="Error when success is False")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def ok(cls, data: Any = None) -> 'OperationResult':
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: BookingError) -> 'OperationResult':
        return cls(success=False, error=ErrorDTO.from_error(error))

    @property
    def error_kind(self) -> Optional[str]:
        return self.error.kind if self.error else None
