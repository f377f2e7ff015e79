# File: evbooking/domain/exceptions.py
"""
Domain Error Taxonomy for the EV Charging Booking Platform

Every business-rule violation is raised as a subclass of BookingError.
Each error carries:
1. kind   - a stable, machine-readable error kind
2. reason - a human-readable explanation

Application services catch these at their boundary and turn them into
typed OperationResult DTOs. ConcurrencyConflict and its subclasses are
internal signals from the persistence layer and are never returned to
callers directly.
"""

from typing import Any, Dict, Optional


class BookingError(Exception):
    """Base exception for all booking platform business errors"""

    kind = "BookingError"

    def __init__(self, reason: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(reason)
        self.reason = reason
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for serialization"""
        return {"kind": self.kind, "message": self.reason, "details": self.details}

    def __str__(self) -> str:
        return f"{self.kind}: {self.reason}"


class ValidationError(BookingError):
    """Malformed or out-of-range input"""
    kind = "ValidationError"


class InvalidConfiguration(ValidationError):
    """Station capacity or schedule configuration out of bounds"""
    kind = "InvalidConfiguration"


class NotFound(BookingError):
    """Referenced station, slot, booking or token does not exist"""
    kind = "NotFound"


class CapacityExceeded(BookingError):
    """Requested slot (or slot span) is not available"""
    kind = "CapacityExceeded"


class TooLateToModify(BookingError):
    """Booking is inside the modification cut-off window"""
    kind = "TooLateToModify"


class InvalidTransition(BookingError):
    """Booking status does not permit the requested action"""
    kind = "InvalidTransition"


class Forbidden(BookingError):
    """Access policy denied the action"""
    kind = "Forbidden"


class InvalidToken(BookingError):
    """Verification token is unknown, revoked or expired"""
    kind = "InvalidToken"


class TokenAlreadyRedeemed(BookingError):
    """Verification token was already consumed"""
    kind = "TokenAlreadyRedeemed"


class BookingNoLongerApprovable(BookingError):
    """Token's booking has left the Approved state"""
    kind = "BookingNoLongerApprovable"


class StationInactive(BookingError):
    """Station does not accept new bookings"""
    kind = "StationInactive"


class HasActiveBookings(BookingError):
    """Station still has Pending or Approved bookings"""
    kind = "HasActiveBookings"


class ConfigurationError(Exception):
    """Invalid application settings (YAML file or environment)"""
    pass


# ============================================================================
# INTERNAL CONCURRENCY SIGNALS
# ============================================================================

class ConcurrencyConflict(Exception):
    """
    Raised by repositories when a compare-and-swap update lost a race
    or the database reported lock contention.

    Callers retry once and then surface the business error for the
    resource involved.
    """
    pass


class SlotConflict(ConcurrencyConflict):
    """Another booking claimed one of the requested slots"""
    pass


class TokenConflict(ConcurrencyConflict):
    """Token consumption raced with another redemption"""
    pass


class StaleBookingVersion(ConcurrencyConflict):
    """Booking row changed since it was loaded"""
    pass
