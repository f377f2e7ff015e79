# File: evbooking/domain/access_policy.py
"""
Access Policy for the EV Charging Booking Platform

A single authority that maps (actor role, actor identity, booking/station
ownership) to an allow/deny decision with a reason. Every mutating
application-service call consults it before touching state.

Role rules are implemented as strategies, one per role:
1. BackofficeRules       - system-wide authority
2. StationOperatorRules  - scoped to stations assigned to the operator
3. EVOwnerRules          - scoped to the owner's own bookings
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional
import logging

from .aggregates import Booking, Station
from .exceptions import Forbidden
from .models import ActorContext, ActorRole


class Action(Enum):
    """Operations subject to authorization"""
    VIEW_STATION = "view_station"
    CREATE_STATION = "create_station"
    UPDATE_STATION = "update_station"
    TOGGLE_STATION = "toggle_station"
    DELETE_STATION = "delete_station"
    ASSIGN_OPERATOR = "assign_operator"
    CREATE_BOOKING = "create_booking"
    VIEW_BOOKING = "view_booking"
    UPDATE_BOOKING = "update_booking"
    CANCEL_BOOKING = "cancel_booking"
    APPROVE_BOOKING = "approve_booking"
    ISSUE_TOKEN = "issue_token"
    VALIDATE_TOKEN = "validate_token"
    REDEEM_TOKEN = "redeem_token"


@dataclass(frozen=True)
class AccessDecision:
    """Value Object: result of an authorization check"""
    allowed: bool
    reason: str = ""

    @classmethod
    def allow(cls) -> 'AccessDecision':
        return cls(True, "")

    @classmethod
    def deny(cls, reason: str) -> 'AccessDecision':
        return cls(False, reason)

    def __bool__(self) -> bool:
        return self.allowed


# ============================================================================
# ROLE RULE STRATEGIES
# ============================================================================

class RoleRules(ABC):
    """
    Abstract base class for role rules
    Defines the interface for per-role authorization
    """

    @abstractmethod
    def decide(
        self,
        actor: ActorContext,
        action: Action,
        booking: Optional[Booking],
        station: Optional[Station],
        owner_id: Optional[str] = None
    ) -> AccessDecision:
        """owner_id stands in for booking.owner_id before the booking exists"""
        pass

    def get_role_name(self) -> str:
        return self.__class__.__name__.replace("Rules", "")


class BackofficeRules(RoleRules):
    """Back-office staff are never denied"""

    def decide(self, actor, action, booking, station, owner_id=None) -> AccessDecision:
        return AccessDecision.allow()


class StationOperatorRules(RoleRules):
    """Operators act only on stations assigned to them"""

    STATION_ACTIONS = frozenset({Action.VIEW_STATION, Action.TOGGLE_STATION})
    BOOKING_ACTIONS = frozenset({
        Action.VIEW_BOOKING, Action.APPROVE_BOOKING, Action.CANCEL_BOOKING,
        Action.ISSUE_TOKEN, Action.VALIDATE_TOKEN, Action.REDEEM_TOKEN
    })

    def decide(self, actor, action, booking, station, owner_id=None) -> AccessDecision:
        if action == Action.VIEW_STATION:
            return AccessDecision.allow()

        if action not in self.STATION_ACTIONS and action not in self.BOOKING_ACTIONS:
            return AccessDecision.deny(f"Station operators cannot {action.value.replace('_', ' ')}")

        if station is None:
            return AccessDecision.deny("Station context is required for operator actions")

        if booking is not None and booking.station_id != station.id:
            return AccessDecision.deny("Booking does not belong to the given station")

        if not station.is_operated_by(actor.actor_id):
            return AccessDecision.deny(f"Operator {actor.actor_id} is not assigned to station {station.id}")

        return AccessDecision.allow()


class EVOwnerRules(RoleRules):
    """EV owners act only on their own bookings"""

    BOOKING_ACTIONS = frozenset({
        Action.CREATE_BOOKING, Action.VIEW_BOOKING, Action.UPDATE_BOOKING,
        Action.CANCEL_BOOKING, Action.ISSUE_TOKEN, Action.VALIDATE_TOKEN
    })

    def decide(self, actor, action, booking, station, owner_id=None) -> AccessDecision:
        if action == Action.VIEW_STATION:
            return AccessDecision.allow()

        if action not in self.BOOKING_ACTIONS:
            return AccessDecision.deny(f"EV owners cannot {action.value.replace('_', ' ')}")

        owner = booking.owner_id if booking is not None else owner_id
        if owner is None:
            return AccessDecision.deny("Booking context is required for EV owner actions")

        if owner != actor.actor_id:
            return AccessDecision.deny("EV owners can only act on their own bookings")

        return AccessDecision.allow()


# ============================================================================
# ACCESS POLICY
# ============================================================================

class AccessPolicy:
    """
    Single authorization entry point

    authorize() returns a decision; require() raises Forbidden on denial.
    """

    def __init__(self, rules: Optional[Dict[ActorRole, RoleRules]] = None):
        self.logger = logging.getLogger(self.__class__.__name__)
        self.rules = rules or {
            ActorRole.BACKOFFICE: BackofficeRules(),
            ActorRole.STATION_OPERATOR: StationOperatorRules(),
            ActorRole.EV_OWNER: EVOwnerRules(),
        }

    def authorize(
        self,
        actor: ActorContext,
        action: Action,
        booking: Optional[Booking] = None,
        station: Optional[Station] = None,
        owner_id: Optional[str] = None
    ) -> AccessDecision:
        role_rules = self.rules.get(actor.role)
        if role_rules is None:
            return AccessDecision.deny(f"Unknown role: {actor.role}")
        return role_rules.decide(actor, action, booking, station, owner_id)

    def require(
        self,
        actor: ActorContext,
        action: Action,
        booking: Optional[Booking] = None,
        station: Optional[Station] = None,
        owner_id: Optional[str] = None
    ) -> None:
        decision = self.authorize(actor, action, booking=booking, station=station, owner_id=owner_id)
        if not decision.allowed:
            self.logger.warning(f"Denied {action.value} for {actor}: {decision.reason}")
            raise Forbidden(decision.reason, details={"action": action.value})
