#!/usr/bin/env python3
"""
Access Policy Unit Tests

Role matrix for back-office, station operators and EV owners.
"""

from datetime import datetime, timedelta, timezone
import unittest
from unittest.mock import Mock

from evbooking.domain.access_policy import AccessPolicy, Action, RoleRules
from evbooking.domain.aggregates import Booking, Station
from evbooking.domain.exceptions import Forbidden
from evbooking.domain.models import ActorContext, ActorRole, Location, StationType

NOW = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)

ADMIN = ActorContext("admin-1", ActorRole.BACKOFFICE)
OPERATOR = ActorContext("op-1", ActorRole.STATION_OPERATOR)
STRANGER = ActorContext("op-2", ActorRole.STATION_OPERATOR)
OWNER = ActorContext("199012345678", ActorRole.EV_OWNER)
OTHER_OWNER = ActorContext("200045678901", ActorRole.EV_OWNER)


class TestAccessPolicy(unittest.TestCase):

    def setUp(self):
        self.policy = AccessPolicy()
        self.station = Station(
            name="Colombo Central",
            station_type=StationType.DC,
            location=Location("12 Galle Road", "Colombo"),
            total_sockets=2,
            slots_per_day=10,
            assigned_operator_id=OPERATOR.actor_id
        )
        self.booking = Booking(
            owner_id=OWNER.actor_id,
            station_id=self.station.id,
            slot_ids=["slot-1"],
            reservation_start=NOW + timedelta(days=1),
            duration_minutes=60
        )

    def allowed(self, actor, action, **kwargs):
        kwargs.setdefault("booking", self.booking)
        kwargs.setdefault("station", self.station)
        return self.policy.authorize(actor, action, **kwargs).allowed

    def test_backoffice_is_never_denied(self):
        for action in Action:
            with self.subTest(action=action):
                self.assertTrue(self.allowed(ADMIN, action))

    def test_assigned_operator(self):
        for action in (Action.APPROVE_BOOKING, Action.CANCEL_BOOKING, Action.REDEEM_TOKEN,
                       Action.VALIDATE_TOKEN, Action.ISSUE_TOKEN, Action.TOGGLE_STATION):
            with self.subTest(action=action):
                self.assertTrue(self.allowed(OPERATOR, action))

        for action in (Action.CREATE_STATION, Action.UPDATE_STATION, Action.DELETE_STATION,
                       Action.ASSIGN_OPERATOR, Action.CREATE_BOOKING, Action.UPDATE_BOOKING):
            with self.subTest(action=action):
                self.assertFalse(self.allowed(OPERATOR, action))

    def test_unassigned_operator(self):
        self.assertFalse(self.allowed(STRANGER, Action.APPROVE_BOOKING))
        self.assertFalse(self.allowed(STRANGER, Action.TOGGLE_STATION))
        self.assertTrue(self.allowed(STRANGER, Action.VIEW_STATION))

    def test_operator_needs_station_context(self):
        self.assertFalse(self.allowed(OPERATOR, Action.APPROVE_BOOKING, station=None))

    def test_booking_must_belong_to_station(self):
        other_station = Mock(spec=Station)
        other_station.id = "elsewhere"
        other_station.is_operated_by.return_value = True
        self.assertFalse(self.allowed(OPERATOR, Action.APPROVE_BOOKING, station=other_station))

    def test_owner_acts_on_own_bookings(self):
        for action in (Action.VIEW_BOOKING, Action.UPDATE_BOOKING, Action.CANCEL_BOOKING,
                       Action.ISSUE_TOKEN, Action.VALIDATE_TOKEN):
            with self.subTest(action=action):
                self.assertTrue(self.allowed(OWNER, action))
                self.assertFalse(self.allowed(OTHER_OWNER, action))

    def test_owner_cannot_operate(self):
        for action in (Action.APPROVE_BOOKING, Action.REDEEM_TOKEN, Action.TOGGLE_STATION, Action.CREATE_STATION):
            with self.subTest(action=action):
                self.assertFalse(self.allowed(OWNER, action))

    def test_owner_creating_a_booking_uses_owner_id(self):
        self.assertTrue(self.allowed(OWNER, Action.CREATE_BOOKING, booking=None, owner_id=OWNER.actor_id))
        self.assertFalse(self.allowed(OWNER, Action.CREATE_BOOKING, booking=None, owner_id=OTHER_OWNER.actor_id))
        self.assertFalse(self.allowed(OWNER, Action.CREATE_BOOKING, booking=None))

    def test_require_raises_forbidden(self):
        with self.assertRaises(Forbidden) as context:
            self.policy.require(OTHER_OWNER, Action.CANCEL_BOOKING, booking=self.booking)
        self.assertEqual(context.exception.details, {"action": "cancel_booking"})

        self.policy.require(OWNER, Action.CANCEL_BOOKING, booking=self.booking)

    def test_custom_rules(self):
        deny_all = Mock(spec=RoleRules)
        deny_all.decide.return_value.allowed = False
        policy = AccessPolicy({ActorRole.BACKOFFICE: deny_all})

        self.assertFalse(policy.authorize(ADMIN, Action.VIEW_STATION).allowed)
        self.assertFalse(policy.authorize(OWNER, Action.VIEW_STATION).allowed)


if __name__ == '__main__':
    unittest.main()
