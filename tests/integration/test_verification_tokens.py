#!/usr/bin/env python3
"""
Verification Token Integration Tests

Issue -> validate -> redeem, replay protection, revocation on reschedule
and the booking completing as a side effect of redemption.
"""

from datetime import timedelta
import unittest
from unittest.mock import patch

from evbooking.domain.exceptions import ConcurrencyConflict
from evbooking.infrastructure.repositories import SQLAlchemyUnitOfWork

from . import BACKOFFICE, NOW, OPERATOR, OTHER_OPERATOR, OTHER_OWNER, OWNER, PlatformTestCase


class TokenTestCase(PlatformTestCase):

    def setUp(self):
        super().setUp()
        self.station = self.create_station()
        self.booking = self.approved_booking(self.station.id)

    def issue(self, actor=OWNER, booking_id=None):
        result = self.platform.verification.issue_token(actor, booking_id or self.booking.id)
        self.assertSuccess(result)
        return result.data


class TestTokenIssue(TokenTestCase):

    def test_issued_token_describes_the_booking(self):
        token = self.issue()

        self.assertGreaterEqual(len(token.token), 32)
        self.assertEqual(token.booking_id, self.booking.id)
        self.assertEqual(token.booking_reference, self.booking.booking_reference)
        self.assertEqual(token.station_name, "Colombo Central")
        self.assertEqual(token.status, "Approved")
        self.assertEqual(token.issued_at, NOW)
        self.assertEqual(token.expires_at, self.booking.reservation_end)

    def test_pending_booking_gets_no_token(self):
        pending = self.book(self.station.id, NOW + timedelta(days=3)).data
        result = self.platform.verification.issue_token(OWNER, pending.id)
        self.assertFailure(result, "InvalidTransition")

    def test_reissue_revokes_previous_token(self):
        first = self.issue()
        second = self.issue()

        self.assertNotEqual(first.token, second.token)
        self.assertFailure(self.platform.verification.validate_token(OPERATOR, first.token), "InvalidToken")
        self.assertSuccess(self.platform.verification.validate_token(OPERATOR, second.token))

    def test_other_owner_and_operator_cannot_issue(self):
        self.assertFailure(self.platform.verification.issue_token(OTHER_OWNER, self.booking.id), "Forbidden")
        self.assertFailure(self.platform.verification.issue_token(OTHER_OPERATOR, self.booking.id), "Forbidden")

    def test_no_token_after_reservation_ended(self):
        self.clock.set(self.booking.reservation_end)
        self.assertFailure(self.platform.verification.issue_token(OWNER, self.booking.id), "InvalidTransition")


class TestTokenValidation(TokenTestCase):

    def test_validate_is_read_only(self):
        token = self.issue()

        for _ in range(2):
            result = self.platform.verification.validate_token(OPERATOR, token.token)
            self.assertSuccess(result)
            self.assertTrue(result.data.valid)
            self.assertEqual(result.data.booking.status, "Approved")

    def test_unknown_and_empty_tokens(self):
        self.assertFailure(self.platform.verification.validate_token(OPERATOR, "not-a-token"), "InvalidToken")
        self.assertFailure(self.platform.verification.validate_token(OPERATOR, ""), "InvalidToken")

    def test_expired_token(self):
        token = self.issue()
        self.clock.set(token.expires_at)
        self.assertFailure(self.platform.verification.validate_token(OPERATOR, token.token), "InvalidToken")

    def test_owner_may_validate_own_token(self):
        token = self.issue()
        self.assertSuccess(self.platform.verification.validate_token(OWNER, token.token))
        self.assertFailure(self.platform.verification.validate_token(OTHER_OWNER, token.token), "Forbidden")


class TestTokenRedemption(TokenTestCase):

    def test_redeem_completes_booking(self):
        token = self.issue()
        self.clock.set(self.booking.reservation_start)

        result = self.platform.verification.redeem_token(OPERATOR, token.token)

        self.assertSuccess(result)
        self.assertEqual(result.data.redeemed_by, OPERATOR.actor_id)
        self.assertEqual(result.data.booking.status, "Completed")
        self.assertEqual(result.data.booking.completed_at, self.booking.reservation_start)
        stored = self.platform.bookings.get_booking(OWNER, self.booking.id).data
        self.assertEqual(stored.status, "Completed")

    def test_replay_is_rejected(self):
        token = self.issue()
        self.assertSuccess(self.platform.verification.redeem_token(OPERATOR, token.token))

        replay = self.platform.verification.redeem_token(OPERATOR, token.token)

        self.assertFailure(replay, "TokenAlreadyRedeemed")
        self.assertFailure(self.platform.verification.validate_token(BACKOFFICE, token.token), "TokenAlreadyRedeemed")

    def test_commit_contention_reports_already_redeemed(self):
        token = self.issue()
        locked = patch.object(
            SQLAlchemyUnitOfWork, "commit", side_effect=ConcurrencyConflict("database is locked")
        )

        with locked:
            result = self.platform.verification.redeem_token(OPERATOR, token.token)

        self.assertFailure(result, "TokenAlreadyRedeemed")
        self.assertEqual(self.platform.bookings.get_booking(OWNER, self.booking.id).data.status, "Approved")
        self.assertSuccess(self.platform.verification.validate_token(OPERATOR, token.token))

    def test_only_station_staff_redeem(self):
        token = self.issue()
        self.assertFailure(self.platform.verification.redeem_token(OWNER, token.token), "Forbidden")
        self.assertFailure(self.platform.verification.redeem_token(OTHER_OPERATOR, token.token), "Forbidden")
        self.assertSuccess(self.platform.verification.redeem_token(BACKOFFICE, token.token))

    def test_reschedule_revokes_token(self):
        token = self.issue()
        updated = self.platform.bookings.update_booking(
            OWNER, self.booking.id, {"reservation_start": NOW + timedelta(days=3)}
        )
        self.assertSuccess(updated)

        self.assertFailure(self.platform.verification.redeem_token(OPERATOR, token.token), "InvalidToken")
        fresh = self.issue()
        self.assertEqual(fresh.expires_at, NOW + timedelta(days=3, hours=1))
        self.assertSuccess(self.platform.verification.redeem_token(OPERATOR, fresh.token))

    def test_cancelled_booking_token_is_unusable(self):
        token = self.issue()
        self.assertSuccess(self.platform.bookings.cancel_booking(OWNER, self.booking.id))

        result = self.platform.verification.redeem_token(OPERATOR, token.token)

        self.assertFalse(result.success)
        self.assertIn(result.error.kind, ("InvalidToken", "BookingNoLongerApprovable"))

    def test_completed_booking_is_terminal(self):
        token = self.issue()
        self.platform.verification.redeem_token(OPERATOR, token.token)

        self.assertFailure(self.platform.bookings.cancel_booking(BACKOFFICE, self.booking.id), "InvalidTransition")
        self.assertFailure(self.platform.verification.issue_token(OWNER, self.booking.id), "InvalidTransition")


class TestNoLongerApprovable(PlatformTestCase):
    """A token whose booking left Approved without revoking it"""

    def test_booking_state_checked_on_redeem(self):
        station = self.create_station()
        booking = self.approved_booking(station.id)
        token = self.platform.verification.issue_token(OWNER, booking.id).data

        with self.platform.allocator.uow_factory() as uow:
            stored = uow.bookings.get(booking.id)
            stored.cancel(BACKOFFICE.actor_id, NOW, self.platform.bookings.policies)
            uow.bookings.save(stored)

        result = self.platform.verification.redeem_token(OPERATOR, token.token)
        self.assertFailure(result, "BookingNoLongerApprovable")


if __name__ == '__main__':
    unittest.main()
