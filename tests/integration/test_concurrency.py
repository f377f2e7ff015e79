#!/usr/bin/env python3
"""
Concurrency Integration Tests

Races against a file-backed SQLite database, one thread per caller, all
released together by a barrier. These check the reservation and
redemption guarantees rather than timing.
"""

from datetime import timedelta
import os
import tempfile
import threading
import unittest

from evbooking.domain.models import ActorContext, ActorRole

from . import NOW, OPERATOR, OWNER, BACKOFFICE, PlatformTestCase


def owners(count):
    return [ActorContext(f"1990{i:08d}", ActorRole.EV_OWNER) for i in range(count)]


class ConcurrentTestCase(PlatformTestCase):
    """Platform on a temporary database file shared by all threads"""

    retry_backoff_ms = 10

    def setUp(self):
        directory = tempfile.TemporaryDirectory()
        self.addCleanup(directory.cleanup)
        self.database_url = f"sqlite:///{os.path.join(directory.name, 'bookings.db')}"
        super().setUp()

    def race(self, calls):
        barrier = threading.Barrier(len(calls))
        results = [None] * len(calls)

        def run(index, call):
            barrier.wait()
            results[index] = call()

        threads = [threading.Thread(target=run, args=(i, call)) for i, call in enumerate(calls)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        self.assertTrue(all(r is not None for r in results), "A racing call raised or timed out")
        return results


class TestSlotRace(ConcurrentTestCase):

    def setUp(self):
        super().setUp()
        self.station = self.create_station()
        self.start = NOW + timedelta(days=2)

    def test_same_slot_has_exactly_one_winner(self):
        slot = self.slot_at(self.station.id, self.start)
        contenders = owners(5)

        results = self.race([
            lambda actor=actor: self.book(self.station.id, self.start, actor=actor, slot_id=slot.id)
            for actor in contenders
        ])

        winners = [r for r in results if r.success]
        self.assertEqual(len(winners), 1)
        self.assertEqual(
            sorted(r.error.kind for r in results if not r.success),
            ["CapacityExceeded"] * 4
        )
        held = self.slot_at(self.station.id, self.start)
        self.assertEqual(held.booking_id, winners[0].data.id)

    def test_held_slots_never_exceed_sockets(self):
        contenders = owners(6)

        results = self.race([
            lambda actor=actor: self.book(self.station.id, self.start, actor=actor)
            for actor in contenders
        ])

        winners = [r for r in results if r.success]
        self.assertGreaterEqual(len(winners), 1)
        self.assertLessEqual(len(winners), 4)
        for result in results:
            if not result.success:
                self.assertEqual(result.error.kind, "CapacityExceeded")

        slots = self.platform.stations.list_slots(
            BACKOFFICE, self.station.id, start=self.start, end=self.start + timedelta(seconds=1)
        ).data
        held = [s for s in slots if not s.is_available]
        self.assertEqual(len(held), len(winners))
        self.assertEqual({s.booking_id for s in held}, {r.data.id for r in winners})


class TestRedemptionRace(ConcurrentTestCase):

    def test_token_redeems_once(self):
        station = self.create_station()
        booking = self.approved_booking(station.id)
        token = self.platform.verification.issue_token(OWNER, booking.id).data.token

        results = self.race([
            lambda: self.platform.verification.redeem_token(OPERATOR, token)
            for _ in range(4)
        ])

        self.assertEqual(sum(1 for r in results if r.success), 1)
        self.assertEqual(
            sorted(r.error.kind for r in results if not r.success),
            ["TokenAlreadyRedeemed"] * 3
        )
        final = self.platform.bookings.get_booking(BACKOFFICE, booking.id).data
        self.assertEqual(final.status, "Completed")
        self.assertEqual(final.version, booking.version + 1)


if __name__ == '__main__':
    unittest.main()
