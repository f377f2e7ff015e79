#!/usr/bin/env python3
"""
Messaging Unit Tests

In-memory event bus and the Redis publisher with a mocked client.
"""

from datetime import datetime, timezone
import json
import unittest
from unittest.mock import Mock, patch

import redis

from evbooking.domain.models import BookingStatus, BookingStatusChangedEvent
from evbooking.infrastructure.messaging import ALL_EVENTS, EventBus, EventHandler, RedisEventPublisher

NOW = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


def status_event(new_status=BookingStatus.APPROVED):
    return BookingStatusChangedEvent(
        booking_id="booking-1",
        booking_reference="BK-20260302-ABC123",
        station_id="station-1",
        owner_id="199012345678",
        old_status=BookingStatus.PENDING,
        new_status=new_status,
        actor_id="op-1",
        occurred_at=NOW
    )


class TestEventBus(unittest.TestCase):

    def setUp(self):
        self.bus = EventBus()

    def test_typed_and_wildcard_subscribers(self):
        typed = Mock(spec=EventHandler)
        everything = Mock(spec=EventHandler)
        unrelated = Mock(spec=EventHandler)
        for handler in (typed, everything, unrelated):
            handler.can_handle.return_value = True
        self.bus.subscribe("booking.status_changed", typed)
        self.bus.subscribe(ALL_EVENTS, everything)
        self.bus.subscribe("booking.rescheduled", unrelated)

        event = status_event()
        self.bus.publish(event)

        typed.handle.assert_called_once_with(event)
        everything.handle.assert_called_once_with(event)
        unrelated.handle.assert_not_called()

    def test_failing_handler_does_not_stop_others(self):
        failing = Mock(spec=EventHandler)
        failing.can_handle.return_value = True
        failing.handle.side_effect = RuntimeError("boom")
        healthy = Mock(spec=EventHandler)
        healthy.can_handle.return_value = True
        self.bus.subscribe(ALL_EVENTS, failing)
        self.bus.subscribe(ALL_EVENTS, healthy)

        with self.assertLogs("EventBus", level="ERROR"):
            self.bus.publish_all([status_event(), status_event(BookingStatus.CANCELLED)])

        self.assertEqual(healthy.handle.call_count, 2)

    def test_unsubscribe_and_duplicates(self):
        handler = Mock(spec=EventHandler)
        handler.can_handle.return_value = True
        self.bus.subscribe(ALL_EVENTS, handler)
        self.bus.subscribe(ALL_EVENTS, handler)
        self.bus.publish(status_event())
        self.assertEqual(handler.handle.call_count, 1)

        self.bus.unsubscribe(ALL_EVENTS, handler)
        self.bus.publish(status_event())
        self.assertEqual(handler.handle.call_count, 1)

    def test_can_handle_filters(self):
        handler = Mock(spec=EventHandler)
        handler.can_handle.return_value = False
        self.bus.subscribe(ALL_EVENTS, handler)
        self.bus.publish(status_event())
        handler.handle.assert_not_called()


class TestRedisEventPublisher(unittest.TestCase):

    def setUp(self):
        self.client = Mock(spec=redis.Redis)
        self.publisher = RedisEventPublisher(client=self.client, channel="bookings", retry_delay=0)

    def test_publishes_json_payload(self):
        self.client.publish.return_value = 1

        self.publisher.handle(status_event())

        channel, payload = self.client.publish.call_args[0]
        self.assertEqual(channel, "bookings")
        message = json.loads(payload)
        self.assertEqual(message["event_type"], "booking.status_changed")
        self.assertEqual(message["data"]["old_status"], "Pending")
        self.assertEqual(message["data"]["new_status"], "Approved")

    @patch("evbooking.infrastructure.messaging.time.sleep")
    def test_retries_connection_errors(self, sleep):
        self.client.publish.side_effect = [redis.ConnectionError("down"), 1]

        self.publisher.handle(status_event())

        self.assertEqual(self.client.publish.call_count, 2)
        sleep.assert_called_once()

    @patch("evbooking.infrastructure.messaging.time.sleep")
    def test_drops_event_after_max_retries(self, sleep):
        self.client.publish.side_effect = redis.ConnectionError("down")

        with self.assertLogs("RedisEventPublisher", level="ERROR"):
            self.publisher.handle(status_event())

        self.assertEqual(self.client.publish.call_count, 3)
        self.assertEqual(sleep.call_count, 2)

    def test_close(self):
        self.publisher.close()
        self.client.close.assert_called_once()


if __name__ == '__main__':
    unittest.main()
