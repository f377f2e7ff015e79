# File: evbooking/infrastructure/messaging.py
"""
Messaging Infrastructure for the EV Charging Booking Platform

This module implements event-driven notification of booking changes:
1. Event Bus - intra-process publish/subscribe of domain events
2. Redis Publisher - forwards booking events to a Redis Pub/Sub channel

Events are published only after the unit of work that produced them has
committed. Notification is best effort: a failing handler is logged and
never undoes or fails the booking operation.
"""

from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional
import json
import logging
import time

import redis

from ..domain.models import DomainEvent

ALL_EVENTS = "*"


# ============================================================================
# EVENT HANDLERS
# ============================================================================

class EventHandler(ABC):
    """Abstract base class for event handlers"""

    @abstractmethod
    def handle(self, event: DomainEvent) -> None:
        """Handle a domain event"""
        pass

    def can_handle(self, event: DomainEvent) -> bool:
        """Check if this handler can handle the event"""
        return True


# ============================================================================
# EVENT BUS (In-memory)
# ============================================================================

class EventBus:
    """
    In-memory event bus for intra-process event publishing

    Handlers subscribe to an event type, or to ALL_EVENTS.
    """

    def __init__(self):
        self._subscribers: Dict[str, List[EventHandler]] = {}
        self._logger = logging.getLogger(self.__class__.__name__)

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        """Subscribe to events of a specific type"""
        if event_type not in self._subscribers:
            self._subscribers[event_type] = []

        if handler not in self._subscribers[event_type]:
            self._subscribers[event_type].append(handler)
            self._logger.debug(f"Subscribed {handler.__class__.__name__} to {event_type}")

    def unsubscribe(self, event_type: str, handler: EventHandler) -> None:
        """Unsubscribe handler from events"""
        handlers = self._subscribers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)
            self._logger.debug(f"Unsubscribed {handler.__class__.__name__} from {event_type}")

    def publish(self, event: DomainEvent) -> None:
        """Publish an event to all subscribers"""
        self._logger.info(f"Publishing event: {event.event_type} (ID: {event.event_id})")

        handlers = self._subscribers.get(event.event_type, []) + self._subscribers.get(ALL_EVENTS, [])
        for handler in handlers:
            if handler.can_handle(event):
                try:
                    handler.handle(event)
                    self._logger.debug(f"Event handled by {handler.__class__.__name__}")
                except Exception as e:
                    self._logger.error(
                        f"Error handling event {event.event_type} with {handler.__class__.__name__}: {e}"
                    )

    def publish_all(self, events: Iterable[DomainEvent]) -> None:
        for event in events:
            self.publish(event)

    def clear_subscribers(self) -> None:
        """Clear all subscribers (for testing)"""
        self._subscribers.clear()


# ============================================================================
# REDIS PUBLISHER
# ============================================================================

class RedisEventPublisher(EventHandler):
    """Forwards domain events as JSON to a Redis Pub/Sub channel"""

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        channel: str = "evbooking.bookings",
        client: Optional[redis.Redis] = None,
        max_retries: int = 3,
        retry_delay: float = 0.1
    ):
        self.channel = channel
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._logger = logging.getLogger(self.__class__.__name__)
        self.redis_client = client or redis.Redis.from_url(redis_url)

    def handle(self, event: DomainEvent) -> None:
        if not self._publish_with_retry(event):
            self._logger.error(f"Dropped event {event.event_type} (ID: {event.event_id}) after {self.max_retries} attempts")

    def _publish_with_retry(self, event: DomainEvent) -> bool:
        """Publish with exponential backoff"""
        payload = json.dumps(event.to_dict(), default=str)
        for attempt in range(self.max_retries):
            try:
                receivers = self.redis_client.publish(self.channel, payload)
                self._logger.debug(f"Published {event.event_type} to {self.channel} ({receivers} receivers)")
                return True
            except redis.RedisError as e:
                self._logger.warning(f"Attempt {attempt + 1} failed for event {event.event_id}: {e}")
                if attempt < self.max_retries - 1:
                    time.sleep(self.retry_delay * (2 ** attempt))
        return False

    def close(self) -> None:
        self.redis_client.close()
