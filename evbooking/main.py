# File: evbooking/main.py
"""
Main application entry point for the EV Charging Booking Platform
Wires the layers together and exposes maintenance commands
"""

from dataclasses import dataclass
from typing import List, Optional
import argparse
import logging
import sys

from sqlalchemy.engine import Engine

from .application.booking_service import BookingService
from .application.slot_allocator import SlotAllocator
from .application.station_service import StationService
from .application.verification_service import VerificationService
from .config import Settings, load_settings
from .domain.access_policy import AccessPolicy
from .domain.clock import Clock, SystemClock
from .domain.exceptions import ConfigurationError
from .infrastructure.messaging import ALL_EVENTS, EventBus, RedisEventPublisher
from .infrastructure.repositories import RepositoryFactory


def setup_logging(settings: Settings) -> logging.Logger:
    """Setup application logging configuration"""
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if settings.log_file:
        handlers.append(logging.FileHandler(settings.log_file))

    logging.basicConfig(
        level=settings.log_level.upper(),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers
    )
    return logging.getLogger(__name__)


@dataclass
class Platform:
    """Fully wired set of application services"""
    settings: Settings
    engine: Engine
    clock: Clock
    event_bus: EventBus
    access_policy: AccessPolicy
    allocator: SlotAllocator
    stations: StationService
    bookings: BookingService
    verification: VerificationService

    def close(self) -> None:
        self.event_bus.clear_subscribers()
        self.engine.dispose()


def create_platform(
    settings: Optional[Settings] = None,
    clock: Optional[Clock] = None,
    event_bus: Optional[EventBus] = None
) -> Platform:
    """Initialize all application components with dependency injection"""
    logger = logging.getLogger(__name__)
    settings = settings or load_settings()
    clock = clock or SystemClock()
    event_bus = event_bus or EventBus()

    # 1. Persistence
    engine = RepositoryFactory.create_engine(
        settings.database_url, busy_timeout_seconds=settings.sqlite_busy_timeout_seconds
    )
    RepositoryFactory.create_schema(engine)
    uow_factory = RepositoryFactory.create_uow_factory(engine)
    logger.info("Repository initialized")

    # 2. Notifications
    if settings.redis_url:
        event_bus.subscribe(ALL_EVENTS, RedisEventPublisher(settings.redis_url, settings.redis_channel))
        logger.info(f"Publishing booking events to Redis channel {settings.redis_channel}")

    # 3. Services
    access_policy = AccessPolicy()
    allocator = SlotAllocator(uow_factory, clock, horizon_days=settings.slot_horizon_days)
    common = dict(
        uow_factory=uow_factory,
        clock=clock,
        policies=settings.booking_policies(),
        access_policy=access_policy,
        event_bus=event_bus,
        retry_backoff=settings.conflict_retry_backoff
    )
    platform = Platform(
        settings=settings,
        engine=engine,
        clock=clock,
        event_bus=event_bus,
        access_policy=access_policy,
        allocator=allocator,
        stations=StationService(allocator=allocator, **common),
        bookings=BookingService(allocator=allocator, **common),
        verification=VerificationService(**common)
    )
    logger.info("Booking platform initialized")
    return platform


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="evbooking", description="EV charging booking platform maintenance")
    parser.add_argument("--config", help="YAML settings file")
    subcommands = parser.add_subparsers(dest="command", required=True)

    subcommands.add_parser("init-db", help="Create database tables")

    extend = subcommands.add_parser("extend-slots", help="Fill the slot horizon of every active station")
    extend.add_argument("--days", type=int, default=None, help="Horizon in days (defaults to slot_horizon_days)")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = load_settings(args.config)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    logger = setup_logging(settings)
    platform = create_platform(settings)
    try:
        if args.command == "init-db":
            logger.info(f"Database ready at {settings.database_url}")
            return 0

        result = platform.allocator.extend_horizon(horizon_days=args.days)
        if not result.success:
            logger.error(f"Slot extension failed: {result.error.message}")
            return 1
        total = sum(item.slots_created for item in result.data)
        logger.info(f"Extended {len(result.data)} station(s); created {total} slots")
        return 0
    finally:
        platform.close()


if __name__ == "__main__":
    sys.exit(main())
