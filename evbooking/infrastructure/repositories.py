# File: evbooking/infrastructure/repositories.py
"""
Repository Pattern Implementation for the EV Charging Booking Platform

Repositories provide a collection-like interface for domain aggregates and
entities while hiding SQLAlchemy from the application layer.

Contended resources are protected by atomic conditional updates, never by
read-then-write:
- Slot reservation:   UPDATE slots SET held WHERE id IN (...) AND is_available
- Token redemption:   UPDATE tokens SET redeemed WHERE redeemed_at IS NULL
- Booking changes:    UPDATE bookings ... WHERE version = :loaded_version

A lost race surfaces as a ConcurrencyConflict subclass; the application
layer retries once and then reports the business error.
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import (
    Any, Callable, Dict, Generic, Iterable, Iterator, List, Optional, Sequence, Type, TypeVar
)
import logging

from sqlalchemy import (
    create_engine, Column, Integer, String, Boolean, Float, DateTime, JSON,
    UniqueConstraint, Index, func, select, update, delete, and_, or_
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError, IntegrityError, OperationalError
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeDecorator

from ..domain.aggregates import AggregateRoot, Booking, Station
from ..domain.exceptions import (
    ConcurrencyConflict, SlotConflict, StaleBookingVersion, TokenConflict
)
from ..domain.models import BookingStatus, DomainEvent, Location, Slot, StationType, VerificationToken

# Type variables for generic repositories
T = TypeVar('T')  # Entity type
ID = TypeVar('ID')  # ID type


# ============================================================================
# REPOSITORY INTERFACES
# ============================================================================

class Repository(ABC, Generic[T, ID]):
    """Base repository interface"""

    @abstractmethod
    def add(self, entity: T) -> T:
        """Add an entity to the repository"""
        pass

    @abstractmethod
    def get(self, id: ID) -> Optional[T]:
        """Get an entity by ID"""
        pass

    @abstractmethod
    def get_all(self, skip: int = 0, limit: int = 100) -> List[T]:
        """Get all entities with pagination"""
        pass

    @abstractmethod
    def delete(self, id: ID) -> bool:
        """Delete an entity by ID"""
        pass

    @abstractmethod
    def exists(self, id: ID) -> bool:
        """Check if an entity exists"""
        pass

    @abstractmethod
    def count(self) -> int:
        """Count all entities"""
        pass


# ============================================================================
# UNIT OF WORK PATTERN
# ============================================================================

class UnitOfWork(ABC):
    """Unit of Work pattern for transaction management"""

    @abstractmethod
    def __enter__(self):
        pass

    @abstractmethod
    def __exit__(self, exc_type, exc_val, exc_tb):
        pass

    @abstractmethod
    def commit(self):
        """Commit the transaction"""
        pass

    @abstractmethod
    def rollback(self):
        """Rollback the transaction"""
        pass

    @abstractmethod
    def collect_new_events(self) -> List[DomainEvent]:
        """Drain domain events raised during this unit of work"""
        pass

    @property
    @abstractmethod
    def stations(self) -> 'StationRepository':
        pass

    @property
    @abstractmethod
    def slots(self) -> 'SlotRepository':
        pass

    @property
    @abstractmethod
    def bookings(self) -> 'BookingRepository':
        pass

    @property
    @abstractmethod
    def tokens(self) -> 'TokenRepository':
        pass


# ============================================================================
# SQLALCHEMY ORM MODELS
# ============================================================================

Base = declarative_base()


class UTCDateTime(TypeDecorator):
    """
    Stores timezone-aware instants as naive UTC and returns aware UTC
    SQLite has no native timezone support, so the conversion is explicit.
    """
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("Naive datetimes cannot be stored; attach a timezone")
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class StationModel(Base):
    """SQLAlchemy model for Station"""
    __tablename__ = 'stations'

    id = Column(String(36), primary_key=True)
    name = Column(String(100), nullable=False)
    station_type = Column(String(2), nullable=False)

    # Location
    address = Column(String(200), nullable=False)
    city = Column(String(100), nullable=False, index=True)
    latitude = Column(Float)
    longitude = Column(Float)

    # Capacity and schedule
    total_sockets = Column(Integer, nullable=False)
    slots_per_day = Column(Integer, nullable=False)
    operating_start_hour = Column(Integer, nullable=False, default=0)
    operating_end_hour = Column(Integer, nullable=False, default=24)
    timezone = Column(String(64), nullable=False, default='UTC')

    # Status
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    assigned_operator_id = Column(String(64), index=True)
    operator_username = Column(String(100))

    # Timestamps
    created_at = Column(UTCDateTime)
    updated_at = Column(UTCDateTime)
    version = Column(Integer, nullable=False, default=1)


class SlotModel(Base):
    """SQLAlchemy model for Slot"""
    __tablename__ = 'slots'

    id = Column(String(36), primary_key=True)
    station_id = Column(String(36), nullable=False, index=True)
    socket_number = Column(Integer, nullable=False)
    start_time = Column(UTCDateTime, nullable=False)
    end_time = Column(UTCDateTime, nullable=False)

    # Occupancy
    is_available = Column(Boolean, nullable=False, default=True)
    booking_id = Column(String(36), index=True)

    __table_args__ = (
        UniqueConstraint('station_id', 'socket_number', 'start_time', name='uq_slot_station_socket_start'),
        Index('ix_slot_station_start', 'station_id', 'start_time'),
    )


class BookingModel(Base):
    """SQLAlchemy model for Booking"""
    __tablename__ = 'bookings'

    id = Column(String(36), primary_key=True)
    booking_reference = Column(String(32), nullable=False, unique=True, index=True)
    owner_id = Column(String(64), nullable=False, index=True)
    station_id = Column(String(36), nullable=False, index=True)
    slot_ids = Column(JSON, nullable=False, default=list)

    reservation_start = Column(UTCDateTime, nullable=False, index=True)
    duration_minutes = Column(Integer, nullable=False)
    status = Column(String(16), nullable=False, index=True)

    # Audit trail
    created_at = Column(UTCDateTime)
    updated_at = Column(UTCDateTime)
    approved_at = Column(UTCDateTime)
    approved_by = Column(String(64))
    cancelled_at = Column(UTCDateTime)
    cancelled_by = Column(String(64))
    completed_at = Column(UTCDateTime)

    version = Column(Integer, nullable=False, default=1)


class VerificationTokenModel(Base):
    """SQLAlchemy model for VerificationToken"""
    __tablename__ = 'verification_tokens'

    token = Column(String(64), primary_key=True)
    booking_id = Column(String(36), nullable=False, index=True)
    issued_at = Column(UTCDateTime, nullable=False)
    expires_at = Column(UTCDateTime, nullable=False)
    redeemed_at = Column(UTCDateTime)
    revoked_at = Column(UTCDateTime)


# ============================================================================
# DOMAIN <-> ORM MAPPERS
# ============================================================================

class Mapper:
    """Maps between domain models and ORM models"""

    @staticmethod
    def station_to_orm(station: Station, model: Optional[StationModel] = None) -> StationModel:
        model = model or StationModel(id=station.id)
        model.name = station.name
        model.station_type = station.station_type.value
        model.address = station.location.address
        model.city = station.location.city
        model.latitude = station.location.latitude
        model.longitude = station.location.longitude
        model.total_sockets = station.total_sockets
        model.slots_per_day = station.slots_per_day
        model.operating_start_hour = station.operating_start_hour
        model.operating_end_hour = station.operating_end_hour
        model.timezone = station.timezone
        model.is_active = station.is_active
        model.assigned_operator_id = station.assigned_operator_id
        model.operator_username = station.operator_username
        model.created_at = station.created_at
        model.updated_at = station.updated_at
        model.version = station.version
        return model

    @staticmethod
    def station_to_domain(model: StationModel) -> Station:
        return Station(
            id=model.id,
            name=model.name,
            station_type=StationType(model.station_type),
            location=Location(
                address=model.address,
                city=model.city,
                latitude=model.latitude,
                longitude=model.longitude
            ),
            total_sockets=model.total_sockets,
            slots_per_day=model.slots_per_day,
            operating_start_hour=model.operating_start_hour,
            operating_end_hour=model.operating_end_hour,
            timezone=model.timezone,
            is_active=model.is_active,
            assigned_operator_id=model.assigned_operator_id,
            operator_username=model.operator_username,
            created_at=model.created_at,
            updated_at=model.updated_at,
            version=model.version
        )

    @staticmethod
    def slot_to_orm(slot: Slot) -> SlotModel:
        return SlotModel(
            id=slot.id,
            station_id=slot.station_id,
            socket_number=slot.socket_number,
            start_time=slot.start_time,
            end_time=slot.end_time,
            is_available=slot.is_available,
            booking_id=slot.booking_id
        )

    @staticmethod
    def slot_to_domain(model: SlotModel) -> Slot:
        return Slot(
            id=model.id,
            station_id=model.station_id,
            socket_number=model.socket_number,
            start_time=model.start_time,
            end_time=model.end_time,
            is_available=model.is_available,
            booking_id=model.booking_id
        )

    @staticmethod
    def booking_to_orm(booking: Booking, model: Optional[BookingModel] = None) -> BookingModel:
        model = model or BookingModel(id=booking.id)
        model.booking_reference = booking.booking_reference
        model.owner_id = booking.owner_id
        model.station_id = booking.station_id
        model.slot_ids = list(booking.slot_ids)
        model.reservation_start = booking.reservation_start
        model.duration_minutes = booking.duration_minutes
        model.status = booking.status.value
        model.created_at = booking.created_at
        model.updated_at = booking.updated_at
        model.approved_at = booking.approved_at
        model.approved_by = booking.approved_by
        model.cancelled_at = booking.cancelled_at
        model.cancelled_by = booking.cancelled_by
        model.completed_at = booking.completed_at
        model.version = booking.version
        return model

    @staticmethod
    def booking_values(booking: Booking) -> Dict[str, Any]:
        """Column values for a conditional UPDATE of a booking row"""
        return {
            'slot_ids': list(booking.slot_ids),
            'reservation_start': booking.reservation_start,
            'duration_minutes': booking.duration_minutes,
            'status': booking.status.value,
            'updated_at': booking.updated_at,
            'approved_at': booking.approved_at,
            'approved_by': booking.approved_by,
            'cancelled_at': booking.cancelled_at,
            'cancelled_by': booking.cancelled_by,
            'completed_at': booking.completed_at,
            'version': booking.version,
        }

    @staticmethod
    def booking_to_domain(model: BookingModel) -> Booking:
        return Booking(
            id=model.id,
            booking_reference=model.booking_reference,
            owner_id=model.owner_id,
            station_id=model.station_id,
            slot_ids=model.slot_ids or [],
            reservation_start=model.reservation_start,
            duration_minutes=model.duration_minutes,
            status=BookingStatus(model.status),
            created_at=model.created_at,
            updated_at=model.updated_at,
            approved_at=model.approved_at,
            approved_by=model.approved_by,
            cancelled_at=model.cancelled_at,
            cancelled_by=model.cancelled_by,
            completed_at=model.completed_at,
            version=model.version
        )

    @staticmethod
    def token_to_orm(token: VerificationToken) -> VerificationTokenModel:
        return VerificationTokenModel(
            token=token.token,
            booking_id=token.booking_id,
            issued_at=token.issued_at,
            expires_at=token.expires_at,
            redeemed_at=token.redeemed_at,
            revoked_at=token.revoked_at
        )

    @staticmethod
    def token_to_domain(model: VerificationTokenModel) -> VerificationToken:
        return VerificationToken(
            token=model.token,
            booking_id=model.booking_id,
            issued_at=model.issued_at,
            expires_at=model.expires_at,
            redeemed_at=model.redeemed_at,
            revoked_at=model.revoked_at
        )


@contextmanager
def translate_lock_contention(conflict_type: Type[ConcurrencyConflict]) -> Iterator[None]:
    """Report database lock contention as a retryable concurrency conflict"""
    try:
        yield
    except OperationalError as e:
        raise conflict_type(f"Database contention: {e.orig}") from e


# ============================================================================
# SQLALCHEMY REPOSITORIES
# ============================================================================

class SQLAlchemyRepository(Repository[T, str], ABC):
    """Base SQLAlchemy repository"""

    def __init__(self, session: Session, seen: Optional[List[AggregateRoot]] = None):
        self.session = session
        self.seen = seen if seen is not None else []
        self._logger = logging.getLogger(self.__class__.__name__)

    @property
    @abstractmethod
    def model_class(self) -> Type[Base]:
        """Return SQLAlchemy model class"""
        pass

    @property
    def key_column(self):
        return self.model_class.id

    @abstractmethod
    def to_domain(self, model: Base) -> T:
        """Convert ORM model to domain model"""
        pass

    @abstractmethod
    def to_orm(self, entity: T) -> Base:
        """Convert domain model to ORM model"""
        pass

    def add(self, entity: T) -> T:
        try:
            model = self.to_orm(entity)
            self.session.add(model)
            self.session.flush()
            self._track(entity)
            self._logger.debug(f"Added entity: {entity.id}")
            return entity
        except IntegrityError as e:
            self._logger.error(f"Integrity error adding entity: {e}")
            raise

    def get(self, id: str) -> Optional[T]:
        model = self.session.get(self.model_class, id)
        if model:
            return self._track(self.to_domain(model))
        return None

    def _track(self, entity: T) -> T:
        """Remember aggregates so their domain events can be collected after commit"""
        if isinstance(entity, AggregateRoot) and entity not in self.seen:
            self.seen.append(entity)
        return entity

    def get_all(self, skip: int = 0, limit: int = 100) -> List[T]:
        models = self.session.scalars(
            select(self.model_class).offset(skip).limit(limit)
        ).all()
        return [self.to_domain(model) for model in models]

    def delete(self, id: str) -> bool:
        model = self.session.get(self.model_class, id)
        if model:
            self.session.delete(model)
            self.session.flush()
            self._logger.debug(f"Deleted entity: {id}")
            return True
        return False

    def exists(self, id: str) -> bool:
        count = self.session.scalar(
            select(func.count()).select_from(self.model_class).where(self.key_column == id)
        )
        return count > 0

    def count(self) -> int:
        return self.session.scalar(select(func.count()).select_from(self.model_class))

    def find_by_criteria(self, criteria: Dict[str, Any]) -> List[T]:
        """Find entities by simple equality / membership criteria"""
        query = select(self.model_class)

        for key, value in criteria.items():
            if hasattr(self.model_class, key):
                if isinstance(value, (list, tuple, set)):
                    query = query.where(getattr(self.model_class, key).in_(list(value)))
                else:
                    query = query.where(getattr(self.model_class, key) == value)

        models = self.session.scalars(query).all()
        return [self.to_domain(model) for model in models]


class StationRepository(SQLAlchemyRepository[Station]):
    """Repository for charging stations"""

    @property
    def model_class(self) -> Type[Base]:
        return StationModel

    def to_domain(self, model: StationModel) -> Station:
        return Mapper.station_to_domain(model)

    def to_orm(self, entity: Station) -> StationModel:
        return Mapper.station_to_orm(entity)

    def update(self, station: Station) -> Station:
        model = self.session.get(StationModel, station.id)
        if not model:
            raise ValueError(f"Station {station.id} not found")
        Mapper.station_to_orm(station, model)
        self.session.flush()
        station.mark_persisted()
        self._track(station)
        self._logger.debug(f"Updated station: {station.id}")
        return station

    def find(
        self,
        active_only: bool = False,
        station_type: Optional[StationType] = None,
        operator_id: Optional[str] = None
    ) -> List[Station]:
        query = select(StationModel).order_by(StationModel.name, StationModel.id)
        if active_only:
            query = query.where(StationModel.is_active.is_(True))
        if station_type is not None:
            query = query.where(StationModel.station_type == station_type.value)
        if operator_id is not None:
            query = query.where(StationModel.assigned_operator_id == operator_id)
        return [self.to_domain(m) for m in self.session.scalars(query).all()]

    def find_ids_by_operator(self, operator_id: str) -> List[str]:
        return list(self.session.scalars(
            select(StationModel.id).where(StationModel.assigned_operator_id == operator_id)
        ).all())


class SlotRepository(SQLAlchemyRepository[Slot]):
    """Repository for bookable slots"""

    @property
    def model_class(self) -> Type[Base]:
        return SlotModel

    def to_domain(self, model: SlotModel) -> Slot:
        return Mapper.slot_to_domain(model)

    def to_orm(self, entity: Slot) -> SlotModel:
        return Mapper.slot_to_orm(entity)

    def add_all(self, slots: Iterable[Slot]) -> int:
        models = [self.to_orm(slot) for slot in slots]
        if not models:
            return 0
        self.session.add_all(models)
        self.session.flush()
        self._logger.debug(f"Added {len(models)} slots")
        return len(models)

    def get_many(self, slot_ids: Sequence[str]) -> List[Slot]:
        if not slot_ids:
            return []
        models = self.session.scalars(
            select(SlotModel).where(SlotModel.id.in_(list(slot_ids)))
        ).all()
        by_id = {m.id: self.to_domain(m) for m in models}
        return [by_id[slot_id] for slot_id in slot_ids if slot_id in by_id]

    def find_by_station(
        self,
        station_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        available_only: bool = False,
        socket_number: Optional[int] = None
    ) -> List[Slot]:
        """Slots of a station overlapping [start, end), ordered by time then socket"""
        query = select(SlotModel).where(SlotModel.station_id == station_id)
        if start is not None:
            query = query.where(SlotModel.end_time > start)
        if end is not None:
            query = query.where(SlotModel.start_time < end)
        if available_only:
            query = query.where(SlotModel.is_available.is_(True))
        if socket_number is not None:
            query = query.where(SlotModel.socket_number == socket_number)
        query = query.order_by(SlotModel.start_time, SlotModel.socket_number)
        return [self.to_domain(m) for m in self.session.scalars(query).all()]

    def find_by_booking(self, booking_id: str) -> List[Slot]:
        models = self.session.scalars(
            select(SlotModel).where(SlotModel.booking_id == booking_id).order_by(SlotModel.start_time)
        ).all()
        return [self.to_domain(m) for m in models]

    def reserve(self, slot_ids: Sequence[str], booking_id: str) -> None:
        """
        Atomically move every slot from available to held, or none of them
        Raises: SlotConflict if any slot was already claimed
        """
        slot_ids = list(dict.fromkeys(slot_ids))
        if not slot_ids:
            return
        with translate_lock_contention(SlotConflict):
            result = self.session.execute(
                update(SlotModel)
                .where(SlotModel.id.in_(slot_ids), SlotModel.is_available.is_(True))
                .values(is_available=False, booking_id=booking_id)
                .execution_options(synchronize_session=False)
            )
        if result.rowcount != len(slot_ids):
            # partial claim is undone by the caller's transaction rollback
            raise SlotConflict(
                f"Only {result.rowcount} of {len(slot_ids)} slots could be reserved for booking {booking_id}"
            )
        self._logger.debug(f"Reserved {len(slot_ids)} slots for booking {booking_id}")

    def release_for_booking(self, booking_id: str, slot_ids: Optional[Sequence[str]] = None) -> int:
        """Mark the booking's slots (or the given subset) available again"""
        query = update(SlotModel).where(SlotModel.booking_id == booking_id)
        if slot_ids is not None:
            if not slot_ids:
                return 0
            query = query.where(SlotModel.id.in_(list(slot_ids)))
        with translate_lock_contention(SlotConflict):
            result = self.session.execute(
                query.values(is_available=True, booking_id=None)
                .execution_options(synchronize_session=False)
            )
        self._logger.debug(f"Released {result.rowcount} slots of booking {booking_id}")
        return result.rowcount

    def count_held_at(self, station_id: str, instant: datetime) -> int:
        return self.session.scalar(
            select(func.count()).select_from(SlotModel).where(
                SlotModel.station_id == station_id,
                SlotModel.is_available.is_(False),
                SlotModel.start_time <= instant,
                SlotModel.end_time > instant
            )
        )

    def has_future_bookings_beyond_socket(self, station_id: str, socket_number: int, now: datetime) -> bool:
        """Check whether lanes above socket_number still hold bookings that have not ended"""
        count = self.session.scalar(
            select(func.count()).select_from(SlotModel).where(
                SlotModel.station_id == station_id,
                SlotModel.socket_number > socket_number,
                SlotModel.booking_id.is_not(None),
                SlotModel.end_time > now
            )
        )
        return count > 0

    def delete_unbooked_future(self, station_id: str, after: datetime) -> int:
        """Remove not-yet-started slots nobody holds"""
        result = self.session.execute(
            delete(SlotModel).where(
                SlotModel.station_id == station_id,
                SlotModel.start_time > after,
                SlotModel.booking_id.is_(None)
            ).execution_options(synchronize_session=False)
        )
        return result.rowcount

    def delete_unbooked_beyond_socket(self, station_id: str, socket_number: int, now: datetime) -> int:
        """Remove unheld slots on lanes above socket_number that have not ended yet"""
        result = self.session.execute(
            delete(SlotModel).where(
                SlotModel.station_id == station_id,
                SlotModel.socket_number > socket_number,
                SlotModel.end_time > now,
                SlotModel.booking_id.is_(None)
            ).execution_options(synchronize_session=False)
        )
        return result.rowcount

    def delete_for_removed_station(self, station_id: str, now: datetime) -> int:
        """Remove future and unbooked slots; past booked slots stay as history"""
        result = self.session.execute(
            delete(SlotModel).where(
                SlotModel.station_id == station_id,
                or_(SlotModel.start_time >= now, SlotModel.booking_id.is_(None))
            ).execution_options(synchronize_session=False)
        )
        return result.rowcount


class BookingRepository(SQLAlchemyRepository[Booking]):
    """Repository for bookings"""

    @property
    def model_class(self) -> Type[Base]:
        return BookingModel

    def to_domain(self, model: BookingModel) -> Booking:
        return Mapper.booking_to_domain(model)

    def to_orm(self, entity: Booking) -> BookingModel:
        return Mapper.booking_to_orm(entity)

    def add(self, entity: Booking) -> Booking:
        super().add(entity)
        entity.mark_persisted()
        return entity

    def save(self, booking: Booking) -> Booking:
        """
        Persist state changes with an optimistic version check
        Raises: StaleBookingVersion if another writer got there first
        """
        if booking.version == booking.persisted_version:
            return booking
        with translate_lock_contention(StaleBookingVersion):
            result = self.session.execute(
                update(BookingModel)
                .where(
                    BookingModel.id == booking.id,
                    BookingModel.version == booking.persisted_version
                )
                .values(**Mapper.booking_values(booking))
                .execution_options(synchronize_session=False)
            )
        if result.rowcount != 1:
            raise StaleBookingVersion(f"Booking {booking.id} was modified concurrently")
        booking.mark_persisted()
        self._track(booking)
        self._logger.debug(f"Saved booking {booking.booking_reference} v{booking.version}")
        return booking

    def find_by_reference(self, reference: str) -> Optional[Booking]:
        model = self.session.scalars(
            select(BookingModel).where(BookingModel.booking_reference == reference)
        ).first()
        return self.to_domain(model) if model else None

    def find(
        self,
        owner_id: Optional[str] = None,
        station_ids: Optional[Sequence[str]] = None,
        statuses: Optional[Sequence[BookingStatus]] = None,
        start_after: Optional[datetime] = None
    ) -> List[Booking]:
        query = select(BookingModel)
        if owner_id is not None:
            query = query.where(BookingModel.owner_id == owner_id)
        if station_ids is not None:
            if not station_ids:
                return []
            query = query.where(BookingModel.station_id.in_(list(station_ids)))
        if statuses:
            query = query.where(BookingModel.status.in_([s.value for s in statuses]))
        if start_after is not None:
            query = query.where(BookingModel.reservation_start > start_after)
        query = query.order_by(BookingModel.reservation_start, BookingModel.booking_reference)
        return [self.to_domain(m) for m in self.session.scalars(query).all()]

    def count_active_for_station(self, station_id: str) -> int:
        active = [s.value for s in BookingStatus if s.is_active]
        return self.session.scalar(
            select(func.count()).select_from(BookingModel).where(
                and_(BookingModel.station_id == station_id, BookingModel.status.in_(active))
            )
        )


class TokenRepository(SQLAlchemyRepository[VerificationToken]):
    """Repository for verification tokens"""

    @property
    def model_class(self) -> Type[Base]:
        return VerificationTokenModel

    @property
    def key_column(self):
        return VerificationTokenModel.token

    def to_domain(self, model: VerificationTokenModel) -> VerificationToken:
        return Mapper.token_to_domain(model)

    def to_orm(self, entity: VerificationToken) -> VerificationTokenModel:
        return Mapper.token_to_orm(entity)

    def reload(self, token: str) -> Optional[VerificationToken]:
        """Read the current row, bypassing the session identity map"""
        model = self.session.get(VerificationTokenModel, token, populate_existing=True)
        return self.to_domain(model) if model else None

    def find_by_booking(self, booking_id: str) -> List[VerificationToken]:
        models = self.session.scalars(
            select(VerificationTokenModel)
            .where(VerificationTokenModel.booking_id == booking_id)
            .order_by(VerificationTokenModel.issued_at)
        ).all()
        return [self.to_domain(m) for m in models]

    def consume(self, token: str, at: datetime) -> bool:
        """
        Atomically mark an unredeemed, unrevoked token as redeemed
        Returns: True if this call consumed the token
        """
        with translate_lock_contention(TokenConflict):
            result = self.session.execute(
                update(VerificationTokenModel)
                .where(
                    VerificationTokenModel.token == token,
                    VerificationTokenModel.redeemed_at.is_(None),
                    VerificationTokenModel.revoked_at.is_(None)
                )
                .values(redeemed_at=at)
                .execution_options(synchronize_session=False)
            )
        return result.rowcount == 1

    def revoke_outstanding(self, booking_id: str, at: datetime) -> int:
        result = self.session.execute(
            update(VerificationTokenModel)
            .where(
                VerificationTokenModel.booking_id == booking_id,
                VerificationTokenModel.redeemed_at.is_(None),
                VerificationTokenModel.revoked_at.is_(None)
            )
            .values(revoked_at=at)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount


# ============================================================================
# SQLALCHEMY UNIT OF WORK
# ============================================================================

class SQLAlchemyUnitOfWork(UnitOfWork):
    """Unit of Work implementation with SQLAlchemy"""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory
        self._logger = logging.getLogger(self.__class__.__name__)

    def __enter__(self):
        self.session = self.session_factory()
        self.seen: List[AggregateRoot] = []

        # Initialize repositories
        self._stations = StationRepository(self.session, self.seen)
        self._slots = SlotRepository(self.session, self.seen)
        self._bookings = BookingRepository(self.session, self.seen)
        self._tokens = TokenRepository(self.session, self.seen)

        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        try:
            if exc_type is not None:
                self._logger.debug(f"Rolling back unit of work: {exc_val}")
                self.rollback()
            else:
                self.commit()
        finally:
            self.session.close()

    def commit(self):
        """Commit the transaction"""
        try:
            self.session.commit()
            self._logger.debug("Transaction committed")
        except OperationalError as e:
            self.session.rollback()
            raise ConcurrencyConflict(f"Commit failed under contention: {e.orig}") from e
        except SQLAlchemyError as e:
            self._logger.error(f"Error committing transaction: {e}")
            self.session.rollback()
            raise

    def rollback(self):
        """Rollback the transaction"""
        self.session.rollback()
        self._logger.debug("Transaction rolled back")

    def collect_new_events(self) -> List[DomainEvent]:
        """Drain domain events raised by aggregates loaded or added in this unit of work"""
        events: List[DomainEvent] = []
        for aggregate in self.seen:
            events.extend(aggregate.clear_events())
        return events

    @property
    def stations(self) -> StationRepository:
        return self._stations

    @property
    def slots(self) -> SlotRepository:
        return self._slots

    @property
    def bookings(self) -> BookingRepository:
        return self._bookings

    @property
    def tokens(self) -> TokenRepository:
        return self._tokens


# ============================================================================
# REPOSITORY FACTORY
# ============================================================================

class RepositoryFactory:
    """Factory for engines and unit-of-work factories"""

    @staticmethod
    def create_engine(database_url: str, busy_timeout_seconds: float = 15.0, echo: bool = False) -> Engine:
        """
        Create an engine; SQLite connections are shareable across threads
        and wait on locks instead of failing immediately.
        """
        if database_url.startswith("sqlite"):
            connect_args = {"check_same_thread": False, "timeout": busy_timeout_seconds}
            if database_url in ("sqlite://", "sqlite:///:memory:"):
                # one shared connection, otherwise every session sees an empty database
                return create_engine(
                    database_url, echo=echo, connect_args=connect_args, poolclass=StaticPool
                )
            return create_engine(database_url, echo=echo, connect_args=connect_args)
        return create_engine(database_url, echo=echo, pool_pre_ping=True)

    @staticmethod
    def create_schema(engine: Engine) -> None:
        Base.metadata.create_all(bind=engine)

    @staticmethod
    def create_uow_factory(engine: Engine) -> Callable[[], SQLAlchemyUnitOfWork]:
        """Create a factory producing one Unit of Work per operation"""
        session_local = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
        return lambda: SQLAlchemyUnitOfWork(session_local)
