# File: evbooking/application/station_service.py
"""
Station Directory Service

Use cases:
1. Create / reconfigure / delete stations (back-office)
2. Activate / deactivate stations (back-office or assigned operator)
3. Create a station together with its operator account
4. Station and slot queries for every role
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Union
import re
import secrets
import uuid

from ..domain.access_policy import Action
from ..domain.aggregates import Station
from ..domain.exceptions import HasActiveBookings, InvalidConfiguration, NotFound, ValidationError
from ..domain.models import ActorContext, Location, StationType
from ..infrastructure.repositories import UnitOfWork
from .base_service import ApplicationService
from .dtos import (
    OperationResult, OperatorCredentialsDTO, SlotDTO, StationConfigDTO,
    StationDTO, StationUpdateDTO, StationWithOperatorDTO
)
from .slot_allocator import SlotAllocator

LOCATION_FIELDS = ("address", "city", "latitude", "longitude")


class StationService(ApplicationService):
    """
    Application service for the station directory

    Station edits never cancel bookings: when the slot configuration
    changes only future, unbooked slots are regenerated.
    """

    def __init__(self, allocator: SlotAllocator, **kwargs):
        super().__init__(**kwargs)
        self.allocator = allocator

    # ========================================================================
    # HELPERS
    # ========================================================================

    @staticmethod
    def _load(uow: UnitOfWork, station_id: str) -> Station:
        station = uow.stations.get(station_id)
        if station is None:
            raise NotFound(f"Station {station_id} not found")
        return station

    def _build_station(self, config: Union[StationConfigDTO, Dict[str, Any]], now: datetime) -> Station:
        dto = config if isinstance(config, StationConfigDTO) else StationConfigDTO(**config)
        return Station(
            name=dto.name,
            station_type=dto.station_type,
            location=Location(
                address=dto.address,
                city=dto.city,
                latitude=dto.latitude,
                longitude=dto.longitude
            ),
            total_sockets=dto.total_sockets,
            slots_per_day=dto.slots_per_day,
            operating_start_hour=dto.operating_start_hour,
            operating_end_hour=dto.operating_end_hour,
            timezone=dto.timezone,
            created_at=now
        )

    @staticmethod
    def _generate_operator(station: Station) -> OperatorCredentialsDTO:
        slug = re.sub(r"[^a-z0-9]+", "-", station.name.lower()).strip("-")[:24] or "station"
        return OperatorCredentialsDTO(
            operator_id=f"op-{uuid.uuid4().hex[:12]}",
            username=f"{slug}-{secrets.token_hex(2)}",
            password=secrets.token_urlsafe(12)
        )

    # ========================================================================
    # COMMANDS
    # ========================================================================

    def create_station(self, actor: ActorContext, config: Union[StationConfigDTO, Dict[str, Any]]) -> OperationResult:
        """
        Create a station and materialize its initial slot schedule

        Use Case: Station Onboarding
        1. Check the caller is back-office
        2. Validate capacity configuration
        3. Persist the station
        4. Generate slots for the configured horizon
        """
        def work(uow: UnitOfWork) -> StationDTO:
            # Step 1: Authorization
            self.access_policy.require(actor, Action.CREATE_STATION)

            # Step 2-3: Validate and persist
            station = self._build_station(config, self.clock.now())
            uow.stations.add(station)

            # Step 4: Initial schedule
            created = self.allocator.materialize(uow, station)
            self.logger.info(f"Created station {station.name} ({station.id}) with {created} slots")
            return StationDTO.from_domain(station)

        return self._execute("create_station", lambda: self._transaction(work))

    def create_station_with_operator(
        self,
        actor: ActorContext,
        config: Union[StationConfigDTO, Dict[str, Any]]
    ) -> OperationResult:
        """
        Create a station plus a dedicated operator account

        The generated password is returned once for hand-over to the
        identity provider; only the operator id and username are kept.
        """
        def work(uow: UnitOfWork) -> StationWithOperatorDTO:
            self.access_policy.require(actor, Action.CREATE_STATION)

            now = self.clock.now()
            station = self._build_station(config, now)
            credentials = self._generate_operator(station)
            station.assign_operator(credentials.operator_id, credentials.username, now)
            uow.stations.add(station)

            created = self.allocator.materialize(uow, station)
            self.logger.info(
                f"Created station {station.name} ({station.id}) with operator {credentials.username}"
            )
            return StationWithOperatorDTO(
                station=StationDTO.from_domain(station),
                operator=credentials,
                slots_created=created
            )

        return self._execute("create_station_with_operator", lambda: self._transaction(work))

    def update_station(
        self,
        actor: ActorContext,
        station_id: str,
        changes: Union[StationUpdateDTO, Dict[str, Any]]
    ) -> OperationResult:
        """
        Back-office full edit

        When the slot configuration changes, future unbooked slots are
        dropped and the horizon regenerated around retained booked slots.
        """
        def work(uow: UnitOfWork) -> StationDTO:
            dto = changes if isinstance(changes, StationUpdateDTO) else StationUpdateDTO(**changes)
            requested = dto.model_dump(exclude_unset=True)

            station = self._load(uow, station_id)
            self.access_policy.require(actor, Action.UPDATE_STATION, station=station)
            now = self.clock.now()

            updates: Dict[str, Any] = {k: v for k, v in requested.items() if k not in LOCATION_FIELDS}
            if any(k in requested for k in LOCATION_FIELDS):
                current = station.location.to_dict()
                current.update({k: requested[k] for k in LOCATION_FIELDS if k in requested})
                updates["location"] = Location(**current)

            new_sockets = updates.get("total_sockets")
            if (isinstance(new_sockets, int) and new_sockets < station.total_sockets
                    and uow.slots.has_future_bookings_beyond_socket(station.id, new_sockets, now)):
                raise InvalidConfiguration(
                    f"Cannot reduce sockets to {new_sockets}: removed sockets still hold upcoming bookings"
                )

            previous_sockets = station.total_sockets
            schedule_changed = station.reconfigure(now, **updates)
            uow.stations.update(station)

            if schedule_changed:
                removed = uow.slots.delete_unbooked_future(station.id, now)
                if station.total_sockets < previous_sockets:
                    # windows already in progress on removed sockets go too
                    removed += uow.slots.delete_unbooked_beyond_socket(station.id, station.total_sockets, now)
                created = self.allocator.materialize(uow, station)
                self.logger.info(
                    f"Regenerated schedule of station {station.id}: removed {removed}, created {created}"
                )
            return StationDTO.from_domain(station)

        return self._execute("update_station", lambda: self._transaction(work))

    def _set_active(self, actor: ActorContext, station_id: str, active: bool) -> OperationResult:
        def work(uow: UnitOfWork) -> StationDTO:
            station = self._load(uow, station_id)
            self.access_policy.require(actor, Action.TOGGLE_STATION, station=station)
            now = self.clock.now()

            if active:
                station.activate(now)
            else:
                station.deactivate(now)
            uow.stations.update(station)

            if active:
                # the horizon is not extended while a station is inactive
                self.allocator.materialize(uow, station)
            self.logger.info(f"Station {station.id} {'activated' if active else 'deactivated'} by {actor}")
            return StationDTO.from_domain(station)

        operation = "reactivate_station" if active else "deactivate_station"
        return self._execute(operation, lambda: self._transaction(work))

    def deactivate_station(self, actor: ActorContext, station_id: str) -> OperationResult:
        """Stop accepting new bookings; existing bookings stay valid"""
        return self._set_active(actor, station_id, False)

    def reactivate_station(self, actor: ActorContext, station_id: str) -> OperationResult:
        return self._set_active(actor, station_id, True)

    def delete_station(self, actor: ActorContext, station_id: str) -> OperationResult:
        """Delete a station that has no Pending or Approved bookings"""
        def work(uow: UnitOfWork) -> Dict[str, Any]:
            station = self._load(uow, station_id)
            self.access_policy.require(actor, Action.DELETE_STATION, station=station)

            active = uow.bookings.count_active_for_station(station.id)
            if active:
                raise HasActiveBookings(
                    f"Station {station.id} has {active} active booking(s)",
                    details={"active_bookings": active}
                )

            removed = uow.slots.delete_for_removed_station(station.id, self.clock.now())
            uow.stations.delete(station.id)
            self.logger.info(f"Deleted station {station.id} and {removed} slots")
            return {"station_id": station.id, "slots_removed": removed}

        return self._execute("delete_station", lambda: self._transaction(work))

    def assign_operator(
        self,
        actor: ActorContext,
        station_id: str,
        operator_id: str,
        username: Optional[str] = None
    ) -> OperationResult:
        def work(uow: UnitOfWork) -> StationDTO:
            station = self._load(uow, station_id)
            self.access_policy.require(actor, Action.ASSIGN_OPERATOR, station=station)
            station.assign_operator(operator_id, username, self.clock.now())
            uow.stations.update(station)
            self.logger.info(f"Assigned operator {operator_id} to station {station.id}")
            return StationDTO.from_domain(station)

        return self._execute("assign_operator", lambda: self._transaction(work))

    # ========================================================================
    # QUERIES
    # ========================================================================

    def get_station(self, actor: ActorContext, station_id: str) -> OperationResult:
        def work(uow: UnitOfWork) -> StationDTO:
            station = self._load(uow, station_id)
            self.access_policy.require(actor, Action.VIEW_STATION, station=station)
            return StationDTO.from_domain(station)

        return self._execute("get_station", lambda: self._read(work))

    def list_stations(
        self,
        actor: ActorContext,
        active_only: bool = False,
        station_type: Optional[str] = None
    ) -> OperationResult:
        def work(uow: UnitOfWork) -> List[StationDTO]:
            self.access_policy.require(actor, Action.VIEW_STATION)
            kind = None
            if station_type is not None:
                try:
                    kind = StationType(station_type.upper())
                except ValueError as e:
                    raise ValidationError(f"Station type must be AC or DC, got {station_type!r}") from e
            return [StationDTO.from_domain(s) for s in uow.stations.find(active_only=active_only, station_type=kind)]

        return self._execute("list_stations", lambda: self._read(work))

    def list_operator_stations(self, actor: ActorContext) -> OperationResult:
        """Stations assigned to the calling operator"""
        def work(uow: UnitOfWork) -> List[StationDTO]:
            self.access_policy.require(actor, Action.VIEW_STATION)
            return [StationDTO.from_domain(s) for s in uow.stations.find(operator_id=actor.actor_id)]

        return self._execute("list_operator_stations", lambda: self._read(work))

    def list_slots(
        self,
        actor: ActorContext,
        station_id: str,
        available_only: bool = False,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> OperationResult:
        def work(uow: UnitOfWork) -> List[SlotDTO]:
            station = self._load(uow, station_id)
            self.access_policy.require(actor, Action.VIEW_STATION, station=station)
            slots = uow.slots.find_by_station(station.id, start, end, available_only=available_only)
            return [SlotDTO.from_domain(s) for s in slots]

        return self._execute("list_slots", lambda: self._read(work))
