# File: evbooking/application/base_service.py
"""
Common plumbing for application services

- Every public call returns an OperationResult; business errors are
  converted, unexpected errors are logged and re-raised.
- Each mutation runs in its own unit of work. A lost compare-and-swap
  race is retried once in a fresh unit of work, then reported as the
  business error for the contended resource.
- Domain events are published only after the unit of work commits.
"""

from typing import Callable, Optional, Type, TypeVar
import logging
import time

from pydantic import ValidationError as PydanticValidationError

from ..domain.access_policy import AccessPolicy
from ..domain.aggregates import BookingPolicies
from ..domain.clock import Clock
from ..domain.exceptions import (
    BookingError, CapacityExceeded, ConcurrencyConflict, InvalidTransition,
    SlotConflict, TokenAlreadyRedeemed, TokenConflict, ValidationError
)
from ..infrastructure.messaging import EventBus
from ..infrastructure.repositories import UnitOfWork
from .dtos import OperationResult

R = TypeVar('R')

CONFLICT_RETRIES = 1


def conflict_to_error(
    conflict: ConcurrencyConflict,
    contended: Type[ConcurrencyConflict] = ConcurrencyConflict
) -> BookingError:
    """
    Business error reported once a contention retry has also lost

    Lock contention at commit carries no resource, so it is reported as
    the contended resource of the use case.
    """
    kind = contended if type(conflict) is ConcurrencyConflict else type(conflict)
    if issubclass(kind, SlotConflict):
        return CapacityExceeded("Requested slot is no longer available")
    if issubclass(kind, TokenConflict):
        return TokenAlreadyRedeemed("Token was redeemed concurrently")
    return InvalidTransition("Booking was changed concurrently; reload and try again")


class ApplicationService:
    """Base class wiring clock, policies, access policy, units of work and events"""

    def __init__(
        self,
        uow_factory: Callable[[], UnitOfWork],
        clock: Clock,
        policies: BookingPolicies,
        access_policy: Optional[AccessPolicy] = None,
        event_bus: Optional[EventBus] = None,
        retry_backoff: float = 0.05
    ):
        self.uow_factory = uow_factory
        self.clock = clock
        self.policies = policies
        self.access_policy = access_policy or AccessPolicy()
        self.event_bus = event_bus
        self.retry_backoff = retry_backoff
        self.logger = logging.getLogger(self.__class__.__name__)

    def _execute(self, operation: str, work: Callable[[], R]) -> OperationResult:
        """Run a use case and wrap its outcome"""
        try:
            return OperationResult.ok(work())
        except BookingError as e:
            self.logger.warning(f"{operation} rejected: {e}")
            return OperationResult.fail(e)
        except PydanticValidationError as e:
            error = ValidationError(
                f"Invalid request: {e.error_count()} field error(s)",
                details={"errors": e.errors(include_url=False, include_context=False)}
            )
            self.logger.warning(f"{operation} rejected: {error}")
            return OperationResult.fail(error)
        except Exception as e:
            self.logger.error(f"Error in {operation}: {e}", exc_info=True)
            raise

    def _transaction(
        self,
        work: Callable[[UnitOfWork], R],
        contended: Type[ConcurrencyConflict] = ConcurrencyConflict
    ) -> R:
        """
        Run work inside one unit of work, retrying once on contention

        The retry re-reads everything, so it observes the winner's commit.
        contended names the resource a bare commit-time conflict is
        reported as.
        """
        for attempt in range(CONFLICT_RETRIES + 1):
            uow = self.uow_factory()
            try:
                with uow:
                    result = work(uow)
            except ConcurrencyConflict as e:
                if attempt < CONFLICT_RETRIES:
                    self.logger.info(f"Concurrency conflict ({e}); retrying in {self.retry_backoff:.3f}s")
                    time.sleep(self.retry_backoff)
                    continue
                self.logger.warning(f"Concurrency conflict persisted after retry: {e}")
                raise conflict_to_error(e, contended) from e
            self._publish_events(uow)
            return result

    def _read(self, work: Callable[[UnitOfWork], R]) -> R:
        """Run a read-only query in its own unit of work"""
        with self.uow_factory() as uow:
            return work(uow)

    def _publish_events(self, uow: UnitOfWork) -> None:
        if self.event_bus is None:
            return
        self.event_bus.publish_all(uow.collect_new_events())
