# File: evbooking/application/verification_service.py
"""
Verification Token Service

Single-use tokens prove an Approved booking at the station:
1. issue    - mint a token for an Approved booking (revokes older ones)
2. validate - read-only check of a presented token
3. redeem   - consume the token and complete the booking atomically

Redemption uses a conditional update on the token row, so of any number
of concurrent redemptions exactly one succeeds.
"""

from typing import Optional, Tuple

from ..domain.access_policy import Action
from ..domain.aggregates import Booking, Station
from ..domain.exceptions import (
    BookingNoLongerApprovable, InvalidToken, InvalidTransition, NotFound, TokenAlreadyRedeemed, TokenConflict
)
from ..domain.models import ActorContext, BookingStatus, VerificationToken
from ..infrastructure.repositories import UnitOfWork
from .base_service import ApplicationService
from .dtos import BookingDTO, OperationResult, RedemptionDTO, TokenDTO, TokenValidationDTO


class VerificationService(ApplicationService):
    """Application service for verification tokens"""

    @staticmethod
    def _resolve(uow: UnitOfWork, token: str) -> Tuple[VerificationToken, Booking, Optional[Station]]:
        if not token:
            raise InvalidToken("Token is required")
        record = uow.tokens.get(token)
        if record is None:
            raise InvalidToken("Unknown token")
        booking = uow.bookings.get(record.booking_id)
        if booking is None:
            raise InvalidToken("Token refers to an unknown booking")
        return record, booking, uow.stations.get(booking.station_id)

    def issue_token(self, actor: ActorContext, booking_id: str) -> OperationResult:
        """
        Issue a token for an Approved booking

        Any previously issued, unredeemed token for the booking is revoked.
        The token expires when the reservation ends.
        """
        def work(uow: UnitOfWork) -> TokenDTO:
            booking = uow.bookings.get(booking_id)
            if booking is None:
                raise NotFound(f"Booking {booking_id} not found")
            station = uow.stations.get(booking.station_id)
            self.access_policy.require(actor, Action.ISSUE_TOKEN, booking=booking, station=station)

            if booking.status != BookingStatus.APPROVED:
                raise InvalidTransition(
                    f"Tokens are issued for Approved bookings only; {booking.booking_reference} is {booking.status.value}"
                )
            now = self.clock.now()
            if booking.reservation_end <= now:
                raise InvalidTransition(f"Reservation {booking.booking_reference} has already ended")

            uow.tokens.revoke_outstanding(booking.id, now)
            token = VerificationToken.mint(booking.id, issued_at=now, expires_at=booking.reservation_end)
            uow.tokens.add(token)

            self.logger.info(f"Issued token {token!r} for booking {booking.booking_reference}")
            return TokenDTO.from_domain(token, booking, station)

        return self._execute("issue_token", lambda: self._transaction(work))

    def validate_token(self, actor: ActorContext, token: str) -> OperationResult:
        """Read-only check; never changes token or booking state"""
        def work(uow: UnitOfWork) -> TokenValidationDTO:
            record, booking, station = self._resolve(uow, token)
            self.access_policy.require(actor, Action.VALIDATE_TOKEN, booking=booking, station=station)

            record.check_usable(self.clock.now())
            if booking.status != BookingStatus.APPROVED:
                raise BookingNoLongerApprovable(
                    f"Booking {booking.booking_reference} is {booking.status.value}"
                )
            return TokenValidationDTO(expires_at=record.expires_at, booking=BookingDTO.from_domain(booking))

        return self._execute("validate_token", lambda: self._read(work))

    def redeem_token(self, actor: ActorContext, token: str) -> OperationResult:
        """
        Consume a token and complete its booking

        Use Case: Station Check-in
        1. Resolve token and booking; only the station's operator or back-office may redeem
        2. Reject redeemed, revoked or expired tokens and non-Approved bookings
        3. Conditionally mark the token redeemed; losing the race means already redeemed
        4. Complete the booking in the same unit of work
        """
        def work(uow: UnitOfWork) -> RedemptionDTO:
            # Step 1
            record, booking, station = self._resolve(uow, token)
            self.access_policy.require(actor, Action.REDEEM_TOKEN, booking=booking, station=station)

            # Step 2
            now = self.clock.now()
            record.check_usable(now)
            if booking.status != BookingStatus.APPROVED:
                raise BookingNoLongerApprovable(
                    f"Booking {booking.booking_reference} is {booking.status.value}"
                )

            # Step 3
            if not uow.tokens.consume(record.token, now):
                current = uow.tokens.reload(record.token)
                if current is not None and current.is_redeemed:
                    raise TokenAlreadyRedeemed("Token was already redeemed")
                raise InvalidToken("Token is no longer valid")
            record.redeemed_at = now

            # Step 4
            booking.complete(record, now, actor.actor_id)
            uow.bookings.save(booking)

            self.logger.info(f"Redeemed token for booking {booking.booking_reference} by {actor}")
            return RedemptionDTO(
                redeemed_at=now,
                redeemed_by=actor.actor_id,
                booking=BookingDTO.from_domain(booking)
            )

        return self._execute("redeem_token", lambda: self._transaction(work, TokenConflict))
