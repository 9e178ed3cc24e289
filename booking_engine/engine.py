"""
The booking engine's public operations.

BookingEngine wires the pricing, availability, state machine and refund
components to the injected collaborators (listings, bookings, payments,
notifications). It holds no state between calls; everything shared lives
behind the repositories.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import Any, TypeVar
from uuid import UUID, uuid4

from loguru import logger

from booking_engine.availability import AvailabilityChecker
from booking_engine.errors import (
    ConflictError,
    NotFoundError,
    PaymentError,
    StateError,
    ValidationError,
)
from booking_engine.penalties import HostPenaltyPolicy
from booking_engine.policies import CancellationPolicyEngine
from booking_engine.pricing import FeeSchedule, PricingCalculator
from booking_engine.refunds import RefundCalculator, refund_key, release_key
from booking_engine.repositories import (
    BookingRepository,
    ListingRepository,
    NotificationService,
    PaymentGateway,
)
from booking_engine.schemas import (
    Booking,
    BookingStatus,
    CancellationOutcome,
    CancelledBy,
    ExtenuatingCircumstance,
    Listing,
    PaymentStatus,
    PriceBreakdown,
    confirmation_code_for,
)
from booking_engine.state_machine import BookingStateMachine

R = TypeVar("R")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def authorize_key(booking_id: UUID) -> str:
    return f"booking-{booking_id}-authorize"


def capture_key(booking_id: UUID) -> str:
    return f"booking-{booking_id}-capture"


async def with_payment_retry(
    operation: Callable[[], Awaitable[R]],
    *,
    max_attempts: int,
    backoff_seconds: float,
    description: str,
) -> R:
    """
    Run `operation`, retrying PaymentError with exponential backoff.

    Only PaymentError is retried; anything else propagates on the first
    attempt. The last PaymentError is re-raised once attempts run out.
    """
    last_exception: PaymentError | None = None
    for attempt in range(max_attempts):
        try:
            return await operation()
        except PaymentError as exc:
            last_exception = exc
            if attempt < max_attempts - 1:
                wait_time = backoff_seconds * (2**attempt)
                logger.warning(
                    "Attempt {}/{} failed for {}: {}. Retrying in {}s...",
                    attempt + 1,
                    max_attempts,
                    description,
                    exc.message,
                    wait_time,
                )
                await asyncio.sleep(wait_time)
            else:
                logger.error(
                    "All {} attempts failed for {}: {}",
                    max_attempts,
                    description,
                    exc.message,
                )

    if last_exception is not None:
        raise last_exception
    raise PaymentError(f"{description} was never attempted")


class BookingEngine:
    def __init__(
        self,
        listings: ListingRepository,
        bookings: BookingRepository,
        payments: PaymentGateway,
        notifications: NotificationService,
        fees: FeeSchedule,
        *,
        clock: Callable[[], datetime] = utcnow,
        pending_request_ttl: timedelta = timedelta(hours=24),
        payment_max_attempts: int = 3,
        payment_backoff_seconds: float = 0.5,
    ) -> None:
        self.listings = listings
        self.bookings = bookings
        self.payments = payments
        self.notifications = notifications
        self.clock = clock
        self.payment_max_attempts = max(1, payment_max_attempts)
        self.payment_backoff_seconds = payment_backoff_seconds

        self.pricing = PricingCalculator(fees)
        self.availability = AvailabilityChecker(bookings)
        self.state_machine = BookingStateMachine(pending_request_ttl)
        self.refunds = RefundCalculator(
            bookings,
            payments,
            policies=CancellationPolicyEngine(),
            penalties=HostPenaltyPolicy(bookings),
            state_machine=self.state_machine,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def quote(
        self,
        listing_id: UUID,
        check_in: datetime,
        check_out: datetime,
        guest_count: int,
    ) -> PriceBreakdown:
        listing = await self._get_listing(listing_id)
        return self.pricing.quote(listing, check_in, check_out, guest_count)

    async def is_available(
        self, listing_id: UUID, check_in: datetime, check_out: datetime
    ) -> bool:
        if check_in.tzinfo is None or check_out.tzinfo is None:
            raise ValidationError("check_in and check_out must be timezone-aware")
        if check_out <= check_in:
            raise ValidationError("check_out must be after check_in")
        return await self.availability.is_available(listing_id, check_in, check_out)

    async def get_booking(self, booking_id: UUID) -> Booking:
        booking = await self.bookings.get(booking_id)
        if booking is None:
            raise NotFoundError(
                "Booking not found", details={"booking_id": str(booking_id)}
            )
        return booking

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_booking(
        self,
        listing_id: UUID,
        guest_id: UUID,
        check_in: datetime,
        check_out: datetime,
        guest_count: int,
        payment_method: str | None = None,
    ) -> Booking:
        """
        Quote, reserve and (optionally) authorize payment for a new stay.

        Authorization happens before the reservation so that a declined card
        never holds the calendar; a lost reservation race releases it again.
        Instant-book listings are captured immediately after the reservation.
        """
        listing = await self._get_listing(listing_id)
        pricing = self.pricing.quote(listing, check_in, check_out, guest_count)

        now = self.clock()
        if check_in <= now:
            raise ValidationError(
                "check_in must be in the future",
                details={"check_in": check_in.isoformat()},
            )

        booking_id = uuid4()
        auth_id: str | None = None
        if payment_method is not None:
            auth_id = await with_payment_retry(
                lambda: self.payments.authorize(
                    pricing.total,
                    pricing.currency,
                    payment_method,
                    idempotency_key=authorize_key(booking_id),
                ),
                max_attempts=self.payment_max_attempts,
                backoff_seconds=self.payment_backoff_seconds,
                description=f"authorize booking={booking_id}",
            )

        booking = Booking(
            id=booking_id,
            confirmation_code=confirmation_code_for(booking_id),
            listing_id=listing.id,
            guest_id=guest_id,
            host_id=listing.host_id,
            check_in=check_in,
            check_out=check_out,
            guest_count=guest_count,
            pricing=pricing,
            cancellation_policy=listing.cancellation_policy,
            status=self.state_machine.initial_status(listing),
            payment_status=(
                PaymentStatus.AUTHORIZED if auth_id else PaymentStatus.UNPAID
            ),
            payment_auth_id=auth_id,
            created_at=now,
            updated_at=now,
        )

        try:
            await self.availability.reserve(booking)
        except ConflictError:
            if auth_id is not None:
                try:
                    await self._release(booking)
                except PaymentError as exc:
                    logger.error(
                        "Failed to release authorization for unreserved booking={}: {}",
                        booking.id,
                        exc.message,
                    )
            raise

        if booking.status == BookingStatus.CONFIRMED and auth_id is not None:
            booking = await self._capture(booking, now)

        await self._notify(
            booking.host_id,
            "booking_requested"
            if booking.status == BookingStatus.PENDING
            else "booking_confirmed",
            booking,
        )
        await self._notify(booking.guest_id, f"booking_{booking.status}", booking)
        return booking

    # ------------------------------------------------------------------
    # Host response
    # ------------------------------------------------------------------

    async def respond_to_booking(
        self,
        booking_id: UUID,
        accept: bool,
        responder_id: UUID | None = None,
    ) -> Booking:
        booking = await self.get_booking(booking_id)
        if responder_id is not None and responder_id != booking.host_id:
            # Only the host may respond; don't reveal the booking to anyone else.
            raise NotFoundError(
                "Booking not found", details={"booking_id": str(booking_id)}
            )

        target = BookingStatus.CONFIRMED if accept else BookingStatus.REJECTED
        self.state_machine.assert_transition(booking.status, target)

        now = self.clock()
        if accept and self.state_machine.scheduled_target(booking, now) is not None:
            raise StateError(
                booking.status.value,
                target.value,
                message="Booking request has expired and can no longer be accepted",
            )

        patch: dict[str, Any] = {"status": target, "updated_at": now}
        if accept and booking.payment_status == PaymentStatus.AUTHORIZED:
            patch.update(await self._capture_patch(booking))

        updated = await self.bookings.update(
            booking.id, patch, expected_status=BookingStatus.PENDING
        )
        if updated is None:
            if "payment_capture_id" in patch:
                await self._refund_orphaned_capture(
                    booking, patch["payment_capture_id"], now
                )
            raise ConflictError(
                f"Booking {booking.id} changed while the host was responding",
                details={"booking_id": str(booking.id)},
            )

        logger.info("Booking={} {} by host {}", booking.id, target, booking.host_id)

        if not accept and updated.payment_status == PaymentStatus.AUTHORIZED:
            updated = await self._release_after_reject(updated, now)

        await self._notify(updated.guest_id, f"booking_{target}", updated)
        return updated

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def cancel_booking(
        self,
        booking_id: UUID,
        cancelled_by: CancelledBy,
        reason: str,
        extenuating: ExtenuatingCircumstance | None = None,
    ) -> CancellationOutcome:
        """
        Cancel a booking and settle its money.

        Payment failures are retried with backoff. When every attempt fails
        the booking is left in `cancellation_pending` and the returned
        outcome carries that status and the gateway error; calling again
        later resumes with the same amounts and idempotency key.
        """
        booking = await self.get_booking(booking_id)
        already_cancelled = booking.status == BookingStatus.CANCELLED

        async def attempt() -> CancellationOutcome:
            current = await self.get_booking(booking_id)
            return await self.refunds.cancel(
                current, cancelled_by, reason, self.clock(), extenuating=extenuating
            )

        try:
            outcome = await with_payment_retry(
                attempt,
                max_attempts=self.payment_max_attempts,
                backoff_seconds=self.payment_backoff_seconds,
                description=f"cancel booking={booking_id}",
            )
        except PaymentError:
            pending = await self.get_booking(booking_id)
            return CancellationOutcome.from_booking(pending)

        if not already_cancelled and outcome.status == BookingStatus.CANCELLED:
            cancelled = await self.get_booking(booking_id)
            payload = {
                "reason": reason,
                "cancelled_by": str(cancelled_by),
                "guest_refund_amount": str(outcome.guest_refund_amount),
                "host_payout_amount": str(outcome.host_payout_amount),
            }
            await self._notify(cancelled.guest_id, "booking_cancelled", cancelled, **payload)
            await self._notify(cancelled.host_id, "booking_cancelled", cancelled, **payload)
        return outcome

    # ------------------------------------------------------------------
    # Scheduled transitions
    # ------------------------------------------------------------------

    async def advance_scheduled_states(self, now: datetime | None = None) -> list[UUID]:
        """
        Apply every wall-clock transition that is due at `now`.

        Safe to run concurrently or repeatedly: each step is a conditional
        update on the booking's current status, and notifications fire only
        for the caller whose update actually landed.
        """
        now = now or self.clock()
        pending_cutoff = now - self.state_machine.pending_request_ttl
        due = await self.bookings.list_due_for_transition(now, pending_cutoff)

        advanced: list[UUID] = []
        for booking in due:
            moved = False
            target = self.state_machine.scheduled_target(booking, now)
            while target is not None:
                updated = await self.bookings.update(
                    booking.id,
                    {"status": target, "updated_at": now},
                    expected_status=booking.status,
                )
                if updated is None:
                    logger.debug(
                        "Booking={} already moved past {}; skipping",
                        booking.id,
                        booking.status,
                    )
                    break

                logger.info(
                    "Booking={} advanced {} -> {}", booking.id, booking.status, target
                )
                moved = True
                if (
                    target == BookingStatus.REJECTED
                    and updated.payment_status == PaymentStatus.AUTHORIZED
                ):
                    updated = await self._release_after_reject(updated, now)
                await self._notify(updated.guest_id, f"booking_{target}", updated)
                if target == BookingStatus.REJECTED:
                    await self._notify(updated.host_id, "booking_expired", updated)

                booking = updated
                target = self.state_machine.scheduled_target(booking, now)

            if moved:
                advanced.append(booking.id)
        return advanced

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _get_listing(self, listing_id: UUID) -> Listing:
        listing = await self.listings.get(listing_id)
        if listing is None:
            raise NotFoundError(
                "Listing not found", details={"listing_id": str(listing_id)}
            )
        return listing

    async def _capture_patch(self, booking: Booking) -> dict[str, Any]:
        auth_id = booking.payment_auth_id
        if auth_id is None:
            raise PaymentError(f"Booking {booking.id} has no payment authorization")
        capture_id = await with_payment_retry(
            lambda: self.payments.capture(
                auth_id, idempotency_key=capture_key(booking.id)
            ),
            max_attempts=self.payment_max_attempts,
            backoff_seconds=self.payment_backoff_seconds,
            description=f"capture booking={booking.id}",
        )
        return {
            "payment_status": PaymentStatus.CAPTURED,
            "payment_capture_id": capture_id,
            "captured_amount": booking.pricing.total,
        }

    async def _capture(self, booking: Booking, now: datetime) -> Booking:
        """Capture an instant-book booking; on failure it stays authorized."""
        try:
            patch = await self._capture_patch(booking)
        except PaymentError as exc:
            logger.error(
                "Capture failed for instant booking={}; left authorized: {}",
                booking.id,
                exc.message,
            )
            return booking

        patch["updated_at"] = now
        updated = await self.bookings.update(
            booking.id, patch, expected_status=BookingStatus.CONFIRMED
        )
        return updated or booking

    async def _release(self, booking: Booking) -> None:
        auth_id = booking.payment_auth_id
        if auth_id is None:
            return
        await with_payment_retry(
            lambda: self.payments.release(
                auth_id, idempotency_key=release_key(booking)
            ),
            max_attempts=self.payment_max_attempts,
            backoff_seconds=self.payment_backoff_seconds,
            description=f"release booking={booking.id}",
        )

    async def _refund_orphaned_capture(
        self, booking: Booking, capture_id: str, now: datetime
    ) -> None:
        """
        Refund a capture whose accept lost the race to another transition.

        The booking is written as refunded under whatever status it now has;
        if the refund itself fails the capture id is still recorded so the
        money can be traced.
        """
        amount = booking.pricing.total
        patch: dict[str, Any] = {
            "payment_capture_id": capture_id,
            "captured_amount": amount,
            "updated_at": now,
        }
        try:
            await with_payment_retry(
                lambda: self.payments.refund(
                    capture_id, amount, idempotency_key=refund_key(booking)
                ),
                max_attempts=self.payment_max_attempts,
                backoff_seconds=self.payment_backoff_seconds,
                description=f"refund orphaned capture booking={booking.id}",
            )
        except PaymentError as exc:
            logger.error(
                "Failed to refund capture {} for booking={}: {}",
                capture_id,
                booking.id,
                exc.message,
            )
            patch["payment_status"] = PaymentStatus.CAPTURED
        else:
            logger.warning(
                "Refunded capture {} for booking={} after losing the accept race",
                capture_id,
                booking.id,
            )
            patch["payment_status"] = PaymentStatus.REFUNDED

        current = await self.bookings.get(booking.id)
        if current is not None:
            await self.bookings.update(booking.id, patch, expected_status=current.status)

    async def _release_after_reject(self, booking: Booking, now: datetime) -> Booking:
        """Release the hold on a rejected booking; failures are logged only."""
        try:
            await self._release(booking)
        except PaymentError as exc:
            logger.error(
                "Failed to release authorization for rejected booking={}: {}",
                booking.id,
                exc.message,
            )
            return booking

        updated = await self.bookings.update(
            booking.id,
            {"payment_status": PaymentStatus.UNPAID, "updated_at": now},
            expected_status=BookingStatus.REJECTED,
        )
        return updated or booking

    async def _notify(
        self, user_id: UUID, event_type: str, booking: Booking, **extra: Any
    ) -> None:
        payload: dict[str, Any] = {
            "booking_id": str(booking.id),
            "confirmation_code": booking.confirmation_code,
            "listing_id": str(booking.listing_id),
            "status": str(booking.status),
            "check_in": booking.check_in.isoformat(),
            "check_out": booking.check_out.isoformat(),
            **extra,
        }
        try:
            await self.notifications.notify(user_id, event_type, payload)
        except Exception:
            logger.opt(exception=True).warning(
                "Notification {} to user={} failed for booking={}",
                event_type,
                user_id,
                booking.id,
            )
