"""
Cancellation settlement.

A cancellation is decided once and written down before any money moves:

  1. guard the transition (state + guest 24h floor)
  2. compute the refund/payout split from the booking's pricing snapshot
  3. clamp it to what was actually captured
  4. store the record and move to `cancellation_pending`
  5. instruct the payment gateway (idempotency key derived from the booking id)
  6. move to `cancelled`

If step 5 fails the booking stays in `cancellation_pending` with the stored
split; calling `cancel` again resumes at step 5 with the same amounts and the
same idempotency key. Once `cancelled`, `cancel` returns the stored outcome
without touching the gateway.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from loguru import logger

from booking_engine.errors import ConflictError, NotFoundError, PaymentError
from booking_engine.penalties import HostPenaltyPolicy
from booking_engine.policies import CancellationPolicyEngine, full_refund
from booking_engine.repositories import BookingRepository, PaymentGateway
from booking_engine.schemas import (
    Booking,
    BookingStatus,
    CancellationOutcome,
    CancellationRecord,
    CancelledBy,
    ExtenuatingCircumstance,
    HostPenalty,
    PaymentStatus,
    RefundSplit,
)
from booking_engine.state_machine import BookingStateMachine


def refund_key(booking: Booking) -> str:
    return f"booking-{booking.id}-refund"


def release_key(booking: Booking) -> str:
    return f"booking-{booking.id}-release"


class RefundCalculator:
    def __init__(
        self,
        bookings: BookingRepository,
        payments: PaymentGateway,
        policies: CancellationPolicyEngine | None = None,
        penalties: HostPenaltyPolicy | None = None,
        state_machine: BookingStateMachine | None = None,
    ) -> None:
        self.bookings = bookings
        self.payments = payments
        self.policies = policies or CancellationPolicyEngine()
        self.penalties = penalties or HostPenaltyPolicy(bookings)
        self.state_machine = state_machine or BookingStateMachine()

    async def cancel(
        self,
        booking: Booking,
        cancelled_by: CancelledBy,
        reason: str,
        now: datetime,
        extenuating: ExtenuatingCircumstance | None = None,
    ) -> CancellationOutcome:
        if booking.cancellation is not None:
            if booking.status == BookingStatus.CANCELLATION_PENDING:
                logger.info("Resuming pending cancellation for booking={}", booking.id)
                return await self._settle(booking, now)
            return CancellationOutcome.from_booking(booking)

        self.state_machine.assert_can_cancel(booking, cancelled_by, now)

        split = self.split_for(booking, cancelled_by, now, extenuating)
        guest_refund, host_payout = self.clamp_to_captured(booking, split)

        penalty: HostPenalty | None = None
        if cancelled_by == CancelledBy.HOST and extenuating is None:
            penalty = await self.penalties.assess_for(booking, now)

        record = CancellationRecord(
            reason=reason,
            cancelled_by=cancelled_by,
            cancelled_at=now,
            tier=split.tier,
            guest_refund_amount=guest_refund,
            host_payout_amount=host_payout,
            extenuating=split.extenuating,
            penalty=penalty,
        )
        self.state_machine.assert_transition(
            booking.status, BookingStatus.CANCELLATION_PENDING
        )
        pending = await self.bookings.update(
            booking.id,
            {
                "status": BookingStatus.CANCELLATION_PENDING,
                "cancellation": record,
                "updated_at": now,
            },
            expected_status=booking.status,
        )
        if pending is None:
            raise ConflictError(
                f"Booking {booking.id} changed while it was being cancelled",
                details={"booking_id": str(booking.id)},
            )

        logger.info(
            "Booking={} cancellation recorded by {}: tier={} refund={} payout={} {}",
            booking.id,
            cancelled_by,
            split.tier,
            guest_refund,
            host_payout,
            booking.pricing.currency,
        )

        if penalty is not None:
            try:
                await self.penalties.record(penalty, booking)
            except Exception:
                logger.opt(exception=True).error(
                    "Failed to record host penalty for booking={}", booking.id
                )

        return await self._settle(pending, now)

    def split_for(
        self,
        booking: Booking,
        cancelled_by: CancelledBy,
        now: datetime,
        extenuating: ExtenuatingCircumstance | None,
    ) -> RefundSplit:
        if cancelled_by == CancelledBy.HOST and extenuating is None:
            # The guest is not at fault when the host cancels.
            return full_refund(booking.pricing)
        return self.policies.evaluate(
            booking.cancellation_policy,
            booking.check_in,
            now,
            booking.pricing,
            extenuating=extenuating is not None,
        )

    @staticmethod
    def clamp_to_captured(booking: Booking, split: RefundSplit) -> tuple[Decimal, Decimal]:
        """Never hand out more than was actually captured."""
        if booking.payment_status == PaymentStatus.CAPTURED:
            captured = booking.captured_amount
        else:
            captured = Decimal("0.00")
        guest_refund = min(split.guest_refund, captured)
        host_payout = min(split.host_payout, captured - guest_refund)
        return guest_refund, host_payout

    async def _settle(self, booking: Booking, now: datetime) -> CancellationOutcome:
        record = booking.cancellation
        if record is None:
            raise NotFoundError(f"Booking {booking.id} has no cancellation record")

        payment_status = booking.payment_status
        try:
            if (
                booking.payment_status == PaymentStatus.CAPTURED
                and booking.payment_capture_id
                and record.guest_refund_amount > 0
            ):
                await self.payments.refund(
                    booking.payment_capture_id,
                    record.guest_refund_amount,
                    idempotency_key=refund_key(booking),
                )
                payment_status = (
                    PaymentStatus.REFUNDED
                    if record.guest_refund_amount >= booking.captured_amount
                    else PaymentStatus.PARTIALLY_REFUNDED
                )
            elif booking.payment_status == PaymentStatus.AUTHORIZED and booking.payment_auth_id:
                await self.payments.release(
                    booking.payment_auth_id, idempotency_key=release_key(booking)
                )
                payment_status = PaymentStatus.UNPAID
        except PaymentError as exc:
            logger.warning(
                "Payment instruction failed for booking={}; left in cancellation_pending: {}",
                booking.id,
                exc.message,
            )
            await self.bookings.update(
                booking.id,
                {"cancellation": record.model_copy(update={"error": exc.message})},
                expected_status=BookingStatus.CANCELLATION_PENDING,
            )
            raise

        patch: dict[str, Any] = {
            "status": BookingStatus.CANCELLED,
            "payment_status": payment_status,
            "cancellation": record.model_copy(update={"error": None}),
            "updated_at": now,
        }
        cancelled = await self.bookings.update(
            booking.id, patch, expected_status=BookingStatus.CANCELLATION_PENDING
        )
        if cancelled is None:
            # A concurrent retry settled it first; report what is stored.
            latest = await self.bookings.get(booking.id)
            if latest is None:
                raise NotFoundError(f"Booking {booking.id} not found")
            return CancellationOutcome.from_booking(latest)

        logger.info("Booking={} cancelled", booking.id)
        return CancellationOutcome.from_booking(cancelled)
