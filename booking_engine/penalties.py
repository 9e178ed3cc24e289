from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

from loguru import logger

from booking_engine.repositories import BookingRepository
from booking_engine.schemas import Booking, CalendarBlock, HostPenalty, money

PENALTY_LOOKBACK = timedelta(days=365)


@dataclass(frozen=True)
class PenaltyStep:
    fee: Decimal
    extra_block: timedelta  # calendar stays blocked this long past check-out
    account_review: bool


# Indexed by prior offenses in the lookback window; the last step repeats.
PENALTY_LADDER: tuple[PenaltyStep, ...] = (
    PenaltyStep(fee=Decimal("50"), extra_block=timedelta(0), account_review=False),
    PenaltyStep(fee=Decimal("100"), extra_block=timedelta(days=7), account_review=False),
    PenaltyStep(fee=Decimal("200"), extra_block=timedelta(days=7), account_review=True),
)


class HostPenaltyPolicy:
    """
    Escalating penalties for host-initiated cancellations.

    Bookkeeping only: a penalty is recorded alongside the cancellation and
    blocks the listing's calendar for the cancelled dates, but it never makes
    the cancellation itself fail.
    """

    def __init__(self, bookings: BookingRepository) -> None:
        self.bookings = bookings

    def assess(self, booking: Booking, prior_offenses: int, now: datetime) -> HostPenalty:
        step = PENALTY_LADDER[min(prior_offenses, len(PENALTY_LADDER) - 1)]
        return HostPenalty(
            host_id=booking.host_id,
            booking_id=booking.id,
            offense_number=prior_offenses + 1,
            fee=money(step.fee),
            currency=booking.pricing.currency,
            block_start=booking.check_in,
            block_end=booking.check_out + step.extra_block,
            account_review=step.account_review,
            assessed_at=now,
        )

    async def assess_for(self, booking: Booking, now: datetime) -> HostPenalty:
        prior = await self.bookings.count_host_cancellations(
            booking.host_id, now - PENALTY_LOOKBACK
        )
        return self.assess(booking, prior, now)

    async def record(self, penalty: HostPenalty, booking: Booking) -> None:
        await self.bookings.record_penalty(penalty)
        await self.bookings.add_block(
            CalendarBlock(
                listing_id=booking.listing_id,
                start=penalty.block_start,
                end=penalty.block_end,
                reason=f"host cancellation of booking {booking.confirmation_code}",
            )
        )
        logger.info(
            "Host {} penalised for cancelling booking={} (offense #{}, fee {} {}, review={})",
            penalty.host_id,
            penalty.booking_id,
            penalty.offense_number,
            penalty.fee,
            penalty.currency,
            penalty.account_review,
        )
