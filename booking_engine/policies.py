"""
Cancellation policy tiers.

Each short-stay tier is two notice thresholds measured back from check-in:

    policy     full refund     50% of accommodation     nothing
    flexible   >= 24 hours     >= 0 (before check-in)   after check-in
    moderate   >= 5 days       >= 2 days                < 2 days
    strict     >= 14 days      >= 7 days                < 7 days

Thresholds are inclusive: notice exactly equal to a threshold earns the more
generous tier. Refund percentages apply to the accommodation amount
(subtotal less discount); cleaning and guest service fees come back only in
the full tier.

Stays of 28 nights or more are long-term regardless of the listing's tier:
the stay is cut into 30-night billing months from check-in, a month that has
started is never refunded, and a future month is refunded only with at least
30 days' notice.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

from booking_engine.pricing import MONTHLY_STAY_NIGHTS
from booking_engine.schemas import PolicyTier, PriceBreakdown, RefundSplit, RefundTier, money

PARTIAL_REFUND_RATE = Decimal("0.5")
BILLING_MONTH_NIGHTS = 30
LONG_TERM_NOTICE = timedelta(days=30)


@dataclass(frozen=True)
class NoticeWindow:
    full: timedelta  # minimum notice for a full refund
    partial: timedelta  # minimum notice for the 50% tier


NOTICE_WINDOWS: dict[PolicyTier, NoticeWindow] = {
    PolicyTier.FLEXIBLE: NoticeWindow(full=timedelta(hours=24), partial=timedelta(0)),
    PolicyTier.MODERATE: NoticeWindow(full=timedelta(days=5), partial=timedelta(days=2)),
    PolicyTier.STRICT: NoticeWindow(full=timedelta(days=14), partial=timedelta(days=7)),
}


def effective_tier(policy: PolicyTier, nights: int) -> PolicyTier:
    """The tier that actually governs a stay of `nights` nights."""
    if nights >= MONTHLY_STAY_NIGHTS:
        return PolicyTier.LONG_TERM
    if policy == PolicyTier.LONG_TERM:
        return PolicyTier.STRICT
    return policy


def full_refund(pricing: PriceBreakdown, extenuating: bool = False) -> RefundSplit:
    return RefundSplit(
        tier=RefundTier.FULL,
        guest_refund=pricing.total,
        host_payout=Decimal("0.00"),
        refundable_nights=pricing.nights,
        extenuating=extenuating,
    )


def partial_refund(pricing: PriceBreakdown) -> RefundSplit:
    guest_refund = money(pricing.accommodation * PARTIAL_REFUND_RATE)
    return RefundSplit(
        tier=RefundTier.PARTIAL,
        guest_refund=guest_refund,
        host_payout=pricing.accommodation - guest_refund,
    )


def no_refund(pricing: PriceBreakdown) -> RefundSplit:
    return RefundSplit(
        tier=RefundTier.NONE,
        guest_refund=Decimal("0.00"),
        host_payout=pricing.accommodation + pricing.cleaning_fee,
    )


class CancellationPolicyEngine:
    def evaluate(
        self,
        policy: PolicyTier,
        check_in: datetime,
        cancelled_at: datetime,
        pricing: PriceBreakdown,
        extenuating: bool = False,
    ) -> RefundSplit:
        if extenuating:
            return full_refund(pricing, extenuating=True)

        tier = effective_tier(policy, pricing.nights)
        if tier == PolicyTier.LONG_TERM:
            return self._evaluate_long_term(check_in, cancelled_at, pricing)

        notice = check_in - cancelled_at
        window = NOTICE_WINDOWS[tier]
        if notice >= window.full:
            return full_refund(pricing)
        if notice >= window.partial:
            return partial_refund(pricing)
        return no_refund(pricing)

    def _evaluate_long_term(
        self, check_in: datetime, cancelled_at: datetime, pricing: PriceBreakdown
    ) -> RefundSplit:
        refundable_nights = 0
        offset = 0
        while offset < pricing.nights:
            length = min(BILLING_MONTH_NIGHTS, pricing.nights - offset)
            month_start = check_in + timedelta(days=offset)
            # A started month has zero or negative notice, so it never qualifies.
            if month_start - cancelled_at >= LONG_TERM_NOTICE:
                refundable_nights += length
            offset += length

        if refundable_nights == pricing.nights:
            return full_refund(pricing)
        if refundable_nights == 0:
            return no_refund(pricing)

        guest_refund = money(pricing.accommodation * refundable_nights / pricing.nights)
        return RefundSplit(
            tier=RefundTier.LONG_TERM_PARTIAL,
            guest_refund=guest_refund,
            host_payout=pricing.accommodation - guest_refund + pricing.cleaning_fee,
            refundable_nights=refundable_nights,
        )
