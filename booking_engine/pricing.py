"""
Quote computation.

Pure functions over a listing snapshot and a platform fee schedule. The
result is the PriceBreakdown snapshot that gets stored on the booking.
"""

from __future__ import annotations

import math
from datetime import datetime
from decimal import Decimal, InvalidOperation

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as SchemaError

from booking_engine import settings
from booking_engine.errors import ValidationError
from booking_engine.schemas import Listing, PriceBreakdown, money

SECONDS_PER_NIGHT = 86400
WEEKLY_STAY_NIGHTS = 7
MONTHLY_STAY_NIGHTS = 28


class FeeSchedule(BaseModel):
    """Platform service-fee rates, as fractions of the subtotal."""

    guest_service_fee_rate: Decimal = Field(ge=0, lt=1)
    host_service_fee_rate: Decimal = Field(ge=0, lt=1)

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_settings(cls) -> FeeSchedule:
        guest_rate = settings.GUEST_SERVICE_FEE_RATE
        host_rate = settings.HOST_SERVICE_FEE_RATE
        if guest_rate is None or host_rate is None:
            raise ValidationError(
                "GUEST_SERVICE_FEE_RATE and HOST_SERVICE_FEE_RATE must both be configured",
                code="fee_schedule_not_configured",
            )
        try:
            return cls(
                guest_service_fee_rate=Decimal(guest_rate),
                host_service_fee_rate=Decimal(host_rate),
            )
        except (InvalidOperation, SchemaError):
            raise ValidationError(
                f"Invalid service fee rates: guest={guest_rate!r}, host={host_rate!r}",
                code="fee_schedule_invalid",
            ) from None


def count_nights(check_in: datetime, check_out: datetime) -> int:
    """Nights billed for [check_in, check_out); partial days round up."""
    seconds = (check_out - check_in).total_seconds()
    return math.ceil(seconds / SECONDS_PER_NIGHT)


def discount_rate(listing: Listing, nights: int) -> Decimal:
    if nights >= MONTHLY_STAY_NIGHTS:
        return listing.monthly_discount
    if nights >= WEEKLY_STAY_NIGHTS:
        return listing.weekly_discount
    return Decimal("0")


class PricingCalculator:
    def __init__(self, fees: FeeSchedule) -> None:
        self.fees = fees

    def validate_stay(
        self,
        listing: Listing,
        check_in: datetime,
        check_out: datetime,
        guest_count: int,
    ) -> int:
        """Raise ValidationError unless the stay is bookable; return its nights."""
        if check_in.tzinfo is None or check_out.tzinfo is None:
            raise ValidationError("check_in and check_out must be timezone-aware")
        if check_out <= check_in:
            raise ValidationError(
                "check_out must be after check_in",
                details={"check_in": check_in.isoformat(), "check_out": check_out.isoformat()},
            )
        if guest_count < 1:
            raise ValidationError("guest_count must be at least 1")
        if guest_count > listing.max_guests:
            raise ValidationError(
                f"Listing allows at most {listing.max_guests} guests",
                details={"guest_count": guest_count, "max_guests": listing.max_guests},
            )

        nights = count_nights(check_in, check_out)
        if nights < listing.min_nights:
            raise ValidationError(
                f"Minimum stay is {listing.min_nights} nights",
                details={"nights": nights, "min_nights": listing.min_nights},
            )
        if nights > listing.max_nights:
            raise ValidationError(
                f"Maximum stay is {listing.max_nights} nights",
                details={"nights": nights, "max_nights": listing.max_nights},
            )
        return nights

    def quote(
        self,
        listing: Listing,
        check_in: datetime,
        check_out: datetime,
        guest_count: int,
    ) -> PriceBreakdown:
        nights = self.validate_stay(listing, check_in, check_out, guest_count)

        subtotal = money(listing.nightly_price * nights)
        discount = money(subtotal * discount_rate(listing, nights) / 100)
        cleaning_fee = money(listing.cleaning_fee)
        guest_service_fee = money(subtotal * self.fees.guest_service_fee_rate)
        host_service_fee = money(subtotal * self.fees.host_service_fee_rate)
        total = subtotal - discount + cleaning_fee + guest_service_fee

        if total <= 0:
            raise ValidationError(
                "Quoted total must be positive", details={"total": str(total)}
            )

        return PriceBreakdown(
            nights=nights,
            nightly_price=money(listing.nightly_price),
            subtotal=subtotal,
            discount=discount,
            cleaning_fee=cleaning_fee,
            guest_service_fee=guest_service_fee,
            host_service_fee=host_service_fee,
            total=total,
            currency=listing.currency,
        )
