from __future__ import annotations

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import StrEnum
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

CENT = Decimal("0.01")


def money(value: Decimal | int | str) -> Decimal:
    """Quantize to cents, rounding half up."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def to_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        raise ValueError("datetime must be timezone-aware (include UTC offset)")
    return dt.astimezone(timezone.utc)


class BookingStatus(StrEnum):
    PENDING = "pending"  # request awaiting host response
    CONFIRMED = "confirmed"  # host accepted, or instant book
    ACTIVE = "active"  # guest is checked in
    COMPLETED = "completed"  # stay ended
    REJECTED = "rejected"  # host declined or request expired
    CANCELLATION_PENDING = "cancellation_pending"  # split recorded, refund not yet confirmed
    CANCELLED = "cancelled"


# Statuses that hold the listing's calendar.
OCCUPYING_STATUSES = frozenset(
    {BookingStatus.PENDING, BookingStatus.CONFIRMED, BookingStatus.ACTIVE}
)


class PaymentStatus(StrEnum):
    UNPAID = "unpaid"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    PARTIALLY_REFUNDED = "partially_refunded"
    REFUNDED = "refunded"


class PolicyTier(StrEnum):
    FLEXIBLE = "flexible"
    MODERATE = "moderate"
    STRICT = "strict"
    LONG_TERM = "long_term"


class RefundTier(StrEnum):
    FULL = "full"
    PARTIAL = "partial"
    NONE = "none"
    LONG_TERM_PARTIAL = "long_term_partial"


class CancelledBy(StrEnum):
    GUEST = "guest"
    HOST = "host"
    ADMIN = "admin"


# ---------------------------------------------------------------------------
# Domain values
# ---------------------------------------------------------------------------


class Listing(BaseModel):
    """Read-only snapshot of a listing as served by listings-ms."""

    id: UUID
    host_id: UUID
    nightly_price: Decimal = Field(gt=0)
    currency: str = Field(default="EUR", min_length=3, max_length=3)
    cleaning_fee: Decimal = Field(default=Decimal("0"), ge=0)
    weekly_discount: Decimal = Field(default=Decimal("0"), ge=0, le=100)
    monthly_discount: Decimal = Field(default=Decimal("0"), ge=0, le=100)
    max_guests: int = Field(ge=1)
    min_nights: int = Field(default=1, ge=1)
    max_nights: int = Field(default=365, ge=1)
    cancellation_policy: PolicyTier = PolicyTier.MODERATE
    instant_book: bool = False

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def validate_stay_bounds(self) -> Listing:
        if self.max_nights < self.min_nights:
            raise ValueError("max_nights must be >= min_nights")
        return self


class PriceBreakdown(BaseModel):
    """Pricing snapshot stored on a booking; never recomputed from the listing."""

    nights: int = Field(ge=1)
    nightly_price: Decimal = Field(gt=0)
    subtotal: Decimal = Field(ge=0)
    discount: Decimal = Field(ge=0)
    cleaning_fee: Decimal = Field(ge=0)
    guest_service_fee: Decimal = Field(ge=0)
    host_service_fee: Decimal = Field(ge=0)
    total: Decimal = Field(gt=0)
    currency: str = Field(min_length=3, max_length=3)

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def validate_total(self) -> PriceBreakdown:
        expected = (
            self.subtotal - self.discount + self.cleaning_fee + self.guest_service_fee
        )
        if self.total != expected:
            raise ValueError(
                f"total {self.total} != subtotal - discount + cleaning_fee "
                f"+ guest_service_fee ({expected})"
            )
        if self.discount > self.subtotal:
            raise ValueError("discount cannot exceed subtotal")
        return self

    @property
    def accommodation(self) -> Decimal:
        """What the guest actually pays for the nights themselves."""
        return self.subtotal - self.discount


class HostPenalty(BaseModel):
    host_id: UUID
    booking_id: UUID
    offense_number: int = Field(ge=1)
    fee: Decimal = Field(ge=0)
    currency: str
    block_start: datetime
    block_end: datetime
    account_review: bool = False
    assessed_at: datetime

    model_config = ConfigDict(frozen=True)


class CalendarBlock(BaseModel):
    listing_id: UUID
    start: datetime
    end: datetime
    reason: str

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def validate_window(self) -> CalendarBlock:
        if self.end <= self.start:
            raise ValueError("end must be after start")
        return self


class ExtenuatingCircumstance(BaseModel):
    """A documented external event that overrides the cancellation policy."""

    kind: str = Field(min_length=1, max_length=100)
    reference: str = Field(min_length=1, max_length=500)

    model_config = ConfigDict(frozen=True)


class CancellationRecord(BaseModel):
    reason: str
    cancelled_by: CancelledBy
    cancelled_at: datetime
    tier: RefundTier
    guest_refund_amount: Decimal = Field(ge=0)
    host_payout_amount: Decimal = Field(ge=0)
    extenuating: bool = False
    penalty: HostPenalty | None = None
    error: str | None = None

    model_config = ConfigDict(frozen=True)


class Booking(BaseModel):
    id: UUID
    confirmation_code: str
    listing_id: UUID
    guest_id: UUID
    host_id: UUID
    check_in: datetime
    check_out: datetime
    guest_count: int = Field(ge=1)
    pricing: PriceBreakdown
    cancellation_policy: PolicyTier
    status: BookingStatus
    payment_status: PaymentStatus = PaymentStatus.UNPAID
    payment_auth_id: str | None = None
    payment_capture_id: str | None = None
    captured_amount: Decimal = Field(default=Decimal("0"), ge=0)
    cancellation: CancellationRecord | None = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(frozen=True, from_attributes=True)

    @field_validator("check_in", "check_out", "created_at", "updated_at", mode="after")
    @classmethod
    def require_timezone(cls, v: datetime) -> datetime:
        return to_utc(v)

    @model_validator(mode="after")
    def validate_dates(self) -> Booking:
        if self.check_out <= self.check_in:
            raise ValueError("check_out must be after check_in")
        return self

    @property
    def occupies_calendar(self) -> bool:
        return self.status in OCCUPYING_STATUSES


def confirmation_code_for(booking_id: UUID) -> str:
    return booking_id.hex[:8].upper()


class ReservationToken(BaseModel):
    """Proof that a window was reserved atomically for a booking."""

    booking_id: UUID
    listing_id: UUID
    check_in: datetime
    check_out: datetime

    model_config = ConfigDict(frozen=True)


class RefundSplit(BaseModel):
    tier: RefundTier
    guest_refund: Decimal = Field(ge=0)
    host_payout: Decimal = Field(ge=0)
    refundable_nights: int = Field(default=0, ge=0)
    extenuating: bool = False

    model_config = ConfigDict(frozen=True)


class CancellationOutcome(BaseModel):
    booking_id: UUID
    status: BookingStatus
    tier: RefundTier
    guest_refund_amount: Decimal
    host_payout_amount: Decimal
    currency: str
    extenuating: bool = False
    penalty: HostPenalty | None = None
    error: str | None = None

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_booking(cls, booking: Booking) -> CancellationOutcome:
        record = booking.cancellation
        if record is None:
            raise ValueError(f"Booking {booking.id} has no cancellation record")
        return cls(
            booking_id=booking.id,
            status=booking.status,
            tier=record.tier,
            guest_refund_amount=record.guest_refund_amount,
            host_payout_amount=record.host_payout_amount,
            currency=booking.pricing.currency,
            extenuating=record.extenuating,
            penalty=record.penalty,
            error=record.error,
        )


# ---------------------------------------------------------------------------
# Request / response payloads
# ---------------------------------------------------------------------------


class StayRequest(BaseModel):
    listing_id: UUID
    check_in: datetime
    check_out: datetime

    @field_validator("check_in", "check_out", mode="after")
    @classmethod
    def require_timezone(cls, v: datetime) -> datetime:
        return to_utc(v)

    @model_validator(mode="after")
    def validate_date_range(self) -> StayRequest:
        if self.check_out <= self.check_in:
            raise ValueError("check_out must be after check_in")
        return self


class QuoteRequest(StayRequest):
    guest_count: int = Field(ge=1)


class BookingCreate(QuoteRequest):
    payment_method: str | None = Field(default=None, max_length=200)


class BookingRespond(BaseModel):
    accept: bool


class BookingCancel(BaseModel):
    reason: str = Field(min_length=1, max_length=1000)
    extenuating: ExtenuatingCircumstance | None = None


class AdvanceRequest(BaseModel):
    now: datetime | None = None

    @field_validator("now", mode="after")
    @classmethod
    def require_timezone(cls, v: datetime | None) -> datetime | None:
        return to_utc(v) if v is not None else None


class AvailabilityResponse(BaseModel):
    listing_id: UUID
    check_in: datetime
    check_out: datetime
    available: bool


class AdvanceResponse(BaseModel):
    advanced: list[UUID]


class BookingFilters(BaseModel):
    """Bind to a FastAPI route via Depends(BookingFilters)."""

    listing_id: UUID | None = None
    status: BookingStatus | None = None

    # Pagination
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1, le=100)

