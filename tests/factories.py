"""
All test-data builders in one place.
Import from here in every test file: never define dummy data inline.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from uuid import UUID, uuid4

from booking_engine.deps import CurrentUser
from booking_engine.engine import BookingEngine
from booking_engine.pricing import FeeSchedule
from booking_engine.schemas import (
    Booking,
    BookingStatus,
    Listing,
    PaymentStatus,
    PolicyTier,
    PriceBreakdown,
    confirmation_code_for,
)
from booking_engine.scopes import BookingScope

from .fakes import (
    FakeBookingRepository,
    FakeListingRepository,
    FakeNotificationService,
    FakePaymentGateway,
    FixedClock,
)

# ---------------------------------------------------------------------------
# Stable IDs: use these when a specific, repeatable UUID is needed.
# Call uuid4() inline when you need a fresh one per test.
# ---------------------------------------------------------------------------

GUEST_ID: UUID = uuid4()
HOST_ID: UUID = uuid4()
ADMIN_ID: UUID = uuid4()
OTHER_USER_ID: UUID = uuid4()

BOOKING_ID: UUID = uuid4()
LISTING_ID: UUID = uuid4()

NOW = datetime(2026, 6, 1, 10, 0, 0, tzinfo=UTC)
CHECK_IN = NOW + timedelta(days=30)
CHECK_OUT = CHECK_IN + timedelta(days=5)

# 10% guest fee reproduces the $75 service fee on a $750 subtotal.
FEES = FeeSchedule(
    guest_service_fee_rate=Decimal("0.10"), host_service_fee_rate=Decimal("0.03")
)


# ---------------------------------------------------------------------------
# User factories
# ---------------------------------------------------------------------------


def make_guest(
    user_id: UUID = GUEST_ID,
    scopes: list[str] | None = None,
) -> CurrentUser:
    """Guest with read/write/cancel booking scopes."""
    if scopes is None:
        scopes = [
            BookingScope.READ,
            BookingScope.WRITE,
            BookingScope.CANCEL,
            "listings:read",
        ]
    return CurrentUser(id=user_id, username=f"guest_{user_id}", scopes=scopes)


def make_host(
    user_id: UUID = HOST_ID,
    scopes: list[str] | None = None,
) -> CurrentUser:
    """Host with manage booking scope."""
    if scopes is None:
        scopes = [
            BookingScope.MANAGE,
            "listings:read",
        ]
    return CurrentUser(id=user_id, username=f"host_{user_id}", scopes=scopes)


def make_admin() -> CurrentUser:
    """Admin with all admin:bookings:* scopes."""
    return CurrentUser(
        id=ADMIN_ID,
        username="admin",
        scopes=[
            "listings:read",
            BookingScope.READ,
            BookingScope.ADMIN,
            BookingScope.ADMIN_READ,
            BookingScope.ADMIN_WRITE,
        ],
    )


def make_scheduler() -> CurrentUser:
    return CurrentUser(id=uuid4(), username="scheduler", scopes=[BookingScope.ADVANCE])


# ---------------------------------------------------------------------------
# Domain factories
# ---------------------------------------------------------------------------


def make_listing(**overrides) -> Listing:
    base = dict(
        id=LISTING_ID,
        host_id=HOST_ID,
        nightly_price=Decimal("150.00"),
        currency="USD",
        cleaning_fee=Decimal("50.00"),
        weekly_discount=Decimal("0"),
        monthly_discount=Decimal("0"),
        max_guests=4,
        min_nights=1,
        max_nights=365,
        cancellation_policy=PolicyTier.MODERATE,
        instant_book=False,
    )
    return Listing(**{**base, **overrides})


def make_pricing(**overrides) -> PriceBreakdown:
    """$150/night x 5 nights + $50 cleaning + $75 service fee = $875."""
    base = dict(
        nights=5,
        nightly_price=Decimal("150.00"),
        subtotal=Decimal("750.00"),
        discount=Decimal("0.00"),
        cleaning_fee=Decimal("50.00"),
        guest_service_fee=Decimal("75.00"),
        host_service_fee=Decimal("22.50"),
        total=Decimal("875.00"),
        currency="USD",
    )
    return PriceBreakdown(**{**base, **overrides})


def make_booking(**overrides) -> Booking:
    """A confirmed, fully captured booking 30 days out."""
    booking_id = overrides.pop("id", BOOKING_ID)
    pricing = overrides.pop("pricing", None) or make_pricing()
    base = dict(
        id=booking_id,
        confirmation_code=confirmation_code_for(booking_id),
        listing_id=LISTING_ID,
        guest_id=GUEST_ID,
        host_id=HOST_ID,
        check_in=CHECK_IN,
        check_out=CHECK_OUT,
        guest_count=2,
        pricing=pricing,
        cancellation_policy=PolicyTier.MODERATE,
        status=BookingStatus.CONFIRMED,
        payment_status=PaymentStatus.CAPTURED,
        payment_auth_id="auth_existing",
        payment_capture_id="cap_existing",
        captured_amount=pricing.total,
        created_at=NOW - timedelta(days=1),
        updated_at=NOW - timedelta(days=1),
    )
    return Booking(**{**base, **overrides})


# ---------------------------------------------------------------------------
# Engine harness
# ---------------------------------------------------------------------------


@dataclass
class Harness:
    engine: BookingEngine
    listings: FakeListingRepository
    bookings: FakeBookingRepository
    payments: FakePaymentGateway
    notifications: FakeNotificationService
    clock: FixedClock


def make_harness(*listings: Listing, now: datetime = NOW, **engine_kwargs) -> Harness:
    listing_repo = FakeListingRepository(*(listings or (make_listing(),)))
    bookings = FakeBookingRepository()
    payments = FakePaymentGateway()
    notifications = engine_kwargs.pop("notifications", None) or FakeNotificationService()
    clock = FixedClock(now)
    engine_kwargs.setdefault("payment_backoff_seconds", 0)
    engine = BookingEngine(
        listing_repo,
        bookings,
        payments,
        notifications,
        FEES,
        clock=clock,
        **engine_kwargs,
    )
    return Harness(engine, listing_repo, bookings, payments, notifications, clock)


# ---------------------------------------------------------------------------
# Request payload factories
# ---------------------------------------------------------------------------


def quote_payload(**overrides) -> dict:
    base = dict(
        listing_id=str(LISTING_ID),
        check_in=CHECK_IN.isoformat(),
        check_out=CHECK_OUT.isoformat(),
        guest_count=2,
    )
    return {**base, **overrides}


def booking_create_payload(**overrides) -> dict:
    return quote_payload(**{"payment_method": "pm_card_visa", **overrides})
