"""Tests for booking_engine/engine.py: the exposed booking operations."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from booking_engine.errors import (
    ConflictError,
    NotFoundError,
    PaymentError,
    StateError,
    ValidationError,
)
from booking_engine.schemas import (
    BookingStatus,
    CalendarBlock,
    CancelledBy,
    PaymentStatus,
)

from .factories import (
    CHECK_IN,
    CHECK_OUT,
    GUEST_ID,
    HOST_ID,
    LISTING_ID,
    NOW,
    OTHER_USER_ID,
    make_booking,
    make_harness,
    make_listing,
)
from .fakes import FakeNotificationService


@pytest.mark.asyncio
class TestQuoteAndAvailability:
    async def test_quote_uses_listing_snapshot(self):
        h = make_harness()
        pricing = await h.engine.quote(LISTING_ID, CHECK_IN, CHECK_OUT, 2)
        assert pricing.total == Decimal("875.00")

    async def test_unknown_listing(self):
        h = make_harness()
        with pytest.raises(NotFoundError):
            await h.engine.quote(uuid4(), CHECK_IN, CHECK_OUT, 2)

    async def test_is_available_rejects_inverted_range(self):
        h = make_harness()
        with pytest.raises(ValidationError):
            await h.engine.is_available(LISTING_ID, CHECK_OUT, CHECK_IN)

    async def test_is_available_after_booking(self):
        h = make_harness()
        await h.engine.create_booking(LISTING_ID, GUEST_ID, CHECK_IN, CHECK_OUT, 2)
        assert not await h.engine.is_available(LISTING_ID, CHECK_IN, CHECK_OUT)
        assert await h.engine.is_available(
            LISTING_ID, CHECK_OUT, CHECK_OUT + timedelta(days=2)
        )


@pytest.mark.asyncio
class TestCreateBooking:
    async def test_request_to_book_is_pending_and_authorized(self):
        h = make_harness()
        booking = await h.engine.create_booking(
            LISTING_ID, GUEST_ID, CHECK_IN, CHECK_OUT, 2, payment_method="pm_visa"
        )
        assert booking.status == BookingStatus.PENDING
        assert booking.payment_status == PaymentStatus.AUTHORIZED
        assert booking.host_id == HOST_ID
        assert booking.confirmation_code == booking.id.hex[:8].upper()
        assert h.payments.calls_for("authorize") == [f"booking-{booking.id}-authorize"]
        assert h.payments.calls_for("capture") == []
        assert "booking_requested" in h.notifications.events()

    async def test_instant_book_is_confirmed_and_captured(self):
        h = make_harness(make_listing(instant_book=True))
        booking = await h.engine.create_booking(
            LISTING_ID, GUEST_ID, CHECK_IN, CHECK_OUT, 2, payment_method="pm_visa"
        )
        assert booking.status == BookingStatus.CONFIRMED
        assert booking.payment_status == PaymentStatus.CAPTURED
        assert booking.captured_amount == Decimal("875.00")
        assert h.payments.calls_for("capture") == [f"booking-{booking.id}-capture"]

    async def test_pricing_snapshot_survives_listing_price_change(self):
        h = make_harness()
        booking = await h.engine.create_booking(
            LISTING_ID, GUEST_ID, CHECK_IN, CHECK_OUT, 2
        )
        h.listings.listings[LISTING_ID] = make_listing(nightly_price=Decimal("999"))
        stored = await h.bookings.get(booking.id)
        assert stored.pricing.subtotal == Decimal("750.00")

    async def test_check_in_in_the_past_is_rejected(self):
        h = make_harness(now=CHECK_IN + timedelta(hours=1))
        with pytest.raises(ValidationError):
            await h.engine.create_booking(LISTING_ID, GUEST_ID, CHECK_IN, CHECK_OUT, 2)

    async def test_declined_card_holds_nothing(self):
        h = make_harness(payment_max_attempts=2)
        h.payments.fail_next["authorize"] = 2
        with pytest.raises(PaymentError):
            await h.engine.create_booking(
                LISTING_ID, GUEST_ID, CHECK_IN, CHECK_OUT, 2, payment_method="pm_visa"
            )
        assert h.bookings.bookings == {}

    async def test_conflict_releases_authorization(self):
        h = make_harness()
        await h.engine.create_booking(LISTING_ID, GUEST_ID, CHECK_IN, CHECK_OUT, 2)
        with pytest.raises(ConflictError):
            await h.engine.create_booking(
                LISTING_ID,
                OTHER_USER_ID,
                CHECK_IN + timedelta(days=1),
                CHECK_OUT,
                2,
                payment_method="pm_visa",
            )
        assert len(h.payments.calls_for("release")) == 1

    async def test_conflict_survives_failed_release(self):
        h = make_harness(payment_max_attempts=1)
        await h.engine.create_booking(LISTING_ID, GUEST_ID, CHECK_IN, CHECK_OUT, 2)
        h.payments.fail_next["release"] = 1
        with pytest.raises(ConflictError):
            await h.engine.create_booking(
                LISTING_ID, OTHER_USER_ID, CHECK_IN, CHECK_OUT, 2, payment_method="pm_visa"
            )
        assert len(h.payments.calls_for("release")) == 1

    async def test_blocked_dates_conflict(self):
        h = make_harness()
        await h.bookings.add_block(
            CalendarBlock(listing_id=LISTING_ID, start=CHECK_IN, end=CHECK_OUT, reason="x")
        )
        with pytest.raises(ConflictError):
            await h.engine.create_booking(LISTING_ID, GUEST_ID, CHECK_IN, CHECK_OUT, 2)

    async def test_concurrent_overlapping_creates_have_exactly_one_winner(self):
        h = make_harness()
        results = await asyncio.gather(
            h.engine.create_booking(LISTING_ID, GUEST_ID, CHECK_IN, CHECK_OUT, 2),
            h.engine.create_booking(
                LISTING_ID, OTHER_USER_ID, CHECK_IN + timedelta(days=2), CHECK_OUT, 2
            ),
            return_exceptions=True,
        )
        assert sum(isinstance(r, ConflictError) for r in results) == 1
        assert len(h.bookings.bookings) == 1

    async def test_notification_failure_does_not_fail_booking(self):
        h = make_harness(notifications=FakeNotificationService(fail=True))
        booking = await h.engine.create_booking(
            LISTING_ID, GUEST_ID, CHECK_IN, CHECK_OUT, 2
        )
        assert (await h.bookings.get(booking.id)).status == BookingStatus.PENDING


@pytest.mark.asyncio
class TestRespondToBooking:
    async def _pending(self, h):
        return await h.engine.create_booking(
            LISTING_ID, GUEST_ID, CHECK_IN, CHECK_OUT, 2, payment_method="pm_visa"
        )

    async def test_accept_captures_and_confirms(self):
        h = make_harness()
        booking = await self._pending(h)
        confirmed = await h.engine.respond_to_booking(booking.id, True, HOST_ID)
        assert confirmed.status == BookingStatus.CONFIRMED
        assert confirmed.payment_status == PaymentStatus.CAPTURED
        assert confirmed.payment_capture_id is not None

    async def test_reject_releases_authorization(self):
        h = make_harness()
        booking = await self._pending(h)
        rejected = await h.engine.respond_to_booking(booking.id, False, HOST_ID)
        assert rejected.status == BookingStatus.REJECTED
        assert rejected.payment_status == PaymentStatus.UNPAID
        assert h.payments.calls_for("release") == [f"booking-{booking.id}-release"]
        assert await h.engine.is_available(LISTING_ID, CHECK_IN, CHECK_OUT)

    async def test_capture_failure_keeps_booking_pending(self):
        h = make_harness(payment_max_attempts=1)
        booking = await self._pending(h)
        h.payments.fail_next["capture"] = 1
        with pytest.raises(PaymentError):
            await h.engine.respond_to_booking(booking.id, True, HOST_ID)
        assert (await h.bookings.get(booking.id)).status == BookingStatus.PENDING

    async def test_accept_losing_race_to_expiry_refunds_the_capture(self):
        h = make_harness()
        booking = await self._pending(h)
        capture = h.payments.capture

        async def capture_then_expire(auth_id, idempotency_key):
            capture_id = await capture(auth_id, idempotency_key)
            current = h.bookings.bookings[booking.id]
            h.bookings.bookings[booking.id] = current.model_copy(
                update={"status": BookingStatus.REJECTED}
            )
            return capture_id

        h.payments.capture = capture_then_expire

        with pytest.raises(ConflictError):
            await h.engine.respond_to_booking(booking.id, True, HOST_ID)

        stored = await h.bookings.get(booking.id)
        assert stored.status == BookingStatus.REJECTED
        assert stored.payment_status == PaymentStatus.REFUNDED
        assert stored.payment_capture_id is not None
        assert h.payments.refunds == [
            (stored.payment_capture_id, Decimal("875.00"), f"booking-{booking.id}-refund")
        ]

    async def test_failed_refund_after_lost_race_keeps_capture_on_record(self):
        h = make_harness(payment_max_attempts=1)
        booking = await self._pending(h)
        capture = h.payments.capture

        async def capture_then_expire(auth_id, idempotency_key):
            capture_id = await capture(auth_id, idempotency_key)
            current = h.bookings.bookings[booking.id]
            h.bookings.bookings[booking.id] = current.model_copy(
                update={"status": BookingStatus.REJECTED}
            )
            return capture_id

        h.payments.capture = capture_then_expire
        h.payments.fail_next["refund"] = 1

        with pytest.raises(ConflictError):
            await h.engine.respond_to_booking(booking.id, True, HOST_ID)

        stored = await h.bookings.get(booking.id)
        assert stored.payment_status == PaymentStatus.CAPTURED
        assert stored.captured_amount == Decimal("875.00")

    async def test_other_user_cannot_respond(self):
        h = make_harness()
        booking = await self._pending(h)
        with pytest.raises(NotFoundError):
            await h.engine.respond_to_booking(booking.id, True, OTHER_USER_ID)

    async def test_cannot_respond_twice(self):
        h = make_harness()
        booking = await self._pending(h)
        await h.engine.respond_to_booking(booking.id, True, HOST_ID)
        with pytest.raises(StateError):
            await h.engine.respond_to_booking(booking.id, False, HOST_ID)

    async def test_expired_request_cannot_be_accepted(self):
        h = make_harness()
        booking = await self._pending(h)
        h.clock.now = NOW + timedelta(hours=25)
        with pytest.raises(StateError):
            await h.engine.respond_to_booking(booking.id, True, HOST_ID)


@pytest.mark.asyncio
class TestCancelBooking:
    async def test_guest_cancel_notifies_both_parties(self):
        h = make_harness()
        booking = make_booking()
        await h.bookings.create(booking)

        outcome = await h.engine.cancel_booking(booking.id, CancelledBy.GUEST, "sick")

        assert outcome.status == BookingStatus.CANCELLED
        recipients = {
            user for user, event, _ in h.notifications.sent if event == "booking_cancelled"
        }
        assert recipients == {GUEST_ID, HOST_ID}

    async def test_transient_gateway_failure_is_retried(self):
        h = make_harness(payment_max_attempts=3)
        booking = make_booking()
        await h.bookings.create(booking)
        h.payments.fail_next["refund"] = 2

        outcome = await h.engine.cancel_booking(booking.id, CancelledBy.GUEST, "sick")

        assert outcome.status == BookingStatus.CANCELLED
        assert len(h.payments.calls_for("refund")) == 3
        assert len(h.payments.refunds) == 1

    async def test_persistent_failure_returns_pending_outcome_then_resumes(self):
        h = make_harness(payment_max_attempts=2)
        booking = make_booking()
        await h.bookings.create(booking)
        h.payments.fail_next["refund"] = 2

        pending = await h.engine.cancel_booking(booking.id, CancelledBy.GUEST, "sick")
        assert pending.status == BookingStatus.CANCELLATION_PENDING
        assert pending.error == "refund timed out"
        assert "booking_cancelled" not in h.notifications.events()

        done = await h.engine.cancel_booking(booking.id, CancelledBy.GUEST, "sick")
        assert done.status == BookingStatus.CANCELLED
        assert done.guest_refund_amount == pending.guest_refund_amount
        assert set(h.payments.calls_for("refund")) == {f"booking-{booking.id}-refund"}

    async def test_repeat_cancel_does_not_notify_again(self):
        h = make_harness()
        booking = make_booking()
        await h.bookings.create(booking)
        first = await h.engine.cancel_booking(booking.id, CancelledBy.GUEST, "sick")
        sent = len(h.notifications.sent)

        second = await h.engine.cancel_booking(booking.id, CancelledBy.GUEST, "sick")

        assert second == first
        assert len(h.notifications.sent) == sent

    async def test_host_cancellation_blocks_calendar(self):
        h = make_harness()
        booking = make_booking()
        await h.bookings.create(booking)
        await h.engine.cancel_booking(booking.id, CancelledBy.HOST, "renovation")
        assert not await h.engine.is_available(LISTING_ID, CHECK_IN, CHECK_OUT)

    async def test_unknown_booking(self):
        h = make_harness()
        with pytest.raises(NotFoundError):
            await h.engine.cancel_booking(uuid4(), CancelledBy.GUEST, "x")


@pytest.mark.asyncio
class TestAdvanceScheduledStates:
    async def test_confirmed_to_active_at_check_in(self):
        h = make_harness()
        booking = make_booking()
        await h.bookings.create(booking)

        advanced = await h.engine.advance_scheduled_states(CHECK_IN)

        assert advanced == [booking.id]
        assert (await h.bookings.get(booking.id)).status == BookingStatus.ACTIVE

    async def test_catches_up_through_completed(self):
        h = make_harness()
        booking = make_booking()
        await h.bookings.create(booking)
        await h.engine.advance_scheduled_states(CHECK_OUT + timedelta(hours=1))
        assert (await h.bookings.get(booking.id)).status == BookingStatus.COMPLETED
        assert h.notifications.events() == ["booking_active", "booking_completed"]

    async def test_rerun_is_a_no_op(self):
        h = make_harness()
        await h.bookings.create(make_booking())
        await h.engine.advance_scheduled_states(CHECK_IN)
        sent = len(h.notifications.sent)

        assert await h.engine.advance_scheduled_states(CHECK_IN) == []
        assert len(h.notifications.sent) == sent

    async def test_concurrent_runs_fire_side_effects_once(self):
        h = make_harness()
        await h.bookings.create(make_booking())
        results = await asyncio.gather(
            h.engine.advance_scheduled_states(CHECK_IN),
            h.engine.advance_scheduled_states(CHECK_IN),
        )
        assert sorted(len(r) for r in results) == [0, 1]
        assert h.notifications.events().count("booking_active") == 1

    async def test_expired_request_is_rejected_and_released(self):
        h = make_harness()
        booking = await h.engine.create_booking(
            LISTING_ID, GUEST_ID, CHECK_IN, CHECK_OUT, 2, payment_method="pm_visa"
        )

        advanced = await h.engine.advance_scheduled_states(NOW + timedelta(hours=24))

        assert advanced == [booking.id]
        stored = await h.bookings.get(booking.id)
        assert stored.status == BookingStatus.REJECTED
        assert stored.payment_status == PaymentStatus.UNPAID
        assert "booking_expired" in h.notifications.events()

    async def test_nothing_due(self):
        h = make_harness()
        await h.bookings.create(make_booking())
        assert await h.engine.advance_scheduled_states(NOW) == []
