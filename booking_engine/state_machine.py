from __future__ import annotations

from datetime import datetime, timedelta

from booking_engine.errors import PolicyViolationError, StateError
from booking_engine.schemas import Booking, BookingStatus, CancelledBy, Listing

# Guests may cancel only while check-in is strictly more than this far away,
# whatever the listing's policy says.
GUEST_CANCEL_FLOOR = timedelta(hours=24)

VALID_TRANSITIONS: dict[BookingStatus, frozenset[BookingStatus]] = {
    BookingStatus.PENDING: frozenset({BookingStatus.CONFIRMED, BookingStatus.REJECTED}),
    BookingStatus.CONFIRMED: frozenset(
        {
            BookingStatus.ACTIVE,
            BookingStatus.CANCELLATION_PENDING,
            BookingStatus.CANCELLED,
        }
    ),
    BookingStatus.ACTIVE: frozenset(
        {
            BookingStatus.COMPLETED,
            BookingStatus.CANCELLATION_PENDING,
            BookingStatus.CANCELLED,
        }
    ),
    BookingStatus.CANCELLATION_PENDING: frozenset({BookingStatus.CANCELLED}),
    BookingStatus.REJECTED: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
    BookingStatus.COMPLETED: frozenset(),
}

CANCELLABLE_STATUSES = frozenset({BookingStatus.CONFIRMED, BookingStatus.ACTIVE})


class BookingStateMachine:
    """
    Canonical booking lifecycle.

      pending              -> confirmed | rejected
      confirmed            -> active | cancellation_pending | cancelled
      active               -> completed | cancellation_pending | cancelled
      cancellation_pending -> cancelled
      rejected, cancelled, completed are terminal

    confirmed -> active and active -> completed are scheduled (wall-clock)
    transitions; see `scheduled_target`.
    """

    def __init__(self, pending_request_ttl: timedelta = timedelta(hours=24)) -> None:
        self.pending_request_ttl = pending_request_ttl

    @staticmethod
    def initial_status(listing: Listing) -> BookingStatus:
        return BookingStatus.CONFIRMED if listing.instant_book else BookingStatus.PENDING

    @staticmethod
    def can_transition(current: BookingStatus, target: BookingStatus) -> bool:
        return target in VALID_TRANSITIONS.get(current, frozenset())

    def assert_transition(self, current: BookingStatus, target: BookingStatus) -> None:
        if not self.can_transition(current, target):
            allowed = sorted(s.value for s in VALID_TRANSITIONS.get(current, frozenset()))
            raise StateError(
                current.value,
                target.value,
                message=(
                    f"Cannot transition booking from '{current}' to '{target}'. "
                    f"Allowed: {allowed}"
                ),
            )

    def assert_can_cancel(
        self, booking: Booking, cancelled_by: CancelledBy, now: datetime
    ) -> None:
        if booking.status not in CANCELLABLE_STATUSES:
            raise StateError(booking.status.value, BookingStatus.CANCELLED.value)

        if cancelled_by != CancelledBy.GUEST:
            return

        deadline = booking.check_in - GUEST_CANCEL_FLOOR
        if booking.check_in - now <= GUEST_CANCEL_FLOOR:
            raise PolicyViolationError(
                "Guests can only cancel more than 24 hours before check-in "
                f"(deadline was {deadline.isoformat()})",
                deadline=deadline,
            )

    def scheduled_target(self, booking: Booking, now: datetime) -> BookingStatus | None:
        """
        The state a wall-clock transition would move `booking` to, if any.

        Running this twice for a booking that already advanced returns the
        next step (or None), never a repeat of the previous one.
        """
        if booking.status == BookingStatus.CONFIRMED and now >= booking.check_in:
            return BookingStatus.ACTIVE
        if booking.status == BookingStatus.ACTIVE and now >= booking.check_out:
            return BookingStatus.COMPLETED
        if booking.status == BookingStatus.PENDING and (
            now >= booking.created_at + self.pending_request_ttl
            or now >= booking.check_in
        ):
            return BookingStatus.REJECTED
        return None
