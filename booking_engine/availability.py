from __future__ import annotations

from datetime import datetime
from uuid import UUID

from loguru import logger

from booking_engine.repositories import BookingRepository
from booking_engine.schemas import Booking, ReservationToken


def overlaps(
    a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime
) -> bool:
    """Return True if [a_start, a_end) and [b_start, b_end) share any instant."""
    return a_start < b_end and b_start < a_end


class AvailabilityChecker:
    """
    Calendar conflict detection for a single listing.

    `is_available` is an advisory read; only `reserve` gives the
    at-most-one-winner guarantee, because the repository runs the overlap
    check and the insert under the listing's lock.
    """

    def __init__(self, bookings: BookingRepository) -> None:
        self.bookings = bookings

    async def is_available(
        self, listing_id: UUID, check_in: datetime, check_out: datetime
    ) -> bool:
        active = await self.bookings.list_active_for_listing(
            listing_id, check_in, check_out
        )
        if any(
            b.occupies_calendar and overlaps(b.check_in, b.check_out, check_in, check_out)
            for b in active
        ):
            return False

        blocks = await self.bookings.list_blocks_for_listing(
            listing_id, check_in, check_out
        )
        return not any(overlaps(b.start, b.end, check_in, check_out) for b in blocks)

    async def reserve(self, booking: Booking) -> ReservationToken:
        """
        Atomically claim [check_in, check_out) for `booking` and persist it.

        Raises ConflictError if the window is no longer free at commit time.
        The caller must redo the whole quote + reserve flow on conflict.
        """
        stored = await self.bookings.create(booking)
        logger.info(
            "Reserved listing={} [{} - {}) for booking={}",
            stored.listing_id,
            stored.check_in.isoformat(),
            stored.check_out.isoformat(),
            stored.id,
        )
        return ReservationToken(
            booking_id=stored.id,
            listing_id=stored.listing_id,
            check_in=stored.check_in,
            check_out=stored.check_out,
        )
