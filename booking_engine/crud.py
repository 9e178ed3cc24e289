from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel
from tortoise.expressions import Q
from tortoise.transactions import in_transaction

from booking_engine import models
from booking_engine.errors import ConflictError
from booking_engine.schemas import (
    OCCUPYING_STATUSES,
    Booking,
    BookingFilters,
    BookingStatus,
    CalendarBlock,
    HostPenalty,
)

# Stored as JSON documents rather than columns.
_JSON_FIELDS = frozenset({"pricing", "cancellation"})


def _to_columns(values: dict[str, Any]) -> dict[str, Any]:
    columns: dict[str, Any] = {}
    for key, value in values.items():
        if key in _JSON_FIELDS and isinstance(value, BaseModel):
            columns[key] = value.model_dump(mode="json")
        else:
            columns[key] = value
    return columns


def _to_domain(inst: models.Booking) -> Booking:
    return Booking.model_validate(inst, from_attributes=True)


def _occupying(listing_id: UUID, start: datetime, end: datetime):
    return models.Booking.filter(
        listing_id=listing_id,
        status__in=list(OCCUPYING_STATUSES),
        check_in__lt=end,
        check_out__gt=start,
    )


def _blocking(listing_id: UUID, start: datetime, end: datetime):
    return models.CalendarBlock.filter(
        listing_id=listing_id, start__lt=end, end__gt=start
    )


class BookingCRUD:
    """Tortoise-backed BookingRepository."""

    async def create(self, booking: Booking) -> Booking:
        """
        Persist a new booking after validating, under the listing's lock row:
          - no overlap with an occupying booking
          - no overlap with a calendar block
        """
        async with in_transaction():
            await models.ListingLock.get_or_create(listing_id=booking.listing_id)
            # Every reservation for this listing queues here until commit.
            await models.ListingLock.filter(
                listing_id=booking.listing_id
            ).select_for_update().first()

            if await _occupying(
                booking.listing_id, booking.check_in, booking.check_out
            ).exists():
                raise ConflictError(
                    "Booking conflicts with an existing booking for this listing",
                    details={"listing_id": str(booking.listing_id)},
                )
            if await _blocking(
                booking.listing_id, booking.check_in, booking.check_out
            ).exists():
                raise ConflictError(
                    "Booking overlaps a blocked period on this listing",
                    details={"listing_id": str(booking.listing_id)},
                )

            inst = await models.Booking.create(
                **_to_columns({name: getattr(booking, name) for name in Booking.model_fields})
            )

        return _to_domain(inst)

    async def get(self, booking_id: UUID) -> Booking | None:
        inst = await models.Booking.get_or_none(id=booking_id)
        if not inst:
            return None
        return _to_domain(inst)

    async def update(
        self,
        booking_id: UUID,
        patch: dict[str, Any],
        expected_status: BookingStatus | None = None,
    ) -> Booking | None:
        qs = models.Booking.filter(id=booking_id)
        if expected_status is not None:
            qs = qs.filter(status=expected_status)
        # A single UPDATE ... WHERE status = expected; zero rows means we lost.
        updated = await qs.update(**_to_columns(patch))
        if not updated:
            return None
        return await self.get(booking_id)

    async def list_active_for_listing(
        self, listing_id: UUID, start: datetime, end: datetime
    ) -> list[Booking]:
        return [_to_domain(b) for b in await _occupying(listing_id, start, end)]

    async def list_blocks_for_listing(
        self, listing_id: UUID, start: datetime, end: datetime
    ) -> list[CalendarBlock]:
        blocks = await _blocking(listing_id, start, end)
        return [CalendarBlock.model_validate(b, from_attributes=True) for b in blocks]

    async def add_block(self, block: CalendarBlock) -> None:
        await models.CalendarBlock.create(**block.model_dump())

    async def list_due_for_transition(
        self, now: datetime, pending_cutoff: datetime
    ) -> list[Booking]:
        bookings = await models.Booking.filter(
            Q(status=BookingStatus.CONFIRMED, check_in__lte=now)
            | Q(status=BookingStatus.ACTIVE, check_out__lte=now)
            | Q(status=BookingStatus.PENDING, created_at__lte=pending_cutoff)
            | Q(status=BookingStatus.PENDING, check_in__lte=now)
        ).order_by("check_in")
        return [_to_domain(b) for b in bookings]

    async def count_host_cancellations(self, host_id: UUID, since: datetime) -> int:
        return await models.HostPenalty.filter(
            host_id=host_id, assessed_at__gte=since
        ).count()

    async def record_penalty(self, penalty: HostPenalty) -> None:
        await models.HostPenalty.create(**penalty.model_dump())

    async def list_bookings(
        self,
        filters: BookingFilters,
        guest_id: UUID | None = None,
        host_id: UUID | None = None,
    ) -> list[Booking]:
        qs = models.Booking.all()

        if guest_id is not None:
            qs = qs.filter(guest_id=guest_id)
        if host_id is not None:
            qs = qs.filter(host_id=host_id)
        if filters.listing_id is not None:
            qs = qs.filter(listing_id=filters.listing_id)
        if filters.status is not None:
            qs = qs.filter(status=filters.status)

        offset = (filters.page - 1) * filters.page_size
        qs = qs.offset(offset).limit(filters.page_size)

        return [_to_domain(b) for b in await qs]


booking_crud = BookingCRUD()
