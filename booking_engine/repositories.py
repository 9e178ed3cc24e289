"""
Collaborator interfaces consumed by the engine.

The engine never talks to a database, payment provider or notification
channel directly; it is handed objects satisfying these protocols.
crud.BookingCRUD and the clients in deps.py are the production
implementations.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Protocol
from uuid import UUID

from booking_engine.schemas import (
    Booking,
    BookingStatus,
    CalendarBlock,
    HostPenalty,
    Listing,
)


class ListingRepository(Protocol):
    async def get(self, listing_id: UUID) -> Listing | None: ...


class BookingRepository(Protocol):
    async def create(self, booking: Booking) -> Booking:
        """
        Persist a new booking atomically with its availability check.

        Implementations must hold a per-listing lock (or equivalent
        serializable transaction) across the overlap query and the insert,
        and raise ConflictError if an occupying booking or calendar block
        overlaps [check_in, check_out) at commit time.
        """
        ...

    async def get(self, booking_id: UUID) -> Booking | None: ...

    async def update(
        self,
        booking_id: UUID,
        patch: dict[str, Any],
        expected_status: BookingStatus | None = None,
    ) -> Booking | None:
        """
        Apply `patch` and return the updated booking.

        With `expected_status`, the write only happens if the stored status
        still equals it; otherwise nothing is written and None is returned.
        """
        ...

    async def list_active_for_listing(
        self, listing_id: UUID, start: datetime, end: datetime
    ) -> list[Booking]:
        """Occupying bookings on the listing that overlap [start, end)."""
        ...

    async def list_blocks_for_listing(
        self, listing_id: UUID, start: datetime, end: datetime
    ) -> list[CalendarBlock]: ...

    async def add_block(self, block: CalendarBlock) -> None: ...

    async def list_due_for_transition(
        self, now: datetime, pending_cutoff: datetime
    ) -> list[Booking]:
        """
        Bookings a scheduled transition may apply to: confirmed with
        check_in <= now, active with check_out <= now, and pending created
        at or before `pending_cutoff` or whose check_in has passed.
        """
        ...

    async def count_host_cancellations(self, host_id: UUID, since: datetime) -> int:
        """Penalised host cancellations assessed at or after `since`."""
        ...

    async def record_penalty(self, penalty: HostPenalty) -> None: ...


class PaymentGateway(Protocol):
    """All methods raise PaymentError on failure or timeout."""

    async def authorize(
        self, amount: Decimal, currency: str, method: str, idempotency_key: str
    ) -> str:
        """Return the authorization id."""
        ...

    async def capture(self, auth_id: str, idempotency_key: str) -> str:
        """Return the capture id."""
        ...

    async def refund(
        self, capture_id: str, amount: Decimal, idempotency_key: str
    ) -> str:
        """Return the refund id."""
        ...

    async def release(self, auth_id: str, idempotency_key: str) -> None: ...


class NotificationService(Protocol):
    async def notify(
        self, user_id: UUID, event_type: str, payload: dict[str, Any]
    ) -> None: ...
