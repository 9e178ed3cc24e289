from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Response, status
from loguru import logger

from booking_engine.crud import BookingCRUD
from booking_engine.deps import (
    CurrentUser,
    can_advance_bookings,
    can_manage_booking,
    can_read_booking,
    can_read_or_manage_booking,
    can_write_booking,
    get_booking_repository,
    get_current_user,
    get_engine,
)
from booking_engine.engine import BookingEngine
from booking_engine.errors import BookingEngineError
from booking_engine.schemas import (
    AdvanceRequest,
    AdvanceResponse,
    AvailabilityResponse,
    Booking,
    BookingCancel,
    BookingCreate,
    BookingFilters,
    BookingRespond,
    BookingStatus,
    CancellationOutcome,
    CancelledBy,
    PriceBreakdown,
    QuoteRequest,
)
from booking_engine.scopes import BookingScope

router = APIRouter(prefix="/bookings", tags=["bookings"])


def _http_error(exc: BookingEngineError) -> HTTPException:
    if exc.status_code >= 500:
        logger.error("Booking operation failed: {} ({})", exc.message, exc.code)
    return exc.to_http_exception()


def _is_admin_reader(current_user: CurrentUser) -> bool:
    return (
        BookingScope.ADMIN in current_user.scopes
        or BookingScope.ADMIN_READ in current_user.scopes
    )


def _cancelled_by(booking: Booking, current_user: CurrentUser) -> CancelledBy:
    """
    Decide on whose behalf the caller cancels.

      guest : CANCEL + booker
      host  : MANAGE + listing host
      admin : admin:bookings or admin:bookings:write
    """
    if current_user.id == booking.guest_id and BookingScope.CANCEL in current_user.scopes:
        return CancelledBy.GUEST
    if current_user.id == booking.host_id and BookingScope.MANAGE in current_user.scopes:
        return CancelledBy.HOST
    if current_user.is_admin:
        return CancelledBy.ADMIN
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail=(
            f"Cancelling requires '{BookingScope.CANCEL}' scope as the guest, "
            f"'{BookingScope.MANAGE}' scope as the host, or admin scope."
        ),
    )


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.post("/quote", response_model=PriceBreakdown)
async def quote_stay(
    payload: QuoteRequest,
    _: CurrentUser = Depends(can_read_booking),
    engine: BookingEngine = Depends(get_engine),
) -> PriceBreakdown:
    try:
        return await engine.quote(
            payload.listing_id, payload.check_in, payload.check_out, payload.guest_count
        )
    except BookingEngineError as exc:
        raise _http_error(exc) from exc


@router.get("/availability", response_model=AvailabilityResponse)
async def check_availability(
    listing_id: UUID,
    check_in: datetime,
    check_out: datetime,
    _: CurrentUser = Depends(can_read_booking),
    engine: BookingEngine = Depends(get_engine),
) -> AvailabilityResponse:
    """Advisory only: a free window can still be lost to a concurrent booking."""
    try:
        available = await engine.is_available(listing_id, check_in, check_out)
    except BookingEngineError as exc:
        raise _http_error(exc) from exc
    return AvailabilityResponse(
        listing_id=listing_id, check_in=check_in, check_out=check_out, available=available
    )


@router.get("/", response_model=list[Booking])
async def list_bookings(
    filters: BookingFilters = Depends(),
    current_user: CurrentUser = Depends(can_read_or_manage_booking),
    bookings: BookingCRUD = Depends(get_booking_repository),
) -> list[Booking]:
    is_manager = BookingScope.MANAGE in current_user.scopes
    is_reader = BookingScope.READ in current_user.scopes

    if _is_admin_reader(current_user):
        return await bookings.list_bookings(filters=filters)
    if is_manager and not is_reader:
        return await bookings.list_bookings(filters=filters, host_id=current_user.id)
    return await bookings.list_bookings(filters=filters, guest_id=current_user.id)


@router.post("/", response_model=Booking, status_code=status.HTTP_201_CREATED)
async def create_booking(
    payload: BookingCreate,
    current_user: CurrentUser = Depends(can_write_booking),
    engine: BookingEngine = Depends(get_engine),
) -> Booking:
    try:
        return await engine.create_booking(
            listing_id=payload.listing_id,
            guest_id=current_user.id,
            check_in=payload.check_in,
            check_out=payload.check_out,
            guest_count=payload.guest_count,
            payment_method=payload.payment_method,
        )
    except BookingEngineError as exc:
        raise _http_error(exc) from exc


@router.post("/advance", response_model=AdvanceResponse)
async def advance_bookings(
    payload: AdvanceRequest,
    _: CurrentUser = Depends(can_advance_bookings),
    engine: BookingEngine = Depends(get_engine),
) -> AdvanceResponse:
    try:
        advanced = await engine.advance_scheduled_states(payload.now)
    except BookingEngineError as exc:
        raise _http_error(exc) from exc
    return AdvanceResponse(advanced=advanced)


@router.get("/{booking_id}", response_model=Booking)
async def get_booking(
    booking_id: UUID,
    current_user: CurrentUser = Depends(can_read_or_manage_booking),
    engine: BookingEngine = Depends(get_engine),
) -> Booking:
    try:
        booking = await engine.get_booking(booking_id)
    except BookingEngineError as exc:
        raise _http_error(exc) from exc

    if not (
        _is_admin_reader(current_user)
        or current_user.id in (booking.guest_id, booking.host_id)
    ):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found"
        )
    return booking


@router.post("/{booking_id}/respond", response_model=Booking)
async def respond_to_booking(
    booking_id: UUID,
    payload: BookingRespond,
    current_user: CurrentUser = Depends(can_manage_booking),
    engine: BookingEngine = Depends(get_engine),
) -> Booking:
    responder_id = None if current_user.is_admin else current_user.id
    try:
        return await engine.respond_to_booking(
            booking_id, payload.accept, responder_id=responder_id
        )
    except BookingEngineError as exc:
        raise _http_error(exc) from exc


@router.post("/{booking_id}/cancel", response_model=CancellationOutcome)
async def cancel_booking(
    booking_id: UUID,
    payload: BookingCancel,
    response: Response,
    current_user: CurrentUser = Depends(get_current_user),
    engine: BookingEngine = Depends(get_engine),
) -> CancellationOutcome:
    try:
        booking = await engine.get_booking(booking_id)
        cancelled_by = _cancelled_by(booking, current_user)
        if payload.extenuating is not None and cancelled_by != CancelledBy.ADMIN:
            # Extenuating claims are reviewed by the platform, never self-declared.
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Only an admin can apply extenuating circumstances.",
            )
        outcome = await engine.cancel_booking(
            booking_id, cancelled_by, payload.reason, extenuating=payload.extenuating
        )
    except BookingEngineError as exc:
        raise _http_error(exc) from exc

    if outcome.status == BookingStatus.CANCELLATION_PENDING:
        # Recorded, but the refund has not been confirmed by payments-ms yet.
        response.status_code = status.HTTP_202_ACCEPTED
    return outcome
