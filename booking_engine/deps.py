from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from functools import lru_cache
from typing import Any
from urllib.parse import quote, unquote
from uuid import UUID

import httpx
from fastapi import Depends, Header, HTTPException, status
from loguru import logger

from booking_engine import settings
from booking_engine.cache import get_listing_cache, set_listing_cache
from booking_engine.crud import BookingCRUD, booking_crud
from booking_engine.engine import BookingEngine
from booking_engine.errors import BookingEngineError, PaymentError
from booking_engine.pricing import FeeSchedule
from booking_engine.schemas import Listing
from booking_engine.scopes import BookingScope


@dataclass
class CurrentUser:
    id: UUID
    username: str
    scopes: list[str] = field(default_factory=list)

    @property
    def is_admin(self) -> bool:
        return (
            BookingScope.ADMIN in self.scopes or BookingScope.ADMIN_WRITE in self.scopes
        )


def get_current_user(
    x_user_id: str = Header(...),
    x_username: str = Header(...),
    x_user_scopes: str = Header(default=""),
) -> CurrentUser:
    """
    Reads the headers injected by the gateway after forwardAuth validation.
    The JWT has already been verified; we just trust these headers.
    """
    try:
        user_id = UUID(x_user_id)
    except (ValueError, TypeError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid user identity from gateway",
        ) from None

    scopes = x_user_scopes.split(" ") if x_user_scopes else []

    return CurrentUser(id=user_id, username=unquote(x_username), scopes=scopes)


def require_scopes(*required: str):
    """
    Factory that returns a dependency enforcing one or more scopes.

    Usage:
        @router.get("/protected")
        async def route(user = Depends(require_scopes("bookings:read"))):
            ...
    """

    async def _dep(
        current_user: CurrentUser = Depends(get_current_user),
    ) -> CurrentUser:
        missing = [s for s in required if s not in current_user.scopes]
        if missing:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing required scopes: {', '.join(missing)}",
            )
        return current_user

    return _dep


# ---------------------------------------------------------------------------
# Pre-built scope dependencies
# ---------------------------------------------------------------------------

can_read_booking = require_scopes(BookingScope.READ)
can_write_booking = require_scopes(BookingScope.WRITE)
can_manage_booking = require_scopes(BookingScope.MANAGE)


async def can_read_or_manage_booking(
    current_user: CurrentUser = Depends(get_current_user),
) -> CurrentUser:
    """
    Passes if the user can read bookings (guest/admin) OR manage bookings (host).
    - bookings:read   → guest sees own bookings
    - bookings:manage → host sees bookings for their listings
    - admin:bookings* → admin sees all
    """
    has_read = BookingScope.READ in current_user.scopes
    has_manage = BookingScope.MANAGE in current_user.scopes
    has_admin = (
        BookingScope.ADMIN in current_user.scopes
        or BookingScope.ADMIN_READ in current_user.scopes
    )
    if not (has_read or has_manage or has_admin):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=(
                f"Requires '{BookingScope.READ}' (guests), "
                f"'{BookingScope.MANAGE}' (hosts), "
                f"or '{BookingScope.ADMIN_READ}' (admin)."
            ),
        )
    return current_user


async def can_advance_bookings(
    current_user: CurrentUser = Depends(get_current_user),
) -> CurrentUser:
    """The scheduler's service account, or an admin."""
    if not (BookingScope.ADVANCE in current_user.scopes or current_user.is_admin):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Requires '{BookingScope.ADVANCE}' or admin scope.",
        )
    return current_user


def _caller_headers(user: CurrentUser | None) -> dict[str, str]:
    if user is None:
        return {}
    return {
        "X-User-Id": str(user.id),
        "X-Username": quote(user.username),
        "X-User-Scopes": " ".join(user.scopes),
    }


# ---------------------------------------------------------------------------
# ListingsClient: thin async wrapper around listings-ms internal API
# ---------------------------------------------------------------------------


@lru_cache(maxsize=1)
def _get_listings_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=settings.listings_ms_url,
        timeout=httpx.Timeout(5.0),
        follow_redirects=True,
    )


class ListingsClient:
    """
    Read-only access to listing snapshots, cached in redis for quotes.
    Forwards the gateway-injected user headers so listings-ms auth works normally.
    """

    def __init__(self, caller: CurrentUser | None = None) -> None:
        self.caller = caller

    @property
    def _client(self) -> httpx.AsyncClient:
        return _get_listings_http_client()

    def _headers(self) -> dict[str, str]:
        return _caller_headers(self.caller)

    async def get(self, listing_id: UUID) -> Listing | None:
        """Returns the listing or None if 404. Raises HTTPException on other errors."""
        cached = await get_listing_cache(listing_id)
        if cached is not None:
            logger.debug("Cache hit for listing={}", listing_id)
            return cached

        logger.debug("Cache miss for listing={}", listing_id)
        try:
            resp = await self._client.get(
                f"/listings/{listing_id}", headers=self._headers()
            )
        except httpx.RequestError as exc:
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail=f"listings-ms unreachable: {exc}",
            ) from exc
        if resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail=f"listings-ms returned {resp.status_code}",
            )

        listing = Listing.model_validate(resp.json())
        await set_listing_cache(listing)
        return listing


def get_listings_client(
    current_user: CurrentUser = Depends(get_current_user),
) -> ListingsClient:
    return ListingsClient(current_user)


# ---------------------------------------------------------------------------
# PaymentsClient: thin async wrapper around payments-ms internal API
# ---------------------------------------------------------------------------


@lru_cache(maxsize=1)
def _get_payments_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=settings.payments_ms_url,
        timeout=httpx.Timeout(5.0),
        follow_redirects=True,
    )


class PaymentsClient:
    """
    Thin async wrapper around payments-ms internal API.
    Every call carries an Idempotency-Key so retries never double-charge
    or double-refund. Any transport error or non-2xx answer is a PaymentError.
    """

    def __init__(self, caller: CurrentUser | None = None) -> None:
        self.caller = caller

    @property
    def _client(self) -> httpx.AsyncClient:
        return _get_payments_http_client()

    def _headers(self, idempotency_key: str) -> dict[str, str]:
        return {**_caller_headers(self.caller), "Idempotency-Key": idempotency_key}

    async def _post(
        self, path: str, idempotency_key: str, body: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        try:
            resp = await self._client.post(
                path, json=body or {}, headers=self._headers(idempotency_key)
            )
        except httpx.RequestError as exc:
            raise PaymentError(
                f"payments-ms unreachable: {exc}",
                details={"path": path, "idempotency_key": idempotency_key},
            ) from exc
        if resp.status_code >= 400:
            raise PaymentError(
                f"payments-ms returned {resp.status_code}",
                details={"path": path, "idempotency_key": idempotency_key},
            )
        return resp.json() if resp.content else {}

    async def authorize(
        self, amount: Decimal, currency: str, method: str, idempotency_key: str
    ) -> str:
        data = await self._post(
            "/payments/authorizations",
            idempotency_key,
            {"amount": str(amount), "currency": currency, "payment_method": method},
        )
        return data["id"]

    async def capture(self, auth_id: str, idempotency_key: str) -> str:
        data = await self._post(
            f"/payments/authorizations/{auth_id}/capture", idempotency_key
        )
        return data["id"]

    async def refund(self, capture_id: str, amount: Decimal, idempotency_key: str) -> str:
        data = await self._post(
            f"/payments/captures/{capture_id}/refunds",
            idempotency_key,
            {"amount": str(amount)},
        )
        return data["id"]

    async def release(self, auth_id: str, idempotency_key: str) -> None:
        await self._post(f"/payments/authorizations/{auth_id}/release", idempotency_key)


def get_payments_client(
    current_user: CurrentUser = Depends(get_current_user),
) -> PaymentsClient:
    return PaymentsClient(current_user)


# ---------------------------------------------------------------------------
# NotificationsClient: thin async wrapper around notifications-ms internal API
# ---------------------------------------------------------------------------


@lru_cache(maxsize=1)
def _get_notifications_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=settings.notifications_ms_url,
        timeout=httpx.Timeout(5.0),
        follow_redirects=True,
    )


class NotificationsClient:
    """Fire-and-forget; the engine logs and swallows anything raised here."""

    def __init__(self, caller: CurrentUser | None = None) -> None:
        self.caller = caller

    @property
    def _client(self) -> httpx.AsyncClient:
        return _get_notifications_http_client()

    async def notify(
        self, user_id: UUID, event_type: str, payload: dict[str, Any]
    ) -> None:
        resp = await self._client.post(
            "/notifications",
            json={"user_id": str(user_id), "event_type": event_type, "payload": payload},
            headers=_caller_headers(self.caller),
        )
        resp.raise_for_status()


def get_notifications_client(
    current_user: CurrentUser = Depends(get_current_user),
) -> NotificationsClient:
    return NotificationsClient(current_user)


# ---------------------------------------------------------------------------
# Engine wiring
# ---------------------------------------------------------------------------


def get_booking_repository() -> BookingCRUD:
    return booking_crud


def get_engine(
    listings: ListingsClient = Depends(get_listings_client),
    bookings: BookingCRUD = Depends(get_booking_repository),
    payments: PaymentsClient = Depends(get_payments_client),
    notifications: NotificationsClient = Depends(get_notifications_client),
) -> BookingEngine:
    try:
        fees = FeeSchedule.from_settings()
    except BookingEngineError as exc:
        raise exc.to_http_exception() from exc
    return BookingEngine(
        listings,
        bookings,
        payments,
        notifications,
        fees,
        pending_request_ttl=timedelta(hours=settings.PENDING_REQUEST_TTL_HOURS),
        payment_max_attempts=settings.PAYMENT_MAX_ATTEMPTS,
        payment_backoff_seconds=settings.PAYMENT_BACKOFF_SECONDS,
    )
