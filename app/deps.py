from dataclasses import dataclass, field
from functools import lru_cache
from urllib.parse import quote, unquote
from uuid import UUID

import httpx
from fastapi import Depends, Header, HTTPException, status
from loguru import logger

from app import settings
from app.scopes import BookingScope


@dataclass
class CurrentUser:
    id: UUID
    username: str
    scopes: list[str] = field(default_factory=list)

    @property
    def is_admin(self) -> bool:
        """May change any booking."""
        return BookingScope.ADMIN in self.scopes or BookingScope.ADMIN_WRITE in self.scopes

    @property
    def can_read_all(self) -> bool:
        return BookingScope.ADMIN in self.scopes or BookingScope.ADMIN_READ in self.scopes


def get_current_user(
    x_user_id: str = Header(...),
    x_username: str = Header(...),
    x_user_scopes: str = Header(default=""),
) -> CurrentUser:
    """
    Reads the headers injected by the gateway after forwardAuth validation.
    The JWT has already been verified: we just trust these headers.
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

can_write_booking = require_scopes(BookingScope.WRITE)
can_pay_booking = require_scopes(BookingScope.PAY)
can_read_earnings = require_scopes(BookingScope.EARNINGS)


async def can_read_or_manage_booking(
    current_user: CurrentUser = Depends(get_current_user),
) -> CurrentUser:
    """
    Passes if the user can read bookings (customer/admin) OR manage bookings (provider).
    - bookings:read   → customer sees own bookings
    - bookings:manage → provider sees bookings for their services
    - admin:bookings* → admin sees all
    """
    has_read = BookingScope.READ in current_user.scopes
    has_manage = BookingScope.MANAGE in current_user.scopes
    if not (has_read or has_manage or current_user.can_read_all):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=(
                f"Requires '{BookingScope.READ}' (customers), "
                f"'{BookingScope.MANAGE}' (providers), "
                f"or '{BookingScope.ADMIN_READ}' (admin)."
            ),
        )
    return current_user


async def can_refund_booking(
    current_user: CurrentUser = Depends(get_current_user),
) -> CurrentUser:
    if not (current_user.is_admin or BookingScope.ADMIN_REFUND in current_user.scopes):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Requires '{BookingScope.ADMIN_REFUND}' or '{BookingScope.ADMIN_WRITE}'.",
        )
    return current_user


async def can_read_refunds(
    current_user: CurrentUser = Depends(get_current_user),
) -> CurrentUser:
    if not (
        current_user.is_admin
        or current_user.can_read_all
        or BookingScope.ADMIN_REFUND in current_user.scopes
    ):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Requires '{BookingScope.ADMIN_READ}' or '{BookingScope.ADMIN_REFUND}'.",
        )
    return current_user


def _forward_headers(user: CurrentUser) -> dict[str, str]:
    """Re-emit the gateway identity headers so sibling services authorize normally."""
    return {
        "X-User-Id": str(user.id),
        "X-Username": quote(user.username),
        "X-User-Scopes": " ".join(user.scopes),
    }


# ---------------------------------------------------------------------------
# ServicesClient: thin async wrapper around services-ms internal API
# ---------------------------------------------------------------------------


@lru_cache(maxsize=1)
def _get_services_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=settings.services_ms_url,
        timeout=httpx.Timeout(5.0),
        follow_redirects=True,
    )


class ServicesClient:
    """Reads service listings (price, GST flag, owning provider) from services-ms."""

    @property
    def _client(self) -> httpx.AsyncClient:
        return _get_services_http_client()

    async def get_service(self, service_id: UUID, user: CurrentUser) -> dict | None:
        """Returns service dict or None if 404. Raises HTTPException on other errors."""
        try:
            resp = await self._client.get(
                f"/services/{service_id}", headers=_forward_headers(user)
            )
        except httpx.RequestError as exc:
            logger.warning("services-ms unreachable: {}", exc)
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail="services-ms unreachable",
            ) from exc
        if resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail=f"services-ms returned {resp.status_code}",
            )
        return resp.json()


_services_client = ServicesClient()


def get_services_client() -> ServicesClient:
    return _services_client


# ---------------------------------------------------------------------------
# PaymentsClient: thin async wrapper around payments-ms internal API
# ---------------------------------------------------------------------------


@lru_cache(maxsize=1)
def _get_payments_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=settings.payments_ms_url,
        timeout=httpx.Timeout(10.0),
        follow_redirects=True,
    )


class PaymentsClient:
    """
    Thin async wrapper around payments-ms, which owns the processor account.
    Forwards the caller's headers so payments-ms auth works normally.
    """

    @property
    def _client(self) -> httpx.AsyncClient:
        return _get_payments_http_client()

    async def create_payment_intent(
        self,
        booking_id: UUID,
        amount_cents: int,
        currency: str,
        application_fee_cents: int,
        metadata: dict[str, str],
        caller: CurrentUser,
    ) -> dict:
        """Returns {"id": ..., "client_secret": ...}. Raises 502 on any failure."""
        payload = {
            "booking_id": str(booking_id),
            "amount": amount_cents,
            "currency": currency,
            "application_fee_amount": application_fee_cents,
            "metadata": metadata,
        }
        try:
            resp = await self._client.post(
                "/payments/intents",
                json=payload,
                headers={
                    **_forward_headers(caller),
                    "Idempotency-Key": f"booking-{booking_id}-{amount_cents}",
                },
            )
        except httpx.RequestError as exc:
            logger.warning("payments-ms unreachable creating intent: {}", exc)
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail="payments-ms unreachable",
            ) from exc
        if resp.status_code >= 400:
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail=f"payments-ms returned {resp.status_code}",
            )
        return resp.json()

    async def refund_booking(
        self,
        booking_id: UUID,
        caller: CurrentUser,
        amount_cents: int | None = None,
        reason: str | None = None,
        idempotency_key: str | None = None,
    ) -> bool:
        """
        Request a (partial) refund of a booking's payment.
        Returns True on success, False on any error (logged, not raised).
        """
        payload: dict[str, object] = {}
        if amount_cents is not None:
            payload["amount"] = amount_cents
        if reason:
            payload["reason"] = reason
        headers = _forward_headers(caller)
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        try:
            resp = await self._client.post(
                f"/payments/booking/{booking_id}/refund",
                json=payload,
                headers=headers,
            )
        except httpx.RequestError as exc:
            logger.warning("Refund request for booking {} failed: {}", booking_id, exc)
            return False
        if resp.status_code >= 400:
            logger.warning(
                "payments-ms refused refund for booking {}: {}",
                booking_id,
                resp.status_code,
            )
            return False
        return True


_payments_client = PaymentsClient()


def get_payments_client() -> PaymentsClient:
    return _payments_client
