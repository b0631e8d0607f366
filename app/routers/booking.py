from collections.abc import Callable
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from loguru import logger

from app.booking_state import (
    BookingStatus,
    assert_transition,
    can_transition,
    get_allowed_transitions,
)
from app.cache import invalidate_earnings_cache
from app.crud import booking_crud
from app.deps import (
    CurrentUser,
    PaymentsClient,
    ServicesClient,
    can_pay_booking,
    can_read_or_manage_booking,
    can_read_refunds,
    can_refund_booking,
    can_write_booking,
    get_current_user,
    get_payments_client,
    get_services_client,
)
from app.earnings import calculate_booking_totals, calculate_earnings
from app.exceptions import InvalidTransitionError
from app.fees import calculate_payment_breakdown
from app.models import RefundStatus
from app.money import Money
from app.schemas import (
    AllowedTransitions,
    BookingCreate,
    BookingFilters,
    BookingReceipt,
    BookingResponse,
    BookingStatusUpdate,
    BookingTotalsResponse,
    PaymentBreakdownResponse,
    PaymentIntentResponse,
    ReceiptLine,
    RefundCreate,
    RefundRecordResponse,
    RefundResponse,
)
from app.scopes import BookingScope

router = APIRouter(prefix="/bookings", tags=["bookings"])

MIN_PRICE_CENTS = 100


# ---------------------------------------------------------------------------
# Visibility helper
# ---------------------------------------------------------------------------


async def _get_visible_booking(
    booking_id: UUID, current_user: CurrentUser
) -> BookingResponse:
    """Admins see everything, providers their own bookings, customers theirs."""
    is_manager = BookingScope.MANAGE in current_user.scopes
    is_reader = BookingScope.READ in current_user.scopes

    if current_user.can_read_all:
        booking = await booking_crud.get_booking(booking_id)
    elif is_manager and not is_reader:
        booking = await booking_crud.get_booking(
            booking_id, provider_id=current_user.id
        )
    else:
        booking = await booking_crud.get_booking(
            booking_id, customer_id=current_user.id
        )

    if not booking:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found"
        )
    return booking


# ---------------------------------------------------------------------------
# Transition guard helpers
# ---------------------------------------------------------------------------


def _is_provider(user: CurrentUser, booking: BookingResponse) -> bool:
    return BookingScope.MANAGE in user.scopes and user.id == booking.provider_id


def _is_customer(user: CurrentUser, booking: BookingResponse, scope: str) -> bool:
    return scope in user.scopes and user.id == booking.customer_id


_Rule = tuple[Callable[[CurrentUser, BookingResponse], bool], str]

# Who may move a booking into each status (admins bypass these)
_TRANSITION_RULES: dict[BookingStatus, _Rule] = {
    BookingStatus.ACCEPTED: (
        _is_provider,
        f"'{BookingScope.MANAGE}' scope as the booking's provider",
    ),
    BookingStatus.DECLINED: (
        _is_provider,
        f"'{BookingScope.MANAGE}' scope as the booking's provider",
    ),
    BookingStatus.CANCELED_PROVIDER: (
        _is_provider,
        f"'{BookingScope.MANAGE}' scope as the booking's provider",
    ),
    BookingStatus.CANCELED_CUSTOMER: (
        lambda u, b: _is_customer(u, b, BookingScope.CANCEL),
        f"'{BookingScope.CANCEL}' scope as the booking's customer",
    ),
    BookingStatus.PAID: (
        lambda u, b: BookingScope.PAYMENTS in u.scopes,
        f"'{BookingScope.PAYMENTS}' scope",
    ),
    BookingStatus.COMPLETED: (
        lambda u, b: _is_customer(u, b, BookingScope.WRITE) or _is_provider(u, b),
        f"'{BookingScope.WRITE}' scope as the customer, "
        f"or '{BookingScope.MANAGE}' scope as the provider",
    ),
    BookingStatus.DISPUTED: (
        lambda u, b: _is_customer(u, b, BookingScope.WRITE),
        f"'{BookingScope.WRITE}' scope as the booking's customer",
    ),
    BookingStatus.REFUNDED: (
        lambda u, b: BookingScope.ADMIN_REFUND in u.scopes,
        f"'{BookingScope.ADMIN_REFUND}' scope",
    ),
}

_REASON_REQUIRED = {BookingStatus.DECLINED, BookingStatus.CANCELED_PROVIDER}


def _is_party(user: CurrentUser, booking: BookingResponse) -> bool:
    return (
        user.is_admin
        or user.id in (booking.customer_id, booking.provider_id)
        or BookingScope.PAYMENTS in user.scopes
    )


def _guard_transition(
    booking: BookingResponse,
    new_status: BookingStatus,
    reason: str | None,
    current_user: CurrentUser,
) -> None:
    """
    Raise 404 for callers with no stake in the booking, then 409 if the
    lifecycle forbids the move, 403 if the caller may not make it, 400 if a
    required reason is missing.
    """
    if not _is_party(current_user, booking):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found"
        )

    try:
        assert_transition(booking.status, new_status)
    except InvalidTransitionError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail=str(exc)
        ) from exc

    if not current_user.is_admin:
        allowed, requirement = _TRANSITION_RULES[new_status]
        if not allowed(current_user, booking):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Transitioning to '{new_status}' requires {requirement}.",
            )

    if new_status in _REASON_REQUIRED and not (reason and reason.strip()):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"A reason is required to move a booking to '{new_status}'.",
        )


def _reason_fields(new_status: BookingStatus, reason: str | None) -> dict[str, str | None]:
    reason = reason.strip() if reason else None
    if new_status == BookingStatus.DECLINED:
        return {"decline_reason": reason, "cancel_reason": None}
    if new_status in (BookingStatus.CANCELED_PROVIDER, BookingStatus.CANCELED_CUSTOMER):
        return {"decline_reason": None, "cancel_reason": reason}
    return {}


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.get("/", response_model=list[BookingResponse])
async def list_bookings(
    filters: BookingFilters = Depends(),
    current_user: CurrentUser = Depends(can_read_or_manage_booking),
) -> list[BookingResponse]:
    is_manager = BookingScope.MANAGE in current_user.scopes
    is_reader = BookingScope.READ in current_user.scopes

    if current_user.can_read_all:
        return await booking_crud.list_bookings(filters=filters)
    if is_manager and not is_reader:
        return await booking_crud.list_bookings(
            filters=filters, provider_id=current_user.id
        )
    return await booking_crud.list_bookings(
        filters=filters, customer_id=current_user.id
    )


@router.post("/", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    payload: BookingCreate,
    current_user: CurrentUser = Depends(can_write_booking),
    services_client: ServicesClient = Depends(get_services_client),
) -> BookingResponse:
    service = await services_client.get_service(payload.service_id, current_user)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Service not found",
        )
    if service.get("status") != "active":
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=(
                f"Service is not available for booking (status: {service.get('status')})"
            ),
        )

    provider_id = UUID(service["provider_id"])
    if provider_id == current_user.id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="You cannot book your own service",
        )

    price = int(service["price_in_cents"])
    if price < MIN_PRICE_CENTS:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Service price is invalid (min $1.00)",
        )

    booking = await booking_crud.create_booking(
        service_id=payload.service_id,
        provider_id=provider_id,
        customer_id=current_user.id,
        scheduled_at=payload.scheduled_at,
        price_at_booking=price,
        currency=service.get("currency", "nzd").lower(),
        charges_gst=bool(service.get("charges_gst", True)),
        notes=payload.notes,
    )
    logger.info(
        "Customer {} booked service {} as booking {}",
        current_user.id,
        payload.service_id,
        booking.id,
    )
    return booking


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: UUID,
    current_user: CurrentUser = Depends(can_read_or_manage_booking),
) -> BookingResponse:
    return await _get_visible_booking(booking_id, current_user)


@router.get("/{booking_id}/transitions", response_model=AllowedTransitions)
async def get_booking_transitions(
    booking_id: UUID,
    current_user: CurrentUser = Depends(can_read_or_manage_booking),
) -> AllowedTransitions:
    booking = await _get_visible_booking(booking_id, current_user)
    return AllowedTransitions(
        booking_id=booking.id,
        status=booking.status,
        allowed=get_allowed_transitions(booking.status),
    )


@router.patch("/{booking_id}/status", response_model=BookingResponse)
async def update_booking_status(
    booking_id: UUID,
    payload: BookingStatusUpdate,
    current_user: CurrentUser = Depends(get_current_user),
    payments_client: PaymentsClient = Depends(get_payments_client),
) -> BookingResponse:
    # Fetch the booking without ownership filter: we validate permissions manually
    booking = await booking_crud.get_booking(booking_id)
    if not booking:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found"
        )

    _guard_transition(booking, payload.status, payload.reason, current_user)

    if payload.status == BookingStatus.ACCEPTED and await booking_crud.has_slot_conflict(
        booking.provider_id, booking.scheduled_at, exclude_id=booking.id
    ):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="This time slot is no longer available.",
        )

    # Breakdown first, so misconfigured rates fail before the booking moves
    breakdown = None
    if payload.status == BookingStatus.COMPLETED:
        breakdown = calculate_earnings(booking.price_at_booking, booking.charges_gst)

    updated = await booking_crud.update_booking_status(
        booking_id,
        expected_status=booking.status,
        new_status=payload.status,
        **_reason_fields(payload.status, payload.reason),
    )
    if not updated:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Booking status changed. Please refresh and try again.",
        )

    logger.info(
        "Booking {} moved {} -> {} by {}",
        booking_id,
        booking.status,
        payload.status,
        current_user.id,
    )

    if breakdown is not None:
        await booking_crud.record_earning(updated, breakdown)
        await invalidate_earnings_cache(updated.provider_id)

    # Refund whatever is left. Failure to refund does not block the status change.
    if payload.status == BookingStatus.REFUNDED and updated.payment_intent_id:
        result = await _process_refund(
            booking_id,
            None,
            payload.reason or "Booking refunded",
            current_user,
            payments_client,
        )
        if result is not None:
            updated, refund = result
            if refund.status == RefundStatus.FAILED:
                logger.error(
                    "Booking {} marked refunded but refund of {} failed",
                    booking_id,
                    refund.amount,
                )

    return updated


@router.post("/{booking_id}/pay", response_model=PaymentIntentResponse)
async def pay_booking(
    booking_id: UUID,
    current_user: CurrentUser = Depends(can_pay_booking),
    payments_client: PaymentsClient = Depends(get_payments_client),
) -> PaymentIntentResponse:
    booking = await booking_crud.get_booking(booking_id, customer_id=current_user.id)
    if not booking:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found"
        )
    if not can_transition(booking.status, BookingStatus.PAID):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Booking cannot be paid while '{booking.status}'",
        )

    breakdown = calculate_payment_breakdown(booking.price_at_booking, booking.currency)
    earnings = calculate_earnings(booking.price_at_booking, booking.charges_gst)

    # Everything but the provider's net stays with the platform
    application_fee = breakdown.total_cents - earnings.net_amount

    intent = await payments_client.create_payment_intent(
        booking_id=booking.id,
        amount_cents=breakdown.total_cents,
        currency=breakdown.currency,
        application_fee_cents=application_fee,
        metadata={
            "booking_id": str(booking.id),
            "provider_id": str(booking.provider_id),
            "service_price_cents": str(breakdown.service_price_cents),
            "service_fee_cents": str(breakdown.service_fee_cents),
            "platform_fee_cents": str(earnings.platform_fee_amount),
            "gst_cents": str(earnings.gst_amount),
            "provider_net_cents": str(earnings.net_amount),
        },
        caller=current_user,
    )

    await booking_crud.set_payment_intent(booking.id, intent["id"])
    logger.info("Payment intent {} created for booking {}", intent["id"], booking.id)

    return PaymentIntentResponse(
        booking_id=booking.id,
        payment_intent_id=intent["id"],
        client_secret=intent.get("client_secret"),
        breakdown=PaymentBreakdownResponse.from_breakdown(breakdown),
    )


@router.get("/{booking_id}/receipt", response_model=BookingReceipt)
async def get_booking_receipt(
    booking_id: UUID,
    current_user: CurrentUser = Depends(can_read_or_manage_booking),
) -> BookingReceipt:
    booking = await _get_visible_booking(booking_id, current_user)

    totals = calculate_booking_totals(
        booking.price_at_booking,
        booking.charges_gst,
        refunded_amount_in_cents=booking.refunded_amount,
    )
    payment = calculate_payment_breakdown(booking.price_at_booking, booking.currency)

    def line(label: str, cents: int) -> ReceiptLine:
        return ReceiptLine(
            label=label,
            amount_cents=cents,
            formatted=Money(cents, booking.currency).format(),
        )

    lines = [
        line("Service", payment.service_price_cents),
        line("Service fee", payment.service_fee_cents),
        line("Total charged", payment.total_cents),
    ]
    if booking.charges_gst:
        lines.append(line("Includes GST", totals.gst_amount))
    if totals.refunded_amount:
        lines.append(line("Refunded", -totals.refunded_amount))
    if current_user.id != booking.customer_id:
        lines.append(line("Platform fee", totals.platform_fee))
        lines.append(line("Net to provider", totals.net_to_provider))

    return BookingReceipt(
        booking=booking,
        totals=BookingTotalsResponse.from_totals(totals),
        payment=PaymentBreakdownResponse.from_breakdown(payment),
        lines=lines,
    )


async def _process_refund(
    booking_id: UUID,
    amount: int | None,
    reason: str,
    current_user: CurrentUser,
    payments_client: PaymentsClient,
) -> tuple[BookingResponse, RefundRecordResponse] | None:
    """
    Reserve the amount on the booking, then ask payments-ms for it. A refused
    refund is marked failed and its reservation released. Returns None when
    nothing could be reserved.
    """
    reservation = await booking_crud.reserve_refund(
        booking_id, amount, reason, current_user.id
    )
    if reservation is None:
        return None
    booking, refund = reservation

    if await payments_client.refund_booking(
        booking_id,
        current_user,
        amount_cents=refund.amount,
        reason=reason,
        idempotency_key=f"refund-{refund.id}",
    ):
        refund = await booking_crud.complete_refund(refund.id) or refund
        return booking, refund

    refund = await booking_crud.fail_refund(refund.id) or refund
    booking = await booking_crud.get_booking(booking_id) or booking
    return booking, refund


@router.get("/{booking_id}/refunds", response_model=list[RefundRecordResponse])
async def list_booking_refunds(
    booking_id: UUID,
    current_user: CurrentUser = Depends(can_read_refunds),
) -> list[RefundRecordResponse]:
    if not await booking_crud.get_booking(booking_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found"
        )
    return await booking_crud.list_refunds(booking_id)


@router.post("/{booking_id}/refunds", response_model=RefundResponse)
async def refund_booking(
    booking_id: UUID,
    payload: RefundCreate,
    current_user: CurrentUser = Depends(can_refund_booking),
    payments_client: PaymentsClient = Depends(get_payments_client),
) -> RefundResponse:
    booking = await booking_crud.get_booking(booking_id)
    if not booking:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found"
        )
    if not can_transition(booking.status, BookingStatus.REFUNDED):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Booking cannot be refunded while '{booking.status}'",
        )
    if not booking.payment_intent_id:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Booking has no payment to refund",
        )

    remaining = booking.price_at_booking - booking.refunded_amount
    amount = payload.amount_in_cents if payload.amount_in_cents is not None else remaining
    if amount <= 0 or amount > remaining:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Refund amount must be between 1 and {remaining} cents",
        )

    # Re-checked under a row lock; a concurrent refund may have used it up
    result = await _process_refund(
        booking_id, amount, payload.reason, current_user, payments_client
    )
    if result is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Refundable amount changed. Please refresh and try again.",
        )
    updated, refund = result
    if refund.status == RefundStatus.FAILED:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Refund was not accepted by the payments service",
        )

    logger.info(
        "Admin {} refunded {} cents on booking {}: {}",
        current_user.id,
        amount,
        booking_id,
        payload.reason,
    )

    fully_refunded = updated.refunded_amount >= updated.price_at_booking
    if fully_refunded:
        moved = await booking_crud.update_booking_status(
            booking_id,
            expected_status=updated.status,
            new_status=BookingStatus.REFUNDED,
            cancel_reason=payload.reason,
        )
        if moved is None:
            logger.warning(
                "Booking {} fully refunded but status changed concurrently", booking_id
            )
        updated = moved or updated

    return RefundResponse(
        booking=updated,
        refund=refund,
        refunded_now=amount,
        refunded_total=updated.refunded_amount,
        fully_refunded=fully_refunded,
    )
