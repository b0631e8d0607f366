from __future__ import annotations

from datetime import datetime, timezone
from uuid import UUID

from fastapi import HTTPException, status
from loguru import logger
from tortoise.expressions import F
from tortoise.transactions import in_transaction

from app.booking_state import BookingStatus, status_aliases
from app.earnings import EarningsBreakdown
from app.models import Booking, EarningStatus, ProviderEarning, Refund, RefundStatus
from app.schemas import (
    BookingFilters,
    BookingResponse,
    ProviderEarningResponse,
    RefundRecordResponse,
)

# Statuses that hold a provider's time slot
_SLOT_HOLDING = [
    *status_aliases(BookingStatus.ACCEPTED),
    *status_aliases(BookingStatus.PAID),
]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class BookingCRUD:
    async def has_slot_conflict(
        self,
        provider_id: UUID,
        scheduled_at: datetime,
        exclude_id: UUID | None = None,
    ) -> bool:
        """Return True if another accepted/paid booking holds this provider slot."""
        qs = Booking.filter(
            provider_id=provider_id,
            scheduled_at=scheduled_at,
            status__in=_SLOT_HOLDING,
        )
        if exclude_id is not None:
            qs = qs.exclude(id=exclude_id)
        return await qs.exists()

    async def create_booking(
        self,
        service_id: UUID,
        provider_id: UUID,
        customer_id: UUID,
        scheduled_at: datetime,
        price_at_booking: int,
        currency: str,
        charges_gst: bool,
        notes: str | None,
    ) -> BookingResponse:
        """Persist a new pending booking unless the provider slot is already taken."""
        # Atomic check-then-insert: SELECT FOR UPDATE prevents double-booking
        async with in_transaction():
            if await Booking.filter(
                provider_id=provider_id,
                scheduled_at=scheduled_at,
                status__in=_SLOT_HOLDING,
            ).select_for_update().exists():
                raise HTTPException(
                    status_code=status.HTTP_409_CONFLICT,
                    detail="This time slot is no longer available.",
                )

            inst = await Booking.create(
                service_id=service_id,
                provider_id=provider_id,
                customer_id=customer_id,
                scheduled_at=scheduled_at,
                price_at_booking=price_at_booking,
                currency=currency,
                charges_gst=charges_gst,
                notes=notes,
                status=BookingStatus.PENDING.value,
            )

        return BookingResponse.model_validate(inst, from_attributes=True)

    async def get_booking(
        self,
        booking_id: UUID,
        customer_id: UUID | None = None,
        provider_id: UUID | None = None,
    ) -> BookingResponse | None:
        if customer_id is not None:
            inst = await Booking.get_or_none(id=booking_id, customer_id=customer_id)
        elif provider_id is not None:
            inst = await Booking.get_or_none(id=booking_id, provider_id=provider_id)
        else:
            inst = await Booking.get_or_none(id=booking_id)

        if not inst:
            return None
        return BookingResponse.model_validate(inst, from_attributes=True)

    async def list_bookings(
        self,
        filters: BookingFilters,
        customer_id: UUID | None = None,
        provider_id: UUID | None = None,
    ) -> list[BookingResponse]:
        qs = Booking.all()

        if customer_id is not None:
            qs = qs.filter(customer_id=customer_id)
        if provider_id is not None:
            qs = qs.filter(provider_id=provider_id)
        if filters.service_id is not None:
            qs = qs.filter(service_id=filters.service_id)
        if filters.status is not None:
            qs = qs.filter(status__in=status_aliases(filters.status))

        offset = (filters.page - 1) * filters.page_size
        qs = qs.offset(offset).limit(filters.page_size)

        bookings = await qs
        return [
            BookingResponse.model_validate(b, from_attributes=True) for b in bookings
        ]

    async def update_booking_status(
        self,
        booking_id: UUID,
        expected_status: BookingStatus,
        new_status: BookingStatus,
        **changes: object,
    ) -> BookingResponse | None:
        """
        Compare-and-set: only moves the row if it is still in `expected_status`.
        Returns None when another request changed it first.
        """
        updated = await Booking.filter(
            id=booking_id, status__in=status_aliases(expected_status)
        ).update(status=new_status.value, updated_at=_now(), **changes)
        if not updated:
            return None
        inst = await Booking.get(id=booking_id)
        return BookingResponse.model_validate(inst, from_attributes=True)

    async def set_payment_intent(
        self, booking_id: UUID, payment_intent_id: str
    ) -> BookingResponse | None:
        inst = await Booking.get_or_none(id=booking_id)
        if not inst:
            return None
        inst.payment_intent_id = payment_intent_id
        await inst.save(update_fields=["payment_intent_id", "updated_at"])
        return BookingResponse.model_validate(inst, from_attributes=True)

    # -----------------------------------------------------------------------
    # Refunds
    # -----------------------------------------------------------------------

    async def reserve_refund(
        self,
        booking_id: UUID,
        amount: int | None,
        reason: str,
        processed_by: UUID,
    ) -> tuple[BookingResponse, RefundRecordResponse] | None:
        """
        Count `amount` (default: everything still refundable) against the
        booking and open a `processing` refund record, before payments-ms is
        asked for the money. Returns None when the booking is gone or the
        amount no longer fits.
        """
        async with in_transaction():
            inst = await Booking.filter(id=booking_id).select_for_update().first()
            if not inst:
                return None

            remaining = inst.price_at_booking - inst.refunded_amount
            if amount is None:
                amount = remaining
            if amount <= 0 or amount > remaining:
                return None

            # Guarded increment: refunded_amount can never pass the price
            reserved = await Booking.filter(
                id=booking_id,
                refunded_amount__lte=inst.price_at_booking - amount,
            ).update(refunded_amount=F("refunded_amount") + amount, updated_at=_now())
            if not reserved:
                return None

            refund = await Refund.create(
                booking_id=booking_id,
                amount=amount,
                reason=reason,
                processed_by=processed_by,
            )
            inst = await Booking.get(id=booking_id)

        return (
            BookingResponse.model_validate(inst, from_attributes=True),
            RefundRecordResponse.model_validate(refund, from_attributes=True),
        )

    async def complete_refund(self, refund_id: UUID) -> RefundRecordResponse | None:
        inst = await Refund.get_or_none(id=refund_id)
        if not inst:
            return None
        inst.status = RefundStatus.COMPLETED
        inst.processed_at = _now()
        await inst.save(update_fields=["status", "processed_at", "updated_at"])
        return RefundRecordResponse.model_validate(inst, from_attributes=True)

    async def fail_refund(self, refund_id: UUID) -> RefundRecordResponse | None:
        """Mark a processing refund failed and give its amount back to the booking."""
        async with in_transaction():
            inst = await Refund.filter(id=refund_id).select_for_update().first()
            if not inst or inst.status != RefundStatus.PROCESSING:
                return None
            inst.status = RefundStatus.FAILED
            await inst.save(update_fields=["status", "updated_at"])
            await Booking.filter(id=inst.booking_id).update(
                refunded_amount=F("refunded_amount") - inst.amount, updated_at=_now()
            )
        logger.warning("Refund {} failed; released {} cents", refund_id, inst.amount)
        return RefundRecordResponse.model_validate(inst, from_attributes=True)

    async def list_refunds(self, booking_id: UUID) -> list[RefundRecordResponse]:
        return [
            RefundRecordResponse.model_validate(r, from_attributes=True)
            for r in await Refund.filter(booking_id=booking_id)
        ]

    # -----------------------------------------------------------------------
    # Earnings ledger
    # -----------------------------------------------------------------------

    async def record_earning(
        self, booking: BookingResponse, breakdown: EarningsBreakdown
    ) -> ProviderEarningResponse:
        """Create the ledger row for a completed booking. Idempotent per booking."""
        inst, created = await ProviderEarning.get_or_create(
            booking_id=booking.id,
            defaults=dict(
                provider_id=booking.provider_id,
                gross_amount=breakdown.gross_amount,
                platform_fee_amount=breakdown.platform_fee_amount,
                gst_amount=breakdown.gst_amount,
                net_amount=breakdown.net_amount,
                currency=booking.currency,
            ),
        )
        if not created:
            logger.debug("Earnings row already exists for booking {}", booking.id)
        return ProviderEarningResponse.model_validate(inst, from_attributes=True)

    async def list_earnings(
        self,
        provider_id: UUID,
        earning_status: EarningStatus | None = None,
    ) -> list[ProviderEarningResponse]:
        qs = ProviderEarning.filter(provider_id=provider_id)
        if earning_status is not None:
            qs = qs.filter(status=earning_status)
        return [
            ProviderEarningResponse.model_validate(e, from_attributes=True)
            for e in await qs
        ]

    async def list_pending_payouts(self, provider_id: UUID) -> list[ProviderEarningResponse]:
        """Awaiting-payout rows whose booking is (still) completed."""
        completed_ids = await Booking.filter(
            provider_id=provider_id,
            status__in=status_aliases(BookingStatus.COMPLETED),
        ).values_list("id", flat=True)
        rows = await ProviderEarning.filter(
            provider_id=provider_id,
            status=EarningStatus.AWAITING_PAYOUT,
            booking_id__in=list(completed_ids),
        )
        return [ProviderEarningResponse.model_validate(e, from_attributes=True) for e in rows]

    async def list_unrecorded_completed(self, provider_id: UUID) -> list[BookingResponse]:
        """Completed, paid bookings that never got a ledger row."""
        recorded = await ProviderEarning.filter(provider_id=provider_id).values_list(
            "booking_id", flat=True
        )
        qs = Booking.filter(
            provider_id=provider_id,
            status__in=status_aliases(BookingStatus.COMPLETED),
            payment_intent_id__isnull=False,
        )
        if recorded:
            qs = qs.exclude(id__in=list(recorded))
        return [BookingResponse.model_validate(b, from_attributes=True) for b in await qs]


booking_crud = BookingCRUD()
