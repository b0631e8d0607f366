from __future__ import annotations

from datetime import datetime, timezone
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.booking_state import BookingStatus, normalize_status
from app.earnings import BookingTotals, EarningsSummary, EarningsTotals
from app.fees import PaymentBreakdown
from app.models import EarningStatus, RefundStatus


def _normalize(v: object) -> object:
    # Legacy aliases are resolved here, before anything downstream sees them.
    if isinstance(v, str):
        return normalize_status(v)
    return v


class BookingCreate(BaseModel):
    service_id: UUID
    scheduled_at: datetime
    notes: str | None = Field(default=None, max_length=1000)

    @field_validator("scheduled_at", mode="after")
    @classmethod
    def require_timezone(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            raise ValueError("datetime must be timezone-aware (include UTC offset)")
        return v.astimezone(timezone.utc)


class BookingStatusUpdate(BaseModel):
    status: BookingStatus
    reason: str | None = Field(default=None, max_length=1000)

    @field_validator("status", mode="before")
    @classmethod
    def resolve_legacy_status(cls, v: object) -> object:
        return _normalize(v)


class BookingResponse(BaseModel):
    id: UUID
    service_id: UUID
    provider_id: UUID
    customer_id: UUID
    status: BookingStatus
    price_at_booking: int
    currency: str
    charges_gst: bool
    scheduled_at: datetime
    payment_intent_id: str | None = None
    refunded_amount: int = 0
    notes: str | None = None
    decline_reason: str | None = None
    cancel_reason: str | None = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @field_validator("status", mode="before")
    @classmethod
    def resolve_legacy_status(cls, v: object) -> object:
        return _normalize(v)


class BookingFilters(BaseModel):
    """Bind to a FastAPI route via Depends(BookingFilters)."""

    service_id: UUID | None = None
    status: BookingStatus | None = None

    # Pagination
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1, le=100)


class AllowedTransitions(BaseModel):
    booking_id: UUID
    status: BookingStatus
    allowed: list[BookingStatus]


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


class PaymentBreakdownResponse(BaseModel):
    currency: str
    service_price_cents: int
    service_fee_cents: int
    total_cents: int

    @classmethod
    def from_breakdown(cls, b: PaymentBreakdown) -> PaymentBreakdownResponse:
        return cls(
            currency=b.currency,
            service_price_cents=b.service_price_cents,
            service_fee_cents=b.service_fee_cents,
            total_cents=b.total_cents,
        )


class PaymentIntentResponse(BaseModel):
    booking_id: UUID
    payment_intent_id: str
    client_secret: str | None = None
    breakdown: PaymentBreakdownResponse


class RefundCreate(BaseModel):
    # Omitted -> refund whatever is still refundable
    amount_in_cents: int | None = Field(default=None, ge=1)
    reason: str = Field(min_length=1, max_length=1000)


class RefundRecordResponse(BaseModel):
    id: UUID
    booking_id: UUID
    amount: int
    reason: str
    processed_by: UUID
    status: RefundStatus
    processed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RefundResponse(BaseModel):
    booking: BookingResponse
    refund: RefundRecordResponse
    refunded_now: int
    refunded_total: int
    fully_refunded: bool


# ---------------------------------------------------------------------------
# Receipts
# ---------------------------------------------------------------------------


class BookingTotalsResponse(BaseModel):
    gross: int
    platform_fee: int
    gst_amount: int
    net_to_provider: int
    total_paid: int
    refunded_amount: int

    @classmethod
    def from_totals(cls, t: BookingTotals) -> BookingTotalsResponse:
        return cls(
            gross=t.gross,
            platform_fee=t.platform_fee,
            gst_amount=t.gst_amount,
            net_to_provider=t.net_to_provider,
            total_paid=t.total_paid,
            refunded_amount=t.refunded_amount,
        )


class ReceiptLine(BaseModel):
    label: str
    amount_cents: int
    formatted: str


class BookingReceipt(BaseModel):
    booking: BookingResponse
    totals: BookingTotalsResponse
    payment: PaymentBreakdownResponse
    lines: list[ReceiptLine]


# ---------------------------------------------------------------------------
# Earnings
# ---------------------------------------------------------------------------


class EarningsTotalsResponse(BaseModel):
    gross: int
    fee: int
    gst: int
    net: int

    @classmethod
    def from_totals(cls, t: EarningsTotals) -> EarningsTotalsResponse:
        return cls(gross=t.gross.cents, fee=t.fee.cents, gst=t.gst.cents, net=t.net.cents)


class EarningsSummaryResponse(BaseModel):
    currency: str
    lifetime: EarningsTotalsResponse
    last30: EarningsTotalsResponse
    pending_payouts_net: int
    paid_out_net: int

    @classmethod
    def from_summary(cls, s: EarningsSummary) -> EarningsSummaryResponse:
        return cls(
            currency=s.currency,
            lifetime=EarningsTotalsResponse.from_totals(s.lifetime),
            last30=EarningsTotalsResponse.from_totals(s.last30),
            pending_payouts_net=s.pending_payouts_net.cents,
            paid_out_net=s.paid_out_net.cents,
        )


class ProviderEarningResponse(BaseModel):
    id: UUID
    booking_id: UUID
    provider_id: UUID
    gross_amount: int
    platform_fee_amount: int
    gst_amount: int
    net_amount: int
    currency: str
    status: EarningStatus
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)
