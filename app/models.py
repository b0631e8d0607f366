from enum import StrEnum

from tortoise import fields
from tortoise.models import Model

from app.booking_state import BookingStatus


class EarningStatus(StrEnum):
    AWAITING_PAYOUT = "awaiting_payout"  # booking completed, transfer not sent yet
    PAID_OUT = "paid_out"


class RefundStatus(StrEnum):
    PROCESSING = "processing"  # amount reserved on the booking, payments-ms not confirmed yet
    COMPLETED = "completed"
    FAILED = "failed"  # reservation released


class TimestampedModel(Model):
    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:  # type: ignore
        abstract = True


class Booking(TimestampedModel):
    id = fields.UUIDField(primary_key=True)

    service_id = fields.UUIDField()
    provider_id = fields.UUIDField()  # denormalized snapshot from services-ms
    customer_id = fields.UUIDField()

    # Raw string so rows with legacy values ("confirmed", "canceled") still load;
    # normalized by the schema layer.
    status = fields.CharField(max_length=32, default=BookingStatus.PENDING.value)

    price_at_booking = fields.IntField()  # cents, snapshot at booking time
    currency = fields.CharField(max_length=3, default="nzd")
    charges_gst = fields.BooleanField(default=True)  # price is GST-inclusive

    scheduled_at = fields.DatetimeField()
    payment_intent_id = fields.CharField(max_length=255, null=True)
    refunded_amount = fields.IntField(default=0)  # cents

    notes = fields.TextField(null=True)
    decline_reason = fields.TextField(null=True)
    cancel_reason = fields.TextField(null=True)

    class Meta:  # type: ignore
        table = "bookings"
        ordering = ["-created_at"]


class ProviderEarning(TimestampedModel):
    id = fields.UUIDField(primary_key=True)

    booking_id = fields.UUIDField(unique=True)
    provider_id = fields.UUIDField(index=True)

    gross_amount = fields.IntField()
    platform_fee_amount = fields.IntField()
    gst_amount = fields.IntField()
    net_amount = fields.IntField()
    currency = fields.CharField(max_length=3, default="nzd")

    status = fields.CharEnumField(EarningStatus, default=EarningStatus.AWAITING_PAYOUT)

    class Meta:  # type: ignore
        table = "provider_earnings"
        ordering = ["-created_at"]


class Refund(TimestampedModel):
    """One admin refund attempt against a booking's payment."""

    id = fields.UUIDField(primary_key=True)

    booking_id = fields.UUIDField(index=True)
    amount = fields.IntField()  # cents
    reason = fields.TextField()
    processed_by = fields.UUIDField()
    status = fields.CharEnumField(RefundStatus, default=RefundStatus.PROCESSING)
    processed_at = fields.DatetimeField(null=True)

    class Meta:  # type: ignore
        table = "refunds"
        ordering = ["created_at"]
