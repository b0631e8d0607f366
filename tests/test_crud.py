"""
Tests for app/crud.py against a real Tortoise schema on in-memory SQLite.

Each test runs in its own event loop with a fresh database, so the
compare-and-set updates and guarded increments hit actual SQL.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from uuid import uuid4

from tortoise import Tortoise

from app.booking_state import BookingStatus
from app.crud import booking_crud
from app.earnings import EarningsBreakdown
from app.models import Booking, EarningStatus, ProviderEarning, Refund, RefundStatus
from app.schemas import BookingFilters

from .factories import ADMIN_ID, CUSTOMER_ID, LATER, PROVIDER_ID, SERVICE_ID

BREAKDOWN = EarningsBreakdown(
    gross_amount=11500, platform_fee_amount=1150, gst_amount=1500, net_amount=8850
)


def _run(test):
    async def _wrapped():
        await Tortoise.init(
            db_url="sqlite://:memory:", modules={"models": ["app.models"]}
        )
        await Tortoise.generate_schemas()
        try:
            return await test()
        finally:
            await Tortoise.close_connections()

    return asyncio.run(_wrapped())


async def _booking(**overrides) -> Booking:
    fields = dict(
        service_id=SERVICE_ID,
        provider_id=PROVIDER_ID,
        customer_id=CUSTOMER_ID,
        scheduled_at=LATER,
        price_at_booking=11500,
        currency="nzd",
        charges_gst=True,
        status=BookingStatus.PENDING.value,
    )
    return await Booking.create(**{**fields, **overrides})


# ---------------------------------------------------------------------------
# Bookings
# ---------------------------------------------------------------------------


class TestUpdateBookingStatus:
    def test_moves_row_in_expected_status(self):
        async def test():
            row = await _booking()
            updated = await booking_crud.update_booking_status(
                row.id,
                expected_status=BookingStatus.PENDING,
                new_status=BookingStatus.ACCEPTED,
            )
            assert updated.status == BookingStatus.ACCEPTED
            assert (await Booking.get(id=row.id)).status == "accepted"

        _run(test)

    def test_stale_expected_status_changes_nothing(self):
        async def test():
            row = await _booking(status=BookingStatus.DECLINED.value)
            updated = await booking_crud.update_booking_status(
                row.id,
                expected_status=BookingStatus.PENDING,
                new_status=BookingStatus.ACCEPTED,
            )
            assert updated is None
            assert (await Booking.get(id=row.id)).status == "declined"

        _run(test)

    def test_stored_legacy_confirmed_row_matches_accepted(self):
        async def test():
            row = await _booking(status="confirmed")
            updated = await booking_crud.update_booking_status(
                row.id,
                expected_status=BookingStatus.ACCEPTED,
                new_status=BookingStatus.CANCELED_PROVIDER,
                cancel_reason="Sick",
            )
            assert updated.status == BookingStatus.CANCELED_PROVIDER
            assert updated.cancel_reason == "Sick"

        _run(test)


class TestSlotConflicts:
    def test_accepted_booking_holds_the_slot(self):
        async def test():
            await _booking(status=BookingStatus.ACCEPTED.value)
            assert await booking_crud.has_slot_conflict(PROVIDER_ID, LATER)
            assert not await booking_crud.has_slot_conflict(
                PROVIDER_ID, LATER + timedelta(hours=1)
            )

        _run(test)

    def test_pending_and_excluded_bookings_do_not_conflict(self):
        async def test():
            await _booking()
            held = await _booking(status="confirmed")
            assert not await booking_crud.has_slot_conflict(
                PROVIDER_ID, LATER, exclude_id=held.id
            )

        _run(test)

    def test_list_filters_by_legacy_aware_status(self):
        async def test():
            await _booking(status="canceled")
            await _booking(status=BookingStatus.PAID.value)
            rows = await booking_crud.list_bookings(
                BookingFilters(status=BookingStatus.CANCELED_CUSTOMER),
                customer_id=CUSTOMER_ID,
            )
            assert [r.status for r in rows] == [BookingStatus.CANCELED_CUSTOMER]

        _run(test)


# ---------------------------------------------------------------------------
# Refunds
# ---------------------------------------------------------------------------


class TestReserveRefund:
    def test_reserves_amount_and_opens_record(self):
        async def test():
            row = await _booking(status=BookingStatus.PAID.value)
            booking, refund = await booking_crud.reserve_refund(
                row.id, 2000, "Late arrival", ADMIN_ID
            )
            assert booking.refunded_amount == 2000
            assert refund.amount == 2000
            assert refund.status == RefundStatus.PROCESSING
            assert refund.processed_by == ADMIN_ID

        _run(test)

    def test_default_amount_is_the_remainder(self):
        async def test():
            row = await _booking(status=BookingStatus.PAID.value, refunded_amount=1500)
            booking, refund = await booking_crud.reserve_refund(
                row.id, None, "Dispute upheld", ADMIN_ID
            )
            assert refund.amount == 10000
            assert booking.refunded_amount == 11500

        _run(test)

    def test_amount_over_remaining_is_refused(self):
        async def test():
            row = await _booking(status=BookingStatus.PAID.value, refunded_amount=11000)
            assert await booking_crud.reserve_refund(row.id, 501, "x", ADMIN_ID) is None
            assert (await Booking.get(id=row.id)).refunded_amount == 11000
            assert await Refund.filter(booking_id=row.id).count() == 0

        _run(test)

    def test_nothing_left_to_refund(self):
        async def test():
            row = await _booking(status=BookingStatus.PAID.value, refunded_amount=11500)
            assert await booking_crud.reserve_refund(row.id, None, "x", ADMIN_ID) is None

        _run(test)

    def test_missing_booking(self):
        async def test():
            assert await booking_crud.reserve_refund(uuid4(), 100, "x", ADMIN_ID) is None

        _run(test)

    def test_concurrent_full_refunds_never_exceed_price(self):
        async def test():
            row = await _booking(status=BookingStatus.PAID.value)
            results = await asyncio.gather(
                booking_crud.reserve_refund(row.id, None, "first", ADMIN_ID),
                booking_crud.reserve_refund(row.id, None, "second", ADMIN_ID),
            )
            assert sum(r is not None for r in results) == 1
            assert (await Booking.get(id=row.id)).refunded_amount == 11500
            assert await Refund.filter(booking_id=row.id).count() == 1

        _run(test)

    def test_sequential_partials_stop_at_price(self):
        async def test():
            row = await _booking(status=BookingStatus.PAID.value)
            assert await booking_crud.reserve_refund(row.id, 6000, "a", ADMIN_ID)
            assert await booking_crud.reserve_refund(row.id, 6000, "b", ADMIN_ID) is None
            assert await booking_crud.reserve_refund(row.id, 5500, "c", ADMIN_ID)
            assert (await Booking.get(id=row.id)).refunded_amount == 11500

        _run(test)


class TestSettleRefund:
    def test_complete_marks_processed(self):
        async def test():
            row = await _booking(status=BookingStatus.PAID.value)
            _, refund = await booking_crud.reserve_refund(row.id, 2000, "x", ADMIN_ID)
            done = await booking_crud.complete_refund(refund.id)
            assert done.status == RefundStatus.COMPLETED
            assert done.processed_at is not None
            assert (await Booking.get(id=row.id)).refunded_amount == 2000

        _run(test)

    def test_fail_releases_reserved_amount(self):
        async def test():
            row = await _booking(status=BookingStatus.PAID.value, refunded_amount=1000)
            _, refund = await booking_crud.reserve_refund(row.id, 2000, "x", ADMIN_ID)
            failed = await booking_crud.fail_refund(refund.id)
            assert failed.status == RefundStatus.FAILED
            assert (await Booking.get(id=row.id)).refunded_amount == 1000

        _run(test)

    def test_fail_is_applied_once(self):
        async def test():
            row = await _booking(status=BookingStatus.PAID.value)
            _, refund = await booking_crud.reserve_refund(row.id, 2000, "x", ADMIN_ID)
            assert await booking_crud.fail_refund(refund.id) is not None
            assert await booking_crud.fail_refund(refund.id) is None
            assert (await Booking.get(id=row.id)).refunded_amount == 0

        _run(test)

    def test_list_refunds_returns_history(self):
        async def test():
            row = await _booking(status=BookingStatus.PAID.value)
            _, first = await booking_crud.reserve_refund(row.id, 2000, "a", ADMIN_ID)
            await booking_crud.fail_refund(first.id)
            await booking_crud.reserve_refund(row.id, 500, "b", ADMIN_ID)
            history = await booking_crud.list_refunds(row.id)
            assert sorted((r.amount, r.status) for r in history) == [
                (500, RefundStatus.PROCESSING),
                (2000, RefundStatus.FAILED),
            ]
            assert await booking_crud.list_refunds(uuid4()) == []

        _run(test)


# ---------------------------------------------------------------------------
# Earnings ledger
# ---------------------------------------------------------------------------


class TestEarningsLedger:
    def test_record_earning_is_idempotent(self):
        async def test():
            row = await _booking(status=BookingStatus.COMPLETED.value)
            booking = await booking_crud.get_booking(row.id)
            first = await booking_crud.record_earning(booking, BREAKDOWN)
            second = await booking_crud.record_earning(booking, BREAKDOWN)
            assert first.id == second.id
            assert first.net_amount == 8850
            assert await ProviderEarning.filter(booking_id=row.id).count() == 1

        _run(test)

    def test_pending_payouts_only_for_completed_bookings(self):
        async def test():
            done = await _booking(status=BookingStatus.COMPLETED.value)
            disputed = await _booking(status=BookingStatus.DISPUTED.value)
            for row in (done, disputed):
                await booking_crud.record_earning(
                    await booking_crud.get_booking(row.id), BREAKDOWN
                )
            pending = await booking_crud.list_pending_payouts(PROVIDER_ID)
            assert [e.booking_id for e in pending] == [done.id]

        _run(test)

    def test_paid_out_filter(self):
        async def test():
            row = await _booking(status=BookingStatus.COMPLETED.value)
            await booking_crud.record_earning(
                await booking_crud.get_booking(row.id), BREAKDOWN
            )
            await ProviderEarning.filter(booking_id=row.id).update(
                status=EarningStatus.PAID_OUT
            )
            paid = await booking_crud.list_earnings(
                PROVIDER_ID, earning_status=EarningStatus.PAID_OUT
            )
            assert [e.booking_id for e in paid] == [row.id]
            assert await booking_crud.list_pending_payouts(PROVIDER_ID) == []

        _run(test)

    def test_unrecorded_completed_needs_a_payment(self):
        async def test():
            recorded = await _booking(
                status=BookingStatus.COMPLETED.value, payment_intent_id="pi_1"
            )
            missing = await _booking(
                status=BookingStatus.COMPLETED.value, payment_intent_id="pi_2"
            )
            await _booking(status=BookingStatus.COMPLETED.value)
            await booking_crud.record_earning(
                await booking_crud.get_booking(recorded.id), BREAKDOWN
            )
            unrecorded = await booking_crud.list_unrecorded_completed(PROVIDER_ID)
            assert [b.id for b in unrecorded] == [missing.id]

        _run(test)
