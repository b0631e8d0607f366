"""
Split of a booking's gross charge into platform fee, GST and provider net.

    fee = ceil(gross * fee_bps / 10000)
    gst = round(gross * gst_bps / (10000 + gst_bps))   # only if the price includes GST
    net = gross - fee - gst

GST is back-calculated: a GST-inclusive price P at rate r contains P*r/(1+r)
of tax, not P*r. The fee rounds up so integer truncation never under-collects.

Refunds reduce what the provider is owed but leave the collected fee and GST
untouched.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from loguru import logger

from app.exceptions import NegativeNetAmountError, NegativeValueError
from app.fees import (
    BPS_DENOMINATOR,
    FeeConfig,
    ceil_div,
    get_fee_config,
    round_half_up_div,
)
from app.money import Money


@dataclass(frozen=True)
class EarningsBreakdown:
    gross_amount: int
    platform_fee_amount: int
    gst_amount: int
    net_amount: int


@dataclass(frozen=True)
class BookingTotals:
    gross: int
    platform_fee: int
    gst_amount: int
    net_to_provider: int
    total_paid: int
    refunded_amount: int


def _require_non_negative(**values: int) -> None:
    for field, value in values.items():
        if value < 0:
            raise NegativeValueError(field, value)


def calculate_earnings(
    amount_in_cents: int,
    charges_gst: bool,
    platform_fee_bps: int | None = None,
    gst_bps: int | None = None,
    config: FeeConfig | None = None,
) -> EarningsBreakdown:
    cfg = config or get_fee_config()
    fee_bps = cfg.platform_fee_bps if platform_fee_bps is None else platform_fee_bps
    gst_rate = cfg.gst_bps if gst_bps is None else gst_bps

    _require_non_negative(
        amount_in_cents=amount_in_cents,
        platform_fee_bps=fee_bps,
        gst_bps=gst_rate,
    )

    platform_fee = ceil_div(amount_in_cents * fee_bps, BPS_DENOMINATOR)
    gst = (
        round_half_up_div(amount_in_cents * gst_rate, BPS_DENOMINATOR + gst_rate)
        if charges_gst
        else 0
    )
    net = amount_in_cents - platform_fee - gst

    if net < 0:
        logger.critical(
            "Negative provider net: gross={} fee_bps={} gst_bps={} charges_gst={}",
            amount_in_cents,
            fee_bps,
            gst_rate,
            charges_gst,
        )
        raise NegativeNetAmountError(amount_in_cents, platform_fee, gst)

    return EarningsBreakdown(
        gross_amount=amount_in_cents,
        platform_fee_amount=platform_fee,
        gst_amount=gst,
        net_amount=net,
    )


def calculate_booking_totals(
    price_in_cents: int,
    charges_gst: bool,
    refunded_amount_in_cents: int = 0,
    platform_fee_bps: int | None = None,
    gst_bps: int | None = None,
    config: FeeConfig | None = None,
) -> BookingTotals:
    earnings = calculate_earnings(
        price_in_cents,
        charges_gst,
        platform_fee_bps=platform_fee_bps,
        gst_bps=gst_bps,
        config=config,
    )
    refunded = max(0, refunded_amount_in_cents)

    return BookingTotals(
        gross=earnings.gross_amount,
        platform_fee=earnings.platform_fee_amount,
        gst_amount=earnings.gst_amount,
        net_to_provider=max(0, earnings.net_amount - refunded),
        total_paid=max(0, earnings.gross_amount - refunded),
        refunded_amount=refunded,
    )


# ---------------------------------------------------------------------------
# Provider summary
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EarningsTotals:
    gross: Money
    fee: Money
    gst: Money
    net: Money

    @classmethod
    def zero(cls, currency: str) -> EarningsTotals:
        z = Money.zero(currency)
        return cls(gross=z, fee=z, gst=z, net=z)

    def add_row(self, row: Any) -> EarningsTotals:
        currency = row.currency
        return EarningsTotals(
            gross=self.gross + Money(row.gross_amount, currency),
            fee=self.fee + Money(row.platform_fee_amount, currency),
            gst=self.gst + Money(row.gst_amount, currency),
            net=self.net + Money(row.net_amount, currency),
        )


@dataclass(frozen=True)
class EarningsSummary:
    currency: str
    lifetime: EarningsTotals
    last30: EarningsTotals
    pending_payouts_net: Money
    paid_out_net: Money


def build_earnings_summary(
    paid_out: Iterable[Any],
    pending: Iterable[Any],
    unrecorded: Iterable[Any],
    *,
    now: datetime,
    currency: str,
    config: FeeConfig | None = None,
) -> EarningsSummary:
    """
    Aggregate a provider's ledger.

    `paid_out` and `pending` are earnings rows (gross/fee/gst/net amounts plus
    currency and updated_at). `unrecorded` are completed, paid bookings that
    never got a ledger row; their net is computed here so the pending figure
    does not silently drop them. Mixed currencies raise CurrencyMismatchError.
    """
    cutoff = now - timedelta(days=30)

    lifetime = EarningsTotals.zero(currency)
    last30 = EarningsTotals.zero(currency)
    for row in paid_out:
        lifetime = lifetime.add_row(row)
        if row.updated_at >= cutoff:
            last30 = last30.add_row(row)

    pending_net = Money.zero(currency)
    for row in pending:
        pending_net += Money(row.net_amount, row.currency)

    for booking in unrecorded:
        breakdown = calculate_earnings(
            booking.price_at_booking, booking.charges_gst, config=config
        )
        pending_net += Money(breakdown.net_amount, booking.currency)

    return EarningsSummary(
        currency=currency,
        lifetime=lifetime,
        last30=last30,
        pending_payouts_net=pending_net,
        paid_out_net=lifetime.net,
    )


def build_earnings_summaries(
    paid_out: Iterable[Any],
    pending: Iterable[Any],
    unrecorded: Iterable[Any],
    *,
    now: datetime,
    default_currency: str,
    config: FeeConfig | None = None,
) -> list[EarningsSummary]:
    """
    One summary per currency found in the ledger. The default currency always
    comes first, even with no rows; the rest follow alphabetically.
    """
    default = default_currency.lower()
    groups: dict[str, tuple[list, list, list]] = {default: ([], [], [])}
    for index, rows in enumerate((paid_out, pending, unrecorded)):
        for row in rows:
            groups.setdefault(row.currency.lower(), ([], [], []))[index].append(row)

    order = [default] + sorted(c for c in groups if c != default)
    return [
        build_earnings_summary(*groups[c], now=now, currency=c, config=config)
        for c in order
    ]
