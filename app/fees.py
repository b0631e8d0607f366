"""
Fee parameters and the customer-facing service fee.

All rates are basis points (1 bps = 0.01%) and all amounts are integer cents.
Rounding is done in integer arithmetic so results never depend on float
representation.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

from loguru import logger

from app import settings

BPS_DENOMINATOR = 10_000


@dataclass(frozen=True)
class FeeConfig:
    platform_fee_bps: int = 1000
    gst_bps: int = 1500

    customer_fee_bps: int = 500
    customer_fee_flat_cents: int = 0
    customer_fee_min_cents: int = 100
    customer_fee_max_cents: int = 1500
    # Applied to currencies without a tiered schedule
    legacy_fee_bps: int = 0

    @classmethod
    def from_settings(cls) -> FeeConfig:
        return cls(
            platform_fee_bps=settings.PLATFORM_FEE_BPS,
            gst_bps=settings.GST_BPS,
            customer_fee_bps=settings.CUSTOMER_SERVICE_FEE_BPS,
            customer_fee_flat_cents=settings.CUSTOMER_SERVICE_FEE_FLAT_CENTS,
            customer_fee_min_cents=settings.CUSTOMER_SERVICE_FEE_MIN_CENTS,
            customer_fee_max_cents=settings.CUSTOMER_SERVICE_FEE_MAX_CENTS,
            legacy_fee_bps=settings.LEGACY_SERVICE_FEE_BPS,
        )


@lru_cache(maxsize=1)
def get_fee_config() -> FeeConfig:
    return FeeConfig.from_settings()


def ceil_div(numerator: int, denominator: int) -> int:
    return -(-numerator // denominator)


def round_half_up_div(numerator: int, denominator: int) -> int:
    """round(numerator / denominator) with .5 rounded up, for non-negative inputs."""
    return (2 * numerator + denominator) // (2 * denominator)


@dataclass(frozen=True)
class PaymentBreakdown:
    currency: str
    service_price_cents: int  # what the provider listed
    service_fee_cents: int  # added on top for the customer
    total_cents: int  # charged to the customer


def calculate_customer_service_fee(
    service_price_cents: int,
    currency: str = "nzd",
    config: FeeConfig | None = None,
) -> int:
    """
    Fee added to the customer's charge.

    NZD is tiered:
      price < $10  -> $3.00
      price < $20  -> $5.00
      otherwise    -> clamp(round(price * bps) + flat, min, max)

    Other currencies fall back to ceil(price * legacy bps) + flat.
    """
    cfg = config or get_fee_config()
    price = max(0, int(service_price_cents))

    if currency.lower() != "nzd":
        logger.warning(
            "Non-NZD currency {} encountered; using legacy service fee", currency
        )
        pct = ceil_div(price * cfg.legacy_fee_bps, BPS_DENOMINATOR)
        return max(0, pct + cfg.customer_fee_flat_cents)

    if 0 < price < 1000:
        return 300
    if 0 < price < 2000:
        return 500

    pct = round_half_up_div(price * cfg.customer_fee_bps, BPS_DENOMINATOR)
    combined = pct + cfg.customer_fee_flat_cents
    return min(cfg.customer_fee_max_cents, max(cfg.customer_fee_min_cents, combined))


def calculate_payment_breakdown(
    service_price_cents: int,
    currency: str = "nzd",
    config: FeeConfig | None = None,
) -> PaymentBreakdown:
    price = max(0, int(service_price_cents))
    fee = calculate_customer_service_fee(price, currency=currency, config=config)
    return PaymentBreakdown(
        currency=currency.lower(),
        service_price_cents=price,
        service_fee_cents=fee,
        total_cents=price + fee,
    )
