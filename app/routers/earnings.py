import asyncio
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from loguru import logger

from app import settings
from app.cache import get_earnings_cache, set_earnings_cache
from app.crud import booking_crud
from app.deps import CurrentUser, can_read_earnings
from app.earnings import build_earnings_summaries
from app.models import EarningStatus
from app.schemas import EarningsSummaryResponse, ProviderEarningResponse

router = APIRouter(prefix="/earnings", tags=["earnings"])


@router.get("/summary", response_model=list[EarningsSummaryResponse])
async def get_earnings_summary(
    current_user: CurrentUser = Depends(can_read_earnings),
) -> list[EarningsSummaryResponse]:
    """
    Lifetime and last-30-day payouts plus the net still owed to the provider,
    one entry per currency with the default currency first.
    Completed bookings missing a ledger row are counted towards pending.
    """
    cached = await get_earnings_cache(current_user.id)
    if cached is not None:
        logger.debug("Cache hit for earnings summary: provider_id={}", current_user.id)
        return [EarningsSummaryResponse(**entry) for entry in cached]

    logger.debug("Cache miss for earnings summary: provider_id={}", current_user.id)
    paid_out, pending, unrecorded = await asyncio.gather(
        booking_crud.list_earnings(
            current_user.id, earning_status=EarningStatus.PAID_OUT
        ),
        booking_crud.list_pending_payouts(current_user.id),
        booking_crud.list_unrecorded_completed(current_user.id),
    )
    if unrecorded:
        logger.warning(
            "{} completed bookings without an earnings row for provider {}",
            len(unrecorded),
            current_user.id,
        )

    summaries = [
        EarningsSummaryResponse.from_summary(s)
        for s in build_earnings_summaries(
            paid_out,
            pending,
            unrecorded,
            now=datetime.now(timezone.utc),
            default_currency=settings.DEFAULT_CURRENCY,
        )
    ]
    await set_earnings_cache(
        current_user.id, [s.model_dump(mode="json") for s in summaries]
    )
    return summaries


@router.get("/bookings", response_model=list[ProviderEarningResponse])
async def list_booking_earnings(
    status: EarningStatus | None = None,
    current_user: CurrentUser = Depends(can_read_earnings),
) -> list[ProviderEarningResponse]:
    return await booking_crud.list_earnings(current_user.id, earning_status=status)
