import json
from uuid import UUID

from loguru import logger
from redis.asyncio import Redis

from app.settings import REDIS_URL

_redis: Redis | None = None
EARNINGS_SUMMARY_TTL = 60  # 1 minute
# Keys: earnings:summary:<provider_id>, value is the JSON list of per-currency summaries


def get_redis() -> Redis:
    global _redis
    if _redis is None:
        _redis = Redis.from_url(REDIS_URL, decode_responses=True)
    return _redis


def _earnings_key(provider_id: UUID) -> str:
    return f"earnings:summary:{provider_id}"


async def get_earnings_cache(provider_id: UUID) -> list[dict] | None:
    try:
        data = await get_redis().get(_earnings_key(provider_id))
        return json.loads(data) if data else None
    except Exception:
        logger.opt(exception=True).warning("Redis get failed: skipping earnings cache")
        return None


async def set_earnings_cache(provider_id: UUID, summaries: list[dict]) -> None:
    try:
        await get_redis().setex(
            _earnings_key(provider_id), EARNINGS_SUMMARY_TTL, json.dumps(summaries)
        )
    except Exception:
        logger.opt(exception=True).warning("Redis set failed: skipping earnings cache")


async def invalidate_earnings_cache(provider_id: UUID) -> None:
    try:
        await get_redis().delete(_earnings_key(provider_id))
    except Exception:
        logger.opt(exception=True).warning("Redis invalidate failed for earnings cache")
