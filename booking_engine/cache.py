from uuid import UUID

from loguru import logger
from redis.asyncio import Redis

from booking_engine.schemas import Listing
from booking_engine.settings import LISTING_CACHE_TTL, REDIS_URL

_redis: Redis | None = None


def get_redis() -> Redis:
    global _redis
    if _redis is None:
        _redis = Redis.from_url(REDIS_URL, decode_responses=True)
    return _redis


def _listing_key(listing_id: UUID) -> str:
    return f"listing:{listing_id}"


async def get_listing_cache(listing_id: UUID) -> Listing | None:
    try:
        data = await get_redis().get(_listing_key(listing_id))
        return Listing.model_validate_json(data) if data else None
    except Exception:
        logger.opt(exception=True).warning("Redis get failed, skipping listing cache")
        return None


async def set_listing_cache(listing: Listing) -> None:
    try:
        await get_redis().setex(
            _listing_key(listing.id), LISTING_CACHE_TTL, listing.model_dump_json()
        )
    except Exception:
        logger.opt(exception=True).warning("Redis set failed, skipping listing cache")

