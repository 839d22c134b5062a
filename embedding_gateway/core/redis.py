from __future__ import annotations

import hashlib
import time
import uuid

from redis.asyncio import Redis

from .config import get_settings
from .logging import get_logger


logger = get_logger(__name__)


_redis: Redis | None = None


async def get_redis() -> Redis | None:
    global _redis
    settings = get_settings()
    url = getattr(settings, "redis_url", None)
    if not url:
        return None
    if _redis is None:
        _redis = Redis.from_url(str(url), decode_responses=True)
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis:
        await _redis.aclose()
        _redis = None


async def ping_redis() -> bool | None:
    """Return True if Redis is reachable, False if configured but unreachable, None if not configured."""
    client = await get_redis()
    if not client:
        return None
    try:
        await client.ping()
        return True
    except Exception:
        return False


def _rate_limit_key(client_id: str) -> str:
    return f"rl:{client_id}"


def embedding_cache_key(model: str, text: str) -> str:
    digest = hashlib.sha256(text.encode("utf-8")).hexdigest()
    return f"emb:{model}:{digest}"


async def check_rate_limit(client_id: str, limit: int, window_seconds: int = 60) -> bool:
    client = await get_redis()
    if not client:
        return True
    key = _rate_limit_key(client_id)
    try:
        now = int(time.time())
        window_start = now - window_seconds
        member = f"{now}:{uuid.uuid4().hex}"
        pipe = client.pipeline()
        pipe.zremrangebyscore(key, 0, window_start)
        pipe.zadd(key, {member: now})
        pipe.zcard(key)
        pipe.expire(key, window_seconds + 1)
        results = await pipe.execute()
        count = results[2]
        if count > limit:
            await client.zrem(key, member)
            return False
        return True
    except Exception as exc:  # noqa: BLE001
        logger.warning("redis.rate_limit_failed", client_id=client_id, error=str(exc))
        return True


async def get_cached(key: str) -> str | None:
    client = await get_redis()
    if not client:
        return None
    try:
        return await client.get(key)
    except Exception as exc:  # noqa: BLE001
        logger.warning("redis.get_failed", error=str(exc))
        return None


async def set_cached(key: str, value: str, ttl_seconds: int = 300) -> None:
    client = await get_redis()
    if not client:
        return
    try:
        await client.setex(key, ttl_seconds, value)
    except Exception as exc:  # noqa: BLE001
        logger.warning("redis.set_failed", error=str(exc))
