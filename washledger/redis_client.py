import json

import redis.asyncio as redis
from washledger.config import settings

_redis: redis.Redis | None = None

IDEMPOTENCY_TTL_SECONDS = 86400


async def get_redis() -> redis.Redis:
    global _redis
    if _redis is None:
        _redis = redis.from_url(settings.redis_url, decode_responses=True)
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None


async def check_idempotency(key: str, ttl_seconds: int = IDEMPOTENCY_TTL_SECONDS) -> bool:
    """
    Returns True if this key was already seen (duplicate) -> caller should skip.
    Returns False if key is new -> caller owns it and proceeds.
    Uses SET NX: if we set it, we're first; if not, duplicate.
    """
    r = await get_redis()
    was_set = await r.set(key, "1", nx=True, ex=ttl_seconds)
    return not was_set  # True = duplicate (already existed), False = new


async def release_idempotency(key: str) -> None:
    """Forget a claimed key so a retried message is not mistaken for a duplicate."""
    r = await get_redis()
    await r.delete(key)


async def replay_redis_dlq(dlq_key: str, queue_key: str, limit: int = 100) -> int:
    """Move up to limit messages from the Redis DLQ back to the main list, attempts reset."""
    r = await get_redis()
    replayed = 0
    while replayed < limit:
        raw = await r.rpop(dlq_key)
        if raw is None:
            break
        replayed += 1
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            continue
        data.pop("last_error", None)
        data.pop("failed_at", None)
        data["attempts"] = 0
        await r.lpush(queue_key, json.dumps(data))
    return replayed
