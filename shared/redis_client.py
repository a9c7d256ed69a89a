import redis.asyncio as redis


def get_redis(redis_url: str | None):
    """
    Returns a redis.asyncio client, or None when REDIS_URL is not configured.
    Callers treat None as "cache/lock disabled".
    """
    if not redis_url:
        return None
    return redis.from_url(redis_url, decode_responses=True)
