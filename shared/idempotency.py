async def acquire_once(redis_client, key: str, ttl_seconds: int = 86400) -> bool:
    """
    SET NX lock shared across instances.
    Returns True for the first caller only; always True when redis is disabled.
    """
    if redis_client is None:
        return True
    return bool(await redis_client.set(key, "1", ex=ttl_seconds, nx=True))


async def release(redis_client, key: str):
    if redis_client is None:
        return
    await redis_client.delete(key)
