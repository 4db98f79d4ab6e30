IDEMPOTENCY_TTL = 86400


def processed_key(event_id: str) -> str:
    return f"processed_event:{event_id}"


async def claim_event(cache, event_id: str, ttl_seconds: int = IDEMPOTENCY_TTL) -> bool:
    """
    Mark an event as handled. Returns False if another delivery already claimed it.
    """
    return await cache.add(processed_key(event_id), {"event_id": event_id}, ttl_seconds)


async def release_event(cache, event_id: str) -> None:
    await cache.evict(processed_key(event_id))
