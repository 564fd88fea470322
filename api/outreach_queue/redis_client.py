from functools import lru_cache

import redis

from .settings import settings

@lru_cache
def get_redis() -> redis.Redis:
    return redis.Redis.from_url(settings.redis_url, decode_responses=True)

def push_dead_letter(record_id: str) -> None:
    """Park a terminally failed record id on the DLQ list for operators."""
    get_redis().lpush(settings.record_dlq, record_id)
