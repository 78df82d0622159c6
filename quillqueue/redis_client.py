from functools import lru_cache

import redis

from .settings import settings

@lru_cache(maxsize=None)
def get_redis(url: str | None = None) -> redis.Redis:
    return redis.Redis.from_url(url or settings.redis_url, decode_responses=True)
