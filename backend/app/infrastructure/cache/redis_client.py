from functools import lru_cache

from redis import Redis

from app.core.config import settings


@lru_cache(maxsize=1)
def get_redis_client() -> Redis:
    # One connection pool per process; workers and the API share the same URL.
    return Redis.from_url(settings.cache_redis_url, decode_responses=True, socket_timeout=5)
