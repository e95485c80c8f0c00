import os

from redis import Redis

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")


def create_redis(url: str = REDIS_URL) -> Redis:
    # rq stores pickled job data, so responses stay as bytes.
    return Redis.from_url(url)
