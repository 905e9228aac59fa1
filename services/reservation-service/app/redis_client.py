from shared.redis import get_redis

from .config import REDIS_URL

redis_client = get_redis(REDIS_URL)
