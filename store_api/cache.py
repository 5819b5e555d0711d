# store_api/cache.py

import json
import logging

import redis
from store_api import settings

logger = logging.getLogger(__name__)


# Shared client; every call goes over the network so nothing here holds state
redis_client = redis.Redis.from_url(str(settings.REDIS_URL), decode_responses=True)

def get_redis() -> redis.Redis:
    return redis_client


PRODUCTS_KEY = "products"
LAST_PRODUCT_UPDATE_KEY = "last_product_update"

def product_detail_key(slug: str) -> str:
    return f"product:{slug}"

def product_list_key(*parts) -> str:
    return ":".join([PRODUCTS_KEY, *("" if part is None else str(part) for part in parts)])


def get_cached_data(client: redis.Redis, key: str):
    """Return the decoded JSON value stored under key, or None on a miss or error."""
    try:
        data = client.get(key)
        return json.loads(data) if data else None
    except (redis.RedisError, ValueError) as e:
        logger.error(f"Error getting cached data for key {key}: {e}")
        return None

def cache_data(client: redis.Redis, key: str, data, expiry_seconds: int = settings.CACHE_TTL_SECONDS) -> bool:
    try:
        client.set(key, json.dumps(data), ex=expiry_seconds)
        return True
    except (redis.RedisError, TypeError) as e:
        logger.error(f"Error caching data for key {key}: {e}")
        return False

def invalidate_cache(client: redis.Redis, key: str) -> bool:
    """
    Delete a cache key.

    Invalidating the products list also drops every cached list page
    (products:<query>), since any of them may contain the changed product.
    """
    try:
        if key == PRODUCTS_KEY:
            page_keys = list(client.scan_iter(match=f"{PRODUCTS_KEY}:*"))
            if page_keys:
                client.delete(*page_keys)
        client.delete(key)
        logger.info(f"Cache invalidated for key {key}")
        return True
    except redis.RedisError as e:
        logger.error(f"Error invalidating cache for key {key}: {e}")
        return False

def invalidate_all_cache(client: redis.Redis) -> bool:
    try:
        client.flushdb()
        logger.info("All cache invalidated")
        return True
    except redis.RedisError as e:
        logger.error(f"Error invalidating all cache: {e}")
        return False
