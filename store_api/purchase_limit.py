# store_api/purchase_limit.py

import logging
from dataclasses import dataclass

import redis
from fastapi import Request
from store_api import settings

logger = logging.getLogger(__name__)

PURCHASE_LIMIT_PER_IP = settings.PURCHASE_LIMIT_PER_IP
PURCHASE_TIMEOUT_SECONDS = settings.PURCHASE_TIMEOUT_MINUTES * 60


@dataclass
class PurchaseLimitInfo:
    allowed: bool
    current_purchases: int
    limit: int
    timeout_remaining: int | None = None


def purchase_limit_key(ip: str) -> str:
    return f"purchase_limit:{ip}"


def get_client_ip(request: Request) -> str:
    # Proxies and load balancers put the real client first in x-forwarded-for
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()

    for header in ("x-real-ip", "x-client-ip"):
        value = request.headers.get(header)
        if value:
            return value

    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def can_purchase(client: redis.Redis, ip: str) -> PurchaseLimitInfo:
    """
    Check whether ip may place another order.

    Fails open: when Redis is unreachable the purchase is allowed.
    """
    key = purchase_limit_key(ip)
    try:
        purchases = client.get(key)
        current_purchases = int(purchases) if purchases else 0

        if current_purchases >= PURCHASE_LIMIT_PER_IP:
            ttl = client.ttl(key)
            return PurchaseLimitInfo(
                allowed=False,
                current_purchases=current_purchases,
                limit=PURCHASE_LIMIT_PER_IP,
                timeout_remaining=ttl if ttl > 0 else 0,
            )

        return PurchaseLimitInfo(
            allowed=True,
            current_purchases=current_purchases,
            limit=PURCHASE_LIMIT_PER_IP,
        )
    except redis.RedisError as e:
        logger.error(f"Error checking purchase limit for {ip}: {e}")
        return PurchaseLimitInfo(allowed=True, current_purchases=0, limit=PURCHASE_LIMIT_PER_IP)


def record_purchase(client: redis.Redis, ip: str) -> None:
    """Count one purchase for ip. The window starts at the first purchase and is not extended."""
    key = purchase_limit_key(ip)
    try:
        current = client.incr(key)
        if current == 1:
            client.expire(key, PURCHASE_TIMEOUT_SECONDS)
    except redis.RedisError as e:
        logger.error(f"Error recording purchase for {ip}: {e}")


def check_purchase_limit(client: redis.Redis, request: Request) -> PurchaseLimitInfo:
    return can_purchase(client, get_client_ip(request))


def format_time_remaining(seconds: int) -> str:
    if seconds <= 0:
        return "0 minutes"

    hours = seconds // 3600
    minutes = (seconds % 3600) // 60

    def plural(count: int, unit: str) -> str:
        return f"{count} {unit}{'' if count == 1 else 's'}"

    if hours > 0:
        return f"{plural(hours, 'hour')} and {plural(minutes, 'minute')}"
    return plural(minutes, "minute")
