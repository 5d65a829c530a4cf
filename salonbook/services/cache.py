"""
Availability cache backed by Redis.

One hash per staff member and date (``availability:<staff_id>:<date>``),
keyed by the slot request signature, so a single DEL drops every cached
variant for that day.
"""
import json
import logging
from datetime import date
from typing import Optional

import redis

logger = logging.getLogger(__name__)

KEY_PATTERN = "availability:{staff_id}:{date}"


def availability_key(staff_id, on_date) -> str:
    if isinstance(on_date, date):
        on_date = on_date.isoformat()
    return KEY_PATTERN.format(staff_id=staff_id, date=on_date)


class AvailabilityCache:
    """Redis cache wrapper. Reads and writes fail open, as a miss."""

    def __init__(self, client: Optional[redis.Redis] = None, ttl_seconds: int = 300):
        self.client = client
        self.ttl_seconds = ttl_seconds

    @classmethod
    def from_url(cls, redis_url: str, ttl_seconds: int = 300) -> "AvailabilityCache":
        if not redis_url:
            return cls(None, ttl_seconds)
        client = redis.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            retry_on_timeout=True,
        )
        return cls(client, ttl_seconds)

    @property
    def enabled(self) -> bool:
        return self.client is not None

    def get(self, staff_id, on_date, signature: str):
        if not self.enabled:
            return None
        key = availability_key(staff_id, on_date)
        try:
            value = self.client.hget(key, signature)
        except redis.RedisError as e:
            logger.error(f"Cache get error for {key}: {e}")
            return None
        if value is None:
            logger.debug(f"Cache MISS: {key} [{signature}]")
            return None
        logger.debug(f"Cache HIT: {key} [{signature}]")
        return json.loads(value)

    def set(self, staff_id, on_date, signature: str, slots) -> bool:
        if not self.enabled:
            return False
        key = availability_key(staff_id, on_date)
        try:
            pipe = self.client.pipeline()
            pipe.hset(key, signature, json.dumps(slots))
            pipe.expire(key, self.ttl_seconds)
            pipe.execute()
            return True
        except redis.RedisError as e:
            logger.error(f"Cache set error for {key}: {e}")
            return False

    def invalidate(self, staff_id, on_date) -> None:
        """Drop every cached slot list for the staff member on that date. Raises on failure."""
        if not self.enabled:
            return
        key = availability_key(staff_id, on_date)
        self.client.delete(key)
        logger.debug(f"Cache DELETE: {key}")


def safe_invalidate(cache: Optional[AvailabilityCache], staff_id, on_date) -> bool:
    """
    Best-effort invalidation fired after a booking mutation has committed.
    A failure is logged and swallowed, the entry will age out by TTL.
    """
    if cache is None or staff_id is None:
        return False
    try:
        cache.invalidate(staff_id, on_date)
        return True
    except Exception as e:
        logger.warning(f"Availability cache invalidation failed for staff {staff_id} on {on_date}: {e}")
        return False
