"""
Best-effort response cache over redis.

A cache failure never fails a request: reads degrade to a miss and writes
become no-ops. Entries are JSON documents with a TTL; writers invalidate by
key pattern after a successful mutation.
"""
import json
import logging
from typing import Any, Callable, Optional, Tuple
from urllib.parse import urlencode

import redis
from fastapi.encoders import jsonable_encoder

logger = logging.getLogger(__name__)

PROPERTY_CACHE_PATTERN = "cache:api/properties*"


class CacheService:

    def __init__(self, client: Optional[redis.Redis] = None):
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> "CacheService":
        if not url:
            logger.info("REDIS_URL not set, response cache disabled")
            return cls(None)
        return cls(redis.Redis.from_url(url, socket_connect_timeout=2, socket_timeout=2))

    @property
    def enabled(self) -> bool:
        return self.client is not None

    def get(self, key: str) -> Optional[Any]:
        if not self.client:
            return None
        try:
            value = self.client.get(key)
        except redis.RedisError as e:
            logger.warning("Cache get error for %s: %s", key, e)
            return None
        if value is None:
            return None
        try:
            return json.loads(value)
        except ValueError:
            logger.warning("Discarding undecodable cache entry %s", key)
            return None

    def set(self, key: str, value: Any, ttl_seconds: int = 300) -> None:
        if not self.client:
            return
        try:
            self.client.setex(key, ttl_seconds, json.dumps(jsonable_encoder(value)))
        except redis.RedisError as e:
            logger.warning("Cache set error for %s: %s", key, e)

    def delete(self, key: str) -> None:
        if not self.client:
            return
        try:
            self.client.delete(key)
        except redis.RedisError as e:
            logger.warning("Cache delete error for %s: %s", key, e)

    def delete_pattern(self, pattern: str) -> None:
        if not self.client:
            return
        try:
            keys = list(self.client.scan_iter(match=pattern))
            if keys:
                self.client.delete(*keys)
        except redis.RedisError as e:
            logger.warning("Cache delete pattern error for %s: %s", pattern, e)

    def get_or_load(self, key: str, ttl_seconds: int, loader: Callable[[], Any]) -> Tuple[Any, bool]:
        """Return (payload, hit). The loader result is stored JSON-encoded."""
        cached = self.get(key)
        if cached is not None:
            return cached, True
        payload = jsonable_encoder(loader())
        self.set(key, payload, ttl_seconds)
        return payload, False

    def invalidate_property_cache(self) -> None:
        # covers listings, details and per-property booking calendars
        self.delete_pattern(PROPERTY_CACHE_PATTERN)

    def invalidate_property_bookings(self, property_id: str) -> None:
        self.delete_pattern(f"cache:api/properties/{property_id}/bookings*")

    def invalidate_conversations(self, *user_ids: str) -> None:
        for user_id in user_ids:
            self.delete_pattern(conversations_cache_pattern(user_id))


def request_cache_key(path: str, query_params) -> str:
    """cache:{path without leading slash}:{sorted query}"""
    query = urlencode(sorted(query_params.multi_items())) if query_params else ""
    return f"cache:{path.lstrip('/')}:{query}"


def conversations_cache_key(user_id: str, role: str, page: int, limit: int) -> str:
    return f"cache:conversations:{user_id}:{role}:{page}:{limit}"


def conversations_cache_pattern(user_id: str) -> str:
    return f"cache:conversations:{user_id}:*"
