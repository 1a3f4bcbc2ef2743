"""Short-lived cache for merged profile request lists.

Entries are keyed by the query filters and a generation counter. Decisions
made through the governing node bump the generation, which orphans every
cached entry at once; orphans expire through their TTL. Requests raised on
brand nodes are caught by the fingerprint the aggregator stores with each
entry.
"""

import hashlib
import json
from typing import Any, Optional

import redis

from meridian_core.observability import get_logger

logger = get_logger(__name__)

KEY_PREFIX = "meridian:profile_requests"
GENERATION_KEY = f"{KEY_PREFIX}:generation"


class MergedListCache:
    """Redis-backed cache of the merged, sorted request list."""

    def __init__(self, client: redis.Redis, ttl_seconds: int):
        self.client = client
        self.ttl_seconds = ttl_seconds

    @classmethod
    def from_url(cls, redis_url: str, ttl_seconds: int) -> "MergedListCache":
        return cls(redis.from_url(redis_url), ttl_seconds)

    def _key(self, filters: dict[str, Any]) -> str:
        generation = self.client.get(GENERATION_KEY) or b"0"
        if isinstance(generation, bytes):
            generation = generation.decode()
        digest = hashlib.sha256(
            json.dumps(filters, sort_keys=True, separators=(",", ":")).encode()
        ).hexdigest()[:32]
        return f"{KEY_PREFIX}:{generation}:{digest}"

    def get(self, filters: dict[str, Any]) -> Optional[dict[str, Any]]:
        try:
            raw = self.client.get(self._key(filters))
        except redis.RedisError as e:
            logger.warning("Profile request cache unavailable", error=str(e))
            return None
        if not raw:
            return None
        return json.loads(raw)

    def set(self, filters: dict[str, Any], value: dict[str, Any]) -> None:
        try:
            self.client.set(self._key(filters), json.dumps(value), ex=self.ttl_seconds)
        except redis.RedisError as e:
            logger.warning("Profile request cache unavailable", error=str(e))

    def invalidate(self) -> None:
        try:
            self.client.incr(GENERATION_KEY)
        except redis.RedisError as e:
            logger.warning("Profile request cache invalidation failed", error=str(e))
