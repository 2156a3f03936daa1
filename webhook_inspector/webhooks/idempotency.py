"""Webhook idempotency — bounded recent-delivery-id cache.

Contract:
- seen_before(id) never mutates; mark_seen(id) inserts then evicts
  oldest-first until the cache is at or under capacity
- check_and_mark(id) does both under one lock (one Redis round trip):
  exactly one of several concurrent callers for an id gets False
- Duplicates are acknowledged with 200 (providers retry on errors)
- Idempotency only holds within the retained window: a duplicate that
  arrives after its id was evicted is processed again
- Redis backend: sorted set scored by insertion order, shared between
  workers; if Redis is down, falls back to allowing (fail-open)
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from typing import TYPE_CHECKING, Protocol

import redis

if TYPE_CHECKING:
    from webhook_inspector.config import Settings

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 1000

_KEY = "webhook:seen"
_SEQ_KEY = "webhook:seen:seq"


class Deduplicator(Protocol):
    def seen_before(self, delivery_id: str) -> bool: ...

    def mark_seen(self, delivery_id: str) -> None: ...

    def check_and_mark(self, delivery_id: str) -> bool: ...


class DeliveryDeduplicator:
    """In-process FIFO set of recently processed delivery ids."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._ids: OrderedDict[str, None] = OrderedDict()
        self._lock = threading.Lock()

    def seen_before(self, delivery_id: str) -> bool:
        if not delivery_id:
            return False  # No ID = can't dedup, allow through
        with self._lock:
            return delivery_id in self._ids

    def mark_seen(self, delivery_id: str) -> None:
        self.check_and_mark(delivery_id)

    def check_and_mark(self, delivery_id: str) -> bool:
        """True if the id was already recorded; otherwise record it, return False."""
        if not delivery_id:
            return False
        with self._lock:
            if delivery_id in self._ids:
                return True
            self._ids[delivery_id] = None
            while len(self._ids) > self.capacity:
                evicted, _ = self._ids.popitem(last=False)
                logger.debug("Dedup cache evicted %s", evicted)
        return False

    def clear(self) -> None:
        with self._lock:
            self._ids.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._ids)


class RedisDeliveryDeduplicator:
    """Redis-backed variant for deployments running several workers."""

    def __init__(
        self,
        redis_url: str,
        capacity: int = DEFAULT_CAPACITY,
        client: redis.Redis | None = None,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._redis_url = redis_url
        self._client = client

    def _get_redis(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(self._redis_url, decode_responses=True)
        return self._client

    def seen_before(self, delivery_id: str) -> bool:
        if not delivery_id:
            return False
        try:
            return self._get_redis().zscore(_KEY, delivery_id) is not None
        except Exception:
            # Redis down: fail open
            logger.warning(
                "Redis unavailable for webhook dedup, allowing %s",
                delivery_id,
                exc_info=True,
            )
            return False

    def mark_seen(self, delivery_id: str) -> None:
        self.check_and_mark(delivery_id)

    def check_and_mark(self, delivery_id: str) -> bool:
        if not delivery_id:
            return False
        try:
            r = self._get_redis()
            seq = r.incr(_SEQ_KEY)
            pipe = r.pipeline()
            pipe.zadd(_KEY, {delivery_id: seq}, nx=True)
            # Keep only the newest `capacity` members
            pipe.zremrangebyrank(_KEY, 0, -(self.capacity + 1))
            added, _ = pipe.execute()
        except Exception:
            logger.warning("Failed to mark webhook as seen: %s", delivery_id, exc_info=True)
            return False
        return not added


def build_deduplicator(settings: Settings) -> Deduplicator:
    """Pick the dedup backend from settings."""
    if settings.dedup_backend == "redis":
        logger.info("Webhook dedup backend: redis (capacity=%d)", settings.dedup_capacity)
        return RedisDeliveryDeduplicator(settings.redis_url, settings.dedup_capacity)
    return DeliveryDeduplicator(settings.dedup_capacity)
