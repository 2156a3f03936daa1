"""WebhookStore interface.

Contract shared by every backend:
- insert() is all-or-nothing; a duplicate delivery_id raises
  DuplicateDeliveryError, a backend outage StorageUnavailableError
- list() applies filters conjunctively and orders by received_at desc
- stats() buckets "today" and the hourly histogram in the display timezone
- callers never observe a partially written record
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections import Counter
from datetime import datetime
from typing import TYPE_CHECKING, Iterable
from zoneinfo import ZoneInfo

from webhook_inspector.models import Delivery, DeliveryFilter, DeliveryPage, DeliveryStats
from webhook_inspector.timeutils import hour_buckets, start_of_day, to_display, utcnow

if TYPE_CHECKING:
    from webhook_inspector.config import Settings

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 500


class WebhookStore(ABC):
    """Durable, append-only record of received deliveries."""

    def init(self) -> None:
        """Prepare the backend (idempotent)."""

    def close(self) -> None:
        """Release backend resources."""

    @abstractmethod
    def insert(self, delivery: Delivery) -> str:
        """Store a delivery and return its id."""

    @abstractmethod
    def get_by_id(self, webhook_id: str) -> Delivery | None:
        """Fetch one delivery, or None."""

    @abstractmethod
    def list(
        self,
        filter: DeliveryFilter | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
    ) -> DeliveryPage:
        """Filtered, most-recent-first page of deliveries."""

    @abstractmethod
    def stats(self, tz: ZoneInfo, now: datetime | None = None) -> DeliveryStats:
        """Aggregate counts for the dashboard."""

    @abstractmethod
    def delete_older_than_or_beyond_count(
        self,
        retention_days: int,
        keep_count: int,
        now: datetime | None = None,
    ) -> int:
        """Retention: drop rows older than retention_days or beyond the
        keep_count most recent. A value <= 0 disables that rule.
        Returns the number of deleted deliveries."""


def compute_stats(deliveries: Iterable[Delivery], tz: ZoneInfo, now: datetime | None = None) -> DeliveryStats:
    """Stats over an in-memory collection of deliveries."""
    now = now or utcnow()
    today_start = start_of_day(tz, now)
    buckets = hour_buckets(tz, now)
    window_start = buckets[0]
    hourly_counts: Counter[datetime] = Counter()

    stats = DeliveryStats()
    event_counts: Counter[str] = Counter()
    company_counts: Counter[str] = Counter()

    for delivery in deliveries:
        stats.total += 1
        if delivery.signature_valid:
            stats.valid_signatures += 1
        else:
            stats.invalid_signatures += 1
        if delivery.received_at >= today_start:
            stats.today += 1
        event_counts[delivery.event_type] += 1
        if delivery.tenant_id:
            company_counts[delivery.tenant_id] += 1
        if window_start <= delivery.received_at <= now:
            hourly_counts[_bucket_for(delivery.received_at, buckets)] += 1

    stats.event_types = [
        {"event_type": event_type, "count": count}
        for event_type, count in sorted(event_counts.items(), key=lambda kv: (-kv[1], kv[0]))
    ]
    stats.companies = [
        {"company_id": company, "count": count}
        for company, count in sorted(company_counts.items(), key=lambda kv: (-kv[1], kv[0]))
    ]
    stats.hourly = hourly_histogram(buckets, hourly_counts, tz)
    return stats


def _bucket_for(received_at: datetime, buckets: list[datetime]) -> datetime:
    """Latest bucket start at or before received_at."""
    chosen = buckets[0]
    for start in buckets:
        if start <= received_at:
            chosen = start
        else:
            break
    return chosen


def hourly_histogram(buckets: list[datetime], counts: dict[datetime, int], tz: ZoneInfo) -> list[dict[str, object]]:
    return [
        {"hour": to_display(start, tz).strftime("%H:00"), "count": counts.get(start, 0)}
        for start in buckets
    ]


def build_store(settings: Settings) -> WebhookStore:
    """Postgres when a database_url is configured, in-memory otherwise."""
    if settings.database_url:
        from webhook_inspector.storage.postgres import PostgresWebhookStore

        logger.info("Webhook store: postgres")
        return PostgresWebhookStore(settings.database_url)

    from webhook_inspector.storage.memory import InMemoryWebhookStore

    logger.info("Webhook store: in-memory (set INSPECTOR_DATABASE_URL for durability)")
    return InMemoryWebhookStore()
