"""In-memory webhook store.

Default backend when no database is configured, and the one the test
suite runs against. Provides the same interface and guarantees as the
Postgres store; contents are lost on restart.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from webhook_inspector.errors import DuplicateDeliveryError
from webhook_inspector.models import Delivery, DeliveryFilter, DeliveryPage, DeliveryStats
from webhook_inspector.storage.base import DEFAULT_PAGE_SIZE, WebhookStore, compute_stats
from webhook_inspector.timeutils import ensure_utc, utcnow

logger = logging.getLogger(__name__)


class InMemoryWebhookStore(WebhookStore):
    """Deliveries kept in insertion order behind a single lock."""

    def __init__(self) -> None:
        self._rows: list[Delivery] = []
        self._by_id: dict[str, Delivery] = {}
        self._delivery_ids: set[str] = set()
        self._lock = threading.RLock()

    def insert(self, delivery: Delivery) -> str:
        delivery = _normalized(delivery)
        with self._lock:
            if delivery.delivery_id in self._delivery_ids:
                raise DuplicateDeliveryError(delivery.delivery_id)
            self._rows.append(delivery)
            self._by_id[delivery.id] = delivery
            self._delivery_ids.add(delivery.delivery_id)
        logger.debug("Stored delivery %s (%s)", delivery.id, delivery.event_type)
        return delivery.id

    def get_by_id(self, webhook_id: str) -> Delivery | None:
        with self._lock:
            return self._by_id.get(webhook_id)

    def _newest_first(self) -> list[Delivery]:
        # Stable sort over reversed insertion order: ties keep newest first
        with self._lock:
            rows = self._rows[::-1]
        return sorted(rows, key=lambda d: d.received_at, reverse=True)

    def list(
        self,
        filter: DeliveryFilter | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
    ) -> DeliveryPage:
        criteria = filter or DeliveryFilter()
        matching = [d for d in self._newest_first() if criteria.matches(d)]
        offset = max(offset, 0)
        return DeliveryPage(
            items=matching[offset : offset + limit],
            total=len(matching),
            limit=limit,
            offset=offset,
        )

    def stats(self, tz: ZoneInfo, now: datetime | None = None) -> DeliveryStats:
        with self._lock:
            rows = list(self._rows)
        return compute_stats(rows, tz, now)

    def delete_older_than_or_beyond_count(
        self,
        retention_days: int,
        keep_count: int,
        now: datetime | None = None,
    ) -> int:
        now = now or utcnow()
        with self._lock:
            ordered = self._newest_first()
            keep: list[Delivery] = []
            for position, delivery in enumerate(ordered):
                if keep_count > 0 and position >= keep_count:
                    continue
                if retention_days > 0 and delivery.received_at < now - timedelta(days=retention_days):
                    continue
                keep.append(delivery)

            deleted = len(ordered) - len(keep)
            if deleted:
                kept_ids = {d.id for d in keep}
                self._rows = [d for d in self._rows if d.id in kept_ids]
                self._by_id = {d.id: d for d in self._rows}
                self._delivery_ids = {d.delivery_id for d in self._rows}
        if deleted:
            logger.info("Retention removed %d deliveries", deleted)
        return deleted

    def __len__(self) -> int:
        with self._lock:
            return len(self._rows)


def _normalized(delivery: Delivery) -> Delivery:
    """Force received_at to aware UTC so comparisons never mix naive/aware."""
    return replace(delivery, received_at=ensure_utc(delivery.received_at))
