"""Postgres-backed webhook store (psycopg 3).

One short-lived autocommit connection per call; every write is a single
statement, so readers never see a partially written delivery. The table
is created idempotently by init().
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Iterator
from zoneinfo import ZoneInfo

import psycopg
from psycopg import errors as pg_errors
from psycopg.rows import dict_row

from webhook_inspector.errors import DuplicateDeliveryError, StorageUnavailableError
from webhook_inspector.models import Delivery, DeliveryFilter, DeliveryPage, DeliveryStats
from webhook_inspector.storage.base import DEFAULT_PAGE_SIZE, WebhookStore, hourly_histogram
from webhook_inspector.timeutils import ensure_utc, hour_buckets, start_of_day, to_display, utcnow

logger = logging.getLogger(__name__)

TABLE = "webhook_deliveries"

_COLUMNS = (
    "id, delivery_id, event_type, company_id, raw_payload, headers, signature, "
    "is_valid_signature, signature_error, source_ip, user_agent, "
    "processing_time_ms, mobile_provider, received_at"
)

_ORDER = "ORDER BY received_at DESC, seq DESC"


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _where(criteria: DeliveryFilter) -> tuple[str, list[Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    if criteria.event_type:
        clauses.append("event_type = %s")
        params.append(criteria.event_type)
    if criteria.tenant_id:
        clauses.append("company_id = %s")
        params.append(criteria.tenant_id)
    if criteria.signature_valid is not None:
        clauses.append("is_valid_signature = %s")
        params.append(criteria.signature_valid)
    if criteria.date_from:
        clauses.append("received_at >= %s")
        params.append(criteria.date_from)
    if criteria.date_to:
        clauses.append("received_at <= %s")
        params.append(criteria.date_to)
    if criteria.text_search:
        pattern = f"%{_escape_like(criteria.text_search)}%"
        clauses.append("(raw_payload ILIKE %s OR event_type ILIKE %s OR company_id ILIKE %s)")
        params.extend([pattern, pattern, pattern])
    sql = " WHERE " + " AND ".join(clauses) if clauses else ""
    return sql, params


def _row_to_delivery(row: dict[str, Any]) -> Delivery:
    headers = row.get("headers") or []
    if isinstance(headers, str):
        headers = json.loads(headers)
    parsed, is_json = Delivery.parse_payload(row["raw_payload"])
    return Delivery(
        id=row["id"],
        delivery_id=row["delivery_id"],
        event_type=row["event_type"],
        tenant_id=row.get("company_id"),
        raw_payload=row["raw_payload"],
        parsed_payload=parsed,
        is_json=is_json,
        headers=tuple((str(name), str(value)) for name, value in headers),
        signature=row.get("signature"),
        signature_valid=bool(row.get("is_valid_signature")),
        signature_error=row.get("signature_error"),
        source_ip=row.get("source_ip"),
        user_agent=row.get("user_agent"),
        received_at=ensure_utc(row["received_at"]),
        processing_time_ms=int(row.get("processing_time_ms") or 0),
        mobile_provider=row.get("mobile_provider"),
    )


class PostgresWebhookStore(WebhookStore):
    """Durable store backed by a Postgres table."""

    def __init__(self, dsn: str) -> None:
        self._dsn = dsn

    @contextmanager
    def _conn(self) -> Iterator[psycopg.Connection]:
        try:
            with psycopg.connect(self._dsn, autocommit=True, row_factory=dict_row) as conn:
                yield conn
        except psycopg.OperationalError as exc:
            logger.error("Postgres unavailable: %s", exc)
            raise StorageUnavailableError(str(exc)) from exc

    def init(self) -> None:
        """Create the deliveries table if it doesn't exist. Idempotent."""
        with self._conn() as conn:
            conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {TABLE} (
                    id                 TEXT PRIMARY KEY,
                    seq                BIGSERIAL,
                    delivery_id        TEXT UNIQUE NOT NULL,
                    event_type         TEXT NOT NULL,
                    company_id         TEXT,
                    raw_payload        TEXT NOT NULL,
                    headers            JSONB NOT NULL DEFAULT '[]',
                    signature          TEXT,
                    is_valid_signature BOOLEAN NOT NULL DEFAULT FALSE,
                    signature_error    TEXT,
                    source_ip          TEXT,
                    user_agent         TEXT,
                    processing_time_ms INT NOT NULL DEFAULT 0,
                    mobile_provider    TEXT,
                    received_at        TIMESTAMPTZ NOT NULL DEFAULT now()
                )
            """)
            conn.execute(f"CREATE INDEX IF NOT EXISTS idx_{TABLE}_event_type ON {TABLE} (event_type)")
            conn.execute(f"CREATE INDEX IF NOT EXISTS idx_{TABLE}_company_id ON {TABLE} (company_id)")
            conn.execute(f"CREATE INDEX IF NOT EXISTS idx_{TABLE}_received_at ON {TABLE} (received_at)")
        logger.info("Webhook deliveries table initialized")

    def insert(self, delivery: Delivery) -> str:
        try:
            with self._conn() as conn:
                conn.execute(
                    f"""INSERT INTO {TABLE} ({_COLUMNS})
                        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)""",
                    (
                        delivery.id,
                        delivery.delivery_id,
                        delivery.event_type,
                        delivery.tenant_id,
                        delivery.raw_payload,
                        json.dumps([list(pair) for pair in delivery.headers]),
                        delivery.signature,
                        delivery.signature_valid,
                        delivery.signature_error,
                        delivery.source_ip,
                        delivery.user_agent,
                        delivery.processing_time_ms,
                        delivery.mobile_provider,
                        ensure_utc(delivery.received_at),
                    ),
                )
        except pg_errors.UniqueViolation as exc:
            raise DuplicateDeliveryError(delivery.delivery_id) from exc
        return delivery.id

    def get_by_id(self, webhook_id: str) -> Delivery | None:
        with self._conn() as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM {TABLE} WHERE id = %s",
                (webhook_id,),
            ).fetchone()
        return _row_to_delivery(row) if row else None

    def list(
        self,
        filter: DeliveryFilter | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
    ) -> DeliveryPage:
        where, params = _where(filter or DeliveryFilter())
        offset = max(offset, 0)
        with self._conn() as conn:
            total_row = conn.execute(f"SELECT COUNT(*) AS total FROM {TABLE}{where}", params).fetchone()
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM {TABLE}{where} {_ORDER} LIMIT %s OFFSET %s",
                [*params, limit, offset],
            ).fetchall()
        return DeliveryPage(
            items=[_row_to_delivery(r) for r in rows],
            total=int(total_row["total"]) if total_row else 0,
            limit=limit,
            offset=offset,
        )

    def stats(self, tz: ZoneInfo, now: datetime | None = None) -> DeliveryStats:
        now = now or utcnow()
        buckets = hour_buckets(tz, now)
        tz_name = tz.key

        with self._conn() as conn:
            totals = conn.execute(
                f"""SELECT COUNT(*) AS total,
                           COUNT(*) FILTER (WHERE is_valid_signature) AS valid,
                           COUNT(*) FILTER (WHERE received_at >= %s) AS today
                    FROM {TABLE}""",
                (start_of_day(tz, now),),
            ).fetchone() or {}
            event_rows = conn.execute(
                f"""SELECT event_type, COUNT(*) AS count FROM {TABLE}
                    GROUP BY event_type ORDER BY count DESC, event_type"""
            ).fetchall()
            company_rows = conn.execute(
                f"""SELECT company_id, COUNT(*) AS count FROM {TABLE}
                    WHERE company_id IS NOT NULL
                    GROUP BY company_id ORDER BY count DESC, company_id"""
            ).fetchall()
            hour_rows = conn.execute(
                f"""SELECT date_trunc('hour', received_at AT TIME ZONE %s) AS local_hour,
                           COUNT(*) AS count
                    FROM {TABLE}
                    WHERE received_at >= %s AND received_at <= %s
                    GROUP BY 1""",
                (tz_name, buckets[0], now),
            ).fetchall()

        total = int(totals.get("total") or 0)
        valid = int(totals.get("valid") or 0)

        # local_hour comes back naive, in the display timezone
        by_local_hour = {row["local_hour"]: int(row["count"]) for row in hour_rows}
        counts = {
            start: by_local_hour.get(to_display(start, tz).replace(tzinfo=None), 0)
            for start in buckets
        }

        return DeliveryStats(
            total=total,
            today=int(totals.get("today") or 0),
            valid_signatures=valid,
            invalid_signatures=total - valid,
            event_types=[{"event_type": r["event_type"], "count": int(r["count"])} for r in event_rows],
            companies=[{"company_id": r["company_id"], "count": int(r["count"])} for r in company_rows],
            hourly=hourly_histogram(buckets, counts, tz),
        )

    def delete_older_than_or_beyond_count(
        self,
        retention_days: int,
        keep_count: int,
        now: datetime | None = None,
    ) -> int:
        clauses: list[str] = []
        params: list[Any] = []
        if retention_days > 0:
            clauses.append("received_at < %s")
            params.append((now or utcnow()) - timedelta(days=retention_days))
        if keep_count > 0:
            clauses.append(f"id NOT IN (SELECT id FROM {TABLE} {_ORDER} LIMIT %s)")
            params.append(keep_count)
        if not clauses:
            return 0

        with self._conn() as conn:
            cur = conn.execute(f"DELETE FROM {TABLE} WHERE " + " OR ".join(clauses), params)
            deleted = cur.rowcount or 0
        logger.info("Retention removed %d deliveries", deleted)
        return deleted
