"""Webhook delivery data models.

A Delivery is the immutable record of one inbound webhook request. It is
created once by the ingestion pipeline and never mutated afterwards; the
raw payload and headers are kept verbatim for audit and replay fidelity.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from zoneinfo import ZoneInfo

from pydantic import BaseModel, Field

from webhook_inspector.timeutils import humanize, to_display, utcnow

INVALID_PAYLOAD_EVENT = "invalid_payload"


def decode_body(body: bytes) -> str:
    """Body bytes as text; undecodable bytes are replaced, never dropped."""
    return body.decode("utf-8", errors="replace")


def _reject_constant(name: str) -> Any:
    raise ValueError(f"{name} is not valid JSON")


def load_json(raw: bytes | str) -> Any:
    """Standard JSON only: NaN, Infinity and -Infinity are rejected."""
    return json.loads(raw, parse_constant=_reject_constant)


def headers_to_dict(headers: tuple[tuple[str, str], ...] | list[tuple[str, str]]) -> dict[str, str]:
    """Collapse ordered header pairs into a dict, joining repeated names."""
    merged: dict[str, str] = {}
    for name, value in headers:
        if name in merged:
            merged[name] = f"{merged[name]}, {value}"
        else:
            merged[name] = value
    return merged


@dataclass(frozen=True)
class Delivery:
    """One received webhook, as stored."""

    id: str
    delivery_id: str
    event_type: str
    raw_payload: str
    headers: tuple[tuple[str, str], ...] = ()
    tenant_id: str | None = None
    parsed_payload: Any = None
    is_json: bool = True
    signature: str | None = None
    signature_valid: bool = False
    signature_error: str | None = None
    source_ip: str | None = None
    user_agent: str | None = None
    received_at: datetime = field(default_factory=utcnow)
    processing_time_ms: int = 0
    mobile_provider: str | None = None

    @staticmethod
    def parse_payload(raw_payload: str) -> tuple[Any, bool]:
        """Return (tree, is_json) for a stored raw payload."""
        try:
            return load_json(raw_payload), True
        except ValueError:
            return None, False

    @property
    def payload(self) -> Any:
        """Parsed tree for JSON bodies, the raw text otherwise."""
        return self.parsed_payload if self.is_json else self.raw_payload

    def header(self, name: str) -> str | None:
        name = name.lower()
        for key, value in self.headers:
            if key == name:
                return value
        return None

    def to_dict(self, tz: ZoneInfo, now: datetime | None = None) -> dict[str, Any]:
        """API representation; timestamps rendered in the display timezone."""
        return {
            "id": self.id,
            "delivery_id": self.delivery_id,
            "event_type": self.event_type,
            "company_id": self.tenant_id,
            "payload": self.payload,
            "raw_payload": self.raw_payload,
            "headers": headers_to_dict(self.headers),
            "signature": self.signature,
            "is_valid_signature": self.signature_valid,
            "signature_error": self.signature_error,
            "source_ip": self.source_ip,
            "user_agent": self.user_agent,
            "received_at": to_display(self.received_at, tz).isoformat(),
            "received_at_human": humanize(self.received_at, tz, now=now),
            "processing_time_ms": self.processing_time_ms,
            "mobile_provider": self.mobile_provider,
        }


@dataclass
class DeliveryFilter:
    """Conjunctive filter for WebhookStore.list()."""

    event_type: str | None = None
    tenant_id: str | None = None
    signature_valid: bool | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    text_search: str | None = None

    def matches(self, delivery: Delivery) -> bool:
        if self.event_type and delivery.event_type != self.event_type:
            return False
        if self.tenant_id and delivery.tenant_id != self.tenant_id:
            return False
        if self.signature_valid is not None and delivery.signature_valid != self.signature_valid:
            return False
        if self.date_from and delivery.received_at < self.date_from:
            return False
        if self.date_to and delivery.received_at > self.date_to:
            return False
        if self.text_search:
            needle = self.text_search.lower()
            haystacks = (delivery.raw_payload, delivery.event_type, delivery.tenant_id or "")
            if not any(needle in h.lower() for h in haystacks):
                return False
        return True


@dataclass
class DeliveryPage:
    """One page of List() results."""

    items: list[Delivery]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + self.limit < self.total

    def pagination(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "limit": self.limit,
            "offset": self.offset,
            "has_more": self.has_more,
        }


@dataclass
class DeliveryStats:
    """Aggregate statistics. valid_signatures + invalid_signatures == total."""

    total: int = 0
    today: int = 0
    valid_signatures: int = 0
    invalid_signatures: int = 0
    event_types: list[dict[str, Any]] = field(default_factory=list)
    companies: list[dict[str, Any]] = field(default_factory=list)
    hourly: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_webhooks": self.total,
            "today_webhooks": self.today,
            "valid_signatures": self.valid_signatures,
            "invalid_signatures": self.invalid_signatures,
            "event_types": self.event_types,
            "companies": self.companies,
            "hourly": self.hourly,
        }


# ── Request bodies ────────────────────────────────────────────────────────


class ReplayRequest(BaseModel):
    target_url: str = ""


class SearchRequest(BaseModel):
    query: str = ""
    limit: int = Field(default=50, ge=1, le=500)


class SyntheticWebhookRequest(BaseModel):
    """Body of POST /api/webhooks/test."""

    event_type: str = "test.webhook"
    company_id: str = "test-company"
    payload: dict[str, Any] = Field(default_factory=dict)
    generate_signature: bool = False
    secret: str | None = None


class SignatureValidateRequest(BaseModel):
    payload: str = ""
    signature: str = ""
    secret: str = ""


class SignatureGenerateRequest(BaseModel):
    payload: str = ""
    secret: str = ""
