"""Shared fixtures for the webhook inspector test suite."""

from __future__ import annotations

import hashlib
import hmac
import uuid
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest
from fastapi.testclient import TestClient

from webhook_inspector.config import Settings
from webhook_inspector.models import Delivery
from webhook_inspector.serve import create_app
from webhook_inspector.storage.memory import InMemoryWebhookStore

SECRET = "test-webhook-secret"
DOUALA = ZoneInfo("Africa/Douala")


@pytest.fixture()
def tz() -> ZoneInfo:
    return DOUALA


@pytest.fixture()
def sign():
    """sign(body, secret=SECRET) -> "sha256=<hex>"."""

    def _sign(body: bytes, secret: str = SECRET) -> str:
        return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()

    return _sign


@pytest.fixture()
def make_settings():
    """Settings isolated from the environment and .env files."""

    def _make(**overrides) -> Settings:
        values = {
            "webhook_secret": SECRET,
            "heartbeat_interval_seconds": 3600.0,
            "retention_interval_seconds": 0,
            "rate_limit": "1000/minute",
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return _make


@pytest.fixture()
def make_delivery():
    """Factory for stored Delivery records."""

    def _make(
        event_type: str = "order.created",
        tenant_id: str | None = "acme",
        received_at: datetime | None = None,
        signature_valid: bool = True,
        raw_payload: str | None = None,
        delivery_id: str | None = None,
        **fields,
    ) -> Delivery:
        raw = raw_payload if raw_payload is not None else f'{{"event": "{event_type}"}}'
        parsed, is_json = Delivery.parse_payload(raw)
        return Delivery(
            id=uuid.uuid4().hex,
            delivery_id=delivery_id or f"dlv-{uuid.uuid4().hex[:12]}",
            event_type=event_type,
            tenant_id=tenant_id,
            raw_payload=raw,
            parsed_payload=parsed,
            is_json=is_json,
            signature_valid=signature_valid,
            received_at=received_at or datetime.now(timezone.utc),
            **fields,
        )

    return _make


@pytest.fixture()
def store() -> InMemoryWebhookStore:
    return InMemoryWebhookStore()


@pytest.fixture()
def app(make_settings, store):
    """App wired to an in-memory store, secret configured, permissive mode."""
    return create_app(make_settings(), store=store)


@pytest.fixture()
def client(app):
    with TestClient(app) as c:
        yield c
