"""Tests for the query, stats, replay, signature and live-feed routes."""

from __future__ import annotations

import json
from contextlib import ExitStack
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from fastapi.testclient import TestClient

from webhook_inspector import __version__
from webhook_inspector.serve import create_app
from webhook_inspector.storage.memory import InMemoryWebhookStore

T0 = datetime(2024, 3, 15, 10, 30, tzinfo=timezone.utc)


@pytest.fixture()
def populated(store, make_delivery):
    """Three deliveries one hour apart, newest last."""
    deliveries = [
        make_delivery("order.created", "acme", T0, True, '{"event": "order.created", "dish": "Ndolé"}'),
        make_delivery("payment.failed", "acme", T0 + timedelta(hours=1), False),
        make_delivery("order.created", "globex", T0 + timedelta(hours=2), False),
    ]
    for d in deliveries:
        store.insert(d)
    return deliveries


class TestListWebhooks:
    def test_newest_first_with_pagination(self, client, populated):
        resp = client.get("/api/webhooks")

        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert [d["id"] for d in body["data"]] == [d.id for d in reversed(populated)]
        assert body["pagination"] == {"total": 3, "limit": 50, "offset": 0, "has_more": False}

    def test_record_shape(self, client, populated):
        record = client.get("/api/webhooks", params={"limit": 1}).json()["data"][0]

        assert record["company_id"] == "globex"
        assert record["received_at"].endswith("+01:00")
        assert record["received_at_human"]
        assert "headers" in record

    @pytest.mark.parametrize(
        ("params", "expected"),
        [
            ({"event_type": "order.created"}, 2),
            ({"company_id": "acme"}, 2),
            ({"is_valid_signature": "false"}, 2),
            ({"is_valid_signature": "true"}, 1),
            ({"search": "ndolé"}, 1),
            ({"event_type": "order.created", "company_id": "globex"}, 1),
            ({"date_from": "2024-03-15T11:30:00Z"}, 2),
            ({"date_to": "2024-03-15T11:30:00+00:00"}, 2),
        ],
    )
    def test_filters(self, client, populated, params, expected):
        assert client.get("/api/webhooks", params=params).json()["pagination"]["total"] == expected

    def test_paging(self, client, populated):
        body = client.get("/api/webhooks", params={"limit": 2, "offset": 2}).json()
        assert [d["id"] for d in body["data"]] == [populated[0].id]
        assert body["pagination"]["has_more"] is False

    @pytest.mark.parametrize("params", [{"limit": 0}, {"limit": 501}, {"offset": -1}])
    def test_out_of_range_paging_rejected(self, client, params):
        resp = client.get("/api/webhooks", params=params)
        assert resp.status_code == 422
        assert resp.json()["code"] == "VALIDATION_ERROR"


class TestSearch:
    def test_matches(self, client, populated):
        body = client.post("/api/webhooks/search", json={"query": "  payment "}).json()
        assert body["query"] == "payment"
        assert body["count"] == 1
        assert body["data"][0]["event_type"] == "payment.failed"

    def test_blank_query(self, client):
        resp = client.post("/api/webhooks/search", json={"query": "   "})
        assert resp.status_code == 400
        assert resp.json()["code"] == "VALIDATION_ERROR"


class TestGetWebhook:
    def test_found(self, client, populated):
        resp = client.get(f"/api/webhooks/{populated[0].id}")
        assert resp.status_code == 200
        assert resp.json()["data"]["payload"]["dish"] == "Ndolé"

    def test_not_found(self, client):
        resp = client.get("/api/webhooks/does-not-exist")
        assert resp.status_code == 404
        assert resp.json() == {"success": False, "error": "Webhook not found", "code": "NOT_FOUND"}


class TestStats:
    def test_structure(self, client, populated):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            stats = client.get("/api/stats").json()["stats"]

        assert stats["webhooks"]["total_webhooks"] == 3
        assert stats["webhooks"]["valid_signatures"] + stats["webhooks"]["invalid_signatures"] == 3
        assert len(stats["webhooks"]["hourly"]) == 24
        assert stats["websocket"]["total_connections"] == 1
        assert stats["server"]["timezone"] == "Africa/Douala"
        assert stats["server"]["version"] == __version__
        assert stats["server"]["uptime_seconds"] >= 0


class TestReplay:
    @pytest.fixture()
    def stored(self, store, make_delivery):
        raw = '{"event":"order.created","total": 15000}'
        delivery = make_delivery(
            raw_payload=raw,
            delivery_id="dlv-orig",
            signature="sha256=abc",
            headers=(
                ("host", "inspector.local"),
                ("content-type", "application/json"),
                ("content-length", str(len(raw))),
                ("x-signature", "sha256=abc"),
                ("x-genuka-delivery", "dlv-orig"),
            ),
        )
        store.insert(delivery)
        return delivery

    @pytest.fixture()
    def replay_client(self, make_settings, store):
        """Opens a client whose replays go to the given in-process handler."""
        with ExitStack() as stack:

            def _open(handler) -> TestClient:
                app = create_app(make_settings(), store=store, replay_transport=httpx.MockTransport(handler))
                return stack.enter_context(TestClient(app))

            yield _open

    def test_success(self, replay_client, stored):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["request"] = request
            return httpx.Response(202, text="accepted")

        client = replay_client(handler)
        resp = client.post(f"/api/webhooks/{stored.id}/replay", json={"target_url": "https://target.test/hook"})

        assert resp.status_code == 200
        replay = resp.json()["replay"]
        assert replay["status"] == 202
        assert replay["response"] == "accepted"
        assert replay["original_webhook_id"] == stored.id

        request = captured["request"]
        assert request.content == stored.raw_payload.encode()
        assert request.headers["x-signature"] == "sha256=abc"
        assert request.headers["x-webhook-replay"] == "true"
        assert request.headers["x-original-delivery-id"] == "dlv-orig"
        assert request.headers["x-genuka-event"] == "order.created"
        assert request.headers["host"] == "target.test"

    def test_error_status_is_still_a_replay(self, replay_client, stored):
        client = replay_client(lambda r: httpx.Response(500, text="x" * 5000))
        replay = client.post(f"/api/webhooks/{stored.id}/replay", json={"target_url": "https://t.test"}).json()["replay"]

        assert replay["status"] == 500
        assert len(replay["response"]) == 1000

    def test_unreachable_target(self, replay_client, stored, store):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("Connection refused", request=request)

        client = replay_client(handler)
        resp = client.post(f"/api/webhooks/{stored.id}/replay", json={"target_url": "http://127.0.0.1:9/"})

        assert resp.status_code == 502
        body = resp.json()
        assert body["code"] == "REPLAY_TARGET_UNREACHABLE"
        assert "Connection refused" in body["details"]
        assert store.get_by_id(stored.id) == stored
        assert len(store) == 1

    def test_missing_target(self, client, stored):
        resp = client.post(f"/api/webhooks/{stored.id}/replay", json={})
        assert resp.status_code == 400

    def test_unknown_delivery(self, client):
        resp = client.post("/api/webhooks/nope/replay", json={"target_url": "https://t.test"})
        assert resp.status_code == 404


class TestSyntheticWebhook:
    def test_runs_through_pipeline(self, client, store):
        resp = client.post(
            "/api/webhooks/test",
            json={"event_type": "order.created", "company_id": "acme", "payload": {"total": 15000}},
        )

        assert resp.status_code == 200
        sent = resp.json()["test_webhook"]
        assert sent["payload"]["test"] is True
        assert sent["payload"]["data"] == {"total": 15000}
        assert sent["signature"] is None
        assert sent["headers"]["x-genuka-delivery"].startswith("test-")
        assert sent["response"]["status"] == 200
        assert sent["response"]["body"]["event_type"] == "order.created"

        [recorded] = store.list().items
        assert recorded.tenant_id == "acme"
        assert recorded.delivery_id == sent["headers"]["x-genuka-delivery"]

    def test_signed_with_configured_secret(self, client, store):
        sent = client.post("/api/webhooks/test", json={"generate_signature": True}).json()["test_webhook"]

        assert sent["signature"].startswith("sha256=")
        assert sent["response"]["body"]["is_valid_signature"] is True
        assert store.list().items[0].signature_valid is True

    def test_signed_with_other_secret_fails_verification(self, client):
        sent = client.post(
            "/api/webhooks/test", json={"generate_signature": True, "secret": "someone-else"}
        ).json()["test_webhook"]
        assert sent["response"]["body"]["is_valid_signature"] is False

    def test_missing_secret(self, make_settings):
        app = create_app(make_settings(webhook_secret=""), store=InMemoryWebhookStore())
        with TestClient(app) as client:
            resp = client.post("/api/webhooks/test", json={"generate_signature": True})

        assert resp.status_code == 400
        assert resp.json()["code"] == "MISSING_SECRET"

    def test_short_alias(self, client):
        resp = client.post("/api/test", json={})
        assert resp.status_code == 200
        assert resp.json()["test_webhook"]["payload"]["event"] == "test.webhook"


class TestSignatureHelpers:
    def test_generate_then_validate(self, client):
        payload = json.dumps({"event": "order.created"})
        generated = client.post("/api/signature/generate", json={"payload": payload, "secret": "s3"}).json()

        assert generated["usage"] == {"header": "x-signature", "value": generated["signature"]}

        validation = client.post(
            "/api/signature/validate",
            json={"payload": payload, "signature": generated["signature"], "secret": "s3"},
        ).json()["validation"]
        assert validation["is_valid"] is True
        assert validation["format_valid"] is True

    def test_validate_mismatch(self, client):
        validation = client.post(
            "/api/signature/validate",
            json={"payload": "{}", "signature": "sha256=" + "0" * 64, "secret": "s3"},
        ).json()["validation"]
        assert validation["is_valid"] is False
        assert validation["format_valid"] is True

    def test_validate_reports_malformed_signature(self, client):
        validation = client.post(
            "/api/signature/validate",
            json={"payload": "{}", "signature": "sha256=xyz", "secret": "s3"},
        ).json()["validation"]
        assert validation["is_valid"] is False
        assert validation["format_valid"] is False

    @pytest.mark.parametrize(
        ("path", "body"),
        [
            ("/api/signature/validate", {"payload": "{}", "secret": "s3"}),
            ("/api/signature/generate", {"payload": "{}"}),
        ],
    )
    def test_missing_fields(self, client, path, body):
        resp = client.post(path, json=body)
        assert resp.status_code == 400
        assert resp.json()["code"] == "VALIDATION_ERROR"


class TestHealth:
    def test_ok(self, client):
        body = client.get("/health").json()
        assert body["status"] == "ok"
        assert body["version"] == __version__
        assert body["connections"] == 0
        assert body["pending_deliveries"] == 0


class TestObserverChannel:
    def test_welcome(self, client):
        with client.websocket_connect("/ws") as ws:
            welcome = ws.receive_json()
        assert welcome["type"] == "connected"
        assert welcome["client_count"] == 1

    def test_ping_pong(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_text(json.dumps({"type": "ping"}))
            assert ws.receive_json()["type"] == "pong"

    def test_subscription_filters_feed(self, client, sign):
        payment = b'{"event": "payment.completed"}'
        order = b'{"event": "order.created"}'
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_text(json.dumps({"type": "subscribe", "events": ["order.created"]}))
            assert ws.receive_json()["type"] == "subscribed"

            for n, body in enumerate((payment, order)):
                client.post("/webhook", content=body, headers={"X-Signature": sign(body), "X-Genuka-Delivery": f"d-{n}"})
            message = ws.receive_json()

        assert message["type"] == "webhook_received"
        assert message["webhook"]["event_type"] == "order.created"

    def test_disconnect_forgets_observer(self, client, app):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            assert len(app.state.hub) == 1
        assert len(app.state.hub) == 0
