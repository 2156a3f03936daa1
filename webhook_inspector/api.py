"""Query, statistics, replay and live-feed routes.

- /api/webhooks ...      list, search, fetch, replay, synthesize deliveries
- /api/stats             store + observer + server statistics
- /api/signature/...     HMAC helpers for integrators
- /health, /ws           liveness probe and the observer channel
"""

from __future__ import annotations

import json
import logging
import platform
import time
from datetime import datetime

from fastapi import APIRouter, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from webhook_inspector import __version__
from webhook_inspector.errors import ErrorCode, MissingSecretError, NotFoundError
from webhook_inspector.models import (
    DeliveryFilter,
    ReplayRequest,
    SearchRequest,
    SignatureGenerateRequest,
    SignatureValidateRequest,
    SyntheticWebhookRequest,
)
from webhook_inspector.replay import replay_delivery
from webhook_inspector.storage.base import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE
from webhook_inspector.timeutils import ensure_utc, to_display, utcnow
from webhook_inspector.webhooks.pipeline import InboundDelivery
from webhook_inspector.webhooks.verification import generate_signature, is_valid_format, verify_signature

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["webhooks"])
live_router = APIRouter(tags=["live"])

TEST_USER_AGENT = f"Webhook-Inspector-Test/{__version__}"


def _bad_request(message: str) -> JSONResponse:
    return JSONResponse(
        {"success": False, "error": message, "code": ErrorCode.VALIDATION_ERROR.value},
        status_code=400,
    )


# ── Deliveries ───────────────────────────────────────────────────────────


@router.get("/webhooks")
async def list_webhooks(
    request: Request,
    event_type: str | None = None,
    company_id: str | None = None,
    is_valid_signature: bool | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    search: str | None = None,
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
):
    """Filtered, newest-first page of deliveries."""
    state = request.app.state
    criteria = DeliveryFilter(
        event_type=event_type or None,
        tenant_id=company_id or None,
        signature_valid=is_valid_signature,
        date_from=ensure_utc(date_from) if date_from else None,
        date_to=ensure_utc(date_to) if date_to else None,
        text_search=search or None,
    )
    page = await run_in_threadpool(state.store.list, criteria, limit, offset)
    now = utcnow()
    return {
        "success": True,
        "data": [d.to_dict(state.settings.tz, now) for d in page.items],
        "pagination": page.pagination(),
    }


@router.post("/webhooks/search")
async def search_webhooks(request: Request, body: SearchRequest):
    query = body.query.strip()
    if not query:
        return _bad_request("Search query is required")
    state = request.app.state
    page = await run_in_threadpool(state.store.list, DeliveryFilter(text_search=query), body.limit, 0)
    now = utcnow()
    return {
        "success": True,
        "data": [d.to_dict(state.settings.tz, now) for d in page.items],
        "query": query,
        "count": len(page.items),
    }


@router.post("/webhooks/test")
async def send_test_webhook(request: Request, body: SyntheticWebhookRequest):
    """Synthesize a delivery and run it through the real pipeline."""
    state = request.app.state
    tz = state.settings.tz
    now = utcnow()

    payload = {
        "event": body.event_type,
        "company_id": body.company_id,
        "data": body.payload,
        "timestamp": to_display(now, tz).isoformat(),
        "test": True,
    }
    raw = json.dumps(payload).encode("utf-8")

    headers = {
        "content-type": "application/json",
        "user-agent": TEST_USER_AGENT,
        "x-genuka-delivery": f"test-{int(now.timestamp() * 1000)}",
        "x-genuka-event": body.event_type,
        "x-company-id": body.company_id,
    }
    signature = None
    if body.generate_signature:
        secret = body.secret or state.settings.webhook_secret
        if not secret:
            raise MissingSecretError("No secret provided for signature generation")
        signature = generate_signature(raw, secret)
        headers["x-signature"] = signature

    pipeline = state.pipeline
    result = pipeline.ingest(InboundDelivery(body=raw, headers=list(headers.items()), source_ip="127.0.0.1"))
    if result.job is not None:
        await pipeline.run_deferred(result.job)

    logger.info("Test webhook %s sent (HTTP %d)", headers["x-genuka-delivery"], result.status_code)
    return {
        "success": True,
        "test_webhook": {
            "payload": payload,
            "signature": signature,
            "headers": headers,
            "response": {"status": result.status_code, "body": result.body},
        },
    }


# Shorter alias kept for existing integrations
router.add_api_route("/test", send_test_webhook, methods=["POST"])


@router.get("/webhooks/{webhook_id}")
async def get_webhook(request: Request, webhook_id: str):
    state = request.app.state
    delivery = await run_in_threadpool(state.store.get_by_id, webhook_id)
    if delivery is None:
        raise NotFoundError()
    return {"success": True, "data": delivery.to_dict(state.settings.tz)}


@router.post("/webhooks/{webhook_id}/replay")
async def replay_webhook(request: Request, webhook_id: str, body: ReplayRequest):
    """Re-send a stored delivery; any HTTP answer from the target is a success."""
    target_url = body.target_url.strip()
    if not target_url:
        return _bad_request("Target URL is required")
    state = request.app.state
    delivery = await run_in_threadpool(state.store.get_by_id, webhook_id)
    if delivery is None:
        raise NotFoundError()

    replay = await replay_delivery(
        delivery,
        target_url,
        timeout=state.settings.replay_timeout_seconds,
        transport=state.replay_transport,
    )
    return {"success": True, "replay": replay}


# ── Statistics ───────────────────────────────────────────────────────────


@router.get("/stats")
async def get_stats(request: Request):
    state = request.app.state
    tz = state.settings.tz
    stats = await run_in_threadpool(state.store.stats, tz)
    return {
        "success": True,
        "stats": {
            "webhooks": stats.to_dict(),
            "websocket": state.hub.stats(),
            "server": {
                "uptime_seconds": int(time.monotonic() - state.started_at),
                "timezone": tz.key,
                "python_version": platform.python_version(),
                "version": __version__,
            },
        },
    }


# ── Signature helpers ────────────────────────────────────────────────────


@router.post("/signature/validate")
async def validate_signature(body: SignatureValidateRequest):
    if not body.payload or not body.signature or not body.secret:
        return _bad_request("Payload, signature and secret are required")
    result = verify_signature(body.payload.encode("utf-8"), body.signature, body.secret)
    validation = result.to_dict()
    validation["format_valid"] = is_valid_format(body.signature)
    return {"success": True, "validation": validation}


@router.post("/signature/generate")
async def create_signature(body: SignatureGenerateRequest):
    if not body.payload or not body.secret:
        return _bad_request("Payload and secret are required")
    signature = generate_signature(body.payload.encode("utf-8"), body.secret)
    return {
        "success": True,
        "signature": signature,
        "usage": {"header": "x-signature", "value": signature},
    }


# ── Liveness and observers ───────────────────────────────────────────────


@live_router.get("/health")
async def health(request: Request):
    state = request.app.state
    return {
        "status": "ok",
        "version": __version__,
        "timestamp": to_display(utcnow(), state.settings.tz).isoformat(),
        "connections": len(state.hub),
        "pending_deliveries": state.pipeline.pending,
    }


@live_router.websocket("/ws")
async def observe(websocket: WebSocket):
    """Observer channel: welcome, then webhook_received events until close."""
    hub = websocket.app.state.hub
    await websocket.accept()
    conn = await hub.connect(
        websocket,
        remote_address=websocket.client.host if websocket.client else None,
        user_agent=websocket.headers.get("user-agent"),
    )
    try:
        while True:
            hub.handle_message(conn, await websocket.receive_text())
    except WebSocketDisconnect:
        logger.debug("Observer %s closed the connection", conn.connection_id)
    finally:
        hub.forget(conn)
