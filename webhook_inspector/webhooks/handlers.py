"""Webhook HTTP handlers — FastAPI routes for inbound webhooks.

The handler:
1. Reads the raw body (needed for HMAC verification)
2. Hands it to the ingestion pipeline, which dedupes, verifies and classifies
3. Returns the acknowledgement immediately
4. Attaches the deferred job (persist, broadcast, hooks) as a background
   task, which Starlette runs only after the response has been sent

Security contract:
- Never return stack traces to the webhook caller
- Return 401 only for signature failures, and only in strict mode
- Log all webhook activity for audit trail
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from starlette.background import BackgroundTask

from webhook_inspector.errors import ErrorCode
from webhook_inspector.models import load_json
from webhook_inspector.security.middleware import get_client_ip
from webhook_inspector.timeutils import to_display, utcnow
from webhook_inspector.webhooks.pipeline import InboundDelivery, IngestionPipeline

logger = logging.getLogger(__name__)


def _pipeline(request: Request) -> IngestionPipeline:
    return request.app.state.pipeline


async def _handle_webhook(request: Request) -> JSONResponse:
    """Ingest one delivery; 200 / 400 / 401 / 500."""
    pipeline = _pipeline(request)
    try:
        body = await request.body()
        inbound = InboundDelivery(
            body=body,
            headers=list(request.headers.items()),
            source_ip=get_client_ip(request),
        )
        result = pipeline.ingest(inbound)
    except Exception:
        logger.exception("Webhook processing failed")
        return JSONResponse(
            {
                "received": False,
                "success": False,
                "error": "Internal server error",
                "code": ErrorCode.PROCESSING_ERROR.value,
                "delivery_id": request.headers.get("x-genuka-delivery") or request.headers.get("x-delivery-id"),
            },
            status_code=500,
        )

    background = BackgroundTask(pipeline.run_deferred, result.job) if result.job else None
    return JSONResponse(result.body, status_code=result.status_code, background=background)


def register_webhook_routes(app: FastAPI, limiter: Limiter, rate_limit: str) -> None:
    """Register webhook endpoint routes on the FastAPI app."""

    @app.post("/webhook")
    @limiter.limit(rate_limit)
    async def receive_webhook(request: Request):
        """Receive a webhook delivery (signature-verified)."""
        return await _handle_webhook(request)

    @app.post("/webhook/test")
    async def echo_webhook(request: Request):
        """Development echo: returns what was sent, nothing is recorded."""
        body = await request.body()
        try:
            payload = load_json(body)
        except ValueError:
            payload = body.decode("utf-8", errors="replace")
        tz = request.app.state.settings.tz
        logger.info("Test webhook received (%d bytes)", len(body))
        return {
            "message": "Test webhook received",
            "timestamp": to_display(utcnow(), tz).isoformat(),
            "timezone": tz.key,
            "payload": payload,
        }

    logger.info("Webhook routes registered: /webhook, /webhook/test")
