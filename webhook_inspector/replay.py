"""Re-send a stored delivery to a target URL.

The raw payload bytes go out unchanged, with the original headers (minus
hop-by-hop ones) and the original signature, so the target can verify it
exactly as it would have verified the first delivery.
"""

from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from webhook_inspector.errors import ReplayTargetUnreachableError
from webhook_inspector.models import Delivery
from webhook_inspector.timeutils import utcnow

logger = logging.getLogger(__name__)

RESPONSE_EXCERPT_CHARS = 1000

# Recomputed by httpx for the new request
_HOP_BY_HOP = frozenset({
    "host",
    "content-length",
    "connection",
    "keep-alive",
    "transfer-encoding",
    "upgrade",
    "te",
    "trailer",
    "proxy-authorization",
    "proxy-connection",
})


def replay_headers(delivery: Delivery) -> dict[str, str]:
    """Outbound headers for a replay of ``delivery``."""
    headers: dict[str, str] = {}
    for name, value in delivery.headers:
        if name.lower() in _HOP_BY_HOP:
            continue
        headers[name.lower()] = value
    headers.setdefault("content-type", "application/json")
    headers["x-webhook-replay"] = "true"
    headers["x-original-webhook-id"] = delivery.id
    headers["x-original-delivery-id"] = delivery.delivery_id
    headers["x-genuka-event"] = delivery.event_type
    headers["x-replay-timestamp"] = utcnow().isoformat()
    if delivery.signature:
        headers["x-signature"] = delivery.signature
    return headers


async def replay_delivery(
    delivery: Delivery,
    target_url: str,
    timeout: float = 10.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict[str, Any]:
    """POST the stored delivery to ``target_url``.

    Any HTTP response, including 4xx/5xx, counts as a completed replay.
    Connection failures and timeouts raise ReplayTargetUnreachableError.
    """
    headers = replay_headers(delivery)
    started = time.monotonic()
    try:
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            response = await client.post(
                target_url,
                content=delivery.raw_payload.encode("utf-8"),
                headers=headers,
            )
    except (httpx.HTTPError, httpx.InvalidURL) as exc:
        logger.warning("Replay of %s to %s failed: %s", delivery.id, target_url, exc)
        raise ReplayTargetUnreachableError(target_url, str(exc) or type(exc).__name__) from exc

    elapsed_ms = int((time.monotonic() - started) * 1000)
    logger.info(
        "Replayed %s to %s: HTTP %d in %dms",
        delivery.id, target_url, response.status_code, elapsed_ms,
    )
    return {
        "original_webhook_id": delivery.id,
        "target_url": target_url,
        "status": response.status_code,
        "processing_time_ms": elapsed_ms,
        "response": response.text[:RESPONSE_EXCERPT_CHARS],
        "headers": headers,
    }
