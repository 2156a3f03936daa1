"""Event classification — infer event type and tenant from a delivery.

Precedence contract: explicit signals always win over inference.

    payload.event > payload.type > payload.data.type
      > header x-event-type > header x-genuka-event
      > structural inference (order / customer / payment / product)
      > "unknown"

All functions here are total over arbitrary JSON trees: a non-object
where an object is expected is treated as absent. They never raise.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Iterable, Mapping

logger = logging.getLogger(__name__)

UNKNOWN_EVENT = "unknown"

_EVENT_HEADERS = ("x-event-type", "x-genuka-event")
_TENANT_KEYS = ("company_id", "shop_id", "tenant_id")
_TENANT_HEADERS = ("x-company-id", "x-genuka-company", "x-shop-id")

# Mobile money provider -> lower-case markers found in payloads
_MOBILE_MONEY_MARKERS: list[tuple[str, tuple[str, ...]]] = [
    ("Orange Money", ("orange", "#150*1#")),
    ("MTN Mobile Money", ("mtn", "momo", "#126#")),
    ("Express Union Mobile", ("express union", "eu mobile")),
]


def _lower_headers(headers: Mapping[str, str] | Iterable[tuple[str, str]] | None) -> dict[str, str]:
    if not headers:
        return {}
    items = headers.items() if isinstance(headers, Mapping) else headers
    lowered: dict[str, str] = {}
    try:
        for name, value in items:
            lowered.setdefault(str(name).lower(), value)
    except (TypeError, ValueError):
        return {}
    return lowered


def _signal(value: Any) -> str | None:
    """A usable explicit value: non-empty string, or a number."""
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        return value or None
    if isinstance(value, (int, float)):
        return str(value)
    return None


def _obj(value: Any) -> dict[str, Any] | None:
    return value if isinstance(value, dict) else None


def _infer_from_shape(payload: dict[str, Any]) -> str | None:
    order = _obj(payload.get("order"))
    if order is not None:
        status = _signal(order.get("status"))
        if status:
            return f"order.{status.lower()}"
        if "id" in order:
            return "order.updated"

    customer = _obj(payload.get("customer"))
    if customer is not None:
        return "customer.updated" if customer.get("id") not in (None, "") else "customer.created"

    if _obj(payload.get("payment")) is not None:
        return "payment.created"

    if _obj(payload.get("product")) is not None:
        return "product.updated"

    return None


def classify_event(payload: Any, headers: Mapping[str, str] | Iterable[tuple[str, str]] | None = None) -> str:
    """Return the event type for a delivery, "unknown" when nothing matches."""
    root = _obj(payload)
    if root is not None:
        for key in ("event", "type"):
            explicit = _signal(root.get(key))
            if explicit:
                return explicit
        data = _obj(root.get("data"))
        if data is not None:
            explicit = _signal(data.get("type"))
            if explicit:
                return explicit

    lowered = _lower_headers(headers)
    for header_name in _EVENT_HEADERS:
        explicit = _signal(lowered.get(header_name))
        if explicit:
            return explicit

    if root is not None:
        inferred = _infer_from_shape(root)
        if inferred:
            return inferred

    return UNKNOWN_EVENT


def extract_tenant_id(payload: Any, headers: Mapping[str, str] | Iterable[tuple[str, str]] | None = None) -> str | None:
    """Company/shop/tenant id; payload (top level, then data) beats headers."""
    root = _obj(payload)
    if root is not None:
        for scope in (root, _obj(root.get("data"))):
            if scope is None:
                continue
            for key in _TENANT_KEYS:
                tenant = _signal(scope.get(key))
                if tenant:
                    return tenant

    lowered = _lower_headers(headers)
    for header_name in _TENANT_HEADERS:
        tenant = _signal(lowered.get(header_name))
        if tenant:
            return tenant
    return None


def detect_mobile_money_provider(payload: Any) -> str | None:
    """Best-effort detection of the mobile money service named in a payload."""
    if payload is None:
        return None
    try:
        text = json.dumps(payload, default=str).lower()
    except (TypeError, ValueError):
        logger.debug("Payload not serializable for mobile money detection")
        return None

    for provider, markers in _MOBILE_MONEY_MARKERS:
        if any(marker in text for marker in markers):
            return provider
    if "uba" in text and "mobile" in text:
        return "UBA Mobile Banking"
    return None
