"""Business hooks — per-event-type processing after a delivery is recorded.

Hooks run last in the ingestion pipeline, after the caller has already
been acknowledged. A failing hook is logged and never marks the delivery
as failed.
"""

from __future__ import annotations

import inspect
import logging
import re
from typing import Any, Awaitable, Callable, Union

from webhook_inspector.models import Delivery

logger = logging.getLogger(__name__)

Hook = Callable[[Delivery], Union[None, Awaitable[None]]]

_MOBILE_PAYMENT_METHODS = ("orange", "mtn")


def _section(delivery: Delivery, name: str) -> dict[str, Any]:
    """payload[name] or payload.data[name], as a dict ({} if absent)."""
    payload = delivery.parsed_payload if isinstance(delivery.parsed_payload, dict) else {}
    value = payload.get(name)
    if not isinstance(value, dict):
        data = payload.get("data")
        value = data.get(name) if isinstance(data, dict) else None
    return value if isinstance(value, dict) else {}


def detect_cameroon_operator(phone: str | None) -> str:
    """Mobile operator for a Cameroon (+237) phone number."""
    if not phone:
        return "unknown"
    digits = re.sub(r"\D", "", str(phone))
    if not digits.startswith("237"):
        return "unknown"
    number = digits[3:]
    if re.match(r"^(67|68|65)", number):
        return "MTN"
    if re.match(r"^(69|66)", number):
        return "Orange"
    if re.match(r"^(62|63)", number):
        return "Camtel"
    return "unknown"


def on_order_created(delivery: Delivery) -> None:
    order = _section(delivery, "order")
    logger.info("New order for %s: %s", delivery.tenant_id, order.get("id"))
    customer = order.get("customer") if isinstance(order.get("customer"), dict) else {}
    phone = customer.get("phone")
    if phone:
        logger.info(
            "Order customer on %s, total %s FCFA",
            detect_cameroon_operator(phone),
            order.get("total"),
        )


def on_order_completed(delivery: Delivery) -> None:
    order = _section(delivery, "order")
    logger.info("Order completed for %s: %s", delivery.tenant_id, order.get("id"))


def on_payment_completed(delivery: Delivery) -> None:
    payment = _section(delivery, "payment")
    logger.info("Payment completed for %s: %s", delivery.tenant_id, payment.get("reference"))
    method = str(payment.get("method") or "")
    if any(marker in method.lower() for marker in _MOBILE_PAYMENT_METHODS):
        logger.info("Mobile money payment: %s", method)


def on_payment_failed(delivery: Delivery) -> None:
    payment = _section(delivery, "payment")
    logger.info(
        "Payment failed for %s: %s (reason: %s)",
        delivery.tenant_id,
        payment.get("reference"),
        payment.get("error"),
    )


def on_customer_created(delivery: Delivery) -> None:
    customer = _section(delivery, "customer")
    email = str(customer.get("email") or "")
    # only the email domain is logged
    if "@" in email:
        email = "***@" + email.split("@", 1)[1]
    logger.info("New customer for %s: %s", delivery.tenant_id, email)


DEFAULT_HOOKS: dict[str, Hook] = {
    "order.created": on_order_created,
    "order.completed": on_order_completed,
    "payment.completed": on_payment_completed,
    "payment.failed": on_payment_failed,
    "customer.created": on_customer_created,
}


class HookRegistry:
    """Maps event types to hooks; several hooks per event type are allowed."""

    def __init__(self, hooks: dict[str, Hook] | None = None) -> None:
        self._hooks: dict[str, list[Hook]] = {}
        for event_type, hook in (hooks if hooks is not None else DEFAULT_HOOKS).items():
            self.register(event_type, hook)

    def register(self, event_type: str, hook: Hook) -> None:
        self._hooks.setdefault(event_type, []).append(hook)

    def hooks_for(self, event_type: str) -> list[Hook]:
        return list(self._hooks.get(event_type, []))

    async def run(self, delivery: Delivery) -> int:
        """Run every hook for the delivery's event type.

        Returns the number of hooks that completed without raising.
        """
        hooks = self.hooks_for(delivery.event_type)
        if not hooks:
            logger.debug("No business hook for event type %s", delivery.event_type)
            return 0

        completed = 0
        for hook in hooks:
            try:
                result = hook(delivery)
                if inspect.isawaitable(result):
                    await result
                completed += 1
            except Exception:
                # Business errors never fail the webhook
                logger.exception(
                    "Business hook %s failed for %s (%s)",
                    getattr(hook, "__name__", repr(hook)),
                    delivery.delivery_id,
                    delivery.event_type,
                )
        return completed
