"""Durable record of received webhook deliveries."""

from webhook_inspector.storage.base import WebhookStore, build_store

__all__ = ["WebhookStore", "build_store"]
