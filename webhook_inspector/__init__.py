"""Webhook inspector — receive, verify, record and stream inbound webhooks."""

__version__ = "2.0.0"
