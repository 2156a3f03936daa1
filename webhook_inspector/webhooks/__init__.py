"""Webhook inbound system.

Receives webhook deliveries on POST /webhook. Each delivery is
signature-verified, deduplicated, acknowledged immediately, then
recorded and broadcast asynchronously.
"""
