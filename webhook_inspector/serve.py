"""Webhook inspector server.

Run with:  python -m webhook_inspector.serve
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI
from starlette.concurrency import run_in_threadpool

from webhook_inspector import __version__
from webhook_inspector.api import live_router, router
from webhook_inspector.config import Settings, get_settings
from webhook_inspector.events import BroadcastHub
from webhook_inspector.security.middleware import build_limiter, install_security_middleware
from webhook_inspector.storage import WebhookStore, build_store
from webhook_inspector.webhooks.handlers import register_webhook_routes
from webhook_inspector.webhooks.hooks import HookRegistry
from webhook_inspector.webhooks.idempotency import Deduplicator, build_deduplicator
from webhook_inspector.webhooks.pipeline import IngestionPipeline
from webhook_inspector.webhooks.verification import SignatureVerifier

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Single stream handler on the root logger."""
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT, force=True)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


async def run_retention(store: WebhookStore, settings: Settings) -> int:
    """One retention pass; errors are logged, never raised."""
    try:
        deleted = await run_in_threadpool(
            store.delete_older_than_or_beyond_count,
            settings.retention_days,
            settings.keep_count,
        )
    except Exception:
        logger.exception("Retention pass failed")
        return 0
    logger.info("Retention pass complete: %d deliveries removed", deleted)
    return deleted


async def _retention_loop(store: WebhookStore, settings: Settings) -> None:
    while True:
        await asyncio.sleep(settings.retention_interval_seconds)
        await run_retention(store, settings)


async def _cancel(task: asyncio.Task | None) -> None:
    if task is None:
        return
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task


@asynccontextmanager
async def lifespan(app: FastAPI):
    state = app.state
    settings: Settings = state.settings

    await run_in_threadpool(state.store.init)
    state.started_at = time.monotonic()

    heartbeat = asyncio.create_task(state.hub.run_heartbeat(settings.heartbeat_interval_seconds))
    retention = None
    if settings.retention_interval_seconds > 0:
        retention = asyncio.create_task(_retention_loop(state.store, settings))

    logger.info(
        "Webhook inspector %s started (store=%s, dedup=%s, strict_signatures=%s, tz=%s)",
        __version__,
        type(state.store).__name__,
        type(state.pipeline.deduplicator).__name__,
        settings.strict_signatures,
        settings.timezone,
    )
    if not settings.webhook_secret:
        logger.warning("INSPECTOR_WEBHOOK_SECRET not set: signatures will not be verified")

    try:
        yield
    finally:
        logger.info("Shutting down webhook inspector")
        await _cancel(heartbeat)
        await _cancel(retention)
        await state.pipeline.drain()
        await state.hub.close_all()
        await run_in_threadpool(state.store.close)


def create_app(
    settings: Settings | None = None,
    store: WebhookStore | None = None,
    deduplicator: Deduplicator | None = None,
    hooks: HookRegistry | None = None,
    replay_transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Build the application; components default from settings."""
    settings = settings or get_settings()

    app = FastAPI(
        title="Webhook Inspector",
        description="Receives, verifies, records and streams webhook deliveries",
        version=__version__,
        lifespan=lifespan,
    )

    hub = BroadcastHub()
    if store is None:
        store = build_store(settings)
    if deduplicator is None:
        deduplicator = build_deduplicator(settings)
    pipeline = IngestionPipeline(
        store=store,
        hub=hub,
        deduplicator=deduplicator,
        verifier=SignatureVerifier(settings.webhook_secret),
        hooks=hooks,
        strict_signatures=settings.strict_signatures,
        tz=settings.tz,
    )

    app.state.settings = settings
    app.state.store = store
    app.state.hub = hub
    app.state.pipeline = pipeline
    app.state.started_at = time.monotonic()
    # None: httpx default network transport
    app.state.replay_transport = replay_transport

    limiter = build_limiter()
    register_webhook_routes(app, limiter, settings.rate_limit)
    app.include_router(router)
    app.include_router(live_router)
    install_security_middleware(app, settings, limiter)
    return app


def main() -> None:
    import uvicorn

    settings = get_settings()
    configure_logging(settings.log_level)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    main()
