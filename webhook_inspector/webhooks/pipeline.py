"""Ingestion pipeline — one inbound webhook delivery, end to end.

    Received -> (DuplicateShortCircuit | Validated) -> Acknowledged
             -> Persisted -> Classified -> Broadcast -> BusinessHooksRun

Everything up to the acknowledgement decides the HTTP response. The rest
runs in a deferred job started only after the response has been sent, so
acknowledgement latency never depends on storage or fan-out. Errors in the
deferred job are logged; the caller has already been told "received".
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any
from zoneinfo import ZoneInfo

from starlette.concurrency import run_in_threadpool

from webhook_inspector.errors import (
    DuplicateDeliveryError,
    ErrorCode,
    MalformedPayloadError,
    SignatureError,
    StorageUnavailableError,
)
from webhook_inspector.events import BroadcastHub
from webhook_inspector.models import INVALID_PAYLOAD_EVENT, Delivery, decode_body, load_json
from webhook_inspector.storage.base import WebhookStore
from webhook_inspector.timeutils import utcnow
from webhook_inspector.webhooks.classifier import (
    classify_event,
    detect_mobile_money_provider,
    extract_tenant_id,
)
from webhook_inspector.webhooks.hooks import HookRegistry
from webhook_inspector.webhooks.idempotency import Deduplicator
from webhook_inspector.webhooks.verification import (
    SignatureErrorCode,
    SignatureVerifier,
    extract_signature,
)

logger = logging.getLogger(__name__)

_DELIVERY_HEADERS = ("x-genuka-delivery", "x-delivery-id")
_TENANT_HEADERS = ("x-genuka-company", "x-company-id")

ACK_MESSAGE = "Webhook received"
DUPLICATE_MESSAGE = "Webhook already processed"


@dataclass
class InboundDelivery:
    """What the HTTP layer hands to the pipeline."""

    body: bytes
    headers: list[tuple[str, str]]
    source_ip: str | None = None
    received_at: float = field(default_factory=time.monotonic)

    def __post_init__(self) -> None:
        self.headers = [(name.lower(), value) for name, value in self.headers]

    def header(self, *names: str) -> str | None:
        for name in names:
            for key, value in self.headers:
                if key == name and value:
                    return value
        return None


@dataclass
class DeferredJob:
    """Post-acknowledgement work for one delivery."""

    delivery: Delivery


@dataclass
class IngestResult:
    status_code: int
    body: dict[str, Any]
    job: DeferredJob | None = None


@dataclass
class _SignatureCheck:
    valid: bool = True
    error: str | None = None
    reject: ErrorCode | None = None


def invalid_record_key(delivery_id: str, record_id: str) -> str:
    """Storage key for an unparseable body; leaves the delivery id free for a retry."""
    return f"{delivery_id}#invalid-{record_id[:8]}"


def _elapsed_ms(started: float) -> int:
    return max(int((time.monotonic() - started) * 1000), 0)


def _audit(delivery_id: str, event_type: str, status: str) -> None:
    """Audit log for webhook activity."""
    logger.info("WEBHOOK_AUDIT delivery=%s event=%s status=%s", delivery_id, event_type, status)


class IngestionPipeline:
    """Validates, acknowledges, then records and fans out deliveries."""

    def __init__(
        self,
        store: WebhookStore,
        hub: BroadcastHub,
        deduplicator: Deduplicator,
        verifier: SignatureVerifier,
        hooks: HookRegistry | None = None,
        *,
        strict_signatures: bool = False,
        tz: ZoneInfo | None = None,
    ) -> None:
        self.store = store
        self.hub = hub
        self.deduplicator = deduplicator
        self.verifier = verifier
        self.hooks = hooks if hooks is not None else HookRegistry()
        self.strict_signatures = strict_signatures
        self.tz = tz
        self._pending: set[asyncio.Task] = set()

    # ── Before the acknowledgement ────────────────────────────────────────

    def ingest(self, inbound: InboundDelivery) -> IngestResult:
        """Decide the HTTP response for a delivery; never touches storage."""
        started = inbound.received_at
        delivery_id = inbound.header(*_DELIVERY_HEADERS) or str(uuid.uuid4())
        signature = extract_signature(inbound.headers)
        user_agent = inbound.header("user-agent")

        # 1. Idempotency
        if self.deduplicator.seen_before(delivery_id):
            _audit(delivery_id, "-", "duplicate")
            return self._duplicate(delivery_id)

        raw_payload = decode_body(inbound.body)

        # 2. Signature policy
        check = self._check_signature(inbound.body, signature, delivery_id)

        # 3. Parse
        try:
            payload = load_json(inbound.body)
        except ValueError as exc:
            # Not marked seen; stored under its own key so a corrected
            # retry with the same delivery id is still accepted.
            _audit(delivery_id, INVALID_PAYLOAD_EVENT, "invalid_json")
            record_id = uuid.uuid4().hex
            delivery = Delivery(
                id=record_id,
                delivery_id=invalid_record_key(delivery_id, record_id),
                event_type=INVALID_PAYLOAD_EVENT,
                tenant_id=inbound.header(*_TENANT_HEADERS),
                raw_payload=raw_payload,
                parsed_payload=None,
                is_json=False,
                headers=tuple(inbound.headers),
                signature=signature,
                signature_valid=check.valid,
                signature_error=check.error,
                source_ip=inbound.source_ip,
                user_agent=user_agent,
                received_at=utcnow(),
                processing_time_ms=_elapsed_ms(started),
            )
            error = MalformedPayloadError(f"Invalid JSON payload: {exc}")
            return IngestResult(error.status_code, {
                **error.to_dict(),
                "received": False,
                "delivery_id": delivery_id,
                "event_type": INVALID_PAYLOAD_EVENT,
            }, DeferredJob(delivery))

        if check.reject is not None:
            if check.reject is ErrorCode.MISSING_SIGNATURE and not signature:
                _audit(delivery_id, "-", "signature_missing")
                return self._reject(delivery_id, "Signature missing", check.reject)
            _audit(delivery_id, "-", "signature_failed")
            return self._reject(delivery_id, "Invalid signature", check.reject)

        # 4. Classify (pure, cheap)
        event_type = classify_event(payload, inbound.headers)
        tenant_id = extract_tenant_id(payload, inbound.headers) or inbound.header(*_TENANT_HEADERS)

        delivery = Delivery(
            id=uuid.uuid4().hex,
            delivery_id=delivery_id,
            event_type=event_type,
            tenant_id=tenant_id,
            raw_payload=raw_payload,
            parsed_payload=payload,
            is_json=True,
            headers=tuple(inbound.headers),
            signature=signature,
            signature_valid=check.valid,
            signature_error=check.error,
            source_ip=inbound.source_ip,
            user_agent=user_agent,
            received_at=utcnow(),
            processing_time_ms=_elapsed_ms(started),
            mobile_provider=detect_mobile_money_provider(payload),
        )

        # 5. Reserve the id; a concurrent copy may have claimed it since step 1
        if self.deduplicator.check_and_mark(delivery_id):
            _audit(delivery_id, event_type, "duplicate")
            return self._duplicate(delivery_id)
        _audit(delivery_id, event_type, "accepted")

        # 6. Acknowledge
        return IngestResult(200, {
            "received": True,
            "success": True,
            "delivery_id": delivery_id,
            "webhook_id": delivery.id,
            "event_type": event_type,
            "company_id": tenant_id,
            "is_valid_signature": check.valid,
            "signature_error": check.error,
            "mobile_provider": delivery.mobile_provider,
            "processing_time_ms": _elapsed_ms(started),
            "message": ACK_MESSAGE,
        }, DeferredJob(delivery))

    def _check_signature(self, body: bytes, signature: str | None, delivery_id: str) -> _SignatureCheck:
        if not self.verifier.configured:
            logger.warning("Webhook secret not configured, accepting %s unverified", delivery_id)
            return _SignatureCheck()
        if not signature:
            logger.warning("No signature provided for %s", delivery_id)
            if self.strict_signatures:
                return _SignatureCheck(reject=ErrorCode.MISSING_SIGNATURE)
            return _SignatureCheck()

        result = self.verifier.verify(body, signature)
        if result.valid:
            return _SignatureCheck()
        logger.warning("Invalid signature for %s: %s", delivery_id, result.error_code.value)
        check = _SignatureCheck(valid=False, error=result.error)
        if self.strict_signatures:
            check.reject = (
                ErrorCode.MISSING_SIGNATURE
                if result.error_code is SignatureErrorCode.MISSING_SIGNATURE
                else ErrorCode.INVALID_SIGNATURE
            )
        return check

    @staticmethod
    def _duplicate(delivery_id: str) -> IngestResult:
        return IngestResult(200, {
            "received": True,
            "success": True,
            "delivery_id": delivery_id,
            "already_processed": True,
            "message": DUPLICATE_MESSAGE,
        })

    def _reject(self, delivery_id: str, message: str, code: ErrorCode) -> IngestResult:
        error = SignatureError(message, code)
        return IngestResult(error.status_code, {
            **error.to_dict(),
            "received": False,
            "delivery_id": delivery_id,
        })

    # ── After the acknowledgement ─────────────────────────────────────────

    async def process(self, job: DeferredJob) -> bool:
        """Persist, broadcast, run hooks. Returns True if persisted.

        The delivery id was already reserved by ingest().
        """
        delivery = job.delivery

        try:
            await run_in_threadpool(self.store.insert, delivery)
        except DuplicateDeliveryError:
            logger.info("Delivery %s already stored, skipping", delivery.delivery_id)
            return False
        except StorageUnavailableError:
            # already acknowledged; logged only
            logger.error("Could not persist delivery %s: storage unavailable", delivery.delivery_id)
            return False
        except Exception:
            logger.exception("Could not persist delivery %s", delivery.delivery_id)
            return False
        logger.debug("Delivery %s stored as %s", delivery.delivery_id, delivery.id)

        try:
            stats = await run_in_threadpool(self.store.stats, self.tz)
            self.hub.broadcast_webhook(delivery.to_dict(self.tz), stats.to_dict())
        except Exception:
            logger.warning("Broadcast failed for %s", delivery.delivery_id, exc_info=True)

        await self.hooks.run(delivery)
        return True

    async def _run(self, job: DeferredJob) -> None:
        try:
            await self.process(job)
        except Exception:
            logger.exception("Deferred processing failed for %s", job.delivery.delivery_id)

    def spawn(self, job: DeferredJob) -> asyncio.Task:
        """Start a tracked deferred job; drain() awaits it on shutdown."""
        task = asyncio.get_running_loop().create_task(self._run(job))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def run_deferred(self, job: DeferredJob) -> None:
        """Background-task entry point: spawn, then wait without cancelling it."""
        await asyncio.shield(self.spawn(job))

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self, timeout: float | None = 30.0) -> None:
        """Wait for in-flight deferred jobs (graceful shutdown)."""
        if not self._pending:
            return
        logger.info("Waiting for %d in-flight deliveries", len(self._pending))
        done, still_pending = await asyncio.wait(set(self._pending), timeout=timeout)
        if still_pending:
            logger.error("%d deliveries still processing at shutdown", len(still_pending))
