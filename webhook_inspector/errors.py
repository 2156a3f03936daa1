"""Error taxonomy for the webhook inspector.

Every user-visible failure is rendered as a JSON body carrying a stable
``code`` (see security/middleware.py). Errors raised after the webhook
acknowledgement has been sent are logged only.
"""

from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    """Stable error codes returned in JSON error bodies."""

    INVALID_JSON = "INVALID_JSON"
    MISSING_SECRET = "MISSING_SECRET"
    MISSING_SIGNATURE = "MISSING_SIGNATURE"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    DUPLICATE_DELIVERY = "DUPLICATE_DELIVERY"
    STORAGE_UNAVAILABLE = "STORAGE_UNAVAILABLE"
    REPLAY_TARGET_UNREACHABLE = "REPLAY_TARGET_UNREACHABLE"
    BROADCAST_FAILED = "BROADCAST_FAILED"
    NOT_FOUND = "NOT_FOUND"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    PROCESSING_ERROR = "PROCESSING_ERROR"


class WebhookInspectorError(Exception):
    """Base exception for all inspector errors."""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.PROCESSING_ERROR,
        status_code: int = 500,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code

    def to_dict(self) -> dict[str, object]:
        return {"success": False, "error": self.message, "code": self.code.value}


class MalformedPayloadError(WebhookInspectorError):
    """Body is not valid JSON."""

    def __init__(self, message: str) -> None:
        super().__init__(message, ErrorCode.INVALID_JSON, 400)


class SignatureError(WebhookInspectorError):
    """Signature missing or invalid (only raised in strict mode)."""

    def __init__(self, message: str, code: ErrorCode = ErrorCode.INVALID_SIGNATURE) -> None:
        super().__init__(message, code, 401)


class MissingSecretError(WebhookInspectorError):
    """No webhook secret configured."""

    def __init__(self, message: str = "No webhook secret configured") -> None:
        super().__init__(message, ErrorCode.MISSING_SECRET, 400)


class DuplicateDeliveryError(WebhookInspectorError):
    """A delivery with the same delivery_id is already stored."""

    def __init__(self, delivery_id: str) -> None:
        super().__init__(
            f"Delivery {delivery_id} already recorded",
            ErrorCode.DUPLICATE_DELIVERY,
            409,
        )
        self.delivery_id = delivery_id


class StorageUnavailableError(WebhookInspectorError):
    """Backend storage could not be reached."""

    def __init__(self, message: str = "Storage unavailable") -> None:
        super().__init__(message, ErrorCode.STORAGE_UNAVAILABLE, 503)


class NotFoundError(WebhookInspectorError):
    """Requested record does not exist."""

    def __init__(self, message: str = "Webhook not found") -> None:
        super().__init__(message, ErrorCode.NOT_FOUND, 404)


class ReplayTargetUnreachableError(WebhookInspectorError):
    """Replay target could not be reached or timed out."""

    def __init__(self, target_url: str, details: str) -> None:
        super().__init__(
            f"Replay to {target_url} failed",
            ErrorCode.REPLAY_TARGET_UNREACHABLE,
            502,
        )
        self.target_url = target_url
        self.details = details

    def to_dict(self) -> dict[str, object]:
        body = super().to_dict()
        body["details"] = self.details
        return body


class BroadcastDeliveryError(WebhookInspectorError):
    """A single observer connection could not be written to."""

    def __init__(self, connection_id: str) -> None:
        super().__init__(
            f"Could not deliver to connection {connection_id}",
            ErrorCode.BROADCAST_FAILED,
            500,
        )
        self.connection_id = connection_id
