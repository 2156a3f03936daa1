"""Webhook signature verification — constant-time HMAC-SHA256.

Security contract:
- HMAC is computed over the raw body bytes, never a re-serialized payload
- All comparisons use hmac.compare_digest() (constant-time, no timing attacks)
- Accepts "sha256=<hex>" (Spatie/Laravel style) or a bare hex digest
- Verification is pure and safe to call from concurrent requests
"""

from __future__ import annotations

import binascii
import hashlib
import hmac
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Mapping

from webhook_inspector.errors import MissingSecretError

logger = logging.getLogger(__name__)

_PREFIX = "sha256="

# Header names carrying the signature, in lookup order
SIGNATURE_HEADERS = (
    "x-signature",
    "x-hub-signature-256",
    "x-genuka-signature",
    "x-webhook-signature",
    "signature",
)

_PREFIXED_FORMAT = re.compile(r"^sha256=[a-f0-9]{64}$", re.IGNORECASE)
_BARE_FORMAT = re.compile(r"^[a-f0-9]{64}$", re.IGNORECASE)


class SignatureErrorCode(str, Enum):
    MISSING_SECRET = "missing_secret"
    MISSING_SIGNATURE = "missing_signature"
    MALFORMED_SIGNATURE = "malformed_signature"
    LENGTH_MISMATCH = "length_mismatch"
    MISMATCH = "mismatch"


_MESSAGES = {
    SignatureErrorCode.MISSING_SECRET: "No webhook secret configured",
    SignatureErrorCode.MISSING_SIGNATURE: "Signature missing",
    SignatureErrorCode.MALFORMED_SIGNATURE: "Signature is not a hex digest",
    SignatureErrorCode.LENGTH_MISMATCH: "Invalid signature length",
    SignatureErrorCode.MISMATCH: "Invalid HMAC-SHA256 signature",
}


@dataclass(frozen=True)
class SignatureResult:
    """Outcome of a signature check."""

    valid: bool
    error_code: SignatureErrorCode | None = None

    @property
    def error(self) -> str | None:
        return _MESSAGES[self.error_code] if self.error_code else None

    def to_dict(self) -> dict[str, object]:
        return {
            "is_valid": self.valid,
            "error": self.error,
            "error_code": self.error_code.value if self.error_code else None,
        }


def _failure(code: SignatureErrorCode) -> SignatureResult:
    return SignatureResult(valid=False, error_code=code)


def _strip_prefix(signature: str) -> str:
    signature = signature.strip()
    if signature[: len(_PREFIX)].lower() == _PREFIX:
        return signature[len(_PREFIX):]
    return signature


def _as_bytes(value: bytes | str) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else value


def _digest(payload: bytes, secret: str) -> bytes:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).digest()


def verify_signature(
    payload: bytes | str,
    received_signature: str | None,
    secret: str | None,
) -> SignatureResult:
    """Verify an HMAC-SHA256 signature over the raw payload.

    Args:
        payload: Raw request body (str is encoded as UTF-8)
        received_signature: Signature header value, with or without "sha256="
        secret: Shared webhook secret

    Returns:
        SignatureResult; valid=False carries the failure reason
    """
    if not secret:
        return _failure(SignatureErrorCode.MISSING_SECRET)
    if not received_signature or not received_signature.strip():
        return _failure(SignatureErrorCode.MISSING_SIGNATURE)

    try:
        received = binascii.unhexlify(_strip_prefix(received_signature))
    except (binascii.Error, ValueError):
        return _failure(SignatureErrorCode.MALFORMED_SIGNATURE)

    expected = _digest(_as_bytes(payload), secret)
    if len(received) != len(expected):
        return _failure(SignatureErrorCode.LENGTH_MISMATCH)
    if not hmac.compare_digest(received, expected):
        return _failure(SignatureErrorCode.MISMATCH)
    return SignatureResult(valid=True)


def generate_signature(payload: bytes | str, secret: str) -> str:
    """Return the "sha256=<hex>" signature for a payload (test/replay tooling)."""
    if not secret:
        raise MissingSecretError()
    return _PREFIX + _digest(_as_bytes(payload), secret).hex()


def is_valid_format(signature: str | None) -> bool:
    """True for "sha256=" + 64 hex chars, or 64 bare hex chars."""
    if not signature or not isinstance(signature, str):
        return False
    return bool(_PREFIXED_FORMAT.match(signature) or _BARE_FORMAT.match(signature))


def extract_signature(headers: Mapping[str, str] | Iterable[tuple[str, str]]) -> str | None:
    """Find the signature among request headers (case-insensitive)."""
    items = headers.items() if isinstance(headers, Mapping) else headers
    lowered: dict[str, str] = {}
    for name, value in items:
        lowered.setdefault(name.lower(), value)
    for header_name in SIGNATURE_HEADERS:
        value = lowered.get(header_name)
        if value:
            return value
    return None


class SignatureVerifier:
    """Holds the configured secret for the ingestion pipeline."""

    def __init__(self, secret: str | None) -> None:
        self._secret = secret or ""

    @property
    def configured(self) -> bool:
        return bool(self._secret)

    def verify(self, payload: bytes | str, signature: str | None) -> SignatureResult:
        return verify_signature(payload, signature, self._secret)

    def generate(self, payload: bytes | str) -> str:
        return generate_signature(payload, self._secret)
