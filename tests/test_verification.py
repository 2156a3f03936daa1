"""Tests for webhook signature verification (constant-time HMAC-SHA256)."""

from __future__ import annotations

import hashlib
import hmac

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from webhook_inspector.errors import MissingSecretError
from webhook_inspector.webhooks.verification import (
    SignatureErrorCode,
    SignatureVerifier,
    extract_signature,
    generate_signature,
    is_valid_format,
    verify_signature,
)

SECRET = "genuka-test-secret"


def _hex(body: bytes, secret: str = SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


class TestVerifySignature:
    """verify_signature accepts prefixed and bare hex digests."""

    def test_valid_prefixed_signature(self):
        body = b'{"event": "order.created"}'
        result = verify_signature(body, "sha256=" + _hex(body), SECRET)
        assert result.valid is True
        assert result.error is None

    def test_valid_bare_signature(self):
        body = b'{"event": "order.created"}'
        assert verify_signature(body, _hex(body), SECRET).valid is True

    def test_prefix_is_case_insensitive(self):
        body = b"payload"
        assert verify_signature(body, "SHA256=" + _hex(body), SECRET).valid is True

    def test_uppercase_hex_accepted(self):
        body = b"payload"
        assert verify_signature(body, _hex(body).upper(), SECRET).valid is True

    def test_str_payload_is_utf8_encoded(self):
        text = '{"name": "Épicerie Douala"}'
        assert verify_signature(text, _hex(text.encode("utf-8")), SECRET).valid is True

    def test_tampered_body(self):
        sig = "sha256=" + _hex(b'{"id": 123}')
        result = verify_signature(b'{"id": 456}', sig, SECRET)
        assert result.valid is False
        assert result.error_code is SignatureErrorCode.MISMATCH

    def test_wrong_secret(self):
        body = b"payload"
        result = verify_signature(body, _hex(body, "other-secret"), SECRET)
        assert result.error_code is SignatureErrorCode.MISMATCH

    def test_missing_secret(self):
        result = verify_signature(b"payload", "sha256=" + _hex(b"payload"), "")
        assert result.valid is False
        assert result.error_code is SignatureErrorCode.MISSING_SECRET

    @pytest.mark.parametrize("signature", [None, "", "   "])
    def test_missing_signature(self, signature):
        result = verify_signature(b"payload", signature, SECRET)
        assert result.error_code is SignatureErrorCode.MISSING_SIGNATURE

    def test_non_hex_signature(self):
        result = verify_signature(b"payload", "sha256=not-hex-at-all", SECRET)
        assert result.error_code is SignatureErrorCode.MALFORMED_SIGNATURE

    def test_odd_length_hex(self):
        result = verify_signature(b"payload", "abc", SECRET)
        assert result.error_code is SignatureErrorCode.MALFORMED_SIGNATURE

    def test_short_signature_is_length_mismatch(self):
        result = verify_signature(b"payload", "sha256=abcd", SECRET)
        assert result.error_code is SignatureErrorCode.LENGTH_MISMATCH

    def test_result_to_dict(self):
        result = verify_signature(b"payload", "sha256=abcd", SECRET)
        assert result.to_dict() == {
            "is_valid": False,
            "error": "Invalid signature length",
            "error_code": "length_mismatch",
        }


class TestGenerateSignature:
    def test_format(self):
        sig = generate_signature(b"payload", SECRET)
        assert sig == "sha256=" + _hex(b"payload")
        assert is_valid_format(sig)

    def test_missing_secret_raises(self):
        with pytest.raises(MissingSecretError):
            generate_signature(b"payload", "")

    def test_verifier_round_trip(self):
        verifier = SignatureVerifier(SECRET)
        assert verifier.configured is True
        assert verifier.verify(b"body", verifier.generate(b"body")).valid is True

    def test_unconfigured_verifier(self):
        verifier = SignatureVerifier(None)
        assert verifier.configured is False
        assert verifier.verify(b"body", "sha256=" + _hex(b"body")).error_code is SignatureErrorCode.MISSING_SECRET


class TestSignatureProperties:
    """Round trip and bit-flip rejection over arbitrary bodies and secrets."""

    @given(st.binary(max_size=2048), st.text(min_size=1, max_size=64))
    @settings(max_examples=100)
    def test_generated_signature_always_verifies(self, body, secret):
        assert verify_signature(body, generate_signature(body, secret), secret).valid is True

    @given(st.binary(min_size=1, max_size=1024), st.data())
    @settings(max_examples=100)
    def test_single_bit_flip_in_body_rejected(self, body, data):
        sig = generate_signature(body, SECRET)
        index = data.draw(st.integers(min_value=0, max_value=len(body) - 1))
        bit = data.draw(st.integers(min_value=0, max_value=7))
        flipped = bytearray(body)
        flipped[index] ^= 1 << bit
        assert verify_signature(bytes(flipped), sig, SECRET).valid is False

    @given(st.binary(max_size=512), st.data())
    @settings(max_examples=100)
    def test_single_bit_flip_in_signature_rejected(self, body, data):
        digest = bytearray(bytes.fromhex(generate_signature(body, SECRET)[len("sha256="):]))
        index = data.draw(st.integers(min_value=0, max_value=len(digest) - 1))
        bit = data.draw(st.integers(min_value=0, max_value=7))
        digest[index] ^= 1 << bit
        assert verify_signature(body, "sha256=" + digest.hex(), SECRET).valid is False


class TestSignatureFormat:
    @pytest.mark.parametrize(
        "signature,expected",
        [
            ("sha256=" + "a" * 64, True),
            ("A" * 64, True),
            ("sha256=" + "a" * 63, False),
            ("sha1=" + "a" * 64, False),
            ("g" * 64, False),
            ("", False),
            (None, False),
        ],
    )
    def test_is_valid_format(self, signature, expected):
        assert is_valid_format(signature) is expected


class TestExtractSignature:
    def test_header_lookup_order(self):
        headers = {"signature": "last", "X-Hub-Signature-256": "second", "x-signature": "first"}
        assert extract_signature(headers) == "first"

    def test_case_insensitive_pairs(self):
        assert extract_signature([("X-Genuka-Signature", "sha256=abc")]) == "sha256=abc"

    def test_empty_value_skipped(self):
        assert extract_signature({"x-signature": "", "x-webhook-signature": "v"}) == "v"

    def test_no_signature_header(self):
        assert extract_signature({"content-type": "application/json"}) is None
