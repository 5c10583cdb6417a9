"""Tests for outbound webhook signing and verification."""

import hashlib
import hmac
import time

import pytest

from core.webhook_signing import (
    DELIVERY_HEADER,
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    generate_webhook_secret,
    sign_webhook_payload,
    verify_webhook_signature,
)


@pytest.mark.unit
class TestSignWebhookPayload:
    def test_returns_signature_headers_only(self):
        headers = sign_webhook_payload(b'{"id":1}', "secret123")
        assert set(headers) == {SIGNATURE_HEADER, TIMESTAMP_HEADER, DELIVERY_HEADER}

    def test_signature_is_hmac_over_timestamp_and_body(self):
        headers = sign_webhook_payload(b'{"id":1}', "secret", timestamp=1700000000)

        expected = hmac.new(b"secret", b'1700000000.{"id":1}', hashlib.sha256).hexdigest()
        assert headers[SIGNATURE_HEADER] == f"sha256={expected}"
        assert headers[TIMESTAMP_HEADER] == "1700000000"

    def test_custom_delivery_id(self):
        headers = sign_webhook_payload(b"test", "secret", delivery_id="delivery-1")
        assert headers[DELIVERY_HEADER] == "delivery-1"

    def test_delivery_ids_are_unique(self):
        first = sign_webhook_payload(b"test", "secret")
        second = sign_webhook_payload(b"test", "secret")
        assert first[DELIVERY_HEADER] != second[DELIVERY_HEADER]

    def test_secret_changes_signature(self):
        h1 = sign_webhook_payload(b"payload", "secret1", timestamp=1000)
        h2 = sign_webhook_payload(b"payload", "secret2", timestamp=1000)
        assert h1[SIGNATURE_HEADER] != h2[SIGNATURE_HEADER]


@pytest.mark.unit
class TestVerifyWebhookSignature:
    def _verify(self, payload, secret, headers, **kwargs):
        return verify_webhook_signature(
            payload, secret, headers[SIGNATURE_HEADER], headers[TIMESTAMP_HEADER], **kwargs
        )

    def test_valid_signature(self):
        payload = b'{"status":"resolved"}'
        headers = sign_webhook_payload(payload, "test-secret")
        assert self._verify(payload, "test-secret", headers) is True

    def test_wrong_secret(self):
        headers = sign_webhook_payload(b"test", "correct-secret")
        assert self._verify(b"test", "wrong-secret", headers) is False

    def test_tampered_payload(self):
        headers = sign_webhook_payload(b"original", "secret")
        assert self._verify(b"tampered", "secret", headers) is False

    def test_expired_timestamp(self):
        headers = sign_webhook_payload(b"test", "secret", timestamp=int(time.time()) - 600)
        assert self._verify(b"test", "secret", headers, tolerance=300) is False

    def test_clock_skew_within_tolerance(self):
        headers = sign_webhook_payload(b"test", "secret", timestamp=int(time.time()) + 60)
        assert self._verify(b"test", "secret", headers, tolerance=300) is True

    def test_malformed_headers(self):
        now = str(int(time.time()))
        assert verify_webhook_signature(b"test", "secret", "invalid-format", now) is False
        headers = sign_webhook_payload(b"test", "secret")
        assert verify_webhook_signature(b"test", "secret", headers[SIGNATURE_HEADER], "soon") is False


@pytest.mark.unit
class TestGenerateWebhookSecret:
    def test_format(self):
        secret = generate_webhook_secret()
        assert secret.startswith("whsec_")
        assert len(secret) > 40

    def test_uniqueness(self):
        assert len({generate_webhook_secret() for _ in range(100)}) == 100
