"""Tests for webhook HMAC signing and verification."""

import pytest

from app.services.integrations.webhook_security import (
    sign_payload,
    sign_payload_hex,
    sign_timestamped,
    verify_signature,
    verify_timestamped_signature,
)

SECRET = "whsec_test"
BODY = b'{"disbursement_id": 42, "status": "SUCCESS"}'


class TestVerifySignature:
    def test_base64_signature(self):
        assert verify_signature(SECRET, BODY, sign_payload(SECRET, BODY))

    def test_hex_signature(self):
        signature = sign_payload_hex(SECRET, BODY)
        assert signature.startswith("sha256=")
        assert verify_signature(SECRET, BODY, signature)

    def test_tampered_body(self):
        signature = sign_payload(SECRET, BODY)
        assert not verify_signature(SECRET, BODY + b" ", signature)

    def test_wrong_secret(self):
        assert not verify_signature(SECRET, BODY, sign_payload("other", BODY))

    @pytest.mark.parametrize("secret, signature", [("", "abc"), (SECRET, None), (SECRET, "")])
    def test_missing_inputs(self, secret, signature):
        assert not verify_signature(secret, BODY, signature)


class TestTimestampedSignature:
    def test_within_tolerance(self):
        signature = sign_timestamped(SECRET, BODY, 1_700_000_000)
        assert verify_timestamped_signature(
            SECRET, BODY, signature, "1700000000", tolerance_seconds=300, now=1_700_000_100,
        )

    def test_stale_timestamp(self):
        signature = sign_timestamped(SECRET, BODY, 1_700_000_000)
        assert not verify_timestamped_signature(
            SECRET, BODY, signature, "1700000000", tolerance_seconds=300, now=1_700_000_301,
        )

    def test_timestamp_is_signed(self):
        signature = sign_timestamped(SECRET, BODY, 1_700_000_000)
        assert not verify_timestamped_signature(
            SECRET, BODY, signature, "1700000001", now=1_700_000_000,
        )

    def test_non_numeric_timestamp(self):
        assert not verify_timestamped_signature(SECRET, BODY, "sig", "yesterday")
