"""Tests for webhook signature helpers."""

import hashlib
import hmac
import time

from integration_sync_backend.sync.signatures import (
    compute_hmac_sha256,
    is_timestamp_fresh,
    normalize_headers,
    verify_hmac_signature,
)


def _sign(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


class TestVerifyHmacSignature:
    def test_accepts_matching_signature(self):
        body = b'{"action":"opened"}'
        assert verify_hmac_signature("s3cret", body, "sha256=" + _sign("s3cret", body), "sha256=")

    def test_rejects_tampered_body(self):
        signature = "sha256=" + _sign("s3cret", b"original")
        assert not verify_hmac_signature("s3cret", b"tampered", signature, "sha256=")

    def test_rejects_missing_prefix(self):
        body = b"payload"
        assert not verify_hmac_signature("s3cret", body, _sign("s3cret", body), "sha256=")

    def test_rejects_when_secret_or_signature_missing(self):
        assert not verify_hmac_signature(None, b"x", "sha256=abc", "sha256=")
        assert not verify_hmac_signature("s", b"x", None)
        assert not verify_hmac_signature("s", None, "abc")

    def test_accepts_str_payload(self):
        assert verify_hmac_signature("k", "text", compute_hmac_sha256("k", b"text"))


class TestTimestampFreshness:
    def test_recent_timestamp_is_fresh(self):
        assert is_timestamp_fresh(str(int(time.time()) - 10))

    def test_old_timestamp_is_stale(self):
        assert not is_timestamp_fresh("1000", now=1000 + 301)

    def test_malformed_timestamp_is_stale(self):
        assert not is_timestamp_fresh("yesterday")
        assert not is_timestamp_fresh(None)


def test_normalize_headers_lowercases_names():
    assert normalize_headers({"X-Hub-Signature-256": "v"}) == {"x-hub-signature-256": "v"}
