"""
בדיקות לחתימת Replicate (HMAC-SHA256, חלון timestamp, rotation)
"""
import base64
import hashlib
import hmac

import pytest

from app.api.dependencies.webhook_auth import (
    compute_replicate_signature,
    verify_replicate_signature,
)

SECRET = "whsec_" + base64.b64encode(b"signing-key").decode()
BODY = b'{"id":"job_1","status":"succeeded"}'
NOW = 1_760_000_000


class TestComputeSignature:

    @pytest.mark.unit
    def test_matches_manual_hmac(self):
        signature = compute_replicate_signature(SECRET, "msg_1", str(NOW), BODY)

        digest = hmac.new(b"signing-key", f"msg_1.{NOW}.".encode() + BODY, hashlib.sha256).digest()
        assert signature == "v1," + base64.b64encode(digest).decode()

    @pytest.mark.unit
    def test_body_change_changes_signature(self):
        first = compute_replicate_signature(SECRET, "msg_1", str(NOW), BODY)
        second = compute_replicate_signature(SECRET, "msg_1", str(NOW), BODY + b" ")
        assert first != second


class TestVerifySignature:

    def _sign(self, timestamp=NOW, body=BODY, secret=SECRET):
        return compute_replicate_signature(secret, "msg_1", str(timestamp), body)

    @pytest.mark.unit
    def test_valid_signature(self):
        assert verify_replicate_signature(SECRET, "msg_1", str(NOW), self._sign(), BODY, now=NOW) is None

    @pytest.mark.unit
    def test_within_tolerance(self):
        assert verify_replicate_signature(
            SECRET, "msg_1", str(NOW), self._sign(), BODY, now=NOW + 299
        ) is None

    @pytest.mark.unit
    def test_stale_timestamp_rejected(self):
        reason = verify_replicate_signature(SECRET, "msg_1", str(NOW), self._sign(), BODY, now=NOW + 301)
        assert reason == "timestamp outside tolerance"

    @pytest.mark.unit
    def test_future_timestamp_rejected(self):
        reason = verify_replicate_signature(SECRET, "msg_1", str(NOW), self._sign(), BODY, now=NOW - 301)
        assert reason == "timestamp outside tolerance"

    @pytest.mark.unit
    def test_tampered_body(self):
        reason = verify_replicate_signature(
            SECRET, "msg_1", str(NOW), self._sign(), BODY + b"x", now=NOW
        )
        assert reason == "signature mismatch"

    @pytest.mark.unit
    def test_rotated_signatures(self):
        old = compute_replicate_signature("whsec_" + base64.b64encode(b"old").decode(), "msg_1", str(NOW), BODY)
        header = f"{old} {self._sign()}"
        assert verify_replicate_signature(SECRET, "msg_1", str(NOW), header, BODY, now=NOW) is None

    @pytest.mark.unit
    def test_unknown_version_ignored(self):
        value = self._sign().split(",", 1)[1]
        reason = verify_replicate_signature(SECRET, "msg_1", str(NOW), f"v2,{value}", BODY, now=NOW)
        assert reason == "signature mismatch"

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "webhook_id, timestamp, header",
        [(None, str(NOW), "v1,x"), ("msg_1", None, "v1,x"), ("msg_1", str(NOW), None)],
    )
    def test_missing_headers(self, webhook_id, timestamp, header):
        reason = verify_replicate_signature(SECRET, webhook_id, timestamp, header, BODY, now=NOW)
        assert reason == "missing signature headers"

    @pytest.mark.unit
    def test_non_numeric_timestamp(self):
        reason = verify_replicate_signature(SECRET, "msg_1", "yesterday", "v1,x", BODY, now=NOW)
        assert reason == "invalid timestamp"

    @pytest.mark.unit
    def test_plain_secret_without_prefix(self):
        signature = compute_replicate_signature("not base64!", "msg_1", str(NOW), BODY)
        assert verify_replicate_signature("not base64!", "msg_1", str(NOW), signature, BODY, now=NOW) is None
