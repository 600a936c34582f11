"""Webhook origin verification tests"""
import base64

import pytest

from paycore.core.exceptions import AuthenticationFailure
from paycore.core.security import (
    SIGNATURE_HEADER, TIMESTAMP_HEADER, compute_signature, verify_basic_auth,
    verify_signature, verify_webhook_origin
)

BODY = b'{"eventType": "NewSaleSuccess", "eventId": "evt-1"}'


def _basic(user, password):
    return "Basic " + base64.b64encode(f"{user}:{password}".encode()).decode()


@pytest.mark.critical
class TestSignature:
    """HMAC-SHA256 over timestamp + raw body"""

    def test_valid_signature(self):
        sig = compute_signature("secret", "1700000000", BODY)
        assert verify_signature(BODY, sig, "1700000000", "secret")

    def test_uppercase_hex_accepted(self):
        sig = compute_signature("secret", "1700000000", BODY).upper()
        assert verify_signature(BODY, sig, "1700000000", "secret")

    def test_tampered_body_rejected(self):
        sig = compute_signature("secret", "1700000000", BODY)
        assert not verify_signature(BODY + b" ", sig, "1700000000", "secret")

    def test_wrong_secret_rejected(self):
        sig = compute_signature("other", "1700000000", BODY)
        assert not verify_signature(BODY, sig, "1700000000", "secret")

    def test_empty_secret_never_verifies(self):
        sig = compute_signature("", "1700000000", BODY)
        assert not verify_signature(BODY, sig, "1700000000", "")

    def test_stale_timestamp_rejected(self):
        sig = compute_signature("secret", "1700000000", BODY)
        assert not verify_signature(BODY, sig, "1700000000", "secret", tolerance_seconds=300, now=1700000301)

    def test_timestamp_inside_window(self):
        sig = compute_signature("secret", "1700000000", BODY)
        assert verify_signature(BODY, sig, "1700000000", "secret", tolerance_seconds=300, now=1700000299)

    def test_non_numeric_timestamp_with_window(self):
        sig = compute_signature("secret", "yesterday", BODY)
        assert not verify_signature(BODY, sig, "yesterday", "secret", tolerance_seconds=300)


@pytest.mark.critical
class TestBasicAuth:
    """DataLink HTTP Basic credentials"""

    def test_valid_credentials(self):
        assert verify_basic_auth(_basic("u", "p:with:colons"), "u", "p:with:colons")

    def test_wrong_password(self):
        assert not verify_basic_auth(_basic("u", "nope"), "u", "p")

    def test_wrong_scheme(self):
        assert not verify_basic_auth("Bearer abc", "u", "p")

    def test_garbage_encoding(self):
        assert not verify_basic_auth("Basic !!!not-base64!!!", "u", "p")

    def test_unconfigured_credentials_never_verify(self):
        assert not verify_basic_auth(_basic("", ""), "", "")


@pytest.mark.critical
class TestVerifyWebhookOrigin:
    """Authentication runs before anything reads the body"""

    def test_signature_path(self, signed_headers):
        headers = signed_headers(BODY)
        assert verify_webhook_origin(headers, BODY) == "signature"

    def test_bad_signature_is_not_rescued_by_basic_auth(self, signed_headers, basic_auth_header):
        headers = dict(signed_headers(BODY), **basic_auth_header)
        headers[SIGNATURE_HEADER] = "0" * 64
        with pytest.raises(AuthenticationFailure):
            verify_webhook_origin(headers, BODY)

    def test_basic_auth_path(self, basic_auth_header):
        assert verify_webhook_origin(basic_auth_header, BODY) == "basic_auth"

    def test_missing_credentials(self):
        with pytest.raises(AuthenticationFailure):
            verify_webhook_origin({}, BODY)

    def test_bypass_only_in_development(self, override_settings):
        override_settings(WEBHOOK_AUTH_BYPASS=True, ENVIRONMENT="production")
        with pytest.raises(AuthenticationFailure):
            verify_webhook_origin({}, BODY)

        override_settings(ENVIRONMENT="development")
        assert verify_webhook_origin({}, BODY) == "bypass"

    def test_expired_timestamp(self, signed_headers, override_settings):
        override_settings(WEBHOOK_TIMESTAMP_TOLERANCE_SECONDS=60)
        headers = signed_headers(BODY, timestamp=1000)
        with pytest.raises(AuthenticationFailure):
            verify_webhook_origin(headers, BODY)

    def test_timestamp_header_is_part_of_signature(self, signed_headers, override_settings):
        override_settings(WEBHOOK_TIMESTAMP_TOLERANCE_SECONDS=0)
        headers = signed_headers(BODY, timestamp=1000)
        headers[TIMESTAMP_HEADER] = "1001"
        with pytest.raises(AuthenticationFailure):
            verify_webhook_origin(headers, BODY)
