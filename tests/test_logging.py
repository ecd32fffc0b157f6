"""Tests for log redaction and correlation ids."""

from tenantauth.logging import (
    _add_correlation_id,
    _redact_pii,
    hash_email,
    set_correlation_id,
)


class TestRedaction:
    def test_credentials_are_masked(self):
        event = _redact_pii(
            None,
            "info",
            {
                "event": "login_failed",
                "password": "hunter2-hunter2",
                "refresh_token": "abcdefghijkl",
                "code": "1234",
            },
        )

        assert event["password"] == "hu***r2"
        assert event["refresh_token"] == "ab***kl"
        assert event["code"] == "***"
        assert event["event"] == "login_failed"

    def test_safe_keys_are_kept(self):
        event = _redact_pii(
            None,
            "info",
            {"email_hash": "0123456789abcdef", "error_code": "token_expired", "user_id": "u-1"},
        )

        assert event == {
            "email_hash": "0123456789abcdef",
            "error_code": "token_expired",
            "user_id": "u-1",
        }


class TestHelpers:
    def test_hash_email_ignores_case_and_whitespace(self):
        assert hash_email(" Alice@Example.com") == hash_email("alice@example.com")
        assert len(hash_email("alice@example.com")) == 16
        assert hash_email("alice@example.com") != hash_email("bob@example.com")

    def test_correlation_id_is_attached(self):
        cid = set_correlation_id("req-9")

        event = _add_correlation_id(None, "info", {"event": "x"})

        assert cid == "req-9"
        assert event["correlation_id"] == "req-9"

    def test_correlation_id_is_generated(self):
        assert len(set_correlation_id()) == 36
