"""Tests for log redaction and correlation ids."""

from wukongid.logging import _add_correlation_id, _redact_pii, set_correlation_id


class TestRedaction:
    def test_sensitive_values_masked(self):
        event = _redact_pii(
            None,
            "info",
            {
                "event": "token_exchanged",
                "access_token": "abcdefghijkl",
                "email": "alice@example.com",
                "code": "0123456789",
            },
        )

        assert event["access_token"] == "ab***kl"
        assert event["email"] == "al***om"
        assert event["code"] == "01***89"
        assert event["event"] == "token_exchanged"

    def test_similar_keys_left_alone(self):
        event = _redact_pii(None, "info", {"error_code": "validation_error", "subject_id": "s"})
        assert event == {"error_code": "validation_error", "subject_id": "s"}

    def test_email_subject_ids_masked(self):
        event = _redact_pii(
            None,
            "info",
            {"event": "session_started", "subject_id": "email:alice@example.com"},
        )

        assert event["subject_id"] == "email:al***om"
        assert "alice" not in str(event)

    def test_provider_subject_ids_unchanged(self):
        event = _redact_pii(None, "info", {"subject_id": "github:12345", "owner": "42"})
        assert event == {"subject_id": "github:12345", "owner": "42"}

    def test_short_values_unchanged(self):
        assert _redact_pii(None, "info", {"secret": "abc"}) == {"secret": "abc"}


class TestCorrelationId:
    def test_explicit_id_attached(self):
        assert set_correlation_id("req-42") == "req-42"
        assert _add_correlation_id(None, "info", {})["correlation_id"] == "req-42"

    def test_generated_when_missing(self):
        cid = set_correlation_id()
        assert len(cid) == 36
