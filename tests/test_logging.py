from showauth.logging import (
    _redact_pii,
    get_correlation_id,
    hash_email,
    mask_email,
    sanitize_error_message,
    set_correlation_id,
)


def test_hash_email_is_stable_and_case_insensitive():
    assert hash_email("Fan@Example.com ") == hash_email("fan@example.com")
    assert len(hash_email("fan@example.com")) == 16
    assert hash_email(None) == ""


def test_mask_email():
    assert mask_email("jordan@example.com") == "jo***@example.com"
    assert mask_email("not-an-address") == "redacted"


def test_redaction_keeps_email_hash():
    event = _redact_pii(
        None,
        "info",
        {"event": "login_failed", "email": "fan@example.com", "email_hash": "abcdef0123456789"},
    )
    assert event["email"] == "fa***om"
    assert event["email_hash"] == "abcdef0123456789"


def test_redaction_masks_tokens():
    event = _redact_pii(None, "info", {"session_token": "eyJhbGciOi.payload.sig"})
    assert "payload" not in event["session_token"]


def test_sanitize_error_message():
    raw = "connection to server at db.internal failed: password=hunter2 in /var/lib/pg/data"
    cleaned = sanitize_error_message(raw)
    assert "hunter2" not in cleaned
    assert "/var/lib" not in cleaned
    assert sanitize_error_message("") == "An error occurred"


def test_correlation_id_generated_when_missing():
    generated = set_correlation_id(None)
    assert get_correlation_id() == generated
    assert set_correlation_id("req-1") == "req-1"
