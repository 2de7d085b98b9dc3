from blockgate.logging import (
    REDACTED,
    _mask_sensitive_fields,
    is_credential_key,
    redact_api_keys,
    sanitize_error_message,
)


def test_credential_key_spellings():
    for key in ("apiKey", "api_key", "API-KEY", "botToken", "clientSecret", "credential"):
        assert is_credential_key(key), key
    for key in ("to", "channel", "model", "keyPrefix"):
        assert not is_credential_key(key), key


def test_redact_nested_structures():
    data = {
        "apiKey": "sk-live-123",
        "credential": {"access": "x", "refresh": "y"},
        "botToken": "",
        "headers": [{"Authorization": "Bearer abc"}, {"Accept": "json"}],
        "text": "hello",
    }
    assert redact_api_keys(data) == {
        "apiKey": REDACTED,
        "credential": REDACTED,
        "botToken": "",
        "headers": [{"Authorization": REDACTED}, {"Accept": "json"}],
        "text": "hello",
    }
    assert data["apiKey"] == "sk-live-123"


def test_sanitize_error_message():
    assert sanitize_error_message("socket closed") == "socket closed"
    assert "sk-123" not in sanitize_error_message("upstream said api_key=sk-123")
    assert "abc.def" not in sanitize_error_message("rejected Bearer abc.def")
    assert "/home/app" not in sanitize_error_message("failed at /home/app/run.py")
    assert sanitize_error_message("") == "Unknown error"
    assert len(sanitize_error_message("x" * 2000)) == 500


def test_log_processor_masks_fields():
    event = _mask_sensitive_fields(
        None,
        "info",
        {"event": "user_provision_requested", "api_key": "sk-live-123", "email": "jane@example.com"},
    )
    assert event["api_key"] == REDACTED
    assert event["email"] == "ja***om"
    assert event["event"] == "user_provision_requested"
