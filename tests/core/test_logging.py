from vigil.core.logging import REDACTED, redact_sensitive_data, redact_string


def test_sensitive_keys_are_redacted_at_any_depth():
    event = {
        "event": "Step started",
        "inputs": {"webhook_url": "https://hooks.slack.com/services/T0/B0/x", "headers": {"X-Key": "abc"}},
        "api_key": "k",
    }

    redacted = redact_sensitive_data(None, "info", event)

    assert redacted["api_key"] == REDACTED
    assert redacted["inputs"]["webhook_url"] == REDACTED
    assert redacted["inputs"]["headers"] == REDACTED
    assert redacted["event"] == "Step started"


def test_ids_are_not_masked():
    event_id = "9f1c2d3e4f5a6b7c8d9e0f1a2b3c4d5e"

    redacted = redact_sensitive_data(None, "info", {"event_id": event_id, "note": event_id})

    assert redacted["event_id"] == event_id
    assert redacted["note"] == "9f1c2d3e...4d5e"


def test_redact_string_masks_email():
    assert redact_string("analyst@example.com") == "a***@example.com"
    assert redact_string("short") == "short"
