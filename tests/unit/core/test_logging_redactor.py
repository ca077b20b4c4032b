from app.shared.core.exceptions import AdapterError
from app.shared.core.logging import secret_redactor


def test_top_level_secrets_are_redacted():
    event = secret_redactor(None, "info", {
        "event": "export_blob_list_failed",
        "sas_token": "sv=1&sig=abc",
        "client_secret": "hunter2",
        "customer_id": "c1",
    })

    assert event["sas_token"] == "[REDACTED]"
    assert event["client_secret"] == "[REDACTED]"
    assert event["customer_id"] == "c1"


def test_nested_containers_are_redacted():
    event = secret_redactor(None, "info", {"event": "x", "details": {"token": "t", "status": 403}})

    assert event["details"] == {"token": "[REDACTED]", "status": 403}


def test_adapter_errors_strip_signatures_and_bearer_tokens():
    error = AdapterError("GET https://a.blob.core.windows.net/c?sv=1&sig=abc123&se=x failed; Bearer eyJ0eXAi.x-y")

    assert "abc123" not in error.message
    assert "sig=[REDACTED]" in error.message
    assert "eyJ0eXAi" not in error.message
