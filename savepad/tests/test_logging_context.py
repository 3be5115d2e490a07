"""Tests for structured logging and request_id propagation."""

import json
import logging

from savepad.core.logging import JsonFormatter, log_event


def test_request_id_in_response_and_logs(client, caplog):
    with caplog.at_level(logging.INFO, logger="savepad"):
        response = client.get("/healthz")
    rid = response.headers.get("x-request-id")
    assert rid
    records = [r for r in caplog.records if getattr(r, "request_id", None) == rid]
    assert records, "Expected logs to contain request_id from response"
    assert len({r.request_id for r in records}) == 1


def test_request_id_in_error_response(client):
    response = client.get("/usuarios/nobody@example.com")
    rid = response.headers.get("x-request-id")
    assert response.status_code == 404
    assert rid
    assert response.json()["error"]["request_id"] == rid


def test_domain_events_carry_ids(client, make_user, caplog):
    owner = make_user(name="Carlos")
    with caplog.at_level(logging.INFO, logger="savepad"):
        client.post("/family/add", json={"owner_id": owner.id, "name": "Ana", "phone": "11999999999"})
    added = [r for r in caplog.records if r.getMessage() == "family.member_added"]
    assert added
    assert added[0].owner_id == owner.id
    assert added[0].request_id


def test_log_event_truncates_long_values(caplog):
    with caplog.at_level(logging.INFO, logger="savepad"):
        log_event("info", "test.truncate", extra={"body": "x" * 2000})
    record = [r for r in caplog.records if r.getMessage() == "test.truncate"][0]
    assert record.body.endswith("...<truncated>")
    assert len(record.body) < 600


def test_json_formatter_includes_event_fields():
    record = logging.LogRecord("savepad", logging.INFO, __file__, 1, "webhook.reconciled", None, None)
    record.request_id = "rid-1"
    record.user_id = 7
    record.payment_id = "123"
    payload = json.loads(JsonFormatter().format(record))
    assert payload["message"] == "webhook.reconciled"
    assert payload["user_id"] == 7
    assert payload["payment_id"] == "123"


def test_log_event_redacts_secrets_and_guards_reserved_keys(caplog):
    with caplog.at_level(logging.INFO, logger="savepad"):
        log_event("info", "test.extras", extra={"access_token": "APP_USR-123", "name": "Ana"})
    record = [r for r in caplog.records if r.getMessage() == "test.extras"][0]
    assert record.access_token == "<redacted>"
    assert record.ctx_name == "Ana"
    assert record.name == "savepad"
