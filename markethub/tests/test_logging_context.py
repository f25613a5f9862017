"""Tests for structured logging and request_id propagation."""

import json
import logging

from fastapi.testclient import TestClient

from markethub.core.logging import JsonFormatter, latency_bucket_ms, log_event, request_id_ctx_var
from markethub.main import app


def test_request_id_in_response_and_logs(caplog):
    client = TestClient(app)
    with caplog.at_level(logging.INFO, logger="markethub"):
        response = client.get("/healthz")
    rid = response.headers.get("x-request-id")
    assert rid
    records = [r for r in caplog.records if getattr(r, "request_id", None) == rid]
    assert records, "Expected logs to contain request_id from response"
    assert len({r.request_id for r in records}) == 1


def test_request_id_in_error_response():
    client = TestClient(app)
    response = client.get("/api/usage/quota/videos", headers={"X-User-Id": "user_a"})
    rid = response.headers.get("x-request-id")
    assert response.status_code == 400
    assert rid
    payload = response.json()
    assert payload["error"]["request_id"] == rid
    assert payload["error"]["code"] == "validation_error"


def test_usage_events_carry_user_and_category(caplog):
    client = TestClient(app)
    with caplog.at_level(logging.INFO, logger="markethub"):
        client.post("/api/products", json={"name": "Candle"}, headers={"X-User-Id": "user_log"})

    events = [r for r in caplog.records if r.getMessage() == "usage.increment"]
    assert len(events) == 1
    assert events[0].user_id == "user_log"
    assert events[0].category == "products"


def test_log_event_truncates_and_uses_context(caplog):
    token = request_id_ctx_var.set("rid-ctx")
    try:
        with caplog.at_level(logging.INFO, logger="markethub"):
            log_event("info", "test.event", user_id="u1", extra={"blob": "x" * 900})
    finally:
        request_id_ctx_var.reset(token)

    record = next(r for r in caplog.records if r.getMessage() == "test.event")
    assert record.request_id == "rid-ctx"
    assert record.blob.endswith("...<truncated>")
    assert len(record.blob) < 600


def test_json_formatter_includes_extra_fields():
    record = logging.makeLogRecord({
        "name": "markethub.test",
        "levelno": logging.WARNING,
        "levelname": "WARNING",
        "msg": "usage.denied",
        "request_id": "rid-1",
        "category": "images",
    })

    payload = json.loads(JsonFormatter().format(record))

    assert payload["message"] == "usage.denied"
    assert payload["request_id"] == "rid-1"
    assert payload["category"] == "images"
    assert payload["timestamp"].endswith("Z")


def test_latency_buckets():
    assert latency_bucket_ms(None) == "unknown"
    assert latency_bucket_ms(5) == "<10ms"
    assert latency_bucket_ms(250) == "100-500ms"
    assert latency_bucket_ms(2500) == ">=1000ms"


def test_completion_log_carries_caller(caplog):
    client = TestClient(app)
    with caplog.at_level(logging.INFO, logger="markethub"):
        client.get("/api/usage/quota/images", headers={"X-User-Id": "user_seen"})

    completed = [r for r in caplog.records if r.getMessage() == "request.complete"]
    assert completed[-1].user_id == "user_seen"
