"""Tests for normalized error responses."""

import logging

from fastapi.testclient import TestClient

from pixsettle.main import app


def test_client_error_has_standard_shape():
    client = TestClient(app)
    resp = client.post("/api/payments/webhook", json={"nothing": "here"})
    assert resp.status_code == 400
    body = resp.json()
    rid = resp.headers.get("x-request-id")
    assert body["error"]["code"] == "unrecognized_webhook"
    assert body["error"]["request_id"] == rid
    assert body["detail"] == body["error"]["message"]


def test_unknown_route_is_normalized_404():
    client = TestClient(app)
    resp = client.get("/api/payments/nowhere")
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "not_found"


def test_request_id_in_response_and_logs(caplog):
    client = TestClient(app)
    with caplog.at_level(logging.INFO, logger="pixsettle"):
        response = client.get("/healthz")
    rid = response.headers.get("x-request-id")
    assert rid
    records = [r for r in caplog.records if getattr(r, "request_id", None) == rid]
    assert records, "Expected logs to contain request_id from response"
