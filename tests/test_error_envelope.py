import pytest
from fastapi.testclient import TestClient

from uniupdates.api.error_handling import error_response
from uniupdates.api.schemas import Envelope, ErrorBody
from uniupdates.app import create_app


def _assert_error_envelope(payload, code):
    assert payload["status"] == "error"
    assert payload["data"] is None
    assert payload["error"]["code"] == code
    assert payload["error"]["message"]
    assert payload["request_id"]


def test_request_id_echoed_in_error_body(client):
    response = client.get("/api/auth/me", headers={"X-Request-ID": "req-123"})

    assert response.status_code == 401
    _assert_error_envelope(response.json(), "unauthorized")
    assert response.json()["request_id"] == "req-123"
    assert response.headers["X-Request-ID"] == "req-123"


def test_request_id_generated_when_absent(client):
    response = client.get("/api/admin/auth/me")
    assert response.json()["request_id"] == response.headers["X-Request-ID"]


def test_unknown_route_is_enveloped_404(client):
    response = client.get("/api/does-not-exist")
    assert response.status_code == 404
    _assert_error_envelope(response.json(), "not_found")


def test_validation_errors_list_fields(client):
    response = client.post("/api/auth/login", json={"identifier": ""})

    assert response.status_code == 400
    _assert_error_envelope(response.json(), "validation_error")
    fields = [d["field"] for d in response.json()["error"]["details"]]
    assert "password" in fields


def test_malformed_json_is_400(client):
    response = client.post(
        "/api/auth/login",
        content=b"{not json",
        headers={"Content-Type": "application/json"},
    )
    assert response.status_code == 400


def test_security_headers_present(client):
    response = client.get("/healthz")
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["Cache-Control"] == "no-store"
    assert "Strict-Transport-Security" not in response.headers


def test_hsts_in_production(runtime):
    runtime.settings = runtime.settings.model_copy(update={"environment": "production"})
    with TestClient(create_app(runtime)) as client:
        assert "Strict-Transport-Security" in client.get("/healthz").headers


def test_unhandled_error_is_500_envelope(runtime):
    app = create_app(runtime)

    @app.get("/boom")
    async def boom():
        raise RuntimeError("kaboom")

    with TestClient(app, raise_server_exceptions=False) as client:
        response = client.get("/boom")

    assert response.status_code == 500
    _assert_error_envelope(response.json(), "server_error")
    assert "kaboom" not in response.text


def test_error_response_defaults_code_from_status():
    response = error_response(409, "taken")
    assert response.status_code == 409
    assert b'"conflict"' in response.body


def test_error_body_rejects_unknown_code():
    with pytest.raises(ValueError):
        ErrorBody(code="teapot", message="nope")


def test_envelope_status_is_constrained():
    with pytest.raises(ValueError):
        Envelope(status="maybe")
