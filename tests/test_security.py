import json

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from servicekit.core.handlers import register_exception_handlers
from servicekit.core.security import internal_request_guard, parse_caller_identity
from servicekit.errors import BackendUnavailable, SerializationFailure, TransportFailure, UnknownService


@pytest.fixture
def client():
    app = FastAPI()
    guard = internal_request_guard("s3cret")

    @app.get("/whoami")
    async def whoami(caller=Depends(guard)):
        return {"caller": caller.model_dump() if caller else None}

    @app.get("/relay")
    async def relay():
        raise TransportFailure(
            "Service 'billing' answered 404",
            url="http://10.0.0.5:8080/x",
            status=404,
            body={"message": "invoice not found"},
            service_name="billing",
        )

    @app.get("/unreachable")
    async def unreachable():
        raise TransportFailure("Request to service 'billing' failed", url="http://10.0.0.5:8080/x")

    @app.get("/unknown")
    async def unknown():
        raise UnknownService("ghost")

    @app.get("/backend")
    async def backend():
        raise BackendUnavailable("Redis client not initialized; call connect() first")

    register_exception_handlers(app)
    return TestClient(app)


def test_wrong_trust_token_is_rejected(client):
    r = client.get("/whoami", headers={"X-Internal-Request": "nope", "X-User-Name": "ana"})
    assert r.status_code == 401
    assert r.json()["detail"]["error_code"] == "INVALID_INTERNAL_TOKEN"


def test_missing_trust_token_is_rejected(client):
    r = client.get("/whoami", headers={"X-User-Name": "ana"})
    assert r.status_code == 401


def test_webhook_calls_need_no_identity(client):
    r = client.get("/whoami", headers={"X-Internal-Request": "s3cret", "X-Source-Type": "webhook"})
    assert r.status_code == 200
    assert r.json() == {"caller": None}


def test_internal_calls_need_identity_headers(client):
    r = client.get("/whoami", headers={"X-Internal-Request": "s3cret"})
    assert r.status_code == 401
    assert r.json()["detail"]["error_code"] == "MISSING_USER_HEADERS"


def test_malformed_identity_headers(client):
    r = client.get(
        "/whoami",
        headers={"X-Internal-Request": "s3cret", "X-User-Company": "{broken"},
    )
    assert r.status_code == 401
    assert r.json()["detail"]["error_code"] == "MALFORMED_USER_HEADERS"


def test_identity_is_decoded(client):
    r = client.get(
        "/whoami",
        headers={
            "X-Internal-Request": "s3cret",
            "X-User-Company": json.dumps({"id": 42, "name": "Acme"}),
            "X-User-Name": "ana",
            "X-User-Roles": json.dumps(["admin", "billing"]),
        },
    )
    assert r.status_code == 200
    assert r.json()["caller"] == {
        "tenant": {"id": 42, "name": "Acme"},
        "username": "ana",
        "roles": ["admin", "billing"],
    }


def test_guard_without_configured_token(monkeypatch):
    from servicekit.settings import get_settings

    monkeypatch.setattr(get_settings(), "SERVICEKIT_SERVICE_TOKEN", None)
    app = FastAPI()

    @app.get("/x")
    async def x(caller=Depends(internal_request_guard())):
        return {}

    r = TestClient(app).get("/x", headers={"X-Internal-Request": "anything"})
    assert r.status_code == 503
    assert r.json()["detail"]["error_code"] == "SERVICE_TOKEN_NOT_CONFIGURED"


def test_parse_caller_identity_rejects_non_list_roles():
    with pytest.raises(SerializationFailure):
        parse_caller_identity(None, "ana", json.dumps({"role": "admin"}))


def test_parse_caller_identity_keeps_absent_fields_empty():
    identity = parse_caller_identity(None, "ana", None)
    assert identity.tenant is None
    assert identity.roles is None
    assert identity.username == "ana"


# ------------------- exception handlers -------------------


def test_downstream_status_and_body_are_relayed(client):
    r = client.get("/relay")
    assert r.status_code == 404
    assert r.json() == {"message": "invoice not found"}


def test_transport_failure_without_response_is_502(client):
    r = client.get("/unreachable")
    assert r.status_code == 502
    assert r.json()["detail"]["error_code"] == "TRANSPORT_FAILURE"


def test_servicekit_errors_render_their_code(client):
    r = client.get("/unknown")
    assert r.status_code == 502
    assert r.json()["detail"] == {
        "error_code": "UNKNOWN_SERVICE",
        "message": "No configuration found for service 'ghost'",
    }

    r = client.get("/backend")
    assert r.status_code == 503
    assert r.json()["detail"]["error_code"] == "BACKEND_UNAVAILABLE"


def test_escaped_username_is_decoded(client):
    r = client.get("/whoami", headers={"X-Internal-Request": "s3cret", "X-User-Name": "Jos%C3%A9"})
    assert r.status_code == 200
    assert r.json()["caller"]["username"] == "José"
