"""Error envelope format and exception-to-status mapping.

Every failure returns:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<text>", "details": <object|array|null>},
    "request_id": "<uuid>"
}
"""

import json

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from tenantauth.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    error_response,
    register_exception_handlers,
)
from tenantauth.api.schemas import Envelope, ErrorBody
from tenantauth.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ServerError,
    SessionExpiredError,
    ValidationError,
)
from tenantauth.storage.errors import ConstraintViolation, RecordNotFound


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Unauthorized")
        assert error.details is None

    def test_details_may_be_list(self):
        error = ErrorBody(code="validation_error", message="bad", details=[{"field": "email"}])
        assert error.details == [{"field": "email"}]

    def test_unknown_code_rejected(self):
        with pytest.raises(PydanticValidationError):
            ErrorBody(code="teapot", message="nope")

    def test_envelope_gets_request_id(self):
        first = Envelope(status="ok")
        second = Envelope(status="ok")
        assert first.request_id != second.request_id

    def test_envelope_status_is_constrained(self):
        with pytest.raises(PydanticValidationError):
            Envelope(status="maybe")


class TestStatusMapping:
    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (503, "service_unavailable"),
        ],
    )
    def test_known_statuses(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_is_server_error(self):
        assert _error_code_for_status(418) == "server_error"
        assert 418 not in _STATUS_TO_CODE

    def test_error_response_body(self):
        resp = error_response(409, "Username already exists", {"field": "username"})
        body = json.loads(resp.body)
        assert resp.status_code == 409
        assert body["status"] == "error"
        assert body["error"] == {
            "code": "conflict",
            "message": "Username already exists",
            "details": {"field": "username"},
        }


class EchoBody(BaseModel):
    name: str


def _app():
    app = FastAPI()
    register_exception_handlers(app)

    raisers = {
        "validation": ValidationError.for_field("email", "Invalid email format"),
        "unauthorized": AuthenticationError("Unauthorized"),
        "expired": SessionExpiredError("Token expired"),
        "forbidden": ForbiddenError("Invalid or missing invitation code"),
        "missing": NotFoundError("User not found"),
        "conflict": ConflictError("Username already exists"),
        "server": ServerError("TENANT_SECRET_KEY not configured"),
        "constraint": ConstraintViolation("duplicate key", {"constraint": "app_user_email_key"}),
        "record": RecordNotFound("Session with id s-1 not found"),
        "http": HTTPException(status_code=404, detail="no such route"),
        "crash": RuntimeError("secret internals"),
    }

    @app.get("/raise/{kind}")
    async def raise_kind(kind: str):
        raise raisers[kind]

    @app.post("/echo")
    async def echo(body: EchoBody):
        return body

    return app


@pytest.fixture
def client():
    return TestClient(_app(), raise_server_exceptions=False)


@pytest.mark.parametrize(
    "kind,status,code,message",
    [
        ("validation", 400, "validation_error", "Validation Error"),
        ("unauthorized", 401, "unauthorized", "Unauthorized"),
        ("expired", 401, "unauthorized", "Token expired"),
        ("forbidden", 403, "forbidden", "Invalid or missing invitation code"),
        ("missing", 404, "not_found", "User not found"),
        ("conflict", 409, "conflict", "Username already exists"),
        ("server", 500, "server_error", "TENANT_SECRET_KEY not configured"),
        ("constraint", 409, "conflict", "resource already exists"),
        ("record", 404, "not_found", "not found"),
        ("http", 404, "not_found", "no such route"),
        ("crash", 500, "server_error", "internal server error"),
    ],
)
def test_exception_mapping(client, kind, status, code, message):
    resp = client.get(f"/raise/{kind}")
    assert resp.status_code == status
    body = resp.json()
    assert body["status"] == "error"
    assert body["error"]["code"] == code
    assert body["error"]["message"] == message
    assert "request_id" in body


def test_internal_detail_is_not_echoed(client):
    for kind in ("constraint", "crash"):
        body = client.get(f"/raise/{kind}").json()
        assert body["error"]["details"] is None
        assert "app_user_email_key" not in json.dumps(body)
        assert "secret internals" not in json.dumps(body)


def test_field_errors_in_details(client):
    body = client.get("/raise/validation").json()
    assert body["error"]["details"] == {
        "errors": [{"field": "email", "message": "Invalid email format"}]
    }


def test_request_validation_becomes_400(client):
    resp = client.post("/echo", json={})
    assert resp.status_code == 400
    error = resp.json()["error"]
    assert error["code"] == "validation_error"
    assert error["details"]["errors"][0]["field"] == "name"
