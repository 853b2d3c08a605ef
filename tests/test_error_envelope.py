"""Tests for the error envelope and the exception handlers that render it.

Every error leaves the API as:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "...", "details": <object|array|null>},
    "request_id": "<uuid>"
}
"""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from gatekeeper.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    error_response,
    register_exception_handlers,
)
from gatekeeper.api.schemas import Envelope, ErrorBody
from gatekeeper.service.errors import (
    EMPLOYEE_LOGIN_RATE_LIMIT_EXCEEDED,
    AuthorizationError,
    RateLimitError,
)
from gatekeeper.storage.errors import ConstraintViolation, StorageUnavailable


class TestErrorBody:
    """ErrorBody only accepts the stable machine codes."""

    def test_known_code_accepted(self):
        error = ErrorBody(code="INVALID_CREDENTIALS", message="Invalid email or password")
        assert error.details is None

    def test_unknown_code_rejected(self):
        with pytest.raises(PydanticValidationError):
            ErrorBody(code="teapot", message="nope")

    def test_missing_message_rejected(self):
        with pytest.raises(PydanticValidationError):
            ErrorBody(code="server_error")


class TestEnvelope:
    def test_request_id_generated(self):
        envelope = Envelope(status="ok")
        assert len(envelope.request_id) == 36

    def test_invalid_status_rejected(self):
        with pytest.raises(PydanticValidationError):
            Envelope(status="success")

    def test_error_serialization(self):
        envelope = Envelope(
            status="error",
            error=ErrorBody(code="rate_limited", message="slow down", details={"retryAfter": 60}),
            request_id="req-1",
        )
        dumped = envelope.model_dump()
        assert dumped["error"]["details"]["retryAfter"] == 60
        assert dumped["request_id"] == "req-1"
        assert dumped["data"] is None


class TestErrorCodeMapping:
    """HTTP status to default error code."""

    @pytest.mark.parametrize(
        "status, code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (422, "validation_error"),
            (429, "rate_limited"),
            (500, "server_error"),
        ],
    )
    def test_mapping(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"

    def test_every_default_code_is_a_stable_code(self):
        for code in set(_STATUS_TO_CODE.values()):
            ErrorBody(code=code, message="ok")


class TestErrorResponseFactory:
    def test_custom_code_kept(self):
        response = error_response(429, "blocked", code=EMPLOYEE_LOGIN_RATE_LIMIT_EXCEEDED)
        data = json.loads(response.body)
        assert data["error"]["code"] == EMPLOYEE_LOGIN_RATE_LIMIT_EXCEEDED

    def test_unknown_code_falls_back_to_status(self):
        response = error_response(404, "gone", code="NOT_A_REAL_CODE")
        assert json.loads(response.body)["error"]["code"] == "not_found"

    def test_list_details_and_headers(self):
        response = error_response(
            400, "bad", details=[{"field": "a"}], headers={"Retry-After": "5"}
        )
        data = json.loads(response.body)
        assert data["error"]["details"] == [{"field": "a"}]
        assert response.headers["Retry-After"] == "5"


class _Body(BaseModel):
    count: int


@pytest.fixture
def handler_client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/rate-limited")
    async def rate_limited():
        raise RateLimitError(
            "Too many attempts",
            retry_after=42,
            error_code=EMPLOYEE_LOGIN_RATE_LIMIT_EXCEEDED,
        )

    @app.get("/forbidden")
    async def forbidden():
        raise AuthorizationError("Permission denied", detail={"requiredPermission": "x.y"})

    @app.get("/conflict")
    async def conflict():
        raise ConstraintViolation("email already exists", {"field": "email"})

    @app.get("/unavailable")
    async def unavailable():
        raise StorageUnavailable("pool exhausted")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("SELECT * FROM principals failed")

    @app.post("/validated")
    async def validated(body: _Body):
        return {"count": body.count}

    return TestClient(app, raise_server_exceptions=False)


class TestExceptionHandlers:
    def test_rate_limit_sets_retry_after(self, handler_client):
        response = handler_client.get("/rate-limited")
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "42"
        error = response.json()["error"]
        assert error["code"] == EMPLOYEE_LOGIN_RATE_LIMIT_EXCEEDED
        assert error["details"] == {"retryAfter": 42}

    def test_service_error_keeps_detail(self, handler_client):
        response = handler_client.get("/forbidden")
        assert response.status_code == 403
        assert response.json()["error"]["details"] == {"requiredPermission": "x.y"}

    def test_constraint_violation_is_conflict(self, handler_client):
        response = handler_client.get("/conflict")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_storage_unavailable_is_503(self, handler_client):
        response = handler_client.get("/unavailable")
        assert response.status_code == 503
        assert response.json()["error"]["code"] == "service_unavailable"

    def test_uncaught_error_is_sanitized(self, handler_client):
        response = handler_client.get("/boom")
        assert response.status_code == 500
        body = response.json()
        assert body["error"]["code"] == "server_error"
        assert "principals" not in body["error"]["message"]

    def test_request_validation_is_422(self, handler_client):
        response = handler_client.post("/validated", json={"count": "many"})
        assert response.status_code == 422
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert error["details"][0]["loc"] == ["body", "count"]
