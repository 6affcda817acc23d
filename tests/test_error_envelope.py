"""Error envelope format returned for every failure.

{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<text>", "details": <object|array|null>},
    "request_id": "<id>"
}
"""

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from timekeeper.api.error_handling import _error_code_for_status, register_exception_handlers
from timekeeper.api.schemas import Envelope, ErrorBody
from timekeeper.service.errors import (
    AccountLockedError,
    InvalidCredentialsError,
    RateLimitedError,
    TokenReuseDetectedError,
)
from timekeeper.storage.errors import ConstraintViolation, StoreUnavailable


class _Payload(BaseModel):
    name: str


@pytest.fixture
def client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/credentials")
    async def credentials():
        raise InvalidCredentialsError("invalid username or password")

    @app.get("/locked")
    async def locked():
        raise AccountLockedError(
            "account is temporarily locked", detail={"locked_until": "2026-03-02T09:15:00+00:00"}
        )

    @app.get("/reuse")
    async def reuse():
        raise TokenReuseDetectedError("refresh token was already used")

    @app.get("/limited")
    async def limited():
        raise RateLimitedError("too many requests", detail={"scope": "ip", "retry_after": 42})

    @app.get("/store-down")
    async def store_down():
        raise StoreUnavailable("could not connect to server at 10.0.0.5:5432")

    @app.get("/duplicate")
    async def duplicate():
        raise ConstraintViolation("username already exists", {"field": "username"})

    @app.get("/teapot")
    async def teapot():
        raise HTTPException(status_code=404, detail="no such thing")

    @app.post("/payload")
    async def payload(body: _Payload):
        return {"name": body.name}

    @app.get("/crash")
    async def crash():
        raise RuntimeError("SELECT * FROM user_account exploded")

    return TestClient(app, raise_server_exceptions=False)


class TestEnvelopeModel:
    def test_error_body_requires_code_and_message(self):
        with pytest.raises(PydanticValidationError):
            ErrorBody(message="missing code")
        with pytest.raises(PydanticValidationError):
            ErrorBody(code="server_error")

    def test_status_is_restricted(self):
        with pytest.raises(PydanticValidationError):
            Envelope(status="success")

    def test_request_id_is_generated(self):
        assert Envelope(status="ok").request_id

    def test_unknown_status_codes_fall_back_to_server_error(self):
        assert _error_code_for_status(401) == "invalid_token"
        assert _error_code_for_status(418) == "server_error"


class TestServiceErrors:
    def test_invalid_credentials(self, client):
        response = client.get("/credentials")
        assert response.status_code == 401
        body = response.json()
        assert body["status"] == "error"
        assert body["error"] == {
            "code": "invalid_credentials",
            "message": "invalid username or password",
            "details": None,
        }
        assert body["request_id"]

    def test_locked_account_carries_unlock_time(self, client):
        response = client.get("/locked")
        assert response.status_code == 423
        assert response.json()["error"]["details"]["locked_until"].startswith("2026-03-02")

    def test_reuse_detection_is_a_distinct_code(self, client):
        response = client.get("/reuse")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "token_reuse_detected"

    def test_rate_limit_sets_retry_after(self, client):
        response = client.get("/limited")
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "42"
        assert response.json()["error"]["code"] == "rate_limited"


class TestInfrastructureErrors:
    def test_store_outage_hides_connection_details(self, client):
        response = client.get("/store-down")
        assert response.status_code == 503
        error = response.json()["error"]
        assert error["code"] == "infrastructure_unavailable"
        assert "10.0.0.5" not in error["message"]

    def test_constraint_violation_is_a_conflict(self, client):
        response = client.get("/duplicate")
        assert response.status_code == 409
        assert response.json()["error"]["details"] == {"field": "username"}

    def test_unhandled_error_is_opaque(self, client):
        response = client.get("/crash")
        assert response.status_code == 500
        error = response.json()["error"]
        assert error["code"] == "server_error"
        assert "SELECT" not in error["message"]


class TestFrameworkErrors:
    def test_http_exception(self, client):
        response = client.get("/teapot")
        assert response.status_code == 404
        assert response.json()["error"] == {
            "code": "not_found",
            "message": "no such thing",
            "details": None,
        }

    def test_request_validation_is_400(self, client):
        response = client.post("/payload", json={})
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert error["details"]["errors"][0]["loc"] == ["body", "name"]
