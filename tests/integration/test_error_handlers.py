"""Integration tests for global exception handlers."""

from __future__ import annotations

import pytest
from fastapi import FastAPI, HTTPException
from httpx import ASGITransport, AsyncClient

from iam.core.results import Outcome, ServiceError, ServiceResult
from iam.error_handlers import register_exception_handlers, to_response
from iam.schemas.auth import LoginRequest


def _build_error_app(environment: str = "production") -> FastAPI:
    """Build minimal app with registered global exception handlers."""
    app = FastAPI()
    register_exception_handlers(app, environment=environment)

    @app.get("/api/authentications/http-exception")
    async def auth_http_exception() -> None:
        raise HTTPException(status_code=401, detail="Invalid token.")

    @app.get("/api/users/missing")
    async def missing_user() -> None:
        raise ServiceError.not_found("User not found.")

    @app.get("/api/unhandled")
    async def unhandled() -> None:
        raise RuntimeError("sensitive internal detail")

    @app.post("/api/authentications/validation")
    async def validation(payload: LoginRequest) -> dict[str, str]:
        return {"identifier": payload.identifier}

    @app.get("/api/results/{outcome}")
    async def result(outcome: Outcome):
        return to_response(
            ServiceResult(outcome=outcome, message=f"{outcome.value} message", data={"k": 1})
        )

    return app


async def _request(app: FastAPI, method: str, path: str, **kwargs):
    async with AsyncClient(
        transport=ASGITransport(app=app, raise_app_exceptions=False),
        base_url="http://testserver",
    ) as client:
        return await client.request(method, path, **kwargs)


@pytest.mark.asyncio
async def test_http_exception_uses_envelope_shape() -> None:
    """HTTP exceptions are normalized to the envelope."""
    response = await _request(_build_error_app(), "GET", "/api/authentications/http-exception")

    assert response.status_code == 401
    assert response.json() == {
        "success": False,
        "message": "Invalid token.",
        "data": None,
        "errors": None,
    }


@pytest.mark.asyncio
async def test_service_error_maps_outcome_to_status() -> None:
    response = await _request(_build_error_app(), "GET", "/api/users/missing")

    assert response.status_code == 404
    assert response.json()["message"] == "User not found."
    assert response.json()["success"] is False


@pytest.mark.asyncio
async def test_validation_error_returns_field_keyed_errors() -> None:
    """Malformed bodies return 400 with errors keyed by field."""
    response = await _request(
        _build_error_app(), "POST", "/api/authentications/validation", json={"identifier": "a"}
    )

    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["message"] == "One or more validation errors occurred."
    assert "password" in body["errors"]


@pytest.mark.asyncio
async def test_unhandled_error_hides_internal_detail() -> None:
    """Unhandled errors are sanitized."""
    response = await _request(_build_error_app(environment="production"), "GET", "/api/unhandled")

    assert response.status_code == 500
    assert response.json() == {
        "success": False,
        "message": "An unexpected error occurred.",
        "data": None,
        "errors": None,
    }
    assert "sensitive internal detail" not in response.text


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("outcome", "status_code"),
    [
        (Outcome.OK, 200),
        (Outcome.FAILED, 400),
        (Outcome.CONFLICT, 400),
        (Outcome.VALIDATION_FAILED, 400),
        (Outcome.UNAUTHORIZED, 401),
        (Outcome.FORBIDDEN, 403),
        (Outcome.NOT_FOUND, 404),
    ],
)
async def test_outcomes_map_to_status_codes(outcome: Outcome, status_code: int) -> None:
    response = await _request(_build_error_app(), "GET", f"/api/results/{outcome.value}")

    assert response.status_code == status_code
    body = response.json()
    assert body["success"] is (outcome is Outcome.OK)
    assert body["data"] == {"k": 1}
