"""Tests for global exception handlers.

Validates that all exception types are handled consistently with
proper HTTP status codes, error format, and no information leakage.
"""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from throttlecache.core.errors import (
    AppError,
    InvalidArgumentError,
    RateLimitExceededError,
    ValidationAppError,
    invalid_argument,
)
from throttlecache.core.exception_handlers import setup_exception_handlers


@pytest.fixture
def app_with_handlers() -> FastAPI:
    """Create FastAPI app with exception handlers registered."""
    app = FastAPI()
    setup_exception_handlers(app)
    return app


@pytest.fixture
def client(app_with_handlers: FastAPI) -> TestClient:
    """Create test client with handlers enabled."""
    return TestClient(app_with_handlers)


class TestAppErrorHandler:
    """Test handler for AppError and subclasses."""

    def test_validation_error_returns_400(self, client: TestClient, app_with_handlers: FastAPI):
        """Verify ValidationAppError returns HTTP 400."""
        @app_with_handlers.get("/test-validation")
        async def test_endpoint():
            raise ValidationAppError(
                code="test_validation",
                message="Test validation error"
            )

        response = client.get("/test-validation")

        assert response.status_code == 400
        data = response.json()
        assert data["error"]["code"] == "test_validation"
        assert data["error"]["message"] == "Test validation error"
        assert "request_id" in data["error"]

    def test_invalid_argument_includes_field_details(self, client: TestClient, app_with_handlers: FastAPI):
        """Verify InvalidArgumentError maps to 400 with field context."""
        @app_with_handlers.get("/test-invalid-argument")
        async def test_endpoint():
            raise invalid_argument("capacity", "capacity must be an integer >= 1", 0)

        response = client.get("/test-invalid-argument")

        assert response.status_code == 400
        data = response.json()
        assert data["error"]["code"] == "invalid_argument"
        assert data["error"]["details"]["field"] == "capacity"
        assert data["error"]["details"]["actual_value"] == 0

    def test_rate_limit_error_returns_429_with_headers(self, client: TestClient, app_with_handlers: FastAPI):
        """Verify RateLimitExceededError returns 429 and advertises Retry-After."""
        @app_with_handlers.get("/test-rate-limit")
        async def test_endpoint():
            raise RateLimitExceededError(
                code="rate_limited",
                message="Rate limit exceeded. Try again later.",
                details={"retry_after": 17, "limit": 5, "remaining": 0},
            )

        response = client.get("/test-rate-limit")

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "17"
        assert response.headers["X-RateLimit-Limit"] == "5"
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert response.json()["error"]["details"]["retry_after"] == 17

    def test_base_app_error_returns_500(self, client: TestClient, app_with_handlers: FastAPI):
        """Verify an unspecialised AppError returns HTTP 500."""
        @app_with_handlers.get("/test-app-error")
        async def test_endpoint():
            raise AppError(code="upstream_error", message="Upstream returned an error")

        response = client.get("/test-app-error")

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "upstream_error"

    def test_error_response_format_is_consistent(self, client: TestClient, app_with_handlers: FastAPI):
        """Verify error responses have consistent JSON structure."""
        @app_with_handlers.get("/test-format")
        async def test_endpoint():
            raise ValidationAppError(code="test", message="test")

        response = client.get("/test-format")
        data = response.json()

        # Required fields always present
        assert "error" in data
        assert "code" in data["error"]
        assert "message" in data["error"]
        assert "request_id" in data["error"]
        assert "details" not in data["error"]


def test_invalid_argument_error_is_both_app_and_value_error():
    exc = invalid_argument("key", "key must be a non-empty string", "")

    assert isinstance(exc, InvalidArgumentError)
    assert isinstance(exc, ValidationAppError)
    assert isinstance(exc, ValueError)
    assert str(exc) == "key must be a non-empty string"


class TestGeneralExceptionHandler:
    """Test fallback handler for unexpected exceptions."""

    def test_unexpected_exception_handler_registered(self, app_with_handlers: FastAPI):
        """Verify fallback exception handler is registered."""
        assert Exception in app_with_handlers.exception_handlers

    def test_general_exception_handler_logic(self):
        """Verify general_exception_handler returns correct structure."""
        from throttlecache.core.exception_handlers import general_exception_handler

        request = AsyncMock()
        request.url.path = "/test"
        request.method = "GET"

        exc = RuntimeError("Unexpected error: rpc node https://rpc.internal refused")
        response = asyncio.run(general_exception_handler(request, exc))

        response_body = response.body if isinstance(response.body, bytes) else bytes(response.body)
        data = json.loads(response_body.decode())
        assert response.status_code == 500
        assert data["error"]["code"] == "internal_server_error"
        # Original error message should NOT be in response
        assert "rpc.internal" not in data["error"]["message"]
        assert "request_id" in data["error"]

    def test_general_exception_handler_never_leaks_stack_trace(self):
        """Verify stack traces are never included in response."""
        from throttlecache.core.exception_handlers import general_exception_handler

        request = AsyncMock()
        request.url.path = "/test"
        request.method = "GET"

        exc = ValueError("Test error with details")
        response = asyncio.run(general_exception_handler(request, exc))

        response_body = response.body if isinstance(response.body, bytes) else bytes(response.body)
        response_text = response_body.decode()
        # No traceback indicators
        assert "Traceback" not in response_text
        assert "File \"" not in response_text
        assert "ValueError" not in response_text


class TestErrorHandlerIntegration:
    """Integration tests for exception handler setup."""

    def test_setup_exception_handlers_registers_handlers(self, app_with_handlers: FastAPI):
        """Verify setup_exception_handlers properly registers handlers."""
        assert AppError in app_with_handlers.exception_handlers
        assert Exception in app_with_handlers.exception_handlers

    def test_multiple_handler_setups_does_not_fail(self):
        """Verify calling setup_exception_handlers multiple times is safe."""
        app = FastAPI()

        setup_exception_handlers(app)
        setup_exception_handlers(app)

        assert AppError in app.exception_handlers
