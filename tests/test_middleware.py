"""
Tests for the middleware - app/core/middleware.py

Covers:
- CorrelationIdMiddleware: correlation id propagation
- RequestLoggingMiddleware: request logging with masked channel user ids
- Exception handlers: AppException and unexpected exceptions
- _mask_path_pii: phone numbers in URL paths
- setup_middleware: the full stack through the real app
"""
import json
from unittest.mock import AsyncMock

import pytest
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import PlainTextResponse, JSONResponse
from starlette.routing import Route
from starlette.testclient import TestClient

from app.core.middleware import (
    CorrelationIdMiddleware,
    RequestLoggingMiddleware,
    _mask_path_pii,
    app_exception_handler,
    generic_exception_handler,
)
from app.core.exceptions import AppException, ErrorCode, NotFoundException, ValidationException


# ============================================================================
# Helpers
# ============================================================================


def _hello(request: Request) -> PlainTextResponse:
    return PlainTextResponse("ok")


def _error(request: Request) -> PlainTextResponse:
    raise ValueError("boom")


def _build_app(middlewares: list[tuple] | None = None) -> Starlette:
    """Minimal Starlette app with the given middleware"""
    app = Starlette(routes=[Route("/test", _hello), Route("/error", _error)])
    for mw_class, kwargs in middlewares or []:
        app.add_middleware(mw_class, **kwargs)
    return app


def _mock_request(path: str) -> AsyncMock:
    request = AsyncMock(spec=Request)
    request.url.path = path
    return request


# ============================================================================
# _mask_path_pii
# ============================================================================


class TestMaskPathPii:

    @pytest.mark.unit
    def test_masks_whatsapp_id_in_path(self) -> None:
        masked = _mask_path_pii("/api/admin/debug/sessions/5215512345678")
        assert "12345" not in masked
        assert "****" in masked

    @pytest.mark.unit
    def test_masks_plus_prefixed_number(self) -> None:
        assert "****" in _mask_path_pii("/contacts/+5215512345678/history")

    @pytest.mark.unit
    def test_no_phone_no_change(self) -> None:
        assert _mask_path_pii("/api/messages/inbound") == "/api/messages/inbound"

    @pytest.mark.unit
    def test_short_ids_not_masked(self) -> None:
        assert _mask_path_pii("/api/admin/debug/sessions/12345") == "/api/admin/debug/sessions/12345"


# ============================================================================
# CorrelationIdMiddleware
# ============================================================================


class TestCorrelationIdMiddleware:

    @pytest.mark.unit
    def test_generates_correlation_id_when_missing(self) -> None:
        app = _build_app([(CorrelationIdMiddleware, {})])
        with TestClient(app) as client:
            response = client.get("/test")

        assert response.status_code == 200
        assert len(response.headers["x-correlation-id"]) == 8

    @pytest.mark.unit
    def test_preserves_caller_correlation_id(self) -> None:
        app = _build_app([(CorrelationIdMiddleware, {})])
        with TestClient(app) as client:
            response = client.get("/test", headers={"X-Correlation-ID": "channel-adapter-42"})

        assert response.headers["x-correlation-id"] == "channel-adapter-42"

    @pytest.mark.unit
    def test_correlation_id_unique_per_request(self) -> None:
        app = _build_app([(CorrelationIdMiddleware, {})])
        with TestClient(app) as client:
            first = client.get("/test").headers["x-correlation-id"]
            second = client.get("/test").headers["x-correlation-id"]

        assert first != second


# ============================================================================
# RequestLoggingMiddleware
# ============================================================================


class TestRequestLoggingMiddleware:

    @pytest.mark.unit
    def test_successful_request_logged(self, caplog) -> None:
        app = _build_app([(RequestLoggingMiddleware, {})])
        with caplog.at_level("INFO"), TestClient(app) as client:
            response = client.get("/test")

        assert response.status_code == 200
        assert "Request completed: GET /test" in caplog.text

    @pytest.mark.unit
    def test_exception_in_handler_reraised(self) -> None:
        app = _build_app([(RequestLoggingMiddleware, {})])
        with TestClient(app, raise_server_exceptions=False) as client:
            response = client.get("/error")

        assert response.status_code == 500


# ============================================================================
# Exception handlers
# ============================================================================


class TestAppExceptionHandler:

    @pytest.mark.unit
    async def test_not_found(self) -> None:
        exc = NotFoundException("Session", 123)

        response = await app_exception_handler(_mock_request("/api/admin/debug/sessions/123"), exc)

        assert isinstance(response, JSONResponse)
        assert response.status_code == 404
        assert "x-correlation-id" in response.headers
        body = json.loads(response.body)
        assert body["error"]["code"] == ErrorCode.NOT_FOUND.value
        assert body["error"]["details"]["identifier"] == "123"

    @pytest.mark.unit
    async def test_validation_exception(self) -> None:
        exc = ValidationException("No sender for channel instagram", field="channel_type")

        response = await app_exception_handler(_mock_request("/api/messages/inbound"), exc)

        assert response.status_code == 400

    @pytest.mark.unit
    async def test_provider_error_is_503(self) -> None:
        from app.core.exceptions import LLMProviderError

        response = await app_exception_handler(_mock_request("/x"), LLMProviderError("gemini", "down"))

        assert response.status_code == 503
        assert json.loads(response.body)["error"]["code"] == ErrorCode.LLM_PROVIDER_ERROR.value


class TestGenericExceptionHandler:

    @pytest.mark.unit
    async def test_handles_unexpected_exception(self) -> None:
        response = await generic_exception_handler(_mock_request("/api/x"), RuntimeError("boom"))

        assert isinstance(response, JSONResponse)
        assert response.status_code == 500
        assert "x-correlation-id" in response.headers

    @pytest.mark.unit
    async def test_does_not_leak_internal_details(self) -> None:
        exc = RuntimeError("database connection failed on host 10.0.0.1")

        response = await generic_exception_handler(_mock_request("/api/x"), exc)

        body = response.body.decode()
        assert "10.0.0.1" not in body
        assert "database connection" not in body
        assert "ERR_1000" in body

    @pytest.mark.unit
    def test_app_exception_base(self) -> None:
        exc = AppException("nope")
        assert exc.to_dict()["error"]["code"] == ErrorCode.INTERNAL_ERROR.value


# ============================================================================
# setup_middleware
# ============================================================================


class TestSetupMiddleware:

    @pytest.mark.unit
    async def test_full_middleware_stack(self, test_client) -> None:
        response = await test_client.get("/health")

        assert response.status_code == 200
        assert "x-correlation-id" in response.headers
