"""Request-id propagation and uniform JSON error responses."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any
from uuid import uuid4

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError, ResponseValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from agent_pool.core.logging import get_logger

if TYPE_CHECKING:
    from starlette.types import ASGIApp, Message, Receive, Scope, Send

logger = get_logger(__name__)
REQUEST_ID_HEADER = "X-Request-Id"


class RequestIdMiddleware:
    """Attach a request id to scope state and echo it on every response."""

    def __init__(self, app: ASGIApp) -> None:
        self._app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self._app(scope, receive, send)
            return

        request_id = _incoming_request_id(scope) or uuid4().hex
        scope.setdefault("state", {})["request_id"] = request_id

        async def send_with_request_id(message: Message) -> None:
            if message["type"] == "http.response.start":
                headers = [
                    (name, value)
                    for name, value in message.get("headers", [])
                    if name.lower() != REQUEST_ID_HEADER.lower().encode()
                ]
                headers.append((REQUEST_ID_HEADER.lower().encode(), request_id.encode()))
                message["headers"] = headers
            await send(message)

        await self._app(scope, receive, send_with_request_id)


def _incoming_request_id(scope: Scope) -> str | None:
    wanted = REQUEST_ID_HEADER.lower().encode()
    for name, value in scope.get("headers", []):
        if name.lower() == wanted:
            cleaned = value.decode("latin-1").strip()
            return cleaned or None
    return None


def _get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if isinstance(request_id, str) and request_id:
        return request_id
    request_id = _incoming_request_id(request.scope) or uuid4().hex
    request.state.request_id = request_id
    return request_id


def _error_payload(*, detail: Any, request_id: str) -> dict[str, Any]:
    return {"detail": detail, "request_id": request_id}


def _json_error(request: Request, *, status_code: int, detail: Any) -> JSONResponse:
    request_id = _get_request_id(request)
    return JSONResponse(
        status_code=status_code,
        content=_error_payload(detail=detail, request_id=request_id),
        headers={REQUEST_ID_HEADER: request_id},
    )


def _safe_validation_errors(errors: Any) -> list[dict[str, Any]]:
    cleaned: list[dict[str, Any]] = []
    for error in errors:
        item = dict(error)
        raw_input = item.get("input")
        if isinstance(raw_input, bytes | bytearray):
            item["input"] = raw_input.decode("utf-8", errors="replace")
        item.pop("ctx", None)
        cleaned.append(item)
    return jsonable_encoder(cleaned)


async def _http_exception_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    if not isinstance(exc, StarletteHTTPException):
        return await _unhandled_exception_handler(request, exc)
    response = _json_error(request, status_code=exc.status_code, detail=exc.detail)
    if exc.headers:
        response.headers.update(exc.headers)
    return response


async def _request_validation_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    errors = exc.errors() if isinstance(exc, RequestValidationError) else []
    return _json_error(
        request,
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail=_safe_validation_errors(errors),
    )


async def _response_validation_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    logger.error(
        "http.response_validation_failed",
        extra={
            "path": request.url.path,
            "request_id": _get_request_id(request),
            "error_count": len(exc.errors()) if isinstance(exc, ResponseValidationError) else 0,
        },
    )
    return _json_error(
        request,
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Internal Server Error",
    )


async def _unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "http.unhandled_exception",
        exc_info=exc,
        extra={"path": request.url.path, "request_id": _get_request_id(request)},
    )
    return _json_error(
        request,
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Internal Server Error",
    )


def install_error_handling(app: FastAPI) -> None:
    """Register request-id middleware and JSON error handlers on `app`."""
    app.add_middleware(RequestIdMiddleware)
    app.add_exception_handler(StarletteHTTPException, _http_exception_exception_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_exception_handler)
    app.add_exception_handler(ResponseValidationError, _response_validation_exception_handler)
    app.add_exception_handler(Exception, _unhandled_exception_handler)
