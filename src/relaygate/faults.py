"""Terminal error handling: every failure becomes a JSON response."""

from __future__ import annotations

import json
import traceback
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import JSONResponse

from relaygate.exceptions import GatewayError
from relaygate.logging import get_logger
from relaygate.pipeline import FilterContext
from relaygate.redaction import redact_body, redact_headers

logger = get_logger(__name__)

PROXY_NOTE = "Reverse proxy encountered an internal server error."
NOT_FOUND_BODY = {"error": "Not found"}
_ROUTER_DEFAULT_DETAILS = {"Not Found", "Method Not Allowed"}


def explicit_status(exc: BaseException) -> int | None:
    """Return the HTTP status an error carries, if any."""
    status = getattr(exc, "status_code", None)
    if isinstance(status, int) and 400 <= status < 600:
        return status
    return None


def error_message(exc: BaseException) -> str:
    if isinstance(exc, GatewayError):
        return exc.message
    detail = getattr(exc, "detail", None)
    if isinstance(detail, str):
        return detail
    return str(exc)


def not_found_response() -> JSONResponse:
    return JSONResponse(NOT_FOUND_BODY, status_code=404)


class FaultBoundary:
    """Map errors to responses and log the unexpected ones."""

    def render(self, exc: Exception, ctx: FilterContext) -> JSONResponse:
        status = explicit_status(exc)
        if status is not None:
            headers = getattr(exc, "headers", None)
            return JSONResponse(
                {"error": error_message(exc)},
                status_code=status,
                headers=headers if isinstance(headers, dict) else None,
            )

        self._log_failure("unhandled_request_error", exc, ctx)
        return JSONResponse(
            {
                "error": {
                    "type": "proxy_error",
                    "message": str(exc),
                    "stack": "".join(traceback.format_exception(exc)),
                    "proxy_note": PROXY_NOTE,
                }
            },
            status_code=500,
        )

    def report_after_start(self, exc: Exception, ctx: FilterContext) -> None:
        """Log an error raised after the response headers went out."""
        self._log_failure("error_after_response_started", exc, ctx)

    def _log_failure(self, event: str, exc: Exception, ctx: FilterContext) -> None:
        logger.error(
            event,
            method=ctx.method,
            path=ctx.path,
            remote_addr=ctx.remote_addr,
            headers=redact_headers(ctx.headers.raw),
            body=redact_body(ctx.parsed_body),
            error=str(exc),
            exc_info=exc,
        )

    def install(self, app: FastAPI) -> None:
        """Register the explicit-status handlers on the application."""

        @app.exception_handler(StarletteHTTPException)
        async def http_exception_handler(
            request: Request, exc: StarletteHTTPException
        ) -> JSONResponse:
            if exc.status_code in {404, 405} and exc.detail in _ROUTER_DEFAULT_DETAILS:
                return not_found_response()
            return JSONResponse(
                {"error": error_message(exc)},
                status_code=exc.status_code,
                headers=exc.headers,
            )

        @app.exception_handler(GatewayError)
        async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
            return JSONResponse({"error": exc.message}, status_code=exc.status_code)

        @app.exception_handler(RequestValidationError)
        async def validation_exception_handler(
            request: Request, exc: RequestValidationError
        ) -> JSONResponse:
            detail: Any = json.loads(json.dumps(exc.errors(), default=str))
            return JSONResponse(
                {"error": "Invalid request", "detail": detail},
                status_code=422,
            )
