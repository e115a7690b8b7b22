"""Exception handlers for the FastAPI app.

Register with register_exception_handlers(app). Every failure leaves the
app as the ``{"ok": false, "error": {"code", "message"}}`` envelope.
"""

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ..exceptions import FlowError

logger = logging.getLogger(__name__)

_HTTP_STATUS_CODES = {
    400: "BAD_REQUEST",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "BAD_REQUEST",
    409: "STATE_CONFLICT",
}


def _error(status: int, code: str, message: Any) -> JSONResponse:
    return JSONResponse(
        status_code=status,
        content={"ok": False, "error": {"code": code, "message": message}},
    )


def _flow_exception_handler(request: Request, exc: FlowError) -> JSONResponse:
    """Map FlowError subclasses to their own code and status."""
    if exc.status >= 409:
        logger.warning("%s %s: %s", request.method, request.url.path, exc.message)
    return _error(exc.status, exc.code, exc.message)


def _validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Missing or malformed request fields are a BAD_REQUEST."""
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        problems.append(f"{location}: {error.get('msg')}" if location else error.get("msg"))
    return _error(400, "BAD_REQUEST", "; ".join(problems) or "Invalid request")


def _http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    code = _HTTP_STATUS_CODES.get(exc.status_code, "HTTP_ERROR")
    return _error(exc.status_code, code, exc.detail)


def _generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Return 500; include detail only when debug is True."""
    logger.exception("Unhandled exception: %s", exc)
    settings = getattr(request.app.state, "settings", None)
    detail = str(exc) if settings is not None and settings.debug else "Internal server error"
    return _error(500, "INTERNAL_ERROR", detail)


def register_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the FastAPI app."""
    app.add_exception_handler(FlowError, _flow_exception_handler)
    app.add_exception_handler(RequestValidationError, _validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, _http_exception_handler)
    app.add_exception_handler(Exception, _generic_exception_handler)


__all__ = ["register_exception_handlers"]
