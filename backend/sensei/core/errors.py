# backend/sensei/core/errors.py
"""
Domain error taxonomy and the FastAPI handlers that turn it into JSON.

Every error carries a stable ``code`` and an HTTP status; the handlers
render ``{"code", "message"}`` plus ``fields`` for validation failures and
``error`` (detail) for server-side failures outside production.
"""
import logging
from typing import List, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from sensei.core.config import Settings


class SenseiError(Exception):
    status_code = 500
    code = "ServerError"

    def __init__(self, message: str, *, fields: Optional[List[str]] = None):
        super().__init__(message)
        self.message = message
        self.fields = fields or []


class ValidationError(SenseiError):
    status_code = 400
    code = "BadRequest"


class NotFoundError(SenseiError):
    status_code = 404
    code = "NotFound"


class OverflowExhaustedError(SenseiError):
    """All overflow degradation stages failed; nothing was committed."""

    code = "OverflowExhausted"


class RenderFailure(SenseiError):
    """Every headless-browser launch strategy failed or rendering timed out."""

    code = "RenderFailure"


class DocumentTooLargeError(SenseiError):
    """
    Raised by the session store when a write hits the storage engine's
    single-document size ceiling. Consumed by the merge engine.
    """


def _error_body(exc: SenseiError, settings: Settings) -> dict:
    body = {"code": exc.code, "message": exc.message}
    if exc.fields:
        body["fields"] = exc.fields
    if exc.status_code >= 500 and not settings.is_production:
        cause = exc.__cause__ or exc
        body["error"] = str(cause)
    return body


def register_exception_handlers(app: FastAPI, settings: Settings, logger: logging.Logger) -> None:
    @app.exception_handler(SenseiError)
    async def handle_sensei_error(request: Request, exc: SenseiError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message, exc_info=exc)
        return JSONResponse(status_code=exc.status_code, content=_error_body(exc, settings))

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        body = {"code": "ServerError", "message": "Internal server error"}
        if not settings.is_production:
            body["error"] = str(exc)
        return JSONResponse(status_code=500, content=body)
