"""Error handlers converting exceptions into ``{"error": {...}}`` responses.

Status code mapping:
- ``tidings.errors.ValidationError`` and ``ValueError`` -> 400 Bad Request
- Any other ``Exception`` -> 500 Internal Server Error
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from tidings.api.models import ErrorDetail, ErrorResponse
from tidings.errors import ValidationError

logger = logging.getLogger(__name__)


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message))
    return JSONResponse(status_code=status_code, content=body.model_dump())


async def _handle_validation_error(request: Request, exc: ValidationError) -> JSONResponse:
    logger.info("Rejected request: %s", exc)
    return _error(400, "VALIDATION_ERROR", str(exc))


async def _handle_value_error(request: Request, exc: ValueError) -> JSONResponse:
    logger.info("Rejected request: %s", exc)
    return _error(400, "VALIDATION_ERROR", str(exc))


async def _handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return _error(500, "INTERNAL_ERROR", "Internal server error")


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ValidationError, _handle_validation_error)
    app.add_exception_handler(ValueError, _handle_value_error)
    app.add_exception_handler(Exception, _handle_unexpected)
