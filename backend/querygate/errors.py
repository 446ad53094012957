# backend/querygate/errors.py
from __future__ import annotations

"""
Application error taxonomy.

Every error raised on purpose by the approval state machine or the execution
subsystem is an ``AppError`` carrying an HTTP-class status code and a stable
machine-readable ``code``:

- BadRequestError      400  missing connection config, unsupported db type,
                            missing script content, bad filters
- ForbiddenError       403  authorization failure on reject / read
- NotFoundError        404  referenced entity absent
- ConflictError        409  request no longer PENDING
- QueryExecutionError  422  user-fault execution failure
- InternalError        500  infra-fault execution failure

``register_error_handlers`` is what an HTTP layer installs to turn these into
consistent JSON responses.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class AppError(Exception):
    status_code: int = 500
    code: str = "INTERNAL_ERROR"
    default_message: str = "Internal Server Error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"status": "error", "code": self.code, "message": self.message}


class BadRequestError(AppError):
    status_code = 400
    code = "BAD_REQUEST"
    default_message = "Bad Request"


class ForbiddenError(AppError):
    status_code = 403
    code = "FORBIDDEN"
    default_message = "Forbidden"


class NotFoundError(AppError):
    status_code = 404
    code = "NOT_FOUND"
    default_message = "Resource not found"


class ConflictError(AppError):
    status_code = 409
    code = "CONFLICT"
    default_message = "Resource conflict"


class QueryExecutionError(AppError):
    """422: the submitted query or script itself is at fault."""

    status_code = 422
    code = "QUERY_EXECUTION_ERROR"
    default_message = "Query execution failed"


class InternalError(AppError):
    """500: infrastructure (connectivity, DNS, TLS) is at fault."""

    status_code = 500
    code = "INTERNAL_ERROR"
    default_message = "Internal Server Error"


async def _app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    logger.info("%s on %s: %s", exc.code, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s", request.url.path)
    return JSONResponse(
        status_code=500,
        content=InternalError().to_dict(),
    )


def register_error_handlers(app: FastAPI) -> None:
    """Install the AppError -> JSON mapping on a FastAPI application."""
    app.add_exception_handler(AppError, _app_error_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)
