"""Error taxonomy and the JSON error bodies the API returns for it.

Every failure leaves the service as ``{"error": ..., "message": ...}``.
Route handlers and services raise the exceptions below; the handlers
registered by :func:`register_exception_handlers` turn them into responses.
"""

import logging
from http import HTTPStatus
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class TaskLaneError(Exception):
    """Base class for errors that map onto a structured HTTP response."""

    status_code = 500
    error = "Internal Server Error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error is not None:
            self.error = error

    def to_dict(self) -> dict[str, str]:
        return {"error": self.error, "message": self.message}


class ValidationError(TaskLaneError):
    status_code = 400
    error = "Bad Request"


class NotFound(TaskLaneError):
    status_code = 404
    error = "Not Found"


class Unauthorized(TaskLaneError):
    status_code = 401
    error = "Unauthorized"


class UpstreamFailure(TaskLaneError):
    """An identity, storage or model API call failed or timed out."""

    status_code = 502
    error = "Upstream Error"


class InternalError(TaskLaneError):
    status_code = 500
    error = "Internal Server Error"


def _format_validation_errors(exc: RequestValidationError) -> str:
    parts = []
    for err in exc.errors():
        location = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        parts.append(f"{location}: {err.get('msg')}" if location else str(err.get("msg")))
    return "Validation failed: " + "; ".join(parts)


def register_exception_handlers(app: FastAPI, *, production: bool = False) -> None:
    """Install the handlers that render every error as ``{error, message}``."""

    @app.exception_handler(TaskLaneError)
    async def handle_tasklane_error(request: Request, exc: TaskLaneError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={"error": "Bad Request", "message": _format_validation_errors(exc)},
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        try:
            reason = HTTPStatus(exc.status_code).phrase
        except ValueError:
            reason = "Error"
        if exc.status_code == 404 and exc.detail == "Not Found":
            message = f"Route {request.url.path} not found"
        else:
            message = str(exc.detail)
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": reason, "message": message},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        message = "Something went wrong" if production else str(exc)
        return JSONResponse(
            status_code=500,
            content={"error": "Internal Server Error", "message": message},
        )
