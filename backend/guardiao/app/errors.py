"""API error types and the exception handlers producing the error envelope."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import settings
from .logging import get_logger


logger = get_logger("guardiao.errors")


class ApiError(StarletteHTTPException):
    """HTTP error carrying a human readable message and an error code."""

    status_code_default: int = status.HTTP_400_BAD_REQUEST
    error_default: str | None = None

    def __init__(
        self,
        message: str,
        *,
        error: str | None = None,
        status_code: int | None = None,
        extra: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> None:
        code = status_code or self.status_code_default
        super().__init__(code, detail=message, headers=dict(headers) if headers else None)
        self.message = message
        self.error = error or self.error_default
        self.extra = dict(extra or {})


class BadRequestError(ApiError):
    status_code_default = status.HTTP_400_BAD_REQUEST
    error_default = "BAD_REQUEST"


class UnauthorizedError(ApiError):
    status_code_default = status.HTTP_401_UNAUTHORIZED
    error_default = "UNAUTHORIZED"


class ForbiddenError(ApiError):
    status_code_default = status.HTTP_403_FORBIDDEN
    error_default = "FORBIDDEN"


class NotFoundError(ApiError):
    status_code_default = status.HTTP_404_NOT_FOUND
    error_default = "NOT_FOUND"


class ConflictError(ApiError):
    status_code_default = status.HTTP_409_CONFLICT
    error_default = "CONFLICT"


class TooManyRequestsError(ApiError):
    status_code_default = status.HTTP_429_TOO_MANY_REQUESTS
    error_default = "TOO_MANY_REQUESTS"


def _envelope(
    request: Request,
    *,
    status_code: int,
    message: str,
    error: str | None = None,
    extra: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    body: dict[str, Any] = {
        "success": False,
        "statusCode": status_code,
        "message": message,
    }
    if error:
        body["error"] = error
    if extra:
        body.update(extra)
    body["timestamp"] = datetime.now(timezone.utc).isoformat()
    body["path"] = request.url.path
    body["method"] = request.method
    return body


def _log_http_error(request: Request, status_code: int, message: str) -> None:
    if status_code >= 500:
        logger.error("http_error", status_code=status_code, message=message, path=request.url.path)
    else:
        logger.warning("http_error", status_code=status_code, message=message, path=request.url.path)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if isinstance(exc, ApiError):
        message, error, extra = exc.message, exc.error, exc.extra
    else:
        detail = exc.detail
        message = detail if isinstance(detail, str) else "Erro na requisição"
        error, extra = None, None
    _log_http_error(request, exc.status_code, message)
    return JSONResponse(
        status_code=exc.status_code,
        content=jsonable_encoder(
            _envelope(request, status_code=exc.status_code, message=message, error=error, extra=extra)
        ),
        headers=getattr(exc, "headers", None),
    )


def _format_validation_errors(exc: RequestValidationError) -> list[dict[str, str]]:
    formatted: list[dict[str, str]] = []
    for item in exc.errors():
        location = [str(part) for part in item.get("loc", ()) if part not in ("body", "query", "path")]
        formatted.append({"field": ".".join(location) or "body", "message": item.get("msg", "")})
    return formatted


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = _format_validation_errors(exc)
    logger.warning("request_validation_failed", path=request.url.path, errors=errors)
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=_envelope(
            request,
            status_code=status.HTTP_400_BAD_REQUEST,
            message="Dados inválidos",
            error="VALIDATION_ERROR",
            extra={"validationErrors": errors},
        ),
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_exception", path=request.url.path, error=str(exc))
    message = "Erro interno do servidor" if settings.is_production else str(exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_envelope(
            request,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            message=message,
            error="INTERNAL_SERVER_ERROR",
        ),
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Install the envelope producing handlers on ``app``."""

    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)


__all__ = [
    "ApiError",
    "BadRequestError",
    "ConflictError",
    "ForbiddenError",
    "NotFoundError",
    "TooManyRequestsError",
    "UnauthorizedError",
    "register_exception_handlers",
]
