"""
Error Handlers

Every failure leaves the API as ``{"error": <code>, "message": <text>}``
with optional ``details``, and carries the request's X-Correlation-Id.
"""
from typing import Any, Dict

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ...domain.errors import DomainError, PersistencePartialError
from ...utils.logger import get_correlation_id, get_logger

logger = get_logger(__name__)

# Status codes raised by routing itself (unknown path, wrong method)
HTTP_ERROR_CODES = {
    404: "not_found",
    405: "method_not_allowed",
    413: "payload_too_large",
}


def _envelope(status_code: int, body: Dict[str, Any]) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=body,
        headers={"X-Correlation-Id": get_correlation_id() or ""},
    )


async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    """Expected failures; 5xx kinds are logged as errors"""
    log = logger.error if exc.http_status >= 500 else logger.warning
    extra: Dict[str, Any] = {"error_code": exc.error_code}
    # the partial payload can be large; it is returned, not logged
    if not isinstance(exc, PersistencePartialError):
        extra["details"] = exc.details
    log(f"{request.method} {request.url.path}: {exc.error_code} - {exc.message}", extra=extra)
    return _envelope(exc.http_status, exc.to_dict())


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed JSON or a body that does not fit the endpoint's model"""
    logger.warning(
        f"Validation error on {request.method} {request.url.path}: {exc.errors()}",
        extra={"error_code": "invalid_input"},
    )
    return _envelope(
        status.HTTP_400_BAD_REQUEST,
        {
            "error": "invalid_input",
            "message": "Request validation failed",
            "details": {"errors": jsonable_encoder(exc.errors())},
        },
    )


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code = HTTP_ERROR_CODES.get(exc.status_code, "http_error")
    return _envelope(exc.status_code, {"error": code, "message": str(exc.detail)})


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"Unexpected error on {request.method} {request.url.path}: {exc}", exc_info=True)
    return _envelope(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        {"error": "server_error", "message": "An unexpected error occurred"},
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(DomainError, domain_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(Exception, general_exception_handler)
