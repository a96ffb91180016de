"""Error and header policy for the HTTP surface.

This is the only place where error kinds become status codes. Handlers match
on ``ErrorKind``; message text is never inspected.
"""

from contextlib import contextmanager
from typing import Any, Generator

import structlog
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from coupon_claim.domain.errors import CouponClaimError, DataStoreUnavailable, ErrorKind, ValidationFailed

logger = structlog.get_logger(__name__)

STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.AUTHENTICATION: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    ErrorKind.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrorKind.CONFIGURATION: status.HTTP_400_BAD_REQUEST,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorKind.INFRASTRUCTURE: status.HTTP_500_INTERNAL_SERVER_ERROR,
}

# Widget endpoints are called cross-origin from partner pages.
CORS_POST_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
}

CORS_GET_HEADERS = {
    **CORS_POST_HEADERS,
    "Access-Control-Allow-Methods": "GET, OPTIONS",
}

NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate",
    "Pragma": "no-cache",
}

CLAIM_HEADERS = {**CORS_POST_HEADERS, **NO_CACHE_HEADERS}

CLAIM_PATHS = {"/api/claim", "/api/widget/claim"}
EXCHANGE_PATHS = {"/api/session-from-token", "/api/widget-session"}
LISTING_PATHS = {"/api/widget/coupons", "/api/available-coupons"}


def headers_for_path(path: str) -> dict[str, str]:
    """Headers every response on a public path carries, errors included."""
    if path in CLAIM_PATHS:
        return dict(CLAIM_HEADERS)
    if path in EXCHANGE_PATHS:
        return dict(CORS_POST_HEADERS)
    if path in LISTING_PATHS:
        return dict(CORS_GET_HEADERS)
    return {}


def status_for(error: CouponClaimError) -> int:
    return STATUS_BY_KIND.get(error.kind, status.HTTP_500_INTERNAL_SERVER_ERROR)


def error_body(error: CouponClaimError) -> dict[str, Any]:
    body: dict[str, Any] = {"success": False, "error": error.message, "code": error.code}
    details = error.details()
    if details:
        body.update(details)
    return body


async def coupon_claim_error_handler(request: Request, exc: CouponClaimError) -> JSONResponse:
    status_code = status_for(exc)
    if exc.kind is ErrorKind.INFRASTRUCTURE:
        logger.error("request_failed", path=request.url.path, code=exc.code)
    elif exc.kind is ErrorKind.CONFLICT:
        logger.info("request_conflict", path=request.url.path, code=exc.code)
    else:
        logger.warning("request_rejected", path=request.url.path, code=exc.code, status_code=status_code)

    return JSONResponse(
        status_code=status_code,
        content=error_body(exc),
        headers=headers_for_path(request.url.path),
    )


async def request_validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    issues = [
        {
            "loc": [str(part) for part in error.get("loc", ())],
            "msg": error.get("msg", ""),
            "type": error.get("type", ""),
        }
        for error in exc.errors()
    ]
    logger.info("request_validation_failed", path=request.url.path, issue_count=len(issues))
    return await coupon_claim_error_handler(request, ValidationFailed("Validation error", issues=issues))


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(CouponClaimError, coupon_claim_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, request_validation_error_handler)  # type: ignore[arg-type]


@contextmanager
def storage_errors(operation: str, **context: Any) -> Generator[None, None, None]:
    """Turn unexpected database failures into DataStoreUnavailable.

    Typed domain errors pass through untouched.
    """
    try:
        yield
    except SQLAlchemyError as e:
        logger.exception("data_store_error", operation=operation, error_type=type(e).__name__, **context)
        raise DataStoreUnavailable() from e
