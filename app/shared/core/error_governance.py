"""
Unified Error Governance

Centrally classifies exceptions, logs them with structure and returns a
standardized JSON body.
"""

from typing import Any, Dict, Optional
from uuid import uuid4

import structlog
from fastapi import Request
from fastapi.responses import JSONResponse

from app.shared.core.config import get_settings
from app.shared.core.exceptions import HotspotBillingException
from app.shared.core.ops_metrics import API_ERRORS_TOTAL

logger = structlog.get_logger()

# Codes whose message and details are safe to return verbatim in production.
SAFE_CODES = {
    "signature_invalid",
    "already_processed",
    "validation_error",
    "payment_not_successful",
    "FREE_PLAN_NO_PAYMENT",
    "service_plan_unavailable",
    "subscriber_not_found",
    "partial_failure",
    "not_found",
    "invalid_payload",
    "amount_mismatch",
    "username_taken",
    "account_creation_disabled",
    "invalid_pricing",
}


def handle_exception(
    request: Request, exc: Exception, error_id: Optional[str] = None
) -> JSONResponse:
    """Classifies and records exceptions, returning a standardized JSON response."""
    error_id = error_id or str(uuid4())
    is_prod = get_settings().ENVIRONMENT.lower() in ("production", "staging")

    if isinstance(exc, HotspotBillingException):
        app_exc = exc
    elif isinstance(exc, ValueError):
        app_exc = HotspotBillingException(
            message="Invalid request parameters" if is_prod else str(exc),
            code="value_error",
            status_code=400,
        )
        logger.warning(
            "business_validation_error",
            error=str(exc),
            error_id=error_id,
            path=request.url.path,
        )
    else:
        # Never leak raw messages of unexpected exceptions.
        app_exc = HotspotBillingException(
            message="An unexpected internal error occurred",
            code="internal_error",
            status_code=500,
        )
        logger.exception(
            "unhandled_raw_exception",
            error=str(exc),
            error_id=error_id,
            path=request.url.path,
        )

    message = app_exc.message
    response_details: Optional[Dict[str, Any]] = app_exc.details or None
    if is_prod and app_exc.code not in SAFE_CODES:
        message = "An error occurred while processing your request"
        response_details = None

    API_ERRORS_TOTAL.labels(
        path=request.url.path,
        method=request.method,
        status_code=app_exc.status_code,
    ).inc()

    log = logger.error if app_exc.status_code >= 500 else logger.warning
    log(
        "api_error",
        error_id=error_id,
        code=app_exc.code,
        message=app_exc.message,
        status_code=app_exc.status_code,
        path=request.url.path,
        details=app_exc.details,
    )

    return JSONResponse(
        status_code=app_exc.status_code,
        content={
            "error": {
                "message": message,
                "code": app_exc.code,
                "id": error_id,
                "details": response_details,
            }
        },
    )
