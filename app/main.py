import json
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, List, Sequence

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from app.shared.core.app_routes import register_api_routers, register_lifecycle_routes
from app.shared.core.config import get_settings, reload_settings_from_environment
from app.shared.core.error_governance import handle_exception
from app.shared.core.exceptions import HotspotBillingException
from app.shared.core.logging import setup_logging
from app.shared.core.middleware import RequestIDMiddleware
from app.shared.core.ops_metrics import API_ERRORS_TOTAL
from app.shared.db.session import get_engine

setup_logging()
settings = get_settings()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    global settings
    settings = reload_settings_from_environment()
    logger.info("app_starting", app_name=settings.APP_NAME, environment=settings.ENVIRONMENT)

    from app.shared.core.http import close_http_client, init_http_client

    # One pooled client for Paystack and the RADIUS manager API
    await init_http_client()

    yield

    logger.info("app_shutting_down")
    await close_http_client()

    await get_engine().dispose()
    logger.info("db_engine_disposed")


hotspot_app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    lifespan=lifespan,
)
# Uvicorn looks for `app` by default.
app: FastAPI = hotspot_app

__all__ = ["app", "hotspot_app", "lifespan"]


@hotspot_app.exception_handler(HotspotBillingException)
async def hotspot_exception_handler(
    request: Request, exc: HotspotBillingException
) -> JSONResponse:
    """Handle custom application exceptions."""
    return handle_exception(request, exc)


@hotspot_app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle FastAPI HTTP exceptions with standardized format."""
    is_prod = settings.ENVIRONMENT.lower() in {"production", "staging"}
    detail_text = str(exc.detail) if isinstance(exc.detail, str) else "Request failed"
    if is_prod and exc.status_code >= 500:
        message_text = "An unexpected internal error occurred"
    else:
        message_text = detail_text

    API_ERRORS_TOTAL.labels(
        path=request.url.path, method=request.method, status_code=exc.status_code
    ).inc()
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": {
                "message": message_text,
                "code": "http_error",
                "details": None,
            }
        },
    )


@hotspot_app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle Pydantic validation errors."""

    def _json_safe(value: Any) -> Any:
        if isinstance(value, Exception):
            return str(value)
        try:
            json.dumps(value)
            return value
        except (TypeError, ValueError):
            return str(value)

    def _sanitize_errors(errors: Sequence[Any]) -> List[Dict[str, Any]]:
        sanitized = []
        for err in errors:
            clean = dict(err)
            if "ctx" in clean and isinstance(clean["ctx"], dict):
                clean["ctx"] = {k: _json_safe(v) for k, v in clean["ctx"].items()}
            if "input" in clean:
                clean["input"] = _json_safe(clean["input"])
            sanitized.append(clean)
        return sanitized

    API_ERRORS_TOTAL.labels(
        path=request.url.path, method=request.method, status_code=422
    ).inc()
    return JSONResponse(
        status_code=422,
        content={
            "error": {
                "message": "The request body or parameters are invalid.",
                "code": "request_validation_error",
                "details": _sanitize_errors(exc.errors()),
            }
        },
    )


@hotspot_app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    """Handle business logic ValueErrors via central governance."""
    return handle_exception(request, exc)


@hotspot_app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unhandled exceptions with sanitized responses."""
    return handle_exception(request, exc)


register_lifecycle_routes(
    hotspot_app,
    app_name=settings.APP_NAME,
    version=settings.VERSION,
)

Instrumentator().instrument(hotspot_app).expose(hotspot_app)

# Middleware runs in REVERSE order of addition; CORS goes last so it runs first.
hotspot_app.add_middleware(GZipMiddleware, minimum_size=1000)
hotspot_app.add_middleware(RequestIDMiddleware)

if settings.CORS_ORIGINS and "*" in settings.CORS_ORIGINS:
    logger.error("insecure_cors_config_detected", msg="allow_credentials=True with '*' origin is forbidden")
    cors_allowed_origins = [o for o in settings.CORS_ORIGINS if o != "*"]
else:
    cors_allowed_origins = settings.CORS_ORIGINS

hotspot_app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Requested-With", "X-Request-ID"],
)

register_api_routers(hotspot_app)
