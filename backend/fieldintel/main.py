"""Field Intel API - Main FastAPI Application."""

import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.sessions import SessionMiddleware

from fieldintel.api.routes import crm_oauth, health, pipeline
from fieldintel.core.config import settings
from fieldintel.core.exceptions import FieldIntelException, sanitize_error
from fieldintel.middleware.performance import (
    RequestIDLogFilter,
    RequestIDMiddleware,
    RequestTimingMiddleware,
)

# OAuth session cookie only has to outlive one authorization round trip
SESSION_MAX_AGE_SECONDS = 10 * 60


def _configure_logging() -> None:
    """Set up logging from LOG_FORMAT / LOG_LEVEL.

    json: Structured JSON via python-json-logger (production).
    text: Human-readable format (local development).
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    # Remove existing handlers to avoid duplicate output
    root_logger.handlers.clear()

    handler = logging.StreamHandler()
    handler.addFilter(RequestIDLogFilter())

    if settings.LOG_FORMAT == "json":
        from pythonjsonlogger.json import JsonFormatter

        handler.setFormatter(
            JsonFormatter(
                fmt="%(asctime)s %(levelname)s %(name)s %(request_id)s %(message)s",
                rename_fields={
                    "asctime": "timestamp",
                    "levelname": "level",
                    "name": "logger",
                },
                static_fields={"app": "fieldintel-api"},
            )
        )
    else:
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s"
            )
        )

    root_logger.addHandler(handler)


_configure_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> Any:
    """Application lifespan handler for startup and shutdown events."""
    from fieldintel.services.dispatch import get_pipeline_dispatcher
    from fieldintel.services.event_relay import get_event_relay
    from fieldintel.services.pipeline import register_stage_handlers

    logger.info("Starting Field Intel API...", extra={"env": settings.APP_ENV})

    dispatcher = get_pipeline_dispatcher()
    register_stage_handlers(dispatcher)

    relay = get_event_relay()
    if settings.EVENT_RELAY_ENABLED:
        await relay.start()
    else:
        logger.warning("Event relay disabled - undelivered pipeline events will not be retried")

    yield

    logger.info("Shutting down Field Intel API...")
    await relay.stop()
    await dispatcher.drain()


app = FastAPI(
    title="Field Intel API",
    description="Voice-note to CRM pipeline: transcription, extraction and Salesforce sync",
    version="0.1.0",
    lifespan=lifespan,
)

CORS_ORIGINS = settings.cors_origins_list
logger.info("CORS allowed origins: %s", CORS_ORIGINS)

# Last-added is outermost: timing sees the request ID set by the outer middleware
app.add_middleware(RequestTimingMiddleware)
app.add_middleware(RequestIDMiddleware)

app.add_middleware(
    SessionMiddleware,
    secret_key=settings.session_secret,
    session_cookie="fieldintel_oauth",
    max_age=SESSION_MAX_AGE_SECONDS,
    same_site="lax",
    https_only=settings.is_production,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(pipeline.router, prefix="/api/v1")
app.include_router(crm_oauth.router, prefix="/api/v1")
app.include_router(health.router, prefix="/api/v1")


@app.get("/health", tags=["system"])
async def root_health_check() -> dict[str, str]:
    """Lightweight liveness check; returns 200 while the process runs."""
    return {"status": "healthy"}


@app.get("/", tags=["system"])
async def root() -> dict[str, str]:
    return {
        "name": "Field Intel API",
        "version": "0.1.0",
        "description": "Voice-note to CRM pipeline",
    }


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or str(uuid.uuid4())


def _error_body(
    message: str, code: str, request_id: str, details: dict[str, Any] | None = None
) -> dict[str, Any]:
    return {"error": message, "details": details or {}, "code": code, "request_id": request_id}


@app.exception_handler(FieldIntelException)
async def fieldintel_exception_handler(request: Request, exc: FieldIntelException) -> JSONResponse:
    """Render domain exceptions as ``{error, details, code, request_id}``."""
    request_id = _request_id(request)
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "Request failed: %s",
        exc.message,
        extra={
            "code": exc.code,
            "status_code": exc.status_code,
            "request_id": request_id,
            "path": request.url.path,
        },
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(exc.message, exc.code, request_id, exc.details),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Reject malformed bodies with 400 before any work starts."""
    request_id = _request_id(request)
    errors = exc.errors()
    missing = [str(err["loc"][-1]) for err in errors if err.get("type") == "missing"]
    message = (
        f"Missing required fields: {', '.join(missing)}" if missing else "Invalid request body"
    )
    logger.warning(
        "Request validation failed",
        extra={"request_id": request_id, "path": request.url.path, "error_count": len(errors)},
    )
    return JSONResponse(
        status_code=400,
        content=_error_body(
            message,
            "VALIDATION_ERROR",
            request_id,
            {"errors": [{"loc": list(e["loc"]), "msg": e["msg"]} for e in errors]},
        ),
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    request_id = _request_id(request)
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(str(exc.detail), f"HTTP_{exc.status_code}", request_id),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unhandled exceptions globally.

    Returns a JSON response with CORS headers so the browser doesn't
    mask the real error as a CORS failure.
    """
    request_id = _request_id(request)
    logger.exception(
        "Unhandled exception occurred",
        exc_info=exc,
        extra={"request_id": request_id, "path": request.url.path},
    )
    origin = request.headers.get("origin", "")
    response = JSONResponse(
        status_code=500,
        content=_error_body(sanitize_error(exc), "INTERNAL_ERROR", request_id),
    )
    if origin in CORS_ORIGINS:
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Credentials"] = "true"
    return response
