"""Middleware — CORS, request context, request logging, error handling."""

from __future__ import annotations

import time
import uuid
from typing import Callable

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from mood_engine.config import get_settings

logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

# Route prefixes whose next path segment is the user id.
_USER_SCOPED_PREFIXES: tuple[str, ...] = (
    "/graph/train/",
    "/graph/predict/",
    "/graph/retrieve/",
    "/graph/associations/",
    "/baselines/",
    "/trends/",
)


# ── CORS ──────────────────────────────────────────────────────


def add_cors(app: FastAPI) -> None:
    """Configure CORS from ``settings.cors_origins`` (comma-separated or ``"*"``).

    Credentials are only allowed for an explicit origin list.
    """
    origins_raw = get_settings().cors_origins.strip()
    if origins_raw == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in origins_raw.split(",") if o.strip()]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=origins != ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[REQUEST_ID_HEADER],
    )


# ── Request context ───────────────────────────────────────────


def user_id_from_path(path: str) -> str | None:
    """User id of a user-scoped route, e.g. ``/graph/predict/<user_id>``."""
    for prefix in _USER_SCOPED_PREFIXES:
        if path.startswith(prefix):
            user_id = path[len(prefix):].split("/", 1)[0]
            return user_id or None
    return None


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Bind ``request_id`` (and ``user_id`` when present) to every log event.

    An incoming ``X-Request-ID`` is reused; otherwise one is generated.  The
    id is echoed on the response.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)
        user_id = user_id_from_path(request.url.path)
        if user_id is not None:
            structlog.contextvars.bind_contextvars(user_id=user_id)
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.clear_contextvars()
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


# ── Request logging ───────────────────────────────────────────


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log method, path, status and duration; bodies are never logged."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start = time.monotonic()
        response = await call_next(request)
        duration_ms = round((time.monotonic() - start) * 1000, 1)

        if request.url.path != "/health":
            logger.info(
                "http.request",
                method=request.method,
                path=request.url.path,
                status=response.status_code,
                duration_ms=duration_ms,
            )
        return response


# ── Global error handler ─────────────────────────────────────


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Turn anything the routes did not handle into a clean 500.

    Only the exception type is logged; messages may quote request data.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except Exception as exc:
            logger.exception("http.unhandled_error", path=request.url.path, error=type(exc).__name__)
            return JSONResponse(
                status_code=500,
                content={"detail": "Internal server error."},
            )


# ── Setup helper ──────────────────────────────────────────────


def setup_middleware(app: FastAPI) -> None:
    """Wire all middleware into the FastAPI application.

    Outermost runs first: request context, error handler, request logging,
    then CORS.
    """
    # Add from innermost → outermost (FastAPI reverses the stack)
    add_cors(app)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(ErrorHandlerMiddleware)
    app.add_middleware(RequestContextMiddleware)
