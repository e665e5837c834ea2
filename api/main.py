"""
api/main.py -- FastAPI application entry point for SessionAuth.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. log_requests          -- method, path, status, latency per request
  4. route_gate            -- page-level redirects (anonymous -> /login,
                              signed-in -> / on login/signup pages)

Lifespan builds the AuthStore and the services on top of it, starts the
expired-row reaper, and tears everything down symmetrically on shutdown.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.concurrency import run_in_threadpool

from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.dependencies import get_auth_context, try_get_current_user
from auth.gateway import AuthGateway
from auth.models import OperationalFailure
from auth.reset import LoggingNotifier, PasswordResetFlow
from auth.routing import gate_redirect, is_gated
from auth.sessions import SessionManager
from auth.store import AuthStore
from auth.tokens import clear_session_cookie
from core.config import get_settings

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("sessionauth.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI, interval_seconds: int) -> None:
    """Reap expired sessions and reset tokens every interval_seconds.

    Validation never depends on this running -- expiry is checked at read
    time. The loop only keeps the tables from growing without bound.
    Store calls are blocking, so they run in the thread pool. A failed pass
    is logged and retried on the next tick. CancelledError from task.cancel()
    during shutdown propagates out of asyncio.sleep and unwinds the coroutine.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await run_in_threadpool(app.state.sessions.purge_expired)
            await run_in_threadpool(app.state.reset_flow.purge_expired)
        except OperationalFailure:
            logger.warning("Expired-row purge failed; will retry in %ds", interval_seconds)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


def build_services(app: FastAPI, store: AuthStore) -> None:
    """Wire the auth services onto app.state around an existing store.

    Split out of lifespan so tests can reuse the exact production wiring with
    an in-memory store.
    """
    app.state.store = store
    app.state.sessions = SessionManager(store, ttl_seconds=_settings.session_ttl_seconds)
    app.state.reset_flow = PasswordResetFlow(
        store,
        ttl_seconds=_settings.reset_token_ttl_seconds,
        reset_url_base=_settings.reset_url_base,
        notifier=LoggingNotifier(reveal_links=_settings.debug),
    )
    app.state.gateway = AuthGateway(store, app.state.sessions)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown.
    """
    # Startup
    logger.info("SessionAuth API starting up")
    build_services(app, AuthStore(_settings.database_url, timeout=_settings.store_timeout_seconds))
    logger.info("Auth store initialized")
    app.state.purge_task = None
    if _settings.purge_interval_seconds > 0:
        app.state.purge_task = asyncio.create_task(_purge_loop(app, _settings.purge_interval_seconds))

    yield

    # Shutdown
    if app.state.purge_task is not None:
        app.state.purge_task.cancel()
    app.state.store.close()
    logger.info("SessionAuth API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="SessionAuth API",
    description="Session-based authentication: signup, login, logout and password reset.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Route gate middleware
#
# Registered first so it runs innermost: the request has passed host and CORS
# checks and is being timed by log_requests before the gate looks at it.
# ---------------------------------------------------------------------------


def _operational_failure_response() -> JSONResponse:
    return JSONResponse(
        status_code=503,
        content=ErrorResponse(
            error=ErrorDetail(
                code="service_unavailable",
                message="Something went wrong. Please try again.",
            )
        ).model_dump(),
    )


@app.middleware("http")
async def route_gate(request: Request, call_next):
    """Redirect page requests according to auth.routing.

    API and static paths pass straight through; API routes enforce auth with
    get_current_user() and answer 401 instead of redirecting.

    A request carrying a session cookie that no longer validates (expired or
    revoked) gets the stale cookie cleared on its redirect, so the next
    request is treated as a clean anonymous visit.
    """
    path = request.url.path
    if not is_gated(path):
        return await call_next(request)
    try:
        identity = await run_in_threadpool(try_get_current_user, request)
    except OperationalFailure:
        logger.exception("Route gate could not reach the store on %s", path)
        return _operational_failure_response()
    location = gate_redirect(path, identity is not None)
    if location is not None:
        resp = RedirectResponse(location, status_code=302)
        if identity is None and get_auth_context(request).token:
            clear_session_cookie(resp)
        return resp
    return await call_next(request)


# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Outer middleware
#
# add_middleware() wraps the current stack, so the last one added is the
# outermost: TrustedHost sees the request first, then CORS.
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_settings.allowed_hosts,
)

# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
# Web UI router is mounted by asgi.py, not here.
# api/ and web/ are independent layers -- only the top-level asgi.py imports both.


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(OperationalFailure)
async def operational_failure_handler(request: Request, exc: OperationalFailure) -> JSONResponse:
    """Return 503 with a generic "try again" message when the store is unavailable.

    The cause is logged with its traceback; the client learns nothing about
    the backend. Store transactions have already rolled back.
    """
    logger.error("Operational failure on %s %s: %s", request.method, request.url.path, exc, exc_info=exc)
    return _operational_failure_response()


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it -- str(dict) produces a Python repr,
    not JSON.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=exc.headers,
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    The client receives only a generic message.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version, and database reachability."""
    database = "ok" if request.app.state.store.ping() else "error"
    return HealthResponse(version=VERSION, components={"app": "ok", "database": database})
