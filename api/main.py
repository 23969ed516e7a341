"""
api/main.py -- FastAPI application entry point for folio's auth service.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. log_requests          -- one log line per request with latency
  4. gate_protected_paths  -- signature-only token check on protected prefixes

Lifespan builds every long-lived component exactly once and hangs it on
app.state: the Redis client, the principal store, token codec, both
verifiers, session store, rate limiter, and the AuthFlows that compose them.
Shutdown closes the Redis pool and the database engine symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from urllib.parse import quote

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.exc import SQLAlchemyError

from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.admin import router as admin_router
from api.routes.v1.auth import router as auth_router
from auth.dependencies import access_token_from, enforce_api_rate_limit, get_current_user
from auth.errors import AuthError, RateLimited, ReplayDetected
from auth.flows import AuthFlows
from auth.gate import GateVerifier
from auth.models import CurrentUser, TokenKind
from auth.rate_limit import RateLimiter, policies_from_settings
from auth.sessions import SessionStore
from auth.store import PrincipalStore
from auth.tokens import ServerVerifier, TokenCodec, clear_auth_cookies
from cache.redis_client import create_client, ensure_connected
from core.config import Settings, get_settings

VERSION = "0.1.0"

settings = get_settings()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("folio.api")


# ---------------------------------------------------------------------------
# Component wiring
# ---------------------------------------------------------------------------


def install_components(app: FastAPI, settings: Settings, redis: aioredis.Redis, principals: PrincipalStore) -> None:
    """Build the auth components around an existing Redis client and principal store.

    Shared by the real lifespan and the test lifespan, so tests exercise the
    same wiring with fakeredis and an in-memory database.
    """
    codec = TokenCodec.from_settings(settings)
    verifier = ServerVerifier.from_settings(settings)
    sessions = SessionStore.from_settings(redis, settings)
    limiter = RateLimiter(redis, policies_from_settings(settings))

    app.state.settings = settings
    app.state.redis = redis
    app.state.principals = principals
    app.state.codec = codec
    app.state.verifier = verifier
    app.state.gate_verifier = GateVerifier.from_settings(settings)
    app.state.sessions = sessions
    app.state.limiter = limiter
    app.state.flows = AuthFlows(
        principals=principals,
        sessions=sessions,
        limiter=limiter,
        codec=codec,
        verifier=verifier,
        lockout_threshold=settings.lockout_threshold,
        lockout_seconds=settings.lockout_seconds,
    )


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. An unreachable Redis is logged, not fatal: sign-in fails with
    503 and the limiter fails open until it comes back.
    """
    logger.info("folio auth starting up")
    redis = create_client(settings.redis_url, socket_timeout=settings.redis_socket_timeout)
    if await ensure_connected(redis):
        logger.info("Redis connected")
    else:
        logger.warning("Redis unavailable at startup -- sign-in will fail until it is reachable")
    principals = PrincipalStore(db_url=settings.database_url)
    install_components(app, settings, redis, principals)
    logger.info("Auth initialized")

    yield

    principals.close()
    await redis.aclose()
    logger.info("folio auth shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="folio auth",
    description="Session-backed JWT authentication for the folio portfolio site.",
    version=VERSION,
    lifespan=lifespan,
    # Disable built-in /docs and /redoc so we can add auth protection.
    docs_url=None,
    redoc_url=None,
)


# ---------------------------------------------------------------------------
# Request gating middleware
#
# Cheap, signature-only check in front of protected prefixes. Uses the PyJWT
# GateVerifier and never touches Redis, so it cannot see revocation; the
# routes behind it repeat the check through the deep path.
# ---------------------------------------------------------------------------


def _is_protected(path: str, prefixes: list[str]) -> bool:
    return any(path == p or path.startswith(p.rstrip("/") + "/") for p in prefixes)


@app.middleware("http")
async def gate_protected_paths(request: Request, call_next):
    path = request.url.path
    if not _is_protected(path, request.app.state.settings.protected_path_prefixes):
        return await call_next(request)

    token = access_token_from(request)
    if token and request.app.state.gate_verifier.verify(TokenKind.access, token) is not None:
        return await call_next(request)

    if path.startswith("/api/"):
        return JSONResponse(
            status_code=401,
            content=ErrorResponse(
                error=ErrorDetail(code="unauthorized", message="Authentication required.")
            ).model_dump(exclude_none=True),
        )
    # Path only, never a full URL: returnUrl must not become an open redirect.
    return RedirectResponse(f"/signin?returnUrl={quote(path, safe='/')}", status_code=302)


# ---------------------------------------------------------------------------
# Request logging middleware
#
# Pattern: Interceptor / Chain of Responsibility. Every request passes through
# this coroutine before reaching any route handler. We capture wall-clock time
# before and after call_next so we can report latency on every response.
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
# Middleware stack
#
# Starlette makes the LAST registered middleware the outermost. The two
# @app.middleware functions above are registered first, so CORS wraps them
# and TrustedHost wraps everything.
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(
    admin_router,
    prefix="/api/v1",
    tags=["Admin"],
    dependencies=[Depends(enforce_api_rate_limit)],
)


# ---------------------------------------------------------------------------
# Auth-protected API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(user: CurrentUser = Depends(get_current_user)):
    """Swagger UI -- requires authentication."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="folio auth")


@app.get("/redoc", include_in_schema=False)
async def redoc(user: CurrentUser = Depends(get_current_user)):
    """ReDoc UI -- requires authentication."""
    return get_redoc_html(openapi_url="/openapi.json", title="folio auth")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render an AuthError from flows, dependencies, or routes.

    Retry-After accompanies every 429. A detected replay also clears the
    caller's cookies: the tokens they hold are dead.
    """
    if exc.status_code >= 500:
        logger.error("%s on %s %s", exc.code, request.method, request.url.path)
    response = JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=ErrorDetail(**exc.to_detail())).model_dump(exclude_none=True),
    )
    if isinstance(exc, RateLimited):
        response.headers["Retry-After"] = str(exc.retry_after)
    if isinstance(exc, ReplayDetected):
        clear_auth_cookies(response, request.app.state.settings)
    if exc.status_code in (401, 423, 429):
        response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with field-level details when the body or query params fail validation."""
    fields = [
        {"field": ".".join(str(part) for part in err.get("loc", ())[1:]), "message": err.get("msg", "")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=fields,
            )
        ).model_dump(exclude_none=True),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it -- str(dict) produces a Python repr,
    not JSON.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(exclude_none=True),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    Security note: the raw exception is written to the log only, never to the
    response body. The client receives only a generic message.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(exclude_none=True),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. Not rate limited -- health checks
# from load balancers and monitoring systems must not be throttled.
# ---------------------------------------------------------------------------


async def _database_ok(principals: PrincipalStore) -> bool:
    try:
        return await asyncio.to_thread(principals.ping)
    except SQLAlchemyError as exc:
        logger.error("Database health check failed: %s", exc)
        return False


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
async def health(request: Request) -> HealthResponse:
    """Return liveness plus the status of Redis and the principal database."""
    components = {
        "redis": "ok" if await ensure_connected(request.app.state.redis) else "unavailable",
        "database": "ok" if await _database_ok(request.app.state.principals) else "unavailable",
    }
    status = "ok" if all(v == "ok" for v in components.values()) else "degraded"
    return HealthResponse(status=status, version=VERSION, components=components)
