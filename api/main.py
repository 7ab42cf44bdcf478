"""
api/main.py -- FastAPI application entry point for authcore.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. SlowAPIMiddleware -- enforces per-route rate limits from api.limiter
  2. log_requests      -- method, path, status, latency per request

Lifespan builds the credential components once per process and tears them
down symmetrically. Settings are resolved first: with ENVIRONMENT=production
and the placeholder JWT_SECRET, Settings validation raises and the process
refuses to serve.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.errors import AuthError, InternalError
from auth.notifier import LoggingNotifier
from auth.passwords import PasswordHasher
from auth.service import CredentialService
from auth.store import AccountStore
from auth.tokens import TokenIssuer
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
logger = logging.getLogger("authcore.api")

# ---------------------------------------------------------------------------
# Lifespan -- startup / shutdown
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build settings, store, hasher, token issuer, and service; close the store on shutdown.

    The TokenIssuer receives the signing secret here, once. Nothing else in
    the process reads JWT_SECRET.
    """
    settings = get_settings()
    logger.info("authcore API starting up (environment=%s)", settings.environment)

    app.state.settings = settings
    app.state.account_store = AccountStore(settings.database_url)
    app.state.token_issuer = TokenIssuer.from_settings(settings)
    app.state.credential_service = CredentialService(
        store=app.state.account_store,
        hasher=PasswordHasher(rounds=settings.bcrypt_rounds),
        issuer=app.state.token_issuer,
        notifier=LoggingNotifier(),
        verification_ttl=timedelta(hours=settings.verification_token_hours),
        reset_ttl=timedelta(minutes=settings.password_reset_token_minutes),
    )
    logger.info("Credential service initialized")

    yield

    app.state.account_store.close()
    logger.info("authcore API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="authcore API",
    description="Account registration, password login, bearer tokens, email verification and password reset.",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


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
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])

# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error_response(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render the auth error taxonomy.

    Token failures all render as one generic 401 and internal failures as one
    generic 500: the specific cause is logged, never returned.
    """
    if isinstance(exc, InternalError):
        logger.error("Internal error on %s %s: %s", request.method, request.url.path, exc.message, exc_info=exc)
    message = exc.message if exc.expose_message else exc.default_message
    response = _error_response(exc.status_code, exc.code, message)
    if exc.status_code == 401:
        response.headers["WWW-Authenticate"] = "Bearer"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error_response(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation.

    Input values are stripped from the detail so a rejected password is never
    echoed back.
    """
    errors = [{"loc": e.get("loc"), "msg": e.get("msg"), "type": e.get("type")} for e in exc.errors()]
    return _error_response(422, "validation_error", "Request validation failed.", str(errors))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    When detail is already a structured dict, it is rendered through
    ErrorDetail so the envelope has the same keys as every other error.
    """
    if isinstance(exc.detail, dict):
        response = _error_response(
            exc.status_code,
            exc.detail.get("code", f"http_{exc.status_code}"),
            exc.detail.get("message", ""),
            exc.detail.get("detail"),
        )
    else:
        response = _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail))
    for name, value in (exc.headers or {}).items():
        response.headers[name] = value
    return response


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# No rate limit applied -- health checks from load balancers and monitoring
# systems must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version, and database reachability."""
    db_ok = request.app.state.account_store.ping()
    return HealthResponse(
        status="healthy" if db_ok else "degraded",
        version=VERSION,
        components={"app": "ok", "database": "ok" if db_ok else "error"},
    )
