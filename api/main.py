"""
api/main.py -- FastAPI application factory for the marketplace auth service.

Run with:      uvicorn asgi:app --reload
               python main.py serve

create_app() takes a Settings instance (and optionally a pre-built store,
mailer and clock for tests) and returns a fully wired FastAPI app. Nothing
here reads the environment; asgi.py does that once via get_settings().

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (store, mailer, AuthService) and shutdown (close
the DB engine) symmetrically.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException

from api.limiter import limiter
from api.models import HealthResponse, envelope
from api.routes.v1.auth import router as auth_router
from auth.errors import AuthError, RateLimitError, ValidationError
from auth.mailer import Mailer, SmtpMailer
from auth.service import AuthService
from auth.store import AccountStore
from auth.tokens import utcnow
from core.config import Settings

API_VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("marketplace.api")


def _error_response(exc: AuthError) -> JSONResponse:
    data = {"code": exc.code, **exc.data}
    return JSONResponse(status_code=exc.status_code, content=envelope(exc.message, data, success=False))


def create_app(
    settings: Settings,
    *,
    store: Optional[AccountStore] = None,
    mailer: Optional[Mailer] = None,
    clock: Callable[[], datetime] = utcnow,
) -> FastAPI:
    """Build the FastAPI app.

    An injected store is left open on shutdown; the caller owns it. A store
    created here from settings.database_url is closed with the app.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Manage application-level resources across the full server lifetime.

        Everything before yield runs on startup; everything after yield runs
        on shutdown.
        """
        logger.info("Marketplace auth API starting up")
        owns_store = store is None
        app.state.store = store if store is not None else AccountStore(settings.database_url)
        app.state.mailer = mailer if mailer is not None else SmtpMailer.from_settings(settings)
        app.state.auth_service = AuthService.from_settings(settings, app.state.store, app.state.mailer, clock=clock)
        logger.info("Auth initialized (accounts=%d)", len(app.state.store.list_accounts()))

        yield

        if owns_store:
            app.state.store.close()
        logger.info("Marketplace auth API shutdown complete")

    app = FastAPI(
        title="Marketplace Auth API",
        description="Registration, login, email verification, password reset and session management.",
        version=API_VERSION,
        lifespan=lifespan,
        debug=settings.debug,
    )
    app.state.settings = settings

    # -----------------------------------------------------------------------
    # Middleware stack
    # -----------------------------------------------------------------------

    app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH"],
        allow_headers=["Content-Type", "Authorization"],
        max_age=3600,
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

    # -----------------------------------------------------------------------
    # Router registration
    # -----------------------------------------------------------------------

    app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])

    # -----------------------------------------------------------------------
    # Exception handlers
    #
    # Every handler returns the {success: false, message, data} envelope so
    # clients parse errors and successes the same way.
    # -----------------------------------------------------------------------

    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
        return _error_response(exc)

    @app.exception_handler(RateLimitExceeded)
    def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
        """Return 429 with Retry-After when a per-client rate limit is exceeded.

        Plain def: SlowAPIMiddleware calls this handler synchronously.
        """
        retry_after = exc.limit.limit.get_expiry()
        logger.warning("Rate limit exceeded on %s from %s", request.url.path, request.client.host if request.client else "unknown")
        response = _error_response(RateLimitError("Too many requests. Please try again later."))
        response.headers["Retry-After"] = str(retry_after)
        return response

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        """Missing or malformed body fields are a 400 like every other input error."""
        fields = [".".join(str(p) for p in err.get("loc", ()) if p != "body") for err in exc.errors()]
        return _error_response(ValidationError("Request validation failed", data={"fields": fields}))

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=envelope(str(exc.detail), {"code": f"http_{exc.status_code}"}, success=False),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Catch-all for unexpected server errors.

        The raw exception goes to the log only, never to the response body.
        """
        logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content=envelope("Server error", {"code": "internal_error"}, success=False),
        )

    # -----------------------------------------------------------------------
    # Health endpoint
    #
    # No rate limit applied -- health checks from load balancers must not be
    # throttled.
    # -----------------------------------------------------------------------

    @app.get("/api/v1/health", tags=["Health"])
    def health(request: Request) -> JSONResponse:
        """Return API liveness, version and database reachability."""
        try:
            db_ok = request.app.state.store.ping()
        except SQLAlchemyError:
            logger.exception("Health check: database unreachable")
            db_ok = False
        body = HealthResponse(
            status="healthy" if db_ok else "degraded",
            version=API_VERSION,
            components={"database": "ok" if db_ok else "unavailable"},
        )
        return JSONResponse(
            status_code=200 if db_ok else 503,
            content=envelope("Service is " + body.status, body.model_dump(), success=db_ok),
        )

    return app
