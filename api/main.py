"""
api/main.py -- FastAPI application entry point for the Avtopark identity service.

Serves password, second-factor, magic-link and QR login under /api/auth, and
a minimal OpenID Connect provider under /connect for the desktop cashier
client and other first-party apps.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (stores, ephemeral cache, services, purge task) and
shutdown (cancel purge task, close connections) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from authlib.oauth2 import OAuth2Error
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import HealthResponse, fail
from api.routes.v1.auth import router as auth_router
from api.routes.v1.connect import router as connect_router
from auth.errors import AuthError
from auth.magic_link import MagicLinkService
from auth.mailer import Mailer
from auth.passkeys import WebAuthnService
from auth.qr import QrLoginCoordinator
from auth.store import CredentialStore
from auth.totp import TotpService
from auth.two_factor import TwoFactorOrchestrator
from cache.store import EphemeralCache
from core.config import Settings, get_settings
from oidc.clients import ClientManager
from oidc.server import AuthorizationServer
from oidc.store import ClientStore

VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("avtopark.api")

settings = get_settings()

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def attach_services(
    state: Any,
    store: CredentialStore,
    clients: ClientStore,
    cache: EphemeralCache,
    settings: Settings,
) -> None:
    """Build every login service on top of the given stores and put it on app.state.

    Shared by the lifespan and the test suite so both run the same graph.
    """
    state.credential_store = store
    state.client_store = clients
    state.cache = cache
    state.totp = TotpService(store, settings.secret_key, issuer=settings.app_name)
    state.webauthn = WebAuthnService(store, cache, settings)
    state.mailer = Mailer(settings)
    state.magic_links = MagicLinkService(
        store,
        state.mailer,
        app_url=settings.app_url,
        app_name=settings.app_name,
        ttl_minutes=settings.magic_link_ttl_minutes,
    )
    state.qr = QrLoginCoordinator(store, cache, ttl_minutes=settings.qr_ttl_minutes)
    state.two_factor = TwoFactorOrchestrator(
        store,
        state.totp,
        state.webauthn,
        ttl_minutes=settings.two_factor_ttl_minutes,
    )
    state.oidc_server = AuthorizationServer(store, clients, cache, settings)
    state.client_manager = ClientManager(clients)


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Drop expired cache entries and spent login tokens every 10 minutes.

    Expiry is always checked on read, so this only bounds table growth.
    """
    while True:
        await asyncio.sleep(10 * 60)
        cache_removed = app.state.cache.purge_expired()
        tokens_removed = app.state.credential_store.purge_spent_tokens()
        if cache_removed or tokens_removed:
            logger.info("Purged %d cache entries and %d spent tokens", cache_removed, tokens_removed)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open stores, wire services, start the purge task; undo in reverse on shutdown."""
    logger.info("%s identity service starting up", settings.app_name)
    store = CredentialStore(settings.database_url)
    clients = ClientStore(settings.database_url)
    cache = EphemeralCache(settings.cache_path)
    attach_services(app.state, store, clients, cache, settings)
    if not app.state.mailer.is_configured:
        logger.warning("SMTP_HOST not set -- magic links will be logged, not sent")
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    cache.close()
    clients.close()
    store.close()
    logger.info("%s identity service shutdown complete", settings.app_name)


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Avtopark Identity API",
    description="Login, second factors and OpenID Connect for the Avtopark back office.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPIMiddleware looks for app.state.limiter by convention.
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

app.include_router(auth_router, prefix="/api/auth", tags=["Auth"])
app.include_router(connect_router, tags=["OpenID Connect"])
# Web pages are mounted by asgi.py, not here.


# ---------------------------------------------------------------------------
# Exception handlers
#
# Everything under /api and the /connect admin routes answers with the
# {success, message, code} envelope. OAuth protocol errors keep the
# {error, error_description} shape that third-party clients expect.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=fail(exc.message, exc.code))


@app.exception_handler(OAuth2Error)
async def oauth_error_handler(request: Request, exc: OAuth2Error) -> JSONResponse:
    logger.info("OAuth error %s on %s", exc.error, request.url.path)
    return JSONResponse(
        status_code=exc.status_code,
        content=dict(exc.get_body()),
        headers=dict(exc.get_headers()),
    )


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with Retry-After so clients know how long to back off."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(status_code=429, content=fail("Too many requests.", "rate_limited"))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = [".".join(str(p) for p in err.get("loc", ())[1:]) for err in exc.errors()]
    return JSONResponse(
        status_code=422,
        content=fail("Request validation failed.", "validation_error", data={"fields": fields}),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Route handlers may pass detail={"code", "message"}; anything else becomes http_<status>."""
    if isinstance(exc.detail, dict):
        content = fail(exc.detail.get("message", ""), exc.detail.get("code", f"http_{exc.status_code}"))
    else:
        content = fail(str(exc.detail), f"http_{exc.status_code}")
    return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unexpected server errors. The traceback goes to the log only."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content=fail("An unexpected error occurred.", "internal_error"))


# ---------------------------------------------------------------------------
# Health endpoint (not rate limited)
# ---------------------------------------------------------------------------


@app.get("/api/health", tags=["Health"])
async def health() -> HealthResponse:
    """Return API liveness and current version."""
    return HealthResponse(version=VERSION)
