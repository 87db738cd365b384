"""
web/routes.py -- Server-rendered pages for browser login flows.

These routes share app.state with the API routes (same stores, same OIDC
server) but return HTML instead of JSON.

Routes:
  GET  /oauth/login   -- password form for a parked OIDC authorization request
  GET  /oauth/consent -- allow/deny page for clients that require consent
  GET  /auth/success  -- landing page after a magic-link login
  GET  /auth/error    -- landing page when a magic link cannot be used
"""

import logging
from pathlib import Path

from fastapi import APIRouter, Request
from fastapi.responses import HTMLResponse
from fastapi.templating import Jinja2Templates

from core.config import get_settings

logger = logging.getLogger("avtopark.web")

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))
templates.env.globals["app_name"] = get_settings().app_name
router = APIRouter()

# Whitelist mapping for ?error= query params [M3].
# The raw query param is NEVER passed to templates -- only the message from
# this dict is. Prevents reflected XSS via crafted error query strings.
_ERROR_MESSAGES: dict[str, str] = {
    "invalid_credentials": "Invalid username or password.",
    "invalid_or_expired_token": "This sign-in link is invalid, expired or has already been used.",
    "account_not_found": "No account is linked to this sign-in link.",
    "upstream_unavailable": "The service is temporarily unavailable. Please try again.",
}
_DEFAULT_ERROR = "Sign-in failed. Please try again."


def _no_store(resp: HTMLResponse) -> HTMLResponse:
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.get("/oauth/login", response_class=HTMLResponse)
def oauth_login_form(request: Request, request_id: str = "") -> HTMLResponse:
    """Render the password form for a pending /connect/authorize request."""
    pending = request.app.state.oidc_server.pending_request(request_id) if request_id else None
    if pending is None:
        return _no_store(
            templates.TemplateResponse(
                request,
                "auth_error.html",
                {"error_msg": "This sign-in request has expired. Return to the application and start again."},
                status_code=400,
            )
        )

    client = request.app.state.client_store.get_client(pending["client_id"])
    error_msg = _ERROR_MESSAGES.get(request.query_params.get("error", ""))
    return _no_store(
        templates.TemplateResponse(
            request,
            "oauth_login.html",
            {
                "request_id": request_id,
                "client_name": client.display_name if client else pending["client_id"],
                "error_msg": error_msg,
            },
        )
    )


@router.get("/oauth/consent", response_class=HTMLResponse)
def oauth_consent_form(request: Request, request_id: str = "") -> HTMLResponse:
    """Ask the signed-in user to allow a client that requires consent."""
    pending = request.app.state.oidc_server.pending_consent(request_id) if request_id else None
    if pending is None:
        return _no_store(
            templates.TemplateResponse(
                request,
                "auth_error.html",
                {"error_msg": "This consent request has expired. Return to the application and start again."},
                status_code=400,
            )
        )

    client = request.app.state.client_store.get_client(pending["client_id"])
    return _no_store(
        templates.TemplateResponse(
            request,
            "consent.html",
            {
                "request_id": request_id,
                "client_name": client.display_name if client else pending["client_id"],
                "scopes": pending["scope"].split(),
            },
        )
    )


@router.get("/auth/success", response_class=HTMLResponse)
def auth_success(request: Request) -> HTMLResponse:
    """The session cookie is already set; the token in the query is for native wrappers."""
    return _no_store(templates.TemplateResponse(request, "auth_success.html", {}))


@router.get("/auth/error", response_class=HTMLResponse)
def auth_error(request: Request) -> HTMLResponse:
    code = request.query_params.get("error", "")
    if code and code not in _ERROR_MESSAGES:
        logger.info("Unknown error code on /auth/error: %r", code[:50])
    error_msg = _ERROR_MESSAGES.get(code, _DEFAULT_ERROR)
    return _no_store(templates.TemplateResponse(request, "auth_error.html", {"error_msg": error_msg}))
