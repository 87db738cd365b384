"""
api/routes/v1/connect.py -- OpenID Connect endpoints and client administration.

Routes (mounted at the root, no prefix):
  GET|POST /connect/authorize                 -- start or resume an authorization
  POST     /connect/authorize/callback        -- login form target for parked requests
  POST     /connect/authorize/consent         -- allow/deny form target from /oauth/consent
  POST     /connect/token                     -- authorization_code grant
  GET|POST /connect/userinfo                  -- claims for a bearer token
  POST     /connect/registerclient            -- (admin)
  PUT      /connect/update-client/{client_id} -- (admin)
  DELETE   /connect/delete-client/{client_id} -- (admin)
  GET      /connect/clients                   -- (admin)
  GET      /connect/clients/{client_id}       -- (admin)

Protocol endpoints answer in the OAuth shape ({"error", "error_description"})
via the OAuth2Error handler in api/main.py. The admin endpoints are ordinary
API routes and use the JSON envelope.

Client credentials at /connect/token may arrive as form fields
(client_secret_post) or in an HTTP Basic header (client_secret_basic).
"""

from __future__ import annotations

import base64
import binascii
from typing import Optional
from urllib.parse import unquote

from fastapi import APIRouter, Depends, Form, HTTPException, Request
from fastapi.responses import JSONResponse, RedirectResponse

from api.limiter import limiter, login_rate_limit
from api.models import ClientRegisterRequest, ClientResponse, ClientUpdateRequest, ok
from auth.dependencies import bearer_token, require_admin, try_get_current_user
from auth.models import User
from auth.tokens import issue_access_token, set_auth_cookie
from oidc.models import OidcClient

router = APIRouter()

_NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}


def _basic_credentials(request: Request) -> tuple[str | None, str | None]:
    header = request.headers.get("Authorization", "")
    if not header.startswith("Basic "):
        return None, None
    try:
        decoded = base64.b64decode(header[6:]).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None, None
    client_id, sep, secret = decoded.partition(":")
    if not sep:
        return None, None
    return unquote(client_id), unquote(secret)


def _client_response(client: OidcClient) -> dict:
    return ClientResponse(
        client_id=client.client_id,
        display_name=client.display_name,
        client_type=client.client_type,
        redirect_uris=client.redirect_uris,
        post_logout_redirect_uris=client.post_logout_redirect_uris,
        allowed_scopes=client.allowed_scopes,
        require_consent=client.consent_type == "explicit",
        is_active=client.is_active,
        created_at=client.created_at,
    ).model_dump(by_alias=True)


# ---------------------------------------------------------------------------
# Protocol endpoints
# ---------------------------------------------------------------------------


@router.api_route("/connect/authorize", methods=["GET", "POST"])
async def authorize(request: Request) -> RedirectResponse:
    """Authorization endpoint. Parameters come from the query string or a form post."""
    if request.method == "POST":
        params = dict(await request.form())
    else:
        params = dict(request.query_params)
    session_user = try_get_current_user(request)
    outcome = request.app.state.oidc_server.authorize(params, session_user)
    return RedirectResponse(outcome.redirect_url, status_code=302)


@limiter.limit(login_rate_limit)  # [H2]
@router.post("/connect/authorize/callback")
def authorize_callback(
    request: Request,
    request_id: str = Form(...),
    username: str = Form(...),
    password: str = Form(...),
) -> RedirectResponse:
    """Target of the /oauth/login form. Success also starts a browser session."""
    outcome = request.app.state.oidc_server.authorize_callback(request_id, username, password)
    resp = RedirectResponse(outcome.redirect_url, status_code=302)
    if outcome.user is not None:
        session_token = issue_access_token(request.app.state.credential_store, outcome.user)
        set_auth_cookie(resp, session_token)
    return resp


@router.post("/connect/authorize/consent")
def authorize_consent(
    request: Request,
    request_id: str = Form(...),
    decision: str = Form(...),
) -> RedirectResponse:
    """Target of the /oauth/consent form. Anything but "allow" is a refusal."""
    outcome = request.app.state.oidc_server.consent(
        request_id, try_get_current_user(request), approve=decision == "allow"
    )
    return RedirectResponse(outcome.redirect_url, status_code=302)


@router.post("/connect/token")
def token(
    request: Request,
    grant_type: Optional[str] = Form(None),
    code: Optional[str] = Form(None),
    redirect_uri: Optional[str] = Form(None),
    client_id: Optional[str] = Form(None),
    client_secret: Optional[str] = Form(None),
) -> JSONResponse:
    basic_id, basic_secret = _basic_credentials(request)
    body = request.app.state.oidc_server.token(
        grant_type=grant_type,
        code=code,
        redirect_uri=redirect_uri,
        client_id=basic_id or client_id,
        client_secret=basic_secret or client_secret,
    )
    return JSONResponse(content=body, headers=_NO_STORE)


@router.api_route("/connect/userinfo", methods=["GET", "POST"])
def userinfo(request: Request) -> JSONResponse:
    info = request.app.state.oidc_server.userinfo(bearer_token(request))
    return JSONResponse(content=info, headers=_NO_STORE)


# ---------------------------------------------------------------------------
# Client administration (admin only)
# ---------------------------------------------------------------------------


@router.post("/connect/registerclient", status_code=201)
def register_client(
    request: Request,
    body: ClientRegisterRequest,
    admin: User = Depends(require_admin),
) -> JSONResponse:
    try:
        client = request.app.state.client_manager.register(
            client_id=body.client_id,
            display_name=body.display_name,
            redirect_uris=body.redirect_uris,
            client_secret=body.client_secret,
            post_logout_redirect_uris=body.post_logout_redirect_uris,
            allowed_scopes=body.allowed_scopes,
            require_consent=body.require_consent,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail={"code": "invalid_client_metadata", "message": str(exc)}) from exc
    return JSONResponse(status_code=201, content=ok(_client_response(client), "Client registered."))


@router.put("/connect/update-client/{client_id}")
def update_client(
    request: Request,
    client_id: str,
    body: ClientUpdateRequest,
    admin: User = Depends(require_admin),
) -> dict:
    try:
        client = request.app.state.client_manager.update(client_id, body.model_dump(exclude_unset=True))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail={"code": "invalid_client_metadata", "message": str(exc)}) from exc
    return ok(_client_response(client), "Client updated.")


@router.delete("/connect/delete-client/{client_id}")
def delete_client(request: Request, client_id: str, admin: User = Depends(require_admin)) -> dict:
    request.app.state.client_manager.delete(client_id)
    return ok(message="Client deleted.")


@router.get("/connect/clients")
def list_clients(request: Request, admin: User = Depends(require_admin)) -> dict:
    return ok([_client_response(c) for c in request.app.state.client_manager.list_all()])


@router.get("/connect/clients/{client_id}")
def get_client(request: Request, client_id: str, admin: User = Depends(require_admin)) -> dict:
    return ok(_client_response(request.app.state.client_manager.get(client_id)))
