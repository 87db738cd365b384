"""
api/routes/v1/auth.py -- Authentication REST endpoints (mounted at /api/auth).

Routes:
  POST   /login                       -- password login; JWT or second-factor challenge
  POST   /register                    -- create account (admin only)
  GET    /me                          -- current user summary (requires auth)
  POST   /logout                      -- clears cookie
  POST   /totp/setup                  -- new secret + QR (requires auth)
  POST   /totp/verify                 -- confirm secret with a code, enables TOTP (requires auth)
  POST   /totp/disable                -- (requires auth)
  POST   /totp/validate               -- redeem a two-factor temp token with a TOTP code
  POST   /webauthn/register/options   -- (requires auth)
  POST   /webauthn/register/complete  -- (requires auth)
  POST   /webauthn/login/options      -- passwordless login, step 1
  POST   /webauthn/login/complete     -- passwordless login, step 2
  POST   /webauthn/validate           -- redeem a two-factor temp token with an assertion
  GET    /webauthn/credentials        -- (requires auth)
  DELETE /webauthn/credentials/{id}   -- (requires auth, ownership checked)
  POST   /magic-link/send             -- always succeeds for well-formed emails
  GET    /validate-magic-link         -- browser landing; redirects to /auth/success or /auth/error
  POST   /validate-magic-link         -- JSON redemption
  GET    /qr/generate                 -- session QR for the current user (requires auth)
  POST   /qr/login                    -- redeem a session QR
  GET    /qr/direct/generate          -- device A: show a direct-login QR
  POST   /qr/direct/login             -- device B: approve it (requires auth)
  GET    /qr/direct/check             -- device A: poll for the result

Security:
  [H2] Credential-guessing endpoints are rate-limited per IP (LOGIN_RATE_LIMIT).
  [C1] authenticate_user() provides timing equalization -- reached only via
       TwoFactorOrchestrator.login(), never inlined here.
  [M5] Cache-Control: no-store on every response that carries a token.

Every service failure is an AuthError subclass; api/main.py turns those into
the {success:false, message, code} envelope with the right status.
"""

from __future__ import annotations

import logging
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.exc import IntegrityError

from api.limiter import limiter, login_rate_limit
from api.models import (
    LoginRequest,
    MagicLinkSendRequest,
    MagicLinkValidateRequest,
    QrDirectLoginRequest,
    QrLoginRequest,
    RegisterRequest,
    TotpValidateRequest,
    TotpVerifyRequest,
    WebAuthnLoginCompleteRequest,
    WebAuthnLoginOptionsRequest,
    WebAuthnRegisterCompleteRequest,
    WebAuthnValidateRequest,
    fail,
    ok,
)
from auth.dependencies import get_current_user, require_admin
from auth.errors import AuthError, Conflict, NotFound
from auth.models import LoginOutcome, User
from auth.store import CredentialStore
from auth.tokens import hash_password, issue_access_token, primary_role, set_auth_cookie

logger = logging.getLogger("avtopark.api.auth")

router = APIRouter()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


def user_summary(store: CredentialStore, user: User) -> dict:
    """User block returned next to every issued token.

    ``id`` and ``role`` are the legacy numeric ids older clients key on.
    """
    roles = store.get_active_roles(user.user_id)
    top = primary_role(roles)
    return {
        "id": user.id,
        "userId": user.user_id,
        "username": user.login,
        "email": user.email,
        "phoneNumber": user.phone_number,
        "role": top.legacy_role_id if top else None,
        "roles": [r.name for r in roles],
    }


def _token_response(request: Request, user: User, token: str, message: str = "") -> JSONResponse:
    data = {"token": token, "user": user_summary(request.app.state.credential_store, user)}
    resp = JSONResponse(content=ok(data, message))
    set_auth_cookie(resp, token)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _outcome_response(request: Request, outcome: LoginOutcome) -> JSONResponse:
    if not outcome.requires_two_factor:
        return _token_response(request, outcome.user, outcome.token, "Login successful.")
    data = {
        "requiresTwoFactor": True,
        "twoFactorType": outcome.two_factor_type,
        "tempToken": outcome.temp_token,
    }
    if outcome.options is not None:
        data["options"] = outcome.options
    resp = JSONResponse(content=ok(data, "Second factor required."))
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _issue(request: Request, user: User) -> str:
    return issue_access_token(request.app.state.credential_store, user)


# ---------------------------------------------------------------------------
# Password login and account
# ---------------------------------------------------------------------------


@limiter.limit(login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/login")
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Password login. Returns a token, or a temp token plus the second factor to use.

    Wrong login and wrong password produce the same 401 so login existence
    does not leak.
    """
    outcome = request.app.state.two_factor.login(
        body.username,
        body.password,
        skip_two_factor=body.skip_two_factor,
        device_info=body.device_info or request.headers.get("User-Agent"),
        ip_address=_client_ip(request),
    )
    return _outcome_response(request, outcome)


@router.post("/register", status_code=201)
def register(request: Request, body: RegisterRequest, admin: User = Depends(require_admin)) -> JSONResponse:
    store: CredentialStore = request.app.state.credential_store
    roles = []
    for name in body.roles:
        role = store.get_role_by_name(name)
        if role is None:
            raise NotFound(f"Role '{name}' not found.")
        roles.append(role)

    user = User(
        login=body.username,
        hashed_password=hash_password(body.password),
        email=body.email,
        phone_number=body.phone_number,
        email_confirmed=body.email_confirmed,
    )
    try:
        store.create_user(user)
    except IntegrityError as exc:
        raise Conflict("Username already exists.") from exc
    for role in roles:
        store.assign_role(user.user_id, role.role_id)
    store.ensure_user_settings(user.user_id)
    logger.info("Admin %s created user %s", admin.login, user.login)
    return JSONResponse(status_code=201, content=ok(user_summary(store, user), "User created."))


@router.get("/me")
def me(request: Request, current_user: User = Depends(get_current_user)) -> dict:
    store: CredentialStore = request.app.state.credential_store
    settings = store.ensure_user_settings(current_user.user_id)
    data = user_summary(store, current_user)
    data["totpEnabled"] = settings.totp_enabled
    data["webAuthnEnabled"] = settings.webauthn_enabled
    return ok(data)


@router.post("/logout")
async def logout() -> JSONResponse:
    resp = JSONResponse(content=ok(message="Logged out."))
    resp.delete_cookie("access_token")
    return resp


# ---------------------------------------------------------------------------
# TOTP
# ---------------------------------------------------------------------------


@router.post("/totp/setup")
def totp_setup(request: Request, current_user: User = Depends(get_current_user)) -> JSONResponse:
    setup = request.app.state.totp.setup_totp(current_user.user_id, current_user.login)
    resp = JSONResponse(
        content=ok({"secretKey": setup.secret, "qrCodeUri": setup.provisioning_uri, "qrCode": setup.qr_code})
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/totp/verify")
def totp_verify(request: Request, body: TotpVerifyRequest, current_user: User = Depends(get_current_user)) -> dict:
    request.app.state.totp.enable_totp(current_user.user_id, body.code, body.secret_key)
    return ok({"enabled": True}, "TOTP enabled.")


@router.post("/totp/disable")
def totp_disable(request: Request, current_user: User = Depends(get_current_user)) -> dict:
    request.app.state.totp.disable_totp(current_user.user_id)
    return ok({"disabled": True}, "TOTP disabled.")


@limiter.limit(login_rate_limit)  # [H2]
@router.post("/totp/validate")
def totp_validate(request: Request, body: TotpValidateRequest) -> JSONResponse:
    outcome = request.app.state.two_factor.verify_totp(body.temp_token, body.code)
    return _outcome_response(request, outcome)


# ---------------------------------------------------------------------------
# WebAuthn
# ---------------------------------------------------------------------------


@router.post("/webauthn/register/options")
def webauthn_register_options(request: Request, current_user: User = Depends(get_current_user)) -> dict:
    options = request.app.state.webauthn.get_credential_create_options(current_user.user_id, current_user.login)
    return ok(options)


@router.post("/webauthn/register/complete")
def webauthn_register_complete(
    request: Request,
    body: WebAuthnRegisterCompleteRequest,
    current_user: User = Depends(get_current_user),
) -> dict:
    credential = request.app.state.webauthn.complete_registration(
        current_user.user_id, body.credential, body.device_name
    )
    return ok({"credentialId": credential.credential_id, "deviceName": credential.device_name}, "Passkey registered.")


@router.post("/webauthn/login/options")
def webauthn_login_options(request: Request, body: WebAuthnLoginOptionsRequest) -> dict:
    return ok(request.app.state.webauthn.get_assertion_options(body.username))


@limiter.limit(login_rate_limit)  # [H2]
@router.post("/webauthn/login/complete")
def webauthn_login_complete(request: Request, body: WebAuthnLoginCompleteRequest) -> JSONResponse:
    user = request.app.state.webauthn.complete_assertion(body.username, body.credential)
    request.app.state.credential_store.update_last_login(user.user_id)
    return _token_response(request, user, _issue(request, user), "Login successful.")


@limiter.limit(login_rate_limit)  # [H2]
@router.post("/webauthn/validate")
def webauthn_validate(request: Request, body: WebAuthnValidateRequest) -> JSONResponse:
    outcome = request.app.state.two_factor.validate_webauthn(body.temp_token, body.credential)
    return _outcome_response(request, outcome)


@router.get("/webauthn/credentials")
def webauthn_credentials(request: Request, current_user: User = Depends(get_current_user)) -> dict:
    credentials = request.app.state.webauthn.list_credentials(current_user.user_id)
    return ok(
        [
            {"credentialId": c.credential_id, "deviceName": c.device_name, "createdAt": c.created_at}
            for c in credentials
        ]
    )


@router.delete("/webauthn/credentials/{credential_id}")
def webauthn_remove_credential(
    request: Request,
    credential_id: str,
    current_user: User = Depends(get_current_user),
) -> dict:
    request.app.state.webauthn.remove_credential(current_user.user_id, credential_id)
    return ok(message="Passkey removed.")


# ---------------------------------------------------------------------------
# Magic link
# ---------------------------------------------------------------------------


@limiter.limit(login_rate_limit)  # [H2]
@router.post("/magic-link/send")
def magic_link_send(request: Request, body: MagicLinkSendRequest) -> dict:
    """Same answer whether or not the address has an account."""
    request.app.state.magic_links.send_magic_link(
        body.email,
        device_info=body.device_info or request.headers.get("User-Agent"),
        ip_address=_client_ip(request),
    )
    return ok(message="If the address belongs to an account, a sign-in link has been sent.")


@router.get("/validate-magic-link")
def validate_magic_link_redirect(request: Request, token: str = "") -> RedirectResponse:
    """Browser landing for emailed links. Redirects instead of returning JSON."""
    try:
        user = request.app.state.magic_links.redeem(token)
    except AuthError as exc:
        return RedirectResponse(f"/auth/error?{urlencode({'error': exc.code})}", status_code=302)
    access_token = _issue(request, user)
    resp = RedirectResponse(f"/auth/success?{urlencode({'token': access_token})}", status_code=302)
    set_auth_cookie(resp, access_token)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/validate-magic-link")
def validate_magic_link(request: Request, body: MagicLinkValidateRequest) -> JSONResponse:
    user = request.app.state.magic_links.redeem(body.token)
    return _token_response(request, user, _issue(request, user), "Login successful.")


# ---------------------------------------------------------------------------
# QR login
# ---------------------------------------------------------------------------


@router.get("/qr/generate")
def qr_generate(request: Request, current_user: User = Depends(get_current_user)) -> JSONResponse:
    qr_code, raw_data = request.app.state.qr.generate_qr_code(current_user)
    resp = JSONResponse(content=ok({"qrCode": qr_code, "rawData": raw_data}))
    resp.headers["Cache-Control"] = "no-store"
    return resp


@limiter.limit(login_rate_limit)  # [H2]
@router.post("/qr/login")
def qr_login(request: Request, body: QrLoginRequest) -> JSONResponse:
    user = request.app.state.qr.authenticate_session_qr(body.username, body.token)
    return _token_response(request, user, _issue(request, user), "Login successful.")


@router.get("/qr/direct/generate")
def qr_direct_generate(
    request: Request,
    username: str,
    device_type: str = Query(default="desktop", alias="deviceType"),
) -> JSONResponse:
    qr = request.app.state.qr.generate_direct_login_qr(username, device_type)
    resp = JSONResponse(content=ok({"qrCode": qr.qr_code, "rawData": qr.raw_data, "deviceId": qr.device_id}))
    resp.headers["Cache-Control"] = "no-store"
    return resp


@limiter.limit(login_rate_limit)  # [H2]
@router.post("/qr/direct/login")
def qr_direct_login(
    request: Request,
    body: QrDirectLoginRequest,
    current_user: User = Depends(get_current_user),
) -> JSONResponse:
    coordinator = request.app.state.qr
    bound_user, device_id = coordinator.validate_direct_login_token(body.token, body.device_type, current_user)
    user = coordinator.authenticate_direct_qr(bound_user.login, device_id)
    token = _issue(request, user)
    coordinator.notify_device_login_success(device_id, token)
    resp = JSONResponse(
        content=ok(
            {"token": token, "deviceId": device_id, "user": user_summary(request.app.state.credential_store, user)},
            "Device approved.",
        )
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.get("/qr/direct/check")
def qr_direct_check(request: Request, device_id: str = Query(alias="deviceId")) -> JSONResponse:
    """Polled by device A. Hands out the token once, then reports nothing pending."""
    token = request.app.state.qr.check_direct_login_status(device_id)
    if token is None:
        return JSONResponse(content=fail("No login detected yet.", "pending"))
    resp = JSONResponse(content=ok({"token": token}, "Login detected."))
    resp.headers["Cache-Control"] = "no-store"
    return resp
