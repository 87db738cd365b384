"""
oidc/server.py -- Minimal OpenID Connect authorization server.

Supports the authorization_code grant only:

  GET  /connect/authorize          -> login page (no session) or redirect with ?code=
  POST /connect/authorize/callback -> password check for a parked request, then as above
  POST /connect/authorize/consent  -> allow/deny for clients registered with require_consent
  POST /connect/token              -> code -> access_token (+ id_token with "openid")
  GET  /connect/userinfo           -> claims for the bearer token's subject

Pending requests ("oidc_request_{id}", OIDC_REQUEST_TTL_MINUTES) and codes
("auth_code_{code}", AUTH_CODE_TTL_MINUTES) live in the ephemeral cache. A code
is popped before anything else is checked, so a replayed or misused code is
gone for good and every later attempt gets invalid_grant.

Consent: a client with consent_type "explicit" sends the user to /oauth/consent
the first time a scope set is requested ("oidc_consent_{id}", same TTL as a
pending request). Approval stores a permanent OidcAuthorization; later requests
for the same scope set reuse it without asking. "implicit" clients record the
authorization silently.

Errors are authlib OAuth2Error subclasses; the API layer renders them as
{"error", "error_description"} for third-party clients. Once the client and
redirect_uri are known good, later authorize errors go back to the client as
redirect query parameters instead.

Claim destinations (which token a claim lands in):
  name, preferred_username  -> access; id_token too with "profile"
  email, email_verified     -> access; id_token too with "email"
  phone_number              -> access; id_token too with "phone"
  role                      -> access; id_token too with "roles"
  anything else             -> access only
"""

from __future__ import annotations

import logging
import secrets
import uuid
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode

from authlib.oauth2 import OAuth2Error
from authlib.oauth2.rfc6749.errors import (
    AccessDeniedError,
    InvalidClientError,
    InvalidGrantError,
    InvalidRequestError,
    InvalidScopeError,
    UnsupportedGrantTypeError,
    UnsupportedResponseTypeError,
)
from authlib.oauth2.rfc6749.util import list_to_scope, scope_to_list
from authlib.oauth2.rfc6750.errors import InvalidTokenError

from auth.errors import InvalidCredentials, InvalidOrExpiredToken, MalformedToken
from auth.models import User
from auth.store import CredentialStore
from auth.tokens import authenticate_user, encode_token, issue_access_token, parse_access_token, verify_password
from cache.store import EphemeralCache
from core.config import Settings
from oidc.models import SCOPE_RESOURCES, SUPPORTED_SCOPES, OidcAuthorization, OidcClient
from oidc.store import ClientStore

logger = logging.getLogger("avtopark.oidc")

ACCESS_TOKEN = "access_token"
ID_TOKEN = "id_token"

# Claim -> scope that also releases it into the id_token.
_ID_TOKEN_SCOPES: dict[str, str] = {
    "name": "profile",
    "preferred_username": "profile",
    "email": "email",
    "email_verified": "email",
    "phone_number": "phone",
    "role": "roles",
}

# Claims issue_access_token() already writes; identity values must not clobber them.
_ISSUER_CLAIMS = {"sub", "name", "role", "email"}


def claim_destinations(claim: str, scopes: list[str]) -> set[str]:
    scope = _ID_TOKEN_SCOPES.get(claim)
    if scope is not None and scope in scopes:
        return {ACCESS_TOKEN, ID_TOKEN}
    return {ACCESS_TOKEN}


@dataclass
class AuthorizeOutcome:
    """Where to send the browser next. user is set once the user has authenticated."""

    redirect_url: str
    user: User | None = None


class AuthorizationServer:
    def __init__(
        self,
        store: CredentialStore,
        clients: ClientStore,
        cache: EphemeralCache,
        settings: Settings,
    ) -> None:
        self.store = store
        self.clients = clients
        self.cache = cache
        self.login_path = "/oauth/login"
        self.consent_path = "/oauth/consent"
        self.request_ttl = settings.oidc_request_ttl_minutes * 60
        self.code_ttl = settings.auth_code_ttl_minutes * 60
        self.token_minutes = settings.jwt_expire_minutes

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    def build_identity(self, user: User) -> dict[str, Any]:
        roles = self.store.get_active_roles(user.user_id)
        return {
            "sub": user.user_id,
            "name": user.login,
            "preferred_username": user.login,
            "email": user.email,
            "email_verified": user.email_confirmed,
            "phone_number": user.phone_number,
            "role": [r.name for r in roles],
        }

    # ------------------------------------------------------------------
    # Authorize
    # ------------------------------------------------------------------

    def validate_authorize_request(self, params: dict[str, Any]) -> tuple[OidcClient, dict[str, Any]]:
        """Check client and redirect_uri. Failures here are never redirected."""
        client_id = params.get("client_id") or ""
        client = self.clients.get_client(client_id)
        if client is None or not client.is_active:
            raise InvalidClientError(description="Unknown or disabled client.")
        redirect_uri = params.get("redirect_uri") or ""
        if redirect_uri not in client.redirect_uris:
            raise InvalidRequestError(description="redirect_uri is not registered for this client.")
        request = {
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "response_type": params.get("response_type") or "",
            "scope": params.get("scope") or "openid",
            "state": params.get("state"),
            "nonce": params.get("nonce"),
        }
        return client, request

    def _check_grantable(self, client: OidcClient, request: dict[str, Any]) -> list[str]:
        if request["response_type"] != "code":
            raise UnsupportedResponseTypeError(request["response_type"])
        scopes = scope_to_list(request["scope"]) or []
        allowed = set(SUPPORTED_SCOPES) & set(client.allowed_scopes)
        if not scopes or not set(scopes) <= allowed:
            raise InvalidScopeError(description=f"Allowed scopes: {list_to_scope(sorted(allowed))}")
        return scopes

    def authorize(self, params: dict[str, Any], session_user: User | None) -> AuthorizeOutcome:
        client, request = self.validate_authorize_request(params)
        try:
            self._check_grantable(client, request)
        except OAuth2Error as exc:
            return AuthorizeOutcome(redirect_url=self._error_redirect(request, exc))

        if session_user is None or not session_user.is_active:
            request_id = uuid.uuid4().hex
            self.cache.set(f"oidc_request_{request_id}", request, self.request_ttl)
            logger.info("OIDC authorize parked request for client=%s", client.client_id)
            return AuthorizeOutcome(redirect_url=f"{self.login_path}?{urlencode({'request_id': request_id})}")

        return self._complete(client, request, session_user)

    def pending_request(self, request_id: str) -> dict[str, Any] | None:
        return self.cache.get(f"oidc_request_{request_id}")

    def authorize_callback(self, request_id: str, login: str, password: str) -> AuthorizeOutcome:
        request = self.pending_request(request_id)
        if request is None:
            raise InvalidRequestError(description="Authorization request expired. Start again.")
        try:
            user = authenticate_user(self.store, login, password)
        except InvalidCredentials:
            query = urlencode({"request_id": request_id, "error": "invalid_credentials"})
            return AuthorizeOutcome(redirect_url=f"{self.login_path}?{query}")

        request = self.cache.pop(f"oidc_request_{request_id}")
        if request is None:
            raise InvalidRequestError(description="Authorization request already completed.")
        client, request = self.validate_authorize_request(request)
        return self._complete(client, request, user)

    def _complete(self, client: OidcClient, request: dict[str, Any], user: User) -> AuthorizeOutcome:
        scopes = self._check_grantable(client, request)
        authorization = self.clients.find_authorization(user.user_id, client.client_id, scopes)
        if authorization is None:
            if client.consent_type == "explicit":
                return self._park_for_consent(client, request, user)
            authorization = self._grant(client, user, scopes)
        return self._issue_code(client, request, user, authorization, scopes)

    def _grant(self, client: OidcClient, user: User, scopes: list[str]) -> OidcAuthorization:
        authorization = OidcAuthorization(client_id=client.client_id, subject=user.user_id, scopes=scopes)
        self.clients.create_authorization(authorization)
        return authorization

    def _issue_code(
        self,
        client: OidcClient,
        request: dict[str, Any],
        user: User,
        authorization: OidcAuthorization,
        scopes: list[str],
    ) -> AuthorizeOutcome:
        code = secrets.token_urlsafe(32)
        self.cache.set(
            f"auth_code_{code}",
            {
                "user_id": user.user_id,
                "client_id": client.client_id,
                "scopes": scopes,
                "redirect_uri": request["redirect_uri"],
                "nonce": request.get("nonce"),
                "authorization_id": authorization.id,
            },
            self.code_ttl,
        )
        query = {"code": code}
        if request.get("state"):
            query["state"] = request["state"]
        logger.info("OIDC code issued client=%s user_id=%s scopes=%s", client.client_id, user.user_id, scopes)
        return AuthorizeOutcome(redirect_url=_append_query(request["redirect_uri"], query), user=user)

    def _error_redirect(self, request: dict[str, Any], exc: OAuth2Error) -> str:
        query = {"error": exc.error}
        description = exc.get_error_description()
        if description:
            query["error_description"] = description
        if request.get("state"):
            query["state"] = request["state"]
        return _append_query(request["redirect_uri"], query)

    # ------------------------------------------------------------------
    # Consent (clients registered with require_consent)
    # ------------------------------------------------------------------

    def _park_for_consent(self, client: OidcClient, request: dict[str, Any], user: User) -> AuthorizeOutcome:
        consent_id = uuid.uuid4().hex
        self.cache.set(f"oidc_consent_{consent_id}", {**request, "user_id": user.user_id}, self.request_ttl)
        logger.info("OIDC consent requested client=%s user_id=%s", client.client_id, user.user_id)
        return AuthorizeOutcome(
            redirect_url=f"{self.consent_path}?{urlencode({'request_id': consent_id})}",
            user=user,
        )

    def pending_consent(self, consent_id: str) -> dict[str, Any] | None:
        return self.cache.get(f"oidc_consent_{consent_id}")

    def consent(self, consent_id: str, session_user: User | None, approve: bool) -> AuthorizeOutcome:
        """Apply the user's answer on the consent page.

        Only the user the request was parked for may answer; anyone else gets
        an error and the request stays pending. Approval records a permanent
        authorization, so the same scope set is not asked for again.
        """
        pending = self.pending_consent(consent_id)
        if pending is None:
            raise InvalidRequestError(description="Consent request expired. Start again.")
        if session_user is None or session_user.user_id != pending["user_id"]:
            raise InvalidRequestError(description="Consent must be given by the signed-in user.")
        if self.cache.pop(f"oidc_consent_{consent_id}") is None:
            raise InvalidRequestError(description="Consent request already answered.")

        client, request = self.validate_authorize_request(pending)
        if not approve:
            logger.info("OIDC consent denied client=%s user_id=%s", client.client_id, session_user.user_id)
            return AuthorizeOutcome(redirect_url=self._error_redirect(request, AccessDeniedError()))
        try:
            scopes = self._check_grantable(client, request)
        except OAuth2Error as exc:
            return AuthorizeOutcome(redirect_url=self._error_redirect(request, exc))
        authorization = self._grant(client, session_user, scopes)
        return self._issue_code(client, request, session_user, authorization, scopes)

    # ------------------------------------------------------------------
    # Token
    # ------------------------------------------------------------------

    def token(
        self,
        grant_type: str | None,
        code: str | None,
        redirect_uri: str | None,
        client_id: str | None,
        client_secret: str | None,
    ) -> dict[str, Any]:
        if grant_type != "authorization_code":
            raise UnsupportedGrantTypeError(grant_type or "")
        if not code:
            raise InvalidGrantError(description="Missing authorization code.")

        record = self.cache.pop(f"auth_code_{code}")
        if record is None:
            raise InvalidGrantError(description="The authorization code is invalid, expired or already used.")

        if client_id and client_id != record["client_id"]:
            raise InvalidGrantError(description="Code was issued to another client.")
        client = self.clients.get_client(record["client_id"])
        if client is None or not client.is_active:
            raise InvalidClientError(description="Unknown or disabled client.")
        if client.client_secret_hash:
            if not client_secret or not verify_password(client_secret, client.client_secret_hash):
                raise InvalidClientError(description="Client authentication failed.")
        if redirect_uri and redirect_uri != record["redirect_uri"]:
            raise InvalidGrantError(description="redirect_uri does not match the authorization request.")

        user = self.store.get_by_user_id(record["user_id"])
        if user is None or not user.is_active:
            raise InvalidGrantError(description="The user is no longer active.")

        scopes: list[str] = record["scopes"]
        identity = self.build_identity(user)
        resources = [SCOPE_RESOURCES[s] for s in scopes if s in SCOPE_RESOURCES]

        access_claims = {
            k: v
            for k, v in identity.items()
            if k not in _ISSUER_CLAIMS and v is not None and ACCESS_TOKEN in claim_destinations(k, scopes)
        }
        access_claims.update(
            {
                "scope": list_to_scope(scopes),
                "client_id": client.client_id,
                "aud": [client.client_id, *resources],
            }
        )
        body: dict[str, Any] = {
            "access_token": issue_access_token(self.store, user, extra_claims=access_claims),
            "token_type": "Bearer",
            "expires_in": self.token_minutes * 60,
            "scope": list_to_scope(scopes),
        }

        if "openid" in scopes:
            id_claims = {
                k: v for k, v in identity.items() if v is not None and ID_TOKEN in claim_destinations(k, scopes)
            }
            id_claims.update({"sub": user.user_id, "aud": client.client_id, "azp": client.client_id})
            if record.get("nonce"):
                id_claims["nonce"] = record["nonce"]
            body["id_token"] = encode_token(id_claims, self.token_minutes)

        logger.info("OIDC token issued client=%s user_id=%s", client.client_id, user.user_id)
        return body

    # ------------------------------------------------------------------
    # Userinfo
    # ------------------------------------------------------------------

    def userinfo(self, bearer: str | None) -> dict[str, Any]:
        if not bearer:
            raise InvalidTokenError(description="Bearer token required.")
        try:
            payload = parse_access_token(bearer)
        except (MalformedToken, InvalidOrExpiredToken) as exc:
            raise InvalidTokenError(description="The access token is invalid or expired.") from exc
        user = self.store.get_by_user_id(payload["sub"])
        if user is None or not user.is_active:
            raise InvalidTokenError(description="The access token subject no longer exists.")

        identity = self.build_identity(user)
        info = {k: identity[k] for k in ("sub", "name", "preferred_username", "email", "email_verified", "phone_number")}
        if "roles" in (scope_to_list(payload.get("scope")) or []):
            info["role"] = identity["role"]
        return info


def _append_query(url: str, params: dict[str, str]) -> str:
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}{urlencode(params)}"
