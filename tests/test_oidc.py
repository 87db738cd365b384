"""
tests/test_oidc.py -- OpenID Connect authorization server.

Unit tests drive AuthorizationServer directly; the TestOidcHttpFlow class runs
the browser + relying-party round trip through the real routes:

  /connect/authorize -> /oauth/login -> /connect/authorize/callback
  -> client redirect with ?code= -> /connect/token -> /connect/userinfo

and, for clients that require consent, /oauth/consent -> /connect/authorize/consent.

Covers:
  - client / redirect_uri validation is never redirected; later errors are
  - parked requests, wrong password retry, code issuance with state
  - authorization reuse for an identical scope set
  - explicit consent: consent page, allow/deny, answer bound to the signed-in user
  - token exchange checks (grant type, replay, client auth, redirect_uri)
  - claim placement: access token vs id_token, aud, nonce
  - userinfo and the roles scope
"""

from __future__ import annotations

import base64
from urllib.parse import parse_qs, urlencode, urlparse

import pytest
from authlib.oauth2.rfc6749.errors import (
    InvalidClientError,
    InvalidGrantError,
    InvalidRequestError,
    UnsupportedGrantTypeError,
)
from authlib.oauth2.rfc6750.errors import InvalidTokenError

from auth.store import CredentialStore
from auth.tokens import verify_signed_token
from cache.store import EphemeralCache
from conftest import (
    CASHIER_LOGIN,
    CASHIER_PASSWORD,
    CLIENT_ID,
    CLIENT_REDIRECT,
    CLIENT_SECRET,
    PUBLIC_CLIENT_ID,
    PUBLIC_REDIRECT,
    seed_clients,
)
from core.config import get_settings
from oidc.clients import ClientManager
from oidc.server import AuthorizationServer
from oidc.store import ClientStore


@pytest.fixture
def server(credential_store: CredentialStore, client_store: ClientStore, cache: EphemeralCache) -> AuthorizationServer:
    seed_clients(client_store)
    return AuthorizationServer(credential_store, client_store, cache, get_settings())


def _params(**overrides) -> dict:
    params = {
        "client_id": CLIENT_ID,
        "redirect_uri": CLIENT_REDIRECT,
        "response_type": "code",
        "scope": "openid profile roles",
        "state": "st-1",
        "nonce": "n-1",
    }
    params.update(overrides)
    return params


def _query(url: str) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


def _code_for(server: AuthorizationServer, user, **overrides) -> str:
    return _query(server.authorize(_params(**overrides), user).redirect_url)["code"]


class TestAuthorize:
    def test_unknown_client_raises(self, server: AuthorizationServer, seeded) -> None:
        with pytest.raises(InvalidClientError):
            server.authorize(_params(client_id="nope"), None)

    def test_unregistered_redirect_raises(self, server: AuthorizationServer, seeded) -> None:
        with pytest.raises(InvalidRequestError):
            server.authorize(_params(redirect_uri="https://attacker.example/cb"), None)

    def test_disabled_client_raises(self, server: AuthorizationServer, client_store: ClientStore, seeded) -> None:
        client_store.update_client(CLIENT_ID, is_active=False)
        with pytest.raises(InvalidClientError):
            server.authorize(_params(), seeded["cashier"])

    def test_unsupported_response_type_redirects_to_client(self, server: AuthorizationServer, seeded) -> None:
        outcome = server.authorize(_params(response_type="token"), seeded["cashier"])
        assert outcome.redirect_url.startswith(CLIENT_REDIRECT)
        query = _query(outcome.redirect_url)
        assert query["error"] == "unsupported_response_type"
        assert query["state"] == "st-1"

    def test_scope_outside_client_allowance(self, server: AuthorizationServer, seeded) -> None:
        outcome = server.authorize(
            _params(client_id=PUBLIC_CLIENT_ID, redirect_uri=PUBLIC_REDIRECT, scope="openid email"),
            seeded["cashier"],
        )
        assert _query(outcome.redirect_url)["error"] == "invalid_scope"

    def test_no_session_parks_request(self, server: AuthorizationServer, seeded) -> None:
        outcome = server.authorize(_params(), None)
        assert outcome.user is None
        assert outcome.redirect_url.startswith("/oauth/login?")
        request_id = _query(outcome.redirect_url)["request_id"]
        assert server.pending_request(request_id)["client_id"] == CLIENT_ID

    def test_session_gets_code_and_state(self, server: AuthorizationServer, seeded) -> None:
        outcome = server.authorize(_params(), seeded["cashier"])
        query = _query(outcome.redirect_url)
        assert outcome.redirect_url.startswith(CLIENT_REDIRECT + "?")
        assert query["code"]
        assert query["state"] == "st-1"
        assert outcome.user.user_id == seeded["cashier"].user_id

    def test_authorization_reused_for_same_scopes(
        self, server: AuthorizationServer, client_store: ClientStore, seeded
    ) -> None:
        cashier = seeded["cashier"]
        server.authorize(_params(scope="openid profile"), cashier)
        server.authorize(_params(scope="profile openid"), cashier)
        server.authorize(_params(scope="openid roles"), cashier)
        scope_sets = [sorted(a.scopes) for a in client_store.list_authorizations(cashier.user_id)]
        assert scope_sets == [["openid", "profile"], ["openid", "roles"]]


class TestCallback:
    def test_wrong_password_returns_to_login(self, server: AuthorizationServer, seeded) -> None:
        request_id = _query(server.authorize(_params(), None).redirect_url)["request_id"]
        outcome = server.authorize_callback(request_id, CASHIER_LOGIN, "wrong-password")
        assert outcome.user is None
        assert _query(outcome.redirect_url) == {"request_id": request_id, "error": "invalid_credentials"}
        # Still pending, the user can retry.
        assert server.pending_request(request_id) is not None

    def test_success_issues_code_once(self, server: AuthorizationServer, seeded) -> None:
        request_id = _query(server.authorize(_params(), None).redirect_url)["request_id"]
        outcome = server.authorize_callback(request_id, CASHIER_LOGIN, CASHIER_PASSWORD)
        assert "code" in _query(outcome.redirect_url)
        with pytest.raises(InvalidRequestError):
            server.authorize_callback(request_id, CASHIER_LOGIN, CASHIER_PASSWORD)

    def test_unknown_request(self, server: AuthorizationServer, seeded) -> None:
        with pytest.raises(InvalidRequestError):
            server.authorize_callback("missing", CASHIER_LOGIN, CASHIER_PASSWORD)


_CONSENT_CLIENT = "consent-desk"
_CONSENT_REDIRECT = "https://consent.example/signin-oidc"


class TestConsent:
    """Clients registered with require_consent ask once per scope set."""

    @pytest.fixture
    def consent_client(self, client_store: ClientStore) -> None:
        ClientManager(client_store).register(
            client_id=_CONSENT_CLIENT,
            display_name="Consent desk",
            redirect_uris=[_CONSENT_REDIRECT],
            allowed_scopes=["openid", "profile"],
            require_consent=True,
        )

    def _ask(self, server: AuthorizationServer, user) -> str:
        outcome = server.authorize(
            _params(client_id=_CONSENT_CLIENT, redirect_uri=_CONSENT_REDIRECT, scope="openid profile"), user
        )
        assert outcome.redirect_url.startswith("/oauth/consent?")
        return _query(outcome.redirect_url)["request_id"]

    def test_first_request_goes_to_consent_page(
        self, server: AuthorizationServer, client_store: ClientStore, consent_client, seeded
    ) -> None:
        cashier = seeded["cashier"]
        consent_id = self._ask(server, cashier)
        pending = server.pending_consent(consent_id)
        assert pending["client_id"] == _CONSENT_CLIENT
        assert pending["user_id"] == cashier.user_id
        assert client_store.list_authorizations(cashier.user_id) == []

    def test_deny_redirects_access_denied(self, server: AuthorizationServer, consent_client, seeded) -> None:
        consent_id = self._ask(server, seeded["cashier"])
        outcome = server.consent(consent_id, seeded["cashier"], approve=False)
        query = _query(outcome.redirect_url)
        assert outcome.redirect_url.startswith(_CONSENT_REDIRECT)
        assert query["error"] == "access_denied"
        assert query["state"] == "st-1"
        assert "code" not in query
        assert server.pending_consent(consent_id) is None

    def test_other_user_cannot_answer(self, server: AuthorizationServer, consent_client, seeded) -> None:
        consent_id = self._ask(server, seeded["cashier"])
        with pytest.raises(InvalidRequestError):
            server.consent(consent_id, seeded["admin"], approve=True)
        with pytest.raises(InvalidRequestError):
            server.consent(consent_id, None, approve=True)
        assert server.pending_consent(consent_id) is not None

    def test_approve_issues_code_and_is_remembered(
        self, server: AuthorizationServer, client_store: ClientStore, consent_client, seeded
    ) -> None:
        cashier = seeded["cashier"]
        consent_id = self._ask(server, cashier)
        outcome = server.consent(consent_id, cashier, approve=True)
        assert _query(outcome.redirect_url)["code"]
        assert outcome.user.user_id == cashier.user_id

        with pytest.raises(InvalidRequestError):
            server.consent(consent_id, cashier, approve=True)

        again = server.authorize(
            _params(client_id=_CONSENT_CLIENT, redirect_uri=_CONSENT_REDIRECT, scope="profile openid"), cashier
        )
        assert again.redirect_url.startswith(_CONSENT_REDIRECT + "?")
        assert _query(again.redirect_url)["code"]
        assert len(client_store.list_authorizations(cashier.user_id)) == 1

    def test_implicit_client_never_asks(self, server: AuthorizationServer, seeded) -> None:
        outcome = server.authorize(_params(), seeded["cashier"])
        assert outcome.redirect_url.startswith(CLIENT_REDIRECT + "?")


class TestToken:
    def _exchange(self, server: AuthorizationServer, code: str, **overrides) -> dict:
        args = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": CLIENT_REDIRECT,
            "client_id": CLIENT_ID,
            "client_secret": CLIENT_SECRET,
        }
        args.update(overrides)
        return server.token(**args)

    def test_exchange_and_claims(self, server: AuthorizationServer, seeded) -> None:
        cashier = seeded["cashier"]
        body = self._exchange(server, _code_for(server, cashier))

        assert body["token_type"] == "Bearer"
        assert body["expires_in"] == get_settings().jwt_expire_minutes * 60
        assert set(body["scope"].split()) == {"openid", "profile", "roles"}

        access = verify_signed_token(body["access_token"])
        assert access["sub"] == cashier.user_id
        assert access["client_id"] == CLIENT_ID
        assert access["aud"] == [CLIENT_ID, "ticketsales_api"]
        assert access["role"] == ["Cashier", "User"]
        assert access["primary_role"] == 3

        id_token = verify_signed_token(body["id_token"])
        assert id_token["sub"] == cashier.user_id
        assert id_token["aud"] == CLIENT_ID
        assert id_token["azp"] == CLIENT_ID
        assert id_token["nonce"] == "n-1"
        assert id_token["preferred_username"] == CASHIER_LOGIN
        assert id_token["role"] == ["Cashier", "User"]
        # "email" scope was not granted.
        assert "email" not in id_token

    def test_no_id_token_without_openid(self, server: AuthorizationServer, seeded) -> None:
        body = self._exchange(server, _code_for(server, seeded["cashier"], scope="profile"))
        assert "id_token" not in body
        assert verify_signed_token(body["access_token"])["aud"] == [CLIENT_ID]

    def test_code_replay_rejected(self, server: AuthorizationServer, seeded) -> None:
        code = _code_for(server, seeded["cashier"])
        self._exchange(server, code)
        with pytest.raises(InvalidGrantError):
            self._exchange(server, code)

    def test_bad_secret_burns_code(self, server: AuthorizationServer, seeded) -> None:
        code = _code_for(server, seeded["cashier"])
        with pytest.raises(InvalidClientError):
            self._exchange(server, code, client_secret="wrong-secret-value")
        with pytest.raises(InvalidGrantError):
            self._exchange(server, code)

    def test_redirect_uri_mismatch(self, server: AuthorizationServer, seeded) -> None:
        code = _code_for(server, seeded["cashier"])
        with pytest.raises(InvalidGrantError):
            self._exchange(server, code, redirect_uri="http://127.0.0.1:7890/other")

    def test_code_bound_to_client(self, server: AuthorizationServer, seeded) -> None:
        code = _code_for(server, seeded["cashier"])
        with pytest.raises(InvalidGrantError):
            self._exchange(server, code, client_id=PUBLIC_CLIENT_ID, client_secret=None)

    def test_unsupported_grant_type(self, server: AuthorizationServer, seeded) -> None:
        with pytest.raises(UnsupportedGrantTypeError):
            self._exchange(server, "x", grant_type="password")

    def test_disabled_user_rejected(self, server: AuthorizationServer, credential_store: CredentialStore, seeded) -> None:
        code = _code_for(server, seeded["cashier"])
        credential_store.update_user(seeded["cashier"].user_id, is_active=False)
        with pytest.raises(InvalidGrantError):
            self._exchange(server, code)

    def test_public_client_needs_no_secret(self, server: AuthorizationServer, seeded) -> None:
        code = _code_for(server, seeded["cashier"], client_id=PUBLIC_CLIENT_ID, redirect_uri=PUBLIC_REDIRECT, scope="openid")
        body = self._exchange(server, code, client_id=PUBLIC_CLIENT_ID, redirect_uri=PUBLIC_REDIRECT, client_secret=None)
        assert body["access_token"]


class TestUserinfo:
    def test_roles_scope_releases_roles(self, server: AuthorizationServer, seeded) -> None:
        body = server.token("authorization_code", _code_for(server, seeded["cashier"]), CLIENT_REDIRECT, CLIENT_ID, CLIENT_SECRET)
        info = server.userinfo(body["access_token"])
        assert info["sub"] == seeded["cashier"].user_id
        assert info["preferred_username"] == CASHIER_LOGIN
        assert info["role"] == ["Cashier", "User"]

    def test_without_roles_scope(self, server: AuthorizationServer, seeded) -> None:
        code = _code_for(server, seeded["cashier"], scope="openid profile")
        body = server.token("authorization_code", code, CLIENT_REDIRECT, CLIENT_ID, CLIENT_SECRET)
        assert "role" not in server.userinfo(body["access_token"])

    @pytest.mark.parametrize("bearer", [None, "", "not-a-jwt"])
    def test_bad_bearer(self, server: AuthorizationServer, bearer) -> None:
        with pytest.raises(InvalidTokenError):
            server.userinfo(bearer)


class TestOidcHttpFlow:
    """The full browser round trip against the real routes."""

    def _authorize_url(self) -> str:
        return "/connect/authorize?" + urlencode(_params())

    def test_round_trip(self, api) -> None:
        client, _ = api

        resp = client.get(self._authorize_url())
        assert resp.status_code == 302
        login_url = resp.headers["location"]
        assert login_url.startswith("/oauth/login?request_id=")
        request_id = _query(login_url)["request_id"]

        page = client.get(login_url)
        assert page.status_code == 200
        assert "Cashier desktop" in page.text
        assert page.headers["cache-control"] == "no-store"

        resp = client.post(
            "/connect/authorize/callback",
            data={"request_id": request_id, "username": CASHIER_LOGIN, "password": "wrong-password"},
        )
        assert resp.status_code == 302
        assert "error=invalid_credentials" in resp.headers["location"]
        retry = client.get(resp.headers["location"])
        assert "Invalid username or password." in retry.text

        resp = client.post(
            "/connect/authorize/callback",
            data={"request_id": request_id, "username": CASHIER_LOGIN, "password": CASHIER_PASSWORD},
        )
        assert resp.status_code == 302
        redirect = resp.headers["location"]
        assert redirect.startswith(CLIENT_REDIRECT)
        assert _query(redirect)["state"] == "st-1"
        assert "access_token" in resp.cookies

        basic = base64.b64encode(f"{CLIENT_ID}:{CLIENT_SECRET}".encode()).decode()
        form = {"grant_type": "authorization_code", "code": _query(redirect)["code"], "redirect_uri": CLIENT_REDIRECT}
        resp = client.post("/connect/token", data=form, headers={"Authorization": f"Basic {basic}"})
        assert resp.status_code == 200
        assert resp.headers["cache-control"] == "no-store"
        tokens = resp.json()

        info = client.get("/connect/userinfo", headers={"Authorization": f"Bearer {tokens['access_token']}"})
        assert info.status_code == 200
        assert info.json()["preferred_username"] == CASHIER_LOGIN
        assert info.json()["role"] == ["Cashier", "User"]

        replay = client.post("/connect/token", data=form, headers={"Authorization": f"Basic {basic}"})
        assert replay.status_code == 400
        assert replay.json()["error"] == "invalid_grant"

    def test_existing_session_skips_login(self, api) -> None:
        client, _ = api
        login = client.post("/api/auth/login", json={"username": CASHIER_LOGIN, "password": CASHIER_PASSWORD})
        assert login.status_code == 200

        resp = client.get(self._authorize_url())
        assert resp.status_code == 302
        assert resp.headers["location"].startswith(CLIENT_REDIRECT + "?code=")

    def test_secret_in_form_body(self, api) -> None:
        client, _ = api
        client.post("/api/auth/login", json={"username": CASHIER_LOGIN, "password": CASHIER_PASSWORD})
        code = _query(client.get(self._authorize_url()).headers["location"])["code"]
        resp = client.post(
            "/connect/token",
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": CLIENT_REDIRECT,
                "client_id": CLIENT_ID,
                "client_secret": CLIENT_SECRET,
            },
        )
        assert resp.status_code == 200
        assert "id_token" in resp.json()

    def test_unknown_client_is_not_redirected(self, api) -> None:
        client, _ = api
        resp = client.get("/connect/authorize?" + urlencode(_params(client_id="ghost")))
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_client"

    def test_userinfo_requires_bearer(self, api) -> None:
        client, _ = api
        resp = client.get("/connect/userinfo")
        assert resp.status_code == 401
        assert resp.json()["error"] == "invalid_token"

    def test_expired_login_request_page(self, api) -> None:
        client, _ = api
        resp = client.get("/oauth/login?request_id=does-not-exist")
        assert resp.status_code == 400
        assert "expired" in resp.text

    def test_consent_page_round_trip(self, api) -> None:
        client, token = api
        resp = client.post(
            "/connect/registerclient",
            json={
                "clientId": "consent-http",
                "displayName": "Consent kiosk",
                "redirectUris": ["https://kiosk.example/cb"],
                "allowedScopes": ["openid", "profile"],
                "requireConsent": True,
            },
            headers={"Authorization": f"Bearer {token}"},
        )
        assert resp.status_code == 201
        assert resp.json()["data"]["requireConsent"] is True

        client.post("/api/auth/login", json={"username": CASHIER_LOGIN, "password": CASHIER_PASSWORD})
        authorize_url = "/connect/authorize?" + urlencode(
            _params(client_id="consent-http", redirect_uri="https://kiosk.example/cb", scope="openid profile")
        )
        resp = client.get(authorize_url)
        assert resp.status_code == 302
        consent_url = resp.headers["location"]
        assert consent_url.startswith("/oauth/consent?request_id=")

        page = client.get(consent_url)
        assert page.status_code == 200
        assert "Consent kiosk" in page.text
        assert "profile" in page.text
        assert page.headers["cache-control"] == "no-store"

        resp = client.post(
            "/connect/authorize/consent",
            data={"request_id": _query(consent_url)["request_id"], "decision": "allow"},
        )
        assert resp.status_code == 302
        assert resp.headers["location"].startswith("https://kiosk.example/cb?code=")

        # Remembered: the next request goes straight back to the client.
        resp = client.get(authorize_url)
        assert resp.headers["location"].startswith("https://kiosk.example/cb?code=")

    def test_consent_answer_needs_session(self, api) -> None:
        client, _ = api
        resp = client.post("/connect/authorize/consent", data={"request_id": "does-not-exist", "decision": "allow"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_request"

    def test_expired_consent_page(self, api) -> None:
        client, _ = api
        resp = client.get("/oauth/consent?request_id=does-not-exist")
        assert resp.status_code == 400
        assert "expired" in resp.text
