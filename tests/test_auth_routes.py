"""
tests/test_auth_routes.py -- End-to-end scenarios for /api/auth.

Each scenario runs through the real app with the module's seeded database.
Tests that enable a second factor do so on a freshly registered account so
the shared cashier/admin logins stay password-only.
"""

from __future__ import annotations

import json
import re
import time
from unittest.mock import MagicMock, patch

import pyotp
from fastapi.testclient import TestClient

from auth.mailer import Mailer
from auth.tokens import verify_signed_token
from conftest import ADMIN_LOGIN, CASHIER_EMAIL, CASHIER_LOGIN, CASHIER_PASSWORD


def _bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _login(client: TestClient, username: str, password: str) -> dict:
    resp = client.post("/api/auth/login", json={"username": username, "password": password})
    assert resp.status_code == 200, resp.text
    return resp.json()["data"]


def _register(client: TestClient, admin_token: str, username: str, password: str = "fresh-password-1") -> None:
    resp = client.post(
        "/api/auth/register",
        json={"username": username, "password": password, "roles": ["User"]},
        headers=_bearer(admin_token),
    )
    assert resp.status_code == 201, resp.text


# ---------------------------------------------------------------------------
# Password login
# ---------------------------------------------------------------------------


class TestPasswordLogin:
    def test_success_returns_token_and_primary_role(self, api) -> None:
        client, _ = api
        resp = client.post("/api/auth/login", json={"username": CASHIER_LOGIN, "password": CASHIER_PASSWORD})
        assert resp.status_code == 200
        assert resp.headers["cache-control"] == "no-store"
        assert "access_token" in resp.cookies

        data = resp.json()["data"]
        assert data["user"]["username"] == CASHIER_LOGIN
        assert data["user"]["role"] == 3
        assert data["user"]["roles"] == ["Cashier", "User"]
        claims = verify_signed_token(data["token"])
        assert claims["primary_role"] == 3
        assert claims["permission"] == ["tickets.sell"]

    def test_wrong_password_and_unknown_login_look_the_same(self, api) -> None:
        client, _ = api
        wrong = client.post("/api/auth/login", json={"username": CASHIER_LOGIN, "password": "nope-nope"})
        unknown = client.post("/api/auth/login", json={"username": "ghost", "password": "nope-nope"})
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json() == unknown.json()
        assert wrong.json()["code"] == "invalid_credentials"

    def test_empty_body_is_validation_error(self, api) -> None:
        client, _ = api
        resp = client.post("/api/auth/login", json={"username": ""})
        assert resp.status_code == 422
        body = resp.json()
        assert body["success"] is False
        assert "password" in body["data"]["fields"]

    def test_me_with_bearer_and_cookie(self, api) -> None:
        client, _ = api
        token = _login(client, CASHIER_LOGIN, CASHIER_PASSWORD)["token"]

        via_cookie = client.get("/api/auth/me")
        assert via_cookie.status_code == 200
        client.cookies.clear()

        via_header = client.get("/api/auth/me", headers=_bearer(token))
        data = via_header.json()["data"]
        assert data["username"] == CASHIER_LOGIN
        assert data["totpEnabled"] is False
        assert data["webAuthnEnabled"] is False

    def test_me_requires_auth(self, api) -> None:
        client, _ = api
        resp = client.get("/api/auth/me")
        assert resp.status_code == 401
        assert resp.json()["code"] == "unauthorized"

    def test_logout_clears_cookie(self, api) -> None:
        client, _ = api
        _login(client, CASHIER_LOGIN, CASHIER_PASSWORD)
        client.post("/api/auth/logout")
        assert client.get("/api/auth/me").status_code == 401


class TestRegister:
    def test_admin_creates_user(self, api) -> None:
        client, token = api
        resp = client.post(
            "/api/auth/register",
            json={"username": "driver7", "password": "driver-pass-7", "email": "driver7@example.com", "roles": ["User"]},
            headers=_bearer(token),
        )
        assert resp.status_code == 201
        assert resp.json()["data"]["roles"] == ["User"]
        assert _login(client, "driver7", "driver-pass-7")["user"]["role"] == 0

    def test_duplicate_username(self, api) -> None:
        client, token = api
        resp = client.post(
            "/api/auth/register",
            json={"username": ADMIN_LOGIN, "password": "whatever-123"},
            headers=_bearer(token),
        )
        assert resp.status_code == 409
        assert resp.json()["code"] == "conflict"

    def test_unknown_role(self, api) -> None:
        client, token = api
        resp = client.post(
            "/api/auth/register",
            json={"username": "driver8", "password": "driver-pass-8", "roles": ["Pilot"]},
            headers=_bearer(token),
        )
        assert resp.status_code == 404

    def test_non_admin_forbidden(self, api) -> None:
        client, _ = api
        cashier_token = _login(client, CASHIER_LOGIN, CASHIER_PASSWORD)["token"]
        client.cookies.clear()
        resp = client.post(
            "/api/auth/register",
            json={"username": "driver9", "password": "driver-pass-9"},
            headers=_bearer(cashier_token),
        )
        assert resp.status_code == 403


# ---------------------------------------------------------------------------
# TOTP
# ---------------------------------------------------------------------------


def test_totp_enrol_then_two_step_login(api) -> None:
    client, admin_token = api
    _register(client, admin_token, "totp-user")
    token = _login(client, "totp-user", "fresh-password-1")["token"]
    client.cookies.clear()

    setup = client.post("/api/auth/totp/setup", headers=_bearer(token)).json()["data"]
    assert setup["qrCodeUri"].startswith("otpauth://totp/")
    assert setup["qrCode"].startswith("data:image/png;base64,")
    totp = pyotp.TOTP(setup["secretKey"])

    bad = client.post(
        "/api/auth/totp/verify",
        json={"code": totp.at(time.time() - 3600), "secretKey": setup["secretKey"]},
        headers=_bearer(token),
    )
    assert bad.status_code == 400
    assert bad.json()["code"] == "invalid_code"

    enabled = client.post(
        "/api/auth/totp/verify",
        json={"code": totp.now(), "secretKey": setup["secretKey"]},
        headers=_bearer(token),
    )
    assert enabled.status_code == 200

    first = client.post("/api/auth/login", json={"username": "totp-user", "password": "fresh-password-1"})
    data = first.json()["data"]
    assert data["requiresTwoFactor"] is True
    assert data["twoFactorType"] == "totp"
    assert "token" not in data
    assert "access_token" not in first.cookies

    second = client.post("/api/auth/totp/validate", json={"tempToken": data["tempToken"], "code": totp.now()})
    assert second.status_code == 200
    assert second.json()["data"]["user"]["username"] == "totp-user"

    replay = client.post("/api/auth/totp/validate", json={"tempToken": data["tempToken"], "code": totp.now()})
    assert replay.status_code == 400
    assert replay.json()["code"] == "invalid_or_expired_token"

    # skipTwoFactor is honoured.
    skipped = client.post(
        "/api/auth/login",
        json={"username": "totp-user", "password": "fresh-password-1", "skipTwoFactor": True},
    )
    assert "token" in skipped.json()["data"]

    disabled = client.post("/api/auth/totp/disable", headers=_bearer(token))
    assert disabled.status_code == 200
    assert "token" in _login(client, "totp-user", "fresh-password-1")


# ---------------------------------------------------------------------------
# Magic link
# ---------------------------------------------------------------------------


def _send_and_capture_link(client: TestClient, email: str) -> str | None:
    mailer = MagicMock(spec=Mailer)
    with patch.object(client.app.state.magic_links, "mailer", mailer):
        resp = client.post("/api/auth/magic-link/send", json={"email": email})
    assert resp.status_code == 200
    if not mailer.send.called:
        return None
    text_body = mailer.send.call_args.args[2]
    return re.search(r"token=([A-Za-z0-9_\-%]+)", text_body).group(1)


class TestMagicLink:
    def test_browser_redirect_sets_session(self, api) -> None:
        client, _ = api
        token = _send_and_capture_link(client, CASHIER_EMAIL)
        assert token

        resp = client.get(f"/api/auth/validate-magic-link?token={token}")
        assert resp.status_code == 302
        assert resp.headers["location"].startswith("/auth/success?token=")
        assert "access_token" in resp.cookies

        landing = client.get(resp.headers["location"])
        assert landing.status_code == 200
        assert client.get("/api/auth/me").json()["data"]["username"] == CASHIER_LOGIN

    def test_second_use_lands_on_error_page(self, api) -> None:
        client, _ = api
        token = _send_and_capture_link(client, CASHIER_EMAIL)
        client.get(f"/api/auth/validate-magic-link?token={token}")
        client.cookies.clear()

        resp = client.get(f"/api/auth/validate-magic-link?token={token}")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/auth/error?error=invalid_or_expired_token"
        page = client.get(resp.headers["location"])
        assert "already been used" in page.text

    def test_json_validation(self, api) -> None:
        client, _ = api
        token = _send_and_capture_link(client, CASHIER_EMAIL)
        resp = client.post("/api/auth/validate-magic-link", json={"token": token})
        assert resp.status_code == 200
        assert resp.json()["data"]["user"]["email"] == CASHIER_EMAIL

    def test_unconfirmed_and_unknown_addresses_are_silent(self, api) -> None:
        client, _ = api
        # The admin's address is not confirmed.
        assert _send_and_capture_link(client, "admin@example.com") is None
        assert _send_and_capture_link(client, "nobody@example.com") is None

    def test_error_page_never_reflects_query(self, api) -> None:
        client, _ = api
        resp = client.get("/auth/error?error=<script>alert(1)</script>")
        assert resp.status_code == 200
        assert "<script>alert(1)</script>" not in resp.text
        assert "Sign-in failed. Please try again." in resp.text


# ---------------------------------------------------------------------------
# QR login
# ---------------------------------------------------------------------------


def test_session_qr_logs_in_second_device(api) -> None:
    client, _ = api
    token = _login(client, CASHIER_LOGIN, CASHIER_PASSWORD)["token"]
    client.cookies.clear()

    generated = client.get("/api/auth/qr/generate", headers=_bearer(token)).json()["data"]
    assert generated["qrCode"].startswith("data:image/png;base64,")
    raw = json.loads(generated["rawData"])
    assert raw["type"] == "session"

    first = client.post("/api/auth/qr/login", json={"username": raw["username"], "token": raw["token"]})
    assert first.status_code == 200
    assert first.json()["data"]["user"]["username"] == CASHIER_LOGIN

    again = client.post("/api/auth/qr/login", json={"username": raw["username"], "token": raw["token"]})
    assert again.status_code == 401


def test_direct_qr_approves_waiting_device(api) -> None:
    client, _ = api

    # Device A (signed out) shows a code for the cashier.
    shown = client.get("/api/auth/qr/direct/generate", params={"username": CASHIER_LOGIN, "deviceType": "desktop"})
    assert shown.status_code == 200
    raw = json.loads(shown.json()["data"]["rawData"])
    device_id = raw["deviceId"]

    pending = client.get("/api/auth/qr/direct/check", params={"deviceId": device_id})
    assert pending.status_code == 200
    assert pending.json() == {"success": False, "message": "No login detected yet.", "code": "pending"}

    # Device B is already signed in as the cashier and scans it.
    phone_token = _login(client, CASHIER_LOGIN, CASHIER_PASSWORD)["token"]
    client.cookies.clear()
    approved = client.post(
        "/api/auth/qr/direct/login",
        json={"token": raw["token"], "deviceType": "mobile", "isDesktopLogin": True},
        headers=_bearer(phone_token),
    )
    assert approved.status_code == 200
    assert approved.json()["data"]["deviceId"] == device_id

    # Device A picks the token up exactly once.
    picked = client.get("/api/auth/qr/direct/check", params={"deviceId": device_id})
    assert picked.json()["success"] is True
    desktop_token = picked.json()["data"]["token"]
    assert verify_signed_token(desktop_token)["name"] == CASHIER_LOGIN
    assert client.get("/api/auth/qr/direct/check", params={"deviceId": device_id}).json()["code"] == "pending"


def test_direct_qr_rejects_other_account(api) -> None:
    client, admin_token = api
    shown = client.get("/api/auth/qr/direct/generate", params={"username": CASHIER_LOGIN})
    raw = json.loads(shown.json()["data"]["rawData"])

    resp = client.post("/api/auth/qr/direct/login", json={"token": raw["token"]}, headers=_bearer(admin_token))
    assert resp.status_code == 403


def test_direct_qr_unknown_user(api) -> None:
    client, _ = api
    resp = client.get("/api/auth/qr/direct/generate", params={"username": "ghost"})
    assert resp.status_code == 404
    assert resp.json()["code"] == "account_not_found"
