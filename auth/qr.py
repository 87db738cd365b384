"""
auth/qr.py -- Cross-device login via QR codes.

Two flows share this coordinator:

Session QR (logged-in device shows a code, another device scans it):
    generate_qr_code(user) signs a short-lived JWT (purpose=qr_login) and
    registers its jti in the cache. authenticate_session_qr() pops the jti, so
    one code logs in one device.

Direct login (logged-out device A shows a code, logged-in device B scans it):
    A: generate_direct_login_qr(username, device_type) -> deviceId + binding token
    B: validate_direct_login_token(token, ...)          -> consumes the binding
       authenticate_direct_qr(login, deviceId)          -> active user for A
       notify_device_login_success(deviceId, jwt)       -> parks A's token
    A: check_direct_login_status(deviceId)               -> pops it, once

Device A polls; nothing here blocks. Every record expires after QR_TTL_MINUTES.
"""

from __future__ import annotations

import base64
import json
import logging
import secrets
import uuid
from dataclasses import dataclass
from io import BytesIO

import qrcode

from auth.errors import AccountNotFound, Forbidden, InvalidOrExpiredToken, MalformedToken, Unauthorized
from auth.models import User
from auth.store import CredentialStore
from auth.tokens import encode_token, verify_signed_token
from cache.store import EphemeralCache

logger = logging.getLogger("avtopark.auth.qr")

_PURPOSE = "qr_login"


def render_qr_png(data: str) -> str:
    """Render data as a PNG QR code and return it as a data: URI."""
    qr = qrcode.QRCode(version=1, box_size=10, border=5)
    qr.add_data(data)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buffer = BytesIO()
    img.save(buffer, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode()


@dataclass
class DirectLoginQr:
    qr_code: str
    raw_data: str
    device_id: str
    token: str


class QrLoginCoordinator:
    def __init__(self, store: CredentialStore, cache: EphemeralCache, ttl_minutes: int = 5) -> None:
        self.store = store
        self.cache = cache
        self.ttl_seconds = ttl_minutes * 60
        self.ttl_minutes = ttl_minutes

    # ------------------------------------------------------------------
    # Session QR
    # ------------------------------------------------------------------

    def generate_qr_code(self, user: User) -> tuple[str, str]:
        """Return (qr_png_data_uri, raw_json) for a single-use session login code."""
        jti = uuid.uuid4().hex
        token = encode_token(
            {"sub": user.user_id, "name": user.login, "purpose": _PURPOSE, "jti": jti},
            self.ttl_minutes,
        )
        self.cache.set(f"qr_session_{jti}", {"user_id": user.user_id}, self.ttl_seconds)
        raw = json.dumps({"type": "session", "username": user.login, "token": token})
        return render_qr_png(raw), raw

    def authenticate_session_qr(self, username: str, token: str) -> User:
        try:
            payload = verify_signed_token(token)
        except (MalformedToken, InvalidOrExpiredToken) as exc:
            raise Unauthorized("Invalid or expired QR code.") from exc
        if payload.get("purpose") != _PURPOSE or payload.get("name") != username:
            raise Unauthorized("Invalid or expired QR code.")
        if self.cache.pop(f"qr_session_{payload.get('jti')}") is None:
            raise Unauthorized("QR code already used.")
        user = self.store.get_by_user_id(payload["sub"])
        if user is None or not user.is_active:
            raise Unauthorized("Invalid or expired QR code.")
        logger.info("Session QR login for user_id=%s", user.user_id)
        return user

    # ------------------------------------------------------------------
    # Direct login
    # ------------------------------------------------------------------

    def generate_direct_login_qr(self, username: str, device_type: str) -> DirectLoginQr:
        user = self.store.get_by_login(username)
        if user is None or not user.is_active:
            raise AccountNotFound()
        device_id = uuid.uuid4().hex
        token = secrets.token_urlsafe(32)
        self.cache.set(
            f"qr_direct_{token}",
            {"device_id": device_id, "user_id": user.user_id, "login": user.login, "device_type": device_type},
            self.ttl_seconds,
        )
        raw = json.dumps(
            {
                "type": "direct",
                "username": user.login,
                "token": token,
                "deviceId": device_id,
                "deviceType": device_type,
            }
        )
        return DirectLoginQr(qr_code=render_qr_png(raw), raw_data=raw, device_id=device_id, token=token)

    def validate_direct_login_token(self, token: str, device_type: str, scanning_user: User) -> tuple[User, str]:
        """Consume the binding shown by device A. Returns (bound user, device_id).

        The scanning device must already be signed in as the bound user. A
        mismatched scanner does not burn the code.
        """
        key = f"qr_direct_{token}"
        binding = self.cache.get(key)
        if binding is None:
            raise Unauthorized("Invalid or expired QR code.")
        if binding["user_id"] != scanning_user.user_id:
            raise Forbidden("QR code belongs to a different account.")
        binding = self.cache.pop(key)
        if binding is None:
            raise Unauthorized("QR code already used.")
        logger.info(
            "Direct QR scanned: device_id=%s shown_on=%s scanned_from=%s",
            binding["device_id"],
            binding.get("device_type"),
            device_type,
        )
        return scanning_user, binding["device_id"]

    def authenticate_direct_qr(self, login: str, device_id: str) -> User:
        user = self.store.get_by_login(login)
        if user is None or not user.is_active:
            raise Unauthorized()
        logger.info("Direct QR login approved for device_id=%s user_id=%s", device_id, user.user_id)
        return user

    def notify_device_login_success(self, device_id: str, token: str) -> None:
        self.cache.set(f"login_success_{device_id}", {"token": token}, self.ttl_seconds)

    def check_direct_login_status(self, device_id: str) -> str | None:
        """Return the parked token exactly once; None means "no login yet"."""
        result = self.cache.pop(f"login_success_{device_id}")
        return result["token"] if result else None
