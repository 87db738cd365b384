"""
auth/totp.py -- RFC 6238 time-based one-time passwords.

Flow:
  setup_totp()   -> fresh secret + otpauth:// URI + QR image. Nothing is stored;
                    the caller holds the secret until the user proves they
                    enrolled it.
  enable_totp()  -> verify a code against that secret, then store it as the
                    user's only active secret and flip settings.totp_enabled.
  disable_totp() -> deactivate the active secret and clear the flag.

verify_code() is pure (30 s step, 6 digits, one step of clock drift either
way) and is used both at enable time and at login time.

Secrets are encrypted at rest with Fernet. The key is SHA-256 of SECRET_KEY,
so rotating SECRET_KEY invalidates stored secrets.
"""

from __future__ import annotations

import base64
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime

import pyotp
from cryptography.fernet import Fernet, InvalidToken

from auth.errors import InvalidCode, NoSecondFactorConfigured
from auth.qr import render_qr_png
from auth.store import CredentialStore

logger = logging.getLogger("avtopark.auth.totp")


@dataclass
class TotpSetup:
    secret: str
    provisioning_uri: str
    qr_code: str  # data:image/png;base64,...


def verify_code(secret: str, code: str, for_time: datetime | int | None = None) -> bool:
    """Return True if code is valid for secret at for_time (default: now)."""
    code = (code or "").replace(" ", "")
    if len(code) != 6 or not code.isdigit():
        return False
    try:
        return pyotp.TOTP(secret).verify(code, for_time=for_time, valid_window=1)
    except ValueError:
        # Not a base32 secret.
        return False


class TotpService:
    def __init__(self, store: CredentialStore, secret_key: str, issuer: str) -> None:
        self.store = store
        self.issuer = issuer
        derived = hashlib.sha256(secret_key.encode()).digest()
        self._fernet = Fernet(base64.urlsafe_b64encode(derived))

    def setup_totp(self, user_id: str, label: str) -> TotpSetup:
        secret = pyotp.random_base32()
        uri = pyotp.TOTP(secret).provisioning_uri(name=label, issuer_name=self.issuer)
        logger.info("TOTP setup started for user_id=%s", user_id)
        return TotpSetup(secret=secret, provisioning_uri=uri, qr_code=render_qr_png(uri))

    def enable_totp(self, user_id: str, code: str, secret: str) -> None:
        if not verify_code(secret, code):
            raise InvalidCode()
        encrypted = self._fernet.encrypt(secret.encode()).decode()
        self.store.replace_totp_secret(user_id, encrypted)
        self.store.set_totp_enabled(user_id, True)
        logger.info("TOTP enabled for user_id=%s", user_id)

    def disable_totp(self, user_id: str) -> None:
        self.store.deactivate_totp_secrets(user_id)
        self.store.set_totp_enabled(user_id, False)
        logger.info("TOTP disabled for user_id=%s", user_id)

    def active_secret(self, user_id: str) -> str | None:
        row = self.store.get_active_totp_secret(user_id)
        if row is None:
            return None
        try:
            return self._fernet.decrypt(row.secret.encode()).decode()
        except InvalidToken:
            logger.error("Stored TOTP secret for user_id=%s cannot be decrypted (SECRET_KEY rotated?)", user_id)
            return None

    def validate_for_user(self, user_id: str, code: str) -> bool:
        """Check a login-time code against the user's active secret."""
        secret = self.active_secret(user_id)
        if secret is None:
            raise NoSecondFactorConfigured()
        return verify_code(secret, code)
