"""
auth/models.py -- Domain dataclasses for identity entities.

Pattern: Data class (pure data container, zero logic). Stores map rows to
these; services and routes do the work.

Associations (user -> roles -> permissions) are never embedded as object
graphs. The store answers them with index-based lookups, so a User is just
the profile row.

Layer rule: no imports from api/, web/, oidc/, or cache/.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass
class User:
    """An account that can authenticate.

    user_id is the identity key (32-hex uuid) used as the JWT subject.
    id is the legacy numeric key kept for older clients; it appears as the
    ``uid`` claim and as ``user.id`` in login responses.

    hashed_password is None for accounts that only sign in with passkeys or
    magic links.
    """

    login: str
    user_id: str = ""
    id: int | None = None
    email: str | None = None
    phone_number: str | None = None
    hashed_password: str | None = None
    is_active: bool = True
    email_confirmed: bool = False
    created_at: str | None = None
    last_login_at: str | None = None


@dataclass
class Role:
    name: str
    legacy_role_id: int
    priority: int = 0
    role_id: int | None = None
    description: str | None = None
    is_system: bool = False
    is_active: bool = True


@dataclass
class Permission:
    name: str
    category: str | None = None
    permission_id: int | None = None
    description: str | None = None
    is_active: bool = True


@dataclass
class UserSettings:
    """Per-user second-factor switches. Missing rows are created with both off."""

    user_id: str
    totp_enabled: bool = False
    webauthn_enabled: bool = False


@dataclass
class PendingTwoFactorToken:
    """Hand-off between password success and second-factor verification."""

    token: str
    user_id: str
    created_at_ms: int
    expires_at_ms: int
    is_used: bool = False
    device_info: str | None = None
    ip_address: str | None = None


@dataclass
class TotpSecret:
    user_id: str
    secret: str  # Fernet ciphertext, as stored
    id: int | None = None
    is_active: bool = True
    created_at: str | None = None


@dataclass
class WebAuthnCredential:
    """A registered FIDO2 authenticator.

    credential_id and public_key are base64url strings. sign_count only ever
    moves forward; the store refuses updates that would move it back.
    """

    user_id: str
    credential_id: str
    public_key: str
    sign_count: int = 0
    device_name: str | None = None
    id: int | None = None
    is_active: bool = True
    created_at: str | None = None


@dataclass
class MagicLinkToken:
    token: str
    user_id: str
    created_at_ms: int
    expires_at_ms: int
    is_used: bool = False
    device_info: str | None = None
    ip_address: str | None = None


@dataclass
class LoginOutcome:
    """Result of a login attempt that got past the password check.

    Either ``token`` is set (fully authenticated) or ``requires_two_factor`` is
    True and ``temp_token`` must be redeemed with the named second factor.
    """

    user: User
    token: str | None = None
    requires_two_factor: bool = False
    two_factor_type: str | None = None  # "totp" | "webauthn"
    temp_token: str | None = None
    options: dict[str, Any] | None = None
