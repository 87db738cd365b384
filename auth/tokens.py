"""
auth/tokens.py -- Password hashing, password authentication and the JWT issuer.

Security design decisions:
  JWT: python-jose with HS256. Every login path (password, TOTP, WebAuthn,
       magic link, QR, OIDC) ends in issue_access_token(), so all tokens carry
       the same role/permission snapshot taken at issue time.

  Signing key: SECRET_KEY bytes, zero-padded up to 32 bytes and truncated to
       64. Settings already rejects keys shorter than 32 chars [M6], so padding
       only matters for keys injected directly in tests.

  Passwords: bcrypt used directly. The _DUMMY_HASH constant enables timing
       equalization in authenticate_user() so response time does not reveal
       whether a login exists [C1].

  Parsing: parse_access_token() separates "this is not a JWT at all"
       (MalformedToken, checked before any signature work) from "this JWT is
       forged or expired" (InvalidOrExpiredToken). decode_access_token() is the
       soft variant that returns None for either.

Layer rule: no imports from api/, web/, oidc/, or cache/. Import from core/
is allowed.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

import bcrypt
from jose import JWTError, jwt

from auth.errors import InvalidCredentials, InvalidOrExpiredToken, MalformedToken
from core.config import get_settings

if TYPE_CHECKING:
    from auth.models import Role, User
    from auth.store import CredentialStore

logger = logging.getLogger("avtopark.auth")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton [M6]
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"
_MIN_KEY_BYTES = 32
_MAX_KEY_BYTES = 64

_SEGMENT_RE = re.compile(r"^[A-Za-z0-9_-]+$")


def signing_key(secret: str | None = None) -> bytes:
    """Return the HMAC key: secret bytes padded to 32, truncated to 64."""
    raw = (secret if secret is not None else _settings.secret_key).encode("utf-8")
    if len(raw) < _MIN_KEY_BYTES:
        raw = raw.ljust(_MIN_KEY_BYTES, b"\0")
    return raw[:_MAX_KEY_BYTES]


# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Passwords longer than 72 bytes are truncated by bcrypt. The API layer caps
    password fields at 255 chars.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash or oversized input.
        return False


# Timing equalization dummy hash [C1]. Computed once at module load.
_DUMMY_HASH: str = hash_password("avtopark_timing_dummy")


def authenticate_user(store: CredentialStore, login: str, password: str) -> User:
    """Check a login/password pair with timing equalization.

    Always runs bcrypt whether or not the login exists:
    - Unknown login: bcrypt runs against _DUMMY_HASH
    - Wrong password: bcrypt runs against the real hash

    Returns the User and stamps last_login_at on success. Raises
    InvalidCredentials on any failure, with the same message for every cause.
    """
    user = store.get_by_login(login)
    if user is None or user.hashed_password is None:
        verify_password(password, _DUMMY_HASH)
        raise InvalidCredentials()
    if not verify_password(password, user.hashed_password):
        raise InvalidCredentials()
    if not user.is_active:
        raise InvalidCredentials()
    store.update_last_login(user.user_id)
    return user


# ---------------------------------------------------------------------------
# JWT issuer
# ---------------------------------------------------------------------------


def role_snapshot(store: CredentialStore, user_id: str) -> tuple[list[Role], list[str]]:
    """Return (active roles by descending priority, distinct active permission names)."""
    roles = store.get_active_roles(user_id)
    permissions = store.get_active_permission_names([r.role_id for r in roles])
    return roles, permissions


def primary_role(roles: list[Role]) -> Role | None:
    """Highest priority role; ties go to the lowest role_id."""
    if not roles:
        return None
    return min(roles, key=lambda r: (-r.priority, r.role_id))


def build_claims(store: CredentialStore, user: User) -> dict[str, Any]:
    """Identity and authorization claims shared by every issued access token."""
    roles, permissions = role_snapshot(store, user.user_id)
    claims: dict[str, Any] = {
        "sub": user.user_id,
        "name": user.login,
        "uid": user.id,
        "role": [r.name for r in roles],
        "permission": permissions,
    }
    top = primary_role(roles)
    if top is not None:
        claims["primary_role"] = top.legacy_role_id
    if user.email:
        claims["email"] = user.email
    return claims


def encode_token(claims: dict[str, Any], expire_minutes: int) -> str:
    """Sign claims with iss/iat/exp added. Caller-supplied keys win over defaults."""
    now = datetime.now(timezone.utc)
    payload: dict[str, Any] = {
        "iss": _settings.jwt_issuer,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=expire_minutes)).timestamp()),
    }
    payload.update(claims)
    return jwt.encode(payload, signing_key(), algorithm=_ALGORITHM)


def issue_access_token(
    store: CredentialStore,
    user: User,
    extra_claims: dict[str, Any] | None = None,
    expire_minutes: int = 0,
) -> str:
    """Mint the bearer token for an authenticated user.

    Args:
        store:          Source of the role/permission snapshot.
        user:           The authenticated account.
        extra_claims:   Additional claims (OIDC scope, client_id, aud ...).
        expire_minutes: Lifetime override; 0 means Settings.jwt_expire_minutes.
    """
    claims = build_claims(store, user)
    if extra_claims:
        claims.update(extra_claims)
    duration = expire_minutes if expire_minutes > 0 else _settings.jwt_expire_minutes
    logger.info("Issued access token for user_id=%s roles=%s", user.user_id, claims["role"])
    return encode_token(claims, duration)


def _check_structure(token: str) -> None:
    parts = token.split(".")
    if len(parts) != 3 or not all(_SEGMENT_RE.match(p) for p in parts[:2]):
        raise MalformedToken()
    try:
        header = jwt.get_unverified_header(token)
    except JWTError as exc:
        raise MalformedToken() from exc
    if header.get("alg") != _ALGORITHM:
        raise MalformedToken()


def verify_signed_token(token: str) -> dict[str, Any]:
    """Verify signature, issuer and expiry of any token this service signed."""
    _check_structure(token)
    try:
        return jwt.decode(
            token,
            signing_key(),
            algorithms=[_ALGORITHM],
            issuer=_settings.jwt_issuer,
            # OIDC access tokens carry aud=<client_id>; audience is checked by
            # the resource, not here.
            options={"verify_aud": False},
        )
    except JWTError as exc:
        raise InvalidOrExpiredToken() from exc


def parse_access_token(token: str) -> dict[str, Any]:
    """Return the payload of a valid access token or raise.

    Raises MalformedToken for non-JWT input and InvalidOrExpiredToken for bad
    signatures, expiry, or special-purpose tokens (QR login) presented as
    access tokens.
    """
    payload = verify_signed_token(token)
    if "purpose" in payload or "sub" not in payload:
        raise InvalidOrExpiredToken()
    return payload


def decode_access_token(token: str) -> dict[str, Any] | None:
    """Soft variant of parse_access_token(): None on any failure."""
    try:
        return parse_access_token(token)
    except (MalformedToken, InvalidOrExpiredToken):
        return None


# ---------------------------------------------------------------------------
# Cookie helper
# ---------------------------------------------------------------------------


def set_auth_cookie(response, token: str) -> None:
    """Write the access token as an httpOnly cookie that expires with the JWT.

    samesite="lax" keeps the cookie on top-level GET navigations, which the
    OIDC authorize redirect relies on.
    """
    response.set_cookie(
        "access_token",
        value=token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=_settings.jwt_expire_minutes * 60,
    )
