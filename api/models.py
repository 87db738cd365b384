"""
API request and response models for the identity service.

These Pydantic v2 models define the HTTP transport contract. They are
intentionally separate from the dataclasses in auth/models.py and
oidc/models.py, which own the internal domain representation. Route handlers
map between the two.

JSON bodies use camelCase (tempToken, secretKey, deviceId ...) because the
desktop and mobile clients already speak it. Python code uses snake_case; the
alias generator bridges the two and populate_by_name accepts either form.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

_EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------


class ApiResponse(BaseModel):
    """Uniform envelope for every JSON API response outside /connect.

    code is a machine-readable failure reason and is omitted on success.
    """

    model_config = ConfigDict(frozen=True)

    success: bool
    message: str = ""
    data: Optional[Any] = None
    code: Optional[str] = None


def ok(data: Any = None, message: str = "") -> dict:
    return ApiResponse(success=True, message=message, data=data).model_dump(exclude_none=True)


def fail(message: str, code: str, data: Any = None) -> dict:
    return ApiResponse(success=False, message=message, code=code, data=data).model_dump(exclude_none=True)


class HealthResponse(BaseModel):
    """Response for GET /api/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str


# ---------------------------------------------------------------------------
# Password login and accounts
# ---------------------------------------------------------------------------


class LoginRequest(_CamelModel):
    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)
    skip_two_factor: bool = False
    device_info: Optional[str] = Field(default=None, max_length=500)


class RegisterRequest(_CamelModel):
    """Admin-only account creation."""

    username: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=8, max_length=255)
    email: Optional[str] = Field(default=None, pattern=_EMAIL_PATTERN, max_length=255)
    phone_number: Optional[str] = Field(default=None, max_length=50)
    email_confirmed: bool = False
    roles: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# TOTP
# ---------------------------------------------------------------------------


class TotpVerifyRequest(_CamelModel):
    code: str = Field(min_length=6, max_length=8)
    secret_key: str = Field(min_length=16, max_length=128)


class TotpValidateRequest(_CamelModel):
    temp_token: str = Field(min_length=1, max_length=128)
    code: str = Field(min_length=6, max_length=8)


# ---------------------------------------------------------------------------
# WebAuthn
# ---------------------------------------------------------------------------


class WebAuthnRegisterCompleteRequest(_CamelModel):
    credential: dict[str, Any]
    device_name: Optional[str] = Field(default=None, max_length=100)


class WebAuthnLoginOptionsRequest(_CamelModel):
    username: str = Field(min_length=1, max_length=255)


class WebAuthnLoginCompleteRequest(_CamelModel):
    username: str = Field(min_length=1, max_length=255)
    credential: dict[str, Any]


class WebAuthnValidateRequest(_CamelModel):
    temp_token: str = Field(min_length=1, max_length=128)
    credential: dict[str, Any]


# ---------------------------------------------------------------------------
# Magic link
# ---------------------------------------------------------------------------


class MagicLinkSendRequest(_CamelModel):
    email: str = Field(pattern=_EMAIL_PATTERN, max_length=255)
    device_info: Optional[str] = Field(default=None, max_length=500)


class MagicLinkValidateRequest(_CamelModel):
    token: str = Field(min_length=1, max_length=128)


# ---------------------------------------------------------------------------
# QR login
# ---------------------------------------------------------------------------


class QrLoginRequest(_CamelModel):
    username: str = Field(min_length=1, max_length=255)
    token: str = Field(min_length=1, max_length=2048)


class QrDirectLoginRequest(_CamelModel):
    token: str = Field(min_length=1, max_length=128)
    device_type: str = Field(default="mobile", max_length=50)
    is_desktop_login: bool = True


# ---------------------------------------------------------------------------
# OIDC client administration
# ---------------------------------------------------------------------------


class ClientRegisterRequest(_CamelModel):
    client_id: str = Field(min_length=1, max_length=100, pattern=r"^[A-Za-z0-9_.\-]+$")
    client_secret: Optional[str] = Field(default=None, min_length=16, max_length=255)
    display_name: str = Field(min_length=1, max_length=255)
    redirect_uris: list[str] = Field(min_length=1)
    post_logout_redirect_uris: list[str] = Field(default_factory=list)
    allowed_scopes: Optional[list[str]] = None
    require_consent: bool = False


class ClientUpdateRequest(_CamelModel):
    client_secret: Optional[str] = Field(default=None, min_length=16, max_length=255)
    display_name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    redirect_uris: Optional[list[str]] = None
    post_logout_redirect_uris: Optional[list[str]] = None
    allowed_scopes: Optional[list[str]] = None
    require_consent: Optional[bool] = None
    is_active: Optional[bool] = None


class ClientResponse(BaseModel):
    """A client registration as shown to admins. The secret is never echoed."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    client_id: str
    display_name: str
    client_type: str
    redirect_uris: list[str]
    post_logout_redirect_uris: list[str]
    allowed_scopes: list[str]
    require_consent: bool
    is_active: bool
    created_at: Optional[str] = None
