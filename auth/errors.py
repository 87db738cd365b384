"""
auth/errors.py -- Typed failures raised by the authentication services.

Services raise these; the API layer converts them into the JSON envelope in a
single exception handler (api/main.py). Each subclass fixes the machine code
and HTTP status so route handlers never pick status codes by hand.

OIDC endpoints do not use this taxonomy. They raise authlib OAuth2Error
subclasses so third-party clients receive the standard error shape.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for all authentication/authorization failures."""

    code: str = "auth_error"
    status_code: int = 400
    default_message: str = "Authentication failed."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidCredentials(AuthError):
    code = "invalid_credentials"
    status_code = 401
    default_message = "Invalid username or password."


class AccountNotFound(AuthError):
    code = "account_not_found"
    status_code = 404
    default_message = "User not found."


class InvalidOrExpiredToken(AuthError):
    code = "invalid_or_expired_token"
    status_code = 400
    default_message = "Invalid or expired token."


class InvalidCode(AuthError):
    code = "invalid_code"
    status_code = 400
    default_message = "Invalid code."


class NoSecondFactorConfigured(AuthError):
    code = "second_factor_not_configured"
    status_code = 400
    default_message = "TOTP not set up."


class NoCredentials(AuthError):
    code = "no_credentials"
    status_code = 400
    default_message = "No WebAuthn credentials found."


class CeremonyFailed(AuthError):
    """A WebAuthn attestation or assertion did not verify."""

    code = "webauthn_failed"
    status_code = 400
    default_message = "WebAuthn verification failed."


class Unauthorized(AuthError):
    code = "unauthorized"
    status_code = 401
    default_message = "Authentication required."


class MalformedToken(AuthError):
    """Token is not structurally a JWT. Raised before any signature check."""

    code = "malformed_token"
    status_code = 401
    default_message = "Malformed token."


class PermissionDenied(AuthError):
    code = "permission_denied"
    status_code = 403
    default_message = "Admin access required."


class Forbidden(AuthError):
    code = "forbidden"
    status_code = 403
    default_message = "Not allowed."


class NotFound(AuthError):
    code = "not_found"
    status_code = 404
    default_message = "Not found."


class Conflict(AuthError):
    code = "conflict"
    status_code = 409
    default_message = "Already exists."


class UpstreamUnavailable(AuthError):
    code = "upstream_unavailable"
    status_code = 503
    default_message = "A required upstream service is unavailable."
