"""
oidc/models.py -- Dataclasses for OAuth client registrations and grants.

Client registrations are explicit, typed records. Nothing is discovered by
reflection at startup; a client exists only if an admin registered it.
"""

from __future__ import annotations

from dataclasses import dataclass, field

SUPPORTED_SCOPES: tuple[str, ...] = ("openid", "profile", "email", "phone", "roles", "offline_access")

# Resource servers (token audiences) unlocked by a scope.
SCOPE_RESOURCES: dict[str, str] = {"roles": "ticketsales_api"}


@dataclass
class OidcClient:
    """A registered relying party.

    client_secret_hash is bcrypt; None marks a public client that
    authenticates with nothing but its client_id and registered redirect_uri.
    """

    client_id: str
    display_name: str
    redirect_uris: list[str] = field(default_factory=list)
    post_logout_redirect_uris: list[str] = field(default_factory=list)
    allowed_scopes: list[str] = field(default_factory=lambda: ["openid", "profile", "email", "roles"])
    client_secret_hash: str | None = None
    consent_type: str = "implicit"  # "explicit" | "implicit"
    is_active: bool = True
    created_at: str | None = None

    @property
    def client_type(self) -> str:
        return "confidential" if self.client_secret_hash else "public"


@dataclass
class OidcAuthorization:
    """A standing grant of scopes by one user to one client."""

    client_id: str
    subject: str
    scopes: list[str]
    id: int | None = None
    status: str = "valid"
    type: str = "permanent"
    created_at: str | None = None
