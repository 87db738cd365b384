"""
oidc/clients.py -- Admin operations on OAuth client registrations.

Plain CRUD with existence checks. Secrets are bcrypt-hashed on the way in and
never returned; a client registered without a secret is a public client.
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import urlparse

from sqlalchemy.exc import IntegrityError

from auth.errors import Conflict, NotFound
from auth.tokens import hash_password
from oidc.models import SUPPORTED_SCOPES, OidcClient
from oidc.store import ClientStore

logger = logging.getLogger("avtopark.oidc.clients")


def _check_uris(uris: list[str]) -> list[str]:
    for uri in uris:
        parsed = urlparse(uri)
        if parsed.scheme not in ("http", "https") or not parsed.netloc or parsed.fragment:
            raise ValueError(f"Redirect URI must be an absolute http(s) URL without a fragment: {uri!r}")
    return uris


def _check_scopes(scopes: list[str]) -> list[str]:
    unknown = set(scopes) - set(SUPPORTED_SCOPES)
    if unknown:
        raise ValueError(f"Unsupported scopes: {sorted(unknown)!r}")
    return scopes


class ClientManager:
    def __init__(self, clients: ClientStore) -> None:
        self.clients = clients

    def register(
        self,
        client_id: str,
        display_name: str,
        redirect_uris: list[str],
        client_secret: str | None = None,
        post_logout_redirect_uris: list[str] | None = None,
        allowed_scopes: list[str] | None = None,
        require_consent: bool = False,
    ) -> OidcClient:
        client = OidcClient(
            client_id=client_id,
            display_name=display_name,
            redirect_uris=_check_uris(redirect_uris),
            post_logout_redirect_uris=_check_uris(post_logout_redirect_uris or []),
            client_secret_hash=hash_password(client_secret) if client_secret else None,
            consent_type="explicit" if require_consent else "implicit",
        )
        if allowed_scopes is not None:
            client.allowed_scopes = _check_scopes(allowed_scopes)
        if self.clients.get_client(client_id) is not None:
            raise Conflict(f"Client '{client_id}' already exists.")
        try:
            self.clients.create_client(client)
        except IntegrityError as exc:
            raise Conflict(f"Client '{client_id}' already exists.") from exc
        logger.info("Registered OIDC client %s (%s)", client_id, client.client_type)
        return self.clients.get_client(client_id) or client

    def update(self, client_id: str, changes: dict[str, Any]) -> OidcClient:
        """Apply a partial update. Keys mirror register()'s arguments."""
        fields: dict[str, Any] = {}
        if changes.get("display_name") is not None:
            fields["display_name"] = changes["display_name"]
        if changes.get("redirect_uris") is not None:
            fields["redirect_uris"] = _check_uris(changes["redirect_uris"])
        if changes.get("post_logout_redirect_uris") is not None:
            fields["post_logout_redirect_uris"] = _check_uris(changes["post_logout_redirect_uris"])
        if changes.get("allowed_scopes") is not None:
            fields["allowed_scopes"] = _check_scopes(changes["allowed_scopes"])
        if changes.get("client_secret"):
            fields["client_secret_hash"] = hash_password(changes["client_secret"])
        if changes.get("require_consent") is not None:
            fields["consent_type"] = "explicit" if changes["require_consent"] else "implicit"
        if changes.get("is_active") is not None:
            fields["is_active"] = changes["is_active"]
        if not self.clients.update_client(client_id, **fields):
            raise NotFound(f"Client '{client_id}' not found.")
        logger.info("Updated OIDC client %s fields=%s", client_id, sorted(fields))
        return self.get(client_id)

    def delete(self, client_id: str) -> None:
        if not self.clients.delete_client(client_id):
            raise NotFound(f"Client '{client_id}' not found.")
        logger.info("Deleted OIDC client %s", client_id)

    def get(self, client_id: str) -> OidcClient:
        client = self.clients.get_client(client_id)
        if client is None:
            raise NotFound(f"Client '{client_id}' not found.")
        return client

    def list_all(self) -> list[OidcClient]:
        return self.clients.list_clients()
