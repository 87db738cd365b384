"""
oidc/store.py -- SQLAlchemy Core persistence for OIDC clients and authorizations.

Pattern: Repository + Data Mapper, same as auth/store.py. List-valued fields
(redirect URIs, scopes) are stored as JSON text.

Layer rule: no imports from api/, web/, or cache/.
"""

from __future__ import annotations

import json

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event
from sqlalchemy.engine import Engine

from core.clock import now_iso
from oidc.models import OidcAuthorization, OidcClient

_metadata = MetaData()

_clients = Table(
    "oidc_clients",
    _metadata,
    Column("client_id", String(100), primary_key=True),
    Column("client_secret_hash", Text),  # NULL for public clients
    Column("display_name", String(255), nullable=False),
    Column("redirect_uris", Text, nullable=False, server_default="[]"),
    Column("post_logout_redirect_uris", Text, nullable=False, server_default="[]"),
    Column("allowed_scopes", Text, nullable=False, server_default="[]"),
    Column("consent_type", String(20), nullable=False, server_default="implicit"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
)

_authorizations = Table(
    "oidc_authorizations",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("client_id", String(100), nullable=False, index=True),
    Column("subject", String(32), nullable=False, index=True),
    Column("scopes", Text, nullable=False),
    Column("status", String(20), nullable=False, server_default="valid"),
    Column("type", String(20), nullable=False, server_default="permanent"),
    Column("created_at", String(32), nullable=False),
)

# Columns an update may touch. Anything else is rejected before SQL is built.
_MUTABLE_CLIENT_FIELDS = {
    "client_secret_hash",
    "display_name",
    "redirect_uris",
    "post_logout_redirect_uris",
    "allowed_scopes",
    "consent_type",
    "is_active",
}
_JSON_FIELDS = {"redirect_uris", "post_logout_redirect_uris", "allowed_scopes"}


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


class ClientStore:
    """Repository for OidcClient and OidcAuthorization records."""

    def __init__(self, db_url: str = "sqlite:///avtopark_identity.db") -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Clients
    # ------------------------------------------------------------------

    def create_client(self, client: OidcClient) -> None:
        """Insert a client. Raises sqlalchemy.exc.IntegrityError on duplicate client_id."""
        with self.engine.connect() as conn:
            conn.execute(
                _clients.insert().values(
                    client_id=client.client_id,
                    client_secret_hash=client.client_secret_hash,
                    display_name=client.display_name,
                    redirect_uris=json.dumps(client.redirect_uris),
                    post_logout_redirect_uris=json.dumps(client.post_logout_redirect_uris),
                    allowed_scopes=json.dumps(client.allowed_scopes),
                    consent_type=client.consent_type,
                    is_active=1 if client.is_active else 0,
                    created_at=now_iso(),
                )
            )
            conn.commit()

    def get_client(self, client_id: str) -> OidcClient | None:
        with self.engine.connect() as conn:
            row = conn.execute(_clients.select().where(_clients.c.client_id == client_id)).fetchone()
        return _row_to_client(row) if row is not None else None

    def list_clients(self) -> list[OidcClient]:
        with self.engine.connect() as conn:
            rows = conn.execute(_clients.select().order_by(_clients.c.client_id)).fetchall()
        return [_row_to_client(r) for r in rows]

    def update_client(self, client_id: str, **fields) -> bool:
        """Update mutable client fields. Returns False if client_id is unknown."""
        unknown = set(fields) - _MUTABLE_CLIENT_FIELDS
        if unknown:
            raise ValueError(f"Unknown client fields: {unknown!r}")
        if not fields:
            return self.get_client(client_id) is not None
        values = {k: (json.dumps(v) if k in _JSON_FIELDS else v) for k, v in fields.items()}
        if "is_active" in values:
            values["is_active"] = 1 if values["is_active"] else 0
        with self.engine.connect() as conn:
            result = conn.execute(_clients.update().where(_clients.c.client_id == client_id).values(**values))
            conn.commit()
        return result.rowcount > 0

    def delete_client(self, client_id: str) -> bool:
        """Delete a client and its authorizations. Returns False if not found."""
        with self.engine.connect() as conn:
            result = conn.execute(_clients.delete().where(_clients.c.client_id == client_id))
            conn.execute(_authorizations.delete().where(_authorizations.c.client_id == client_id))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Authorizations
    # ------------------------------------------------------------------

    def find_authorization(self, subject: str, client_id: str, scopes: list[str]) -> OidcAuthorization | None:
        """Most recent valid permanent authorization whose scope set equals scopes."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _authorizations.select()
                .where(
                    (_authorizations.c.subject == subject)
                    & (_authorizations.c.client_id == client_id)
                    & (_authorizations.c.status == "valid")
                    & (_authorizations.c.type == "permanent")
                )
                .order_by(_authorizations.c.id.desc())
            ).fetchall()
        wanted = set(scopes)
        for row in rows:
            authorization = _row_to_authorization(row)
            if set(authorization.scopes) == wanted:
                return authorization
        return None

    def create_authorization(self, authorization: OidcAuthorization) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _authorizations.insert().values(
                    client_id=authorization.client_id,
                    subject=authorization.subject,
                    scopes=json.dumps(sorted(authorization.scopes)),
                    status=authorization.status,
                    type=authorization.type,
                    created_at=now_iso(),
                )
            )
            conn.commit()
            authorization.id = result.inserted_primary_key[0]
            return authorization.id

    def list_authorizations(self, subject: str) -> list[OidcAuthorization]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _authorizations.select().where(_authorizations.c.subject == subject).order_by(_authorizations.c.id)
            ).fetchall()
        return [_row_to_authorization(r) for r in rows]

    def close(self) -> None:
        self.engine.dispose()


def _row_to_client(row) -> OidcClient:
    return OidcClient(
        client_id=row.client_id,
        client_secret_hash=row.client_secret_hash,
        display_name=row.display_name,
        redirect_uris=json.loads(row.redirect_uris),
        post_logout_redirect_uris=json.loads(row.post_logout_redirect_uris),
        allowed_scopes=json.loads(row.allowed_scopes),
        consent_type=row.consent_type,
        is_active=bool(row.is_active),
        created_at=row.created_at,
    )


def _row_to_authorization(row) -> OidcAuthorization:
    return OidcAuthorization(
        id=row.id,
        client_id=row.client_id,
        subject=row.subject,
        scopes=json.loads(row.scopes),
        status=row.status,
        type=row.type,
        created_at=row.created_at,
    )
