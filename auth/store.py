"""
auth/store.py -- SQLAlchemy Core persistence layer for identity entities.

Pattern: Repository + Data Mapper.
CredentialStore is the repository; the _row_to_* functions are the mappers.
Services and routes never touch SQL directly.

Single-use records (pending two-factor tokens, magic links) are consumed with
a conditional UPDATE:

    UPDATE ... SET is_used = 1 WHERE token = ? AND is_used = 0 AND expires_at_ms > now

Exactly one concurrent caller sees rowcount == 1. Everyone else gets False and
must treat the token as already spent. The same idea guards the WebAuthn
signature counter: the update only applies if the stored counter is still the
value the caller verified against.

Security:
  All queries use bound parameters. No f-strings in SQL.
  TOTP secrets arrive here already encrypted (auth/totp.py owns the key).

Layer rule: no imports from api/, web/, oidc/, or cache/.
"""

from __future__ import annotations

import uuid

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.models import (
    MagicLinkToken,
    PendingTwoFactorToken,
    Permission,
    Role,
    TotpSecret,
    User,
    UserSettings,
    WebAuthnCredential,
)
from core.clock import now_iso, now_ms

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),  # legacy numeric id
    Column("user_id", String(32), nullable=False, unique=True),
    Column("login", String(255), nullable=False, unique=True),
    Column("email", String(255)),
    Column("phone_number", String(50)),
    Column("hashed_password", Text),  # NULL for passwordless accounts
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("email_confirmed", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("last_login_at", String(32)),
)

_roles = Table(
    "roles",
    _metadata,
    Column("role_id", Integer, primary_key=True, autoincrement=True),
    Column("legacy_role_id", Integer, nullable=False, unique=True),
    Column("name", String(100), nullable=False, unique=True),
    Column("description", Text),
    Column("priority", Integer, nullable=False, server_default="0"),
    Column("is_system", Integer, nullable=False, server_default="0"),
    Column("is_active", Integer, nullable=False, server_default="1"),
)

_permissions = Table(
    "permissions",
    _metadata,
    Column("permission_id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False, unique=True),
    Column("description", Text),
    Column("category", String(50)),
    Column("is_active", Integer, nullable=False, server_default="1"),
)

_user_roles = Table(
    "user_roles",
    _metadata,
    Column("user_id", String(32), primary_key=True),
    Column("role_id", Integer, primary_key=True),
)

_role_permissions = Table(
    "role_permissions",
    _metadata,
    Column("role_id", Integer, primary_key=True),
    Column("permission_id", Integer, primary_key=True),
)

_user_settings = Table(
    "user_settings",
    _metadata,
    Column("user_id", String(32), primary_key=True),
    Column("totp_enabled", Integer, nullable=False, server_default="0"),
    Column("webauthn_enabled", Integer, nullable=False, server_default="0"),
)

_two_factor_tokens = Table(
    "two_factor_tokens",
    _metadata,
    Column("token", String(64), primary_key=True),
    Column("user_id", String(32), nullable=False),
    Column("created_at_ms", Integer, nullable=False),
    Column("expires_at_ms", Integer, nullable=False),
    Column("is_used", Integer, nullable=False, server_default="0"),
    Column("device_info", Text),
    Column("ip_address", String(64)),
)

_totp_secrets = Table(
    "totp_secrets",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(32), nullable=False, index=True),
    Column("secret", Text, nullable=False),  # Fernet ciphertext
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
)

_webauthn_credentials = Table(
    "webauthn_credentials",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(32), nullable=False, index=True),
    Column("credential_id", Text, nullable=False, unique=True),  # base64url
    Column("public_key", Text, nullable=False),  # base64url COSE key
    Column("sign_count", Integer, nullable=False, server_default="0"),
    Column("device_name", String(100)),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
)

_magic_link_tokens = Table(
    "magic_link_tokens",
    _metadata,
    Column("token", String(64), primary_key=True),
    Column("user_id", String(32), nullable=False),
    Column("created_at_ms", Integer, nullable=False),
    Column("expires_at_ms", Integer, nullable=False),
    Column("is_used", Integer, nullable=False, server_default="0"),
    Column("device_info", Text),
    Column("ip_address", String(64)),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode. Set per-connection; PRAGMAs are not pooled."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for users, roles, permissions and per-user credentials.

    Usage:
        store = CredentialStore("sqlite:///identity.db")
        uid = store.create_user(User(login="admin", hashed_password=hash_password("secret")))
        user = store.get_by_login("admin")
        store.close()
    """

    def __init__(self, db_url: str = "sqlite:///avtopark_identity.db") -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its legacy numeric id.

        Assigns a fresh user_id when the caller leaves it blank and writes it
        back onto the passed object. Raises sqlalchemy.exc.IntegrityError if
        the login already exists.
        """
        if not user.user_id:
            user.user_id = uuid.uuid4().hex
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    user_id=user.user_id,
                    login=user.login,
                    email=user.email,
                    phone_number=user.phone_number,
                    hashed_password=user.hashed_password,
                    is_active=1 if user.is_active else 0,
                    email_confirmed=1 if user.email_confirmed else 0,
                    created_at=now_iso(),
                )
            )
            conn.commit()
            user.id = result.inserted_primary_key[0]
            return user.id

    def get_by_login(self, login: str) -> User | None:
        """Look up a user by exact login (case-sensitive)."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.login == login)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_user_id(self, user_id: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.user_id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        """Case-insensitive email lookup. Returns the oldest match if duplicated."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where(func.lower(_users.c.email) == email.strip().lower()).order_by(_users.c.id)
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self) -> list[User]:
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.login)).fetchall()
        return [_row_to_user(r) for r in rows]

    def update_user(self, user_id: str, **fields) -> bool:
        """Update mutable profile fields. Booleans are stored as 0/1."""
        for key in ("is_active", "email_confirmed"):
            if key in fields:
                fields[key] = 1 if fields[key] else 0
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.user_id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def update_last_login(self, user_id: str) -> None:
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.user_id == user_id).values(last_login_at=now_iso()))
            conn.commit()

    # ------------------------------------------------------------------
    # Roles and permissions
    # ------------------------------------------------------------------

    def create_role(self, role: Role) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _roles.insert().values(
                    legacy_role_id=role.legacy_role_id,
                    name=role.name,
                    description=role.description,
                    priority=role.priority,
                    is_system=1 if role.is_system else 0,
                    is_active=1 if role.is_active else 0,
                )
            )
            conn.commit()
            role.role_id = result.inserted_primary_key[0]
            return role.role_id

    def get_role_by_name(self, name: str) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.name == name)).fetchone()
        return _row_to_role(row) if row is not None else None

    def set_role_active(self, role_id: int, is_active: bool) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _roles.update().where(_roles.c.role_id == role_id).values(is_active=1 if is_active else 0)
            )
            conn.commit()
        return result.rowcount > 0

    def create_permission(self, permission: Permission) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _permissions.insert().values(
                    name=permission.name,
                    description=permission.description,
                    category=permission.category,
                    is_active=1 if permission.is_active else 0,
                )
            )
            conn.commit()
            permission.permission_id = result.inserted_primary_key[0]
            return permission.permission_id

    def get_permission_by_name(self, name: str) -> Permission | None:
        with self.engine.connect() as conn:
            row = conn.execute(_permissions.select().where(_permissions.c.name == name)).fetchone()
        return _row_to_permission(row) if row is not None else None

    def assign_role(self, user_id: str, role_id: int) -> bool:
        """Link a user to a role. Returns False if the link already existed."""
        with self.engine.connect() as conn:
            exists = conn.execute(
                _user_roles.select().where((_user_roles.c.user_id == user_id) & (_user_roles.c.role_id == role_id))
            ).fetchone()
            if exists is not None:
                return False
            conn.execute(_user_roles.insert().values(user_id=user_id, role_id=role_id))
            conn.commit()
        return True

    def grant_permission(self, role_id: int, permission_id: int) -> bool:
        """Link a permission to a role. Returns False if the link already existed."""
        with self.engine.connect() as conn:
            exists = conn.execute(
                _role_permissions.select().where(
                    (_role_permissions.c.role_id == role_id) & (_role_permissions.c.permission_id == permission_id)
                )
            ).fetchone()
            if exists is not None:
                return False
            conn.execute(_role_permissions.insert().values(role_id=role_id, permission_id=permission_id))
            conn.commit()
        return True

    def get_active_roles(self, user_id: str) -> list[Role]:
        """Return the user's active roles, highest priority first (ties: lowest role_id)."""
        query = (
            select(_roles)
            .select_from(_roles.join(_user_roles, _user_roles.c.role_id == _roles.c.role_id))
            .where((_user_roles.c.user_id == user_id) & (_roles.c.is_active == 1))
            .order_by(_roles.c.priority.desc(), _roles.c.role_id)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_role(r) for r in rows]

    def get_active_permission_names(self, role_ids: list[int]) -> list[str]:
        """Return distinct active permission names granted to any of role_ids, sorted."""
        if not role_ids:
            return []
        query = (
            select(_permissions.c.name)
            .select_from(
                _permissions.join(
                    _role_permissions,
                    _role_permissions.c.permission_id == _permissions.c.permission_id,
                )
            )
            .where(_role_permissions.c.role_id.in_(role_ids) & (_permissions.c.is_active == 1))
            .distinct()
            .order_by(_permissions.c.name)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [r.name for r in rows]

    # ------------------------------------------------------------------
    # User settings
    # ------------------------------------------------------------------

    def get_user_settings(self, user_id: str) -> UserSettings | None:
        with self.engine.connect() as conn:
            row = conn.execute(_user_settings.select().where(_user_settings.c.user_id == user_id)).fetchone()
        return _row_to_settings(row) if row is not None else None

    def ensure_user_settings(self, user_id: str) -> UserSettings:
        """Return the settings row, creating it with every factor disabled if missing."""
        existing = self.get_user_settings(user_id)
        if existing is not None:
            return existing
        try:
            with self.engine.connect() as conn:
                conn.execute(_user_settings.insert().values(user_id=user_id))
                conn.commit()
        except IntegrityError:
            pass  # a concurrent request created it first
        return self.get_user_settings(user_id) or UserSettings(user_id=user_id)

    def set_totp_enabled(self, user_id: str, enabled: bool) -> None:
        self.ensure_user_settings(user_id)
        with self.engine.connect() as conn:
            conn.execute(
                _user_settings.update()
                .where(_user_settings.c.user_id == user_id)
                .values(totp_enabled=1 if enabled else 0)
            )
            conn.commit()

    def set_webauthn_enabled(self, user_id: str, enabled: bool) -> None:
        self.ensure_user_settings(user_id)
        with self.engine.connect() as conn:
            conn.execute(
                _user_settings.update()
                .where(_user_settings.c.user_id == user_id)
                .values(webauthn_enabled=1 if enabled else 0)
            )
            conn.commit()

    # ------------------------------------------------------------------
    # Pending two-factor tokens
    # ------------------------------------------------------------------

    def create_two_factor_token(self, token: PendingTwoFactorToken) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _two_factor_tokens.insert().values(
                    token=token.token,
                    user_id=token.user_id,
                    created_at_ms=token.created_at_ms,
                    expires_at_ms=token.expires_at_ms,
                    is_used=0,
                    device_info=token.device_info,
                    ip_address=token.ip_address,
                )
            )
            conn.commit()

    def get_two_factor_token(self, token: str) -> PendingTwoFactorToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(_two_factor_tokens.select().where(_two_factor_tokens.c.token == token)).fetchone()
        return _row_to_two_factor_token(row) if row is not None else None

    def consume_two_factor_token(self, token: str) -> bool:
        """Mark a pending token used. True only for the single caller that wins."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _two_factor_tokens.update()
                .where(
                    (_two_factor_tokens.c.token == token)
                    & (_two_factor_tokens.c.is_used == 0)
                    & (_two_factor_tokens.c.expires_at_ms > now_ms())
                )
                .values(is_used=1)
            )
            conn.commit()
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # TOTP secrets
    # ------------------------------------------------------------------

    def get_active_totp_secret(self, user_id: str) -> TotpSecret | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _totp_secrets.select()
                .where((_totp_secrets.c.user_id == user_id) & (_totp_secrets.c.is_active == 1))
                .order_by(_totp_secrets.c.id.desc())
            ).fetchone()
        return _row_to_totp_secret(row) if row is not None else None

    def replace_totp_secret(self, user_id: str, encrypted_secret: str) -> int:
        """Deactivate every prior secret and store the new one, in one transaction."""
        with self.engine.connect() as conn:
            conn.execute(
                _totp_secrets.update()
                .where((_totp_secrets.c.user_id == user_id) & (_totp_secrets.c.is_active == 1))
                .values(is_active=0)
            )
            result = conn.execute(
                _totp_secrets.insert().values(
                    user_id=user_id,
                    secret=encrypted_secret,
                    is_active=1,
                    created_at=now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def deactivate_totp_secrets(self, user_id: str) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _totp_secrets.update()
                .where((_totp_secrets.c.user_id == user_id) & (_totp_secrets.c.is_active == 1))
                .values(is_active=0)
            )
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # WebAuthn credentials
    # ------------------------------------------------------------------

    def add_webauthn_credential(self, credential: WebAuthnCredential) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _webauthn_credentials.insert().values(
                    user_id=credential.user_id,
                    credential_id=credential.credential_id,
                    public_key=credential.public_key,
                    sign_count=credential.sign_count,
                    device_name=credential.device_name,
                    is_active=1,
                    created_at=now_iso(),
                )
            )
            conn.commit()
            credential.id = result.inserted_primary_key[0]
            return credential.id

    def list_webauthn_credentials(self, user_id: str) -> list[WebAuthnCredential]:
        """Return the user's active credentials, oldest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _webauthn_credentials.select()
                .where((_webauthn_credentials.c.user_id == user_id) & (_webauthn_credentials.c.is_active == 1))
                .order_by(_webauthn_credentials.c.id)
            ).fetchall()
        return [_row_to_credential(r) for r in rows]

    def get_webauthn_credential(self, credential_id: str) -> WebAuthnCredential | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _webauthn_credentials.select().where(_webauthn_credentials.c.credential_id == credential_id)
            ).fetchone()
        return _row_to_credential(row) if row is not None else None

    def update_sign_count(self, credential_id: str, expected: int, new_count: int) -> bool:
        """Advance the counter only if nobody else moved it since it was read."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _webauthn_credentials.update()
                .where(
                    (_webauthn_credentials.c.credential_id == credential_id)
                    & (_webauthn_credentials.c.sign_count == expected)
                )
                .values(sign_count=new_count)
            )
            conn.commit()
        return result.rowcount == 1

    def deactivate_webauthn_credential(self, credential_id: str, user_id: str) -> bool:
        """Deactivate a credential. user_id is part of the WHERE clause (IDOR guard)."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _webauthn_credentials.update()
                .where(
                    (_webauthn_credentials.c.credential_id == credential_id)
                    & (_webauthn_credentials.c.user_id == user_id)
                    & (_webauthn_credentials.c.is_active == 1)
                )
                .values(is_active=0)
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Magic links
    # ------------------------------------------------------------------

    def create_magic_link(self, token: MagicLinkToken) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _magic_link_tokens.insert().values(
                    token=token.token,
                    user_id=token.user_id,
                    created_at_ms=token.created_at_ms,
                    expires_at_ms=token.expires_at_ms,
                    is_used=0,
                    device_info=token.device_info,
                    ip_address=token.ip_address,
                )
            )
            conn.commit()

    def get_magic_link(self, token: str) -> MagicLinkToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(_magic_link_tokens.select().where(_magic_link_tokens.c.token == token)).fetchone()
        return _row_to_magic_link(row) if row is not None else None

    def consume_magic_link(self, token: str) -> bool:
        """Mark a magic link used. True only for the single caller that wins."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _magic_link_tokens.update()
                .where(
                    (_magic_link_tokens.c.token == token)
                    & (_magic_link_tokens.c.is_used == 0)
                    & (_magic_link_tokens.c.expires_at_ms > now_ms())
                )
                .values(is_used=1)
            )
            conn.commit()
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def purge_spent_tokens(self) -> int:
        """Delete used or expired two-factor tokens and magic links. Returns rows removed."""
        cutoff = now_ms()
        removed = 0
        with self.engine.connect() as conn:
            for table in (_two_factor_tokens, _magic_link_tokens):
                result = conn.execute(table.delete().where((table.c.is_used == 1) | (table.c.expires_at_ms <= cutoff)))
                removed += result.rowcount
            conn.commit()
        return removed

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        user_id=row.user_id,
        login=row.login,
        email=row.email,
        phone_number=row.phone_number,
        hashed_password=row.hashed_password,
        is_active=bool(row.is_active),
        email_confirmed=bool(row.email_confirmed),
        created_at=row.created_at,
        last_login_at=row.last_login_at,
    )


def _row_to_role(row) -> Role:
    return Role(
        role_id=row.role_id,
        legacy_role_id=row.legacy_role_id,
        name=row.name,
        description=row.description,
        priority=row.priority,
        is_system=bool(row.is_system),
        is_active=bool(row.is_active),
    )


def _row_to_permission(row) -> Permission:
    return Permission(
        permission_id=row.permission_id,
        name=row.name,
        description=row.description,
        category=row.category,
        is_active=bool(row.is_active),
    )


def _row_to_settings(row) -> UserSettings:
    return UserSettings(
        user_id=row.user_id,
        totp_enabled=bool(row.totp_enabled),
        webauthn_enabled=bool(row.webauthn_enabled),
    )


def _row_to_two_factor_token(row) -> PendingTwoFactorToken:
    return PendingTwoFactorToken(
        token=row.token,
        user_id=row.user_id,
        created_at_ms=row.created_at_ms,
        expires_at_ms=row.expires_at_ms,
        is_used=bool(row.is_used),
        device_info=row.device_info,
        ip_address=row.ip_address,
    )


def _row_to_totp_secret(row) -> TotpSecret:
    return TotpSecret(
        id=row.id,
        user_id=row.user_id,
        secret=row.secret,
        is_active=bool(row.is_active),
        created_at=row.created_at,
    )


def _row_to_credential(row) -> WebAuthnCredential:
    return WebAuthnCredential(
        id=row.id,
        user_id=row.user_id,
        credential_id=row.credential_id,
        public_key=row.public_key,
        sign_count=row.sign_count,
        device_name=row.device_name,
        is_active=bool(row.is_active),
        created_at=row.created_at,
    )


def _row_to_magic_link(row) -> MagicLinkToken:
    return MagicLinkToken(
        token=row.token,
        user_id=row.user_id,
        created_at_ms=row.created_at_ms,
        expires_at_ms=row.expires_at_ms,
        is_used=bool(row.is_used),
        device_info=row.device_info,
        ip_address=row.ip_address,
    )
