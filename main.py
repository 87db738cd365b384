#!/usr/bin/env python3
"""
Avtopark identity -- admin command line.

Bootstraps a fresh database and performs the few admin tasks that must be
possible before anyone can log in to the API.

Usage:
  python main.py seed-roles
  python main.py create-user admin --password 'S3cret-pass' --email admin@example.com --role Administrator
  python main.py assign-role cashier1 Cashier
  python main.py grant-permission Cashier tickets.sell
  python main.py list-users
  python main.py register-client desktop --name "Cashier desktop" --redirect-uri http://127.0.0.1:7890/callback
  python main.py purge

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the identity database (default: sqlite:///avtopark_identity.db)
  CACHE_PATH    Path of the ephemeral cache database (default: avtopark_cache.db)
  SECRET_KEY    Signing key; must match the running API
"""

import argparse
import getpass
import sys

from sqlalchemy.exc import IntegrityError

from auth.errors import AuthError
from auth.models import Permission, Role, User
from auth.store import CredentialStore
from auth.tokens import hash_password
from cache.store import EphemeralCache
from core.config import get_settings
from oidc.clients import ClientManager
from oidc.store import ClientStore

# Built-in roles: (name, legacy id, priority, description)
SYSTEM_ROLES = [
    ("Administrator", 1, 100, "Full system access"),
    ("User", 0, 1, "Basic access"),
]


def seed_roles(store: CredentialStore) -> int:
    """Create any missing built-in role. Returns how many were created."""
    created = 0
    for name, legacy_id, priority, description in SYSTEM_ROLES:
        if store.get_role_by_name(name) is not None:
            continue
        store.create_role(
            Role(
                name=name,
                legacy_role_id=legacy_id,
                priority=priority,
                description=description,
                is_system=True,
            )
        )
        created += 1
    return created


def _assign(store: CredentialStore, user: User, role_name: str) -> None:
    role = store.get_role_by_name(role_name)
    if role is None:
        sys.exit(f"  [!] Unknown role '{role_name}'. Run 'seed-roles' or create it first.")
    if store.assign_role(user.user_id, role.role_id):
        print(f"  {user.login} -> {role.name}")
    else:
        print(f"  {user.login} already has {role.name}")


def cmd_seed_roles(args: argparse.Namespace, store: CredentialStore) -> None:
    created = seed_roles(store)
    print(f"  {created} role(s) created.")


def cmd_create_user(args: argparse.Namespace, store: CredentialStore) -> None:
    password = args.password or getpass.getpass("Password: ")
    if len(password) < 8:
        sys.exit("  [!] Password must be at least 8 characters.")
    user = User(
        login=args.login,
        email=args.email,
        phone_number=args.phone,
        hashed_password=hash_password(password),
        email_confirmed=bool(args.email),
    )
    try:
        store.create_user(user)
    except IntegrityError:
        sys.exit(f"  [!] Login or email already in use: {args.login}")
    print(f"  Created {user.login} (user_id={user.user_id})")
    for role_name in args.role or []:
        _assign(store, user, role_name)


def cmd_assign_role(args: argparse.Namespace, store: CredentialStore) -> None:
    user = store.get_by_login(args.login)
    if user is None:
        sys.exit(f"  [!] No such user: {args.login}")
    _assign(store, user, args.role)


def cmd_grant_permission(args: argparse.Namespace, store: CredentialStore) -> None:
    role = store.get_role_by_name(args.role)
    if role is None:
        sys.exit(f"  [!] Unknown role '{args.role}'.")
    permission = store.get_permission_by_name(args.permission)
    if permission is None:
        category = args.permission.split(".")[0] if "." in args.permission else None
        permission = Permission(name=args.permission, category=category)
        store.create_permission(permission)
        print(f"  Created permission {permission.name}")
    if store.grant_permission(role.role_id, permission.permission_id):
        print(f"  {role.name} -> {permission.name}")
    else:
        print(f"  {role.name} already has {permission.name}")


def cmd_list_users(args: argparse.Namespace, store: CredentialStore) -> None:
    users = store.list_users()
    if not users:
        print("  No users.")
        return
    for user in users:
        roles = ", ".join(r.name for r in store.get_active_roles(user.user_id)) or "-"
        state = "" if user.is_active else "  (disabled)"
        print(f"  {user.login:<24} {user.email or '-':<32} {roles}{state}")


def cmd_register_client(args: argparse.Namespace, store: CredentialStore) -> None:
    clients = ClientStore(get_settings().database_url)
    try:
        client = ClientManager(clients).register(
            client_id=args.client_id,
            display_name=args.name,
            redirect_uris=args.redirect_uri,
            client_secret=args.secret,
            allowed_scopes=args.scope,
            require_consent=args.require_consent,
        )
    except (AuthError, ValueError) as e:
        sys.exit(f"  [!] {e}")
    finally:
        clients.close()
    print(f"  Registered {client.client_type} client {client.client_id}")


def cmd_purge(args: argparse.Namespace, store: CredentialStore) -> None:
    cache = EphemeralCache(get_settings().cache_path)
    try:
        cache_removed = cache.purge_expired()
    finally:
        cache.close()
    tokens_removed = store.purge_spent_tokens()
    print(f"  Removed {cache_removed} cache entries and {tokens_removed} spent tokens.")


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="avtopark-identity",
        description="Admin tasks for the Avtopark identity service.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("seed-roles", help="Create the built-in Administrator and User roles")

    p = sub.add_parser("create-user", help="Create a login")
    p.add_argument("login")
    p.add_argument("--password", help="Prompted for when omitted")
    p.add_argument("--email")
    p.add_argument("--phone")
    p.add_argument("--role", action="append", metavar="NAME", help="Role to assign (repeatable)")

    p = sub.add_parser("assign-role", help="Give an existing user a role")
    p.add_argument("login")
    p.add_argument("role")

    p = sub.add_parser("grant-permission", help="Give a role a permission, creating the permission if needed")
    p.add_argument("role")
    p.add_argument("permission", help="Dotted name, e.g. tickets.sell; the prefix becomes the category")

    sub.add_parser("list-users", help="Show every login with its active roles")

    p = sub.add_parser("register-client", help="Register an OpenID Connect client")
    p.add_argument("client_id")
    p.add_argument("--name", required=True, help="Display name shown on the login page")
    p.add_argument("--redirect-uri", action="append", required=True, metavar="URI")
    p.add_argument("--secret", help="Makes the client confidential; omit for public clients")
    p.add_argument("--scope", action="append", metavar="SCOPE", help="Allowed scope (repeatable)")
    p.add_argument("--require-consent", action="store_true")

    sub.add_parser("purge", help="Delete expired cache entries and spent login tokens")

    args = parser.parse_args()
    handlers = {
        "seed-roles": cmd_seed_roles,
        "create-user": cmd_create_user,
        "assign-role": cmd_assign_role,
        "grant-permission": cmd_grant_permission,
        "list-users": cmd_list_users,
        "register-client": cmd_register_client,
        "purge": cmd_purge,
    }
    store = CredentialStore(get_settings().database_url)
    try:
        handlers[args.command](args, store)
    finally:
        store.close()


if __name__ == "__main__":
    main()
