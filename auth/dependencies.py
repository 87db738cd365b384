"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two token sources are checked in priority order:
  1. Authorization: Bearer <token> header -- API and mobile clients. An explicit
     header wins over whatever cookie the browser happens to hold.
  2. JWT cookie ("access_token") -- set by browser flows (magic link, OIDC login).

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises Unauthorized.
require_admin() wraps get_current_user() and raises PermissionDenied unless the
user holds the admin role (ADMIN_ROLE_NAME) among their active roles.

Roles are re-read from the store on every admin check rather than trusted
from the token, so revoking a role takes effect before the token expires.
"""

from __future__ import annotations

from fastapi import Request

from auth.errors import PermissionDenied, Unauthorized
from auth.models import User
from auth.tokens import decode_access_token
from core.config import get_settings


def bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def try_get_current_user(request: Request) -> User | None:
    """Authenticate the request via cookie or Bearer header. Never raises."""
    store = request.app.state.credential_store

    for token in (bearer_token(request), request.cookies.get("access_token")):
        if not token:
            continue
        payload = decode_access_token(token)
        if payload is None:
            continue
        user = store.get_by_user_id(payload["sub"])
        if user is not None and user.is_active:
            return user
    return None


def get_current_user(request: Request) -> User:
    """Require authentication.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise Unauthorized()
    return user


def require_admin(request: Request) -> User:
    user = get_current_user(request)
    admin_role = get_settings().admin_role_name
    roles = request.app.state.credential_store.get_active_roles(user.user_id)
    if not any(r.name == admin_role for r in roles):
        raise PermissionDenied()
    return user
