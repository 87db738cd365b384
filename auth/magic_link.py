"""
auth/magic_link.py -- Passwordless sign-in through an emailed one-time link.

send_magic_link() never tells the caller whether the address belongs to an
account: unknown, inactive and unconfirmed addresses all return quietly.
redeem() is the only way a token turns into a user, and it consumes the token
with the store's conditional UPDATE so two clicks on the same link cannot both
sign in.
"""

from __future__ import annotations

import logging
import secrets
from urllib.parse import quote

from auth.errors import AccountNotFound, InvalidCredentials, InvalidOrExpiredToken
from auth.mailer import Mailer, redact_email
from auth.models import MagicLinkToken, User
from auth.store import CredentialStore
from core.clock import expires_in_ms, now_ms

logger = logging.getLogger("avtopark.auth.magic_link")


class MagicLinkService:
    def __init__(
        self,
        store: CredentialStore,
        mailer: Mailer,
        app_url: str,
        app_name: str,
        ttl_minutes: int = 15,
    ) -> None:
        self.store = store
        self.mailer = mailer
        self.app_url = app_url.rstrip("/")
        self.app_name = app_name
        self.ttl_minutes = ttl_minutes

    def link_for(self, token: str) -> str:
        return f"{self.app_url}/api/auth/validate-magic-link?token={quote(token)}"

    def send_magic_link(self, email: str, device_info: str | None = None, ip_address: str | None = None) -> None:
        """Create a token for the account behind email and mail the link.

        Returns without error when no eligible account exists. Raises
        UpstreamUnavailable if the mail relay fails for a real account.
        """
        user = self.store.get_by_email(email)
        if user is None or not user.is_active or not user.email_confirmed:
            logger.info("Magic link requested for ineligible address %s", redact_email(email))
            return

        token = secrets.token_urlsafe(32)
        self.store.create_magic_link(
            MagicLinkToken(
                token=token,
                user_id=user.user_id,
                created_at_ms=now_ms(),
                expires_at_ms=expires_in_ms(self.ttl_minutes),
                device_info=device_info,
                ip_address=ip_address,
            )
        )
        link = self.link_for(token)
        self.mailer.send(
            user.email,
            f"Your {self.app_name} sign-in link",
            f"Sign in to {self.app_name}: {link}\n\nThe link expires in {self.ttl_minutes} minutes "
            "and can be used once.",
            f'<p><a href="{link}">Sign in to {self.app_name}</a></p>'
            f"<p>The link expires in {self.ttl_minutes} minutes and can be used once.</p>",
        )
        logger.info("Magic link issued for user_id=%s", user.user_id)

    def validate_magic_link(self, token: str) -> User:
        """Resolve a token to its user without consuming it."""
        record = self.store.get_magic_link(token)
        if record is None or record.is_used or record.expires_at_ms <= now_ms():
            raise InvalidOrExpiredToken("Invalid or expired link.")
        user = self.store.get_by_user_id(record.user_id)
        if user is None:
            raise AccountNotFound()
        if not user.is_active:
            raise InvalidCredentials("Account is disabled.")
        return user

    def mark_used(self, token: str) -> bool:
        return self.store.consume_magic_link(token)

    def redeem(self, token: str) -> User:
        """Validate and consume in one step. The loser of a race sees InvalidOrExpiredToken."""
        user = self.validate_magic_link(token)
        if not self.mark_used(token):
            raise InvalidOrExpiredToken("Invalid or expired link.")
        self.store.update_last_login(user.user_id)
        logger.info("Magic link redeemed for user_id=%s", user.user_id)
        return user
