"""
auth/two_factor.py -- Decides whether a password login needs a second factor.

    login() --password ok--> settings? --totp--> pending token ("totp")
                                       --webauthn--> pending token + assertion options
                                       --neither--> issue JWT

verify_totp() / validate_webauthn() redeem the pending token. The proof is
checked first; the token is only marked used after the proof succeeds, so a
mistyped code can be retried until the token expires. Marking used is the
store's conditional UPDATE: of two concurrent correct proofs, one wins and the
other gets InvalidOrExpiredToken.

A user with no settings row gets one created with every factor off and is
signed in with the password alone. That fail-open default is logged.
"""

from __future__ import annotations

import logging
import secrets
from typing import Any

from auth.errors import InvalidCode, InvalidOrExpiredToken
from auth.models import LoginOutcome, PendingTwoFactorToken, User
from auth.passkeys import WebAuthnService
from auth.store import CredentialStore
from auth.tokens import authenticate_user, issue_access_token
from auth.totp import TotpService
from core.clock import expires_in_ms, now_ms

logger = logging.getLogger("avtopark.auth.two_factor")


def _webauthn_key(temp_token: str) -> str:
    return f"webauthn_2fa_{temp_token}"


class TwoFactorOrchestrator:
    def __init__(
        self,
        store: CredentialStore,
        totp: TotpService,
        webauthn: WebAuthnService,
        ttl_minutes: int = 10,
    ) -> None:
        self.store = store
        self.totp = totp
        self.webauthn = webauthn
        self.ttl_minutes = ttl_minutes

    def login(
        self,
        login: str,
        password: str,
        skip_two_factor: bool = False,
        device_info: str | None = None,
        ip_address: str | None = None,
    ) -> LoginOutcome:
        user = authenticate_user(self.store, login, password)

        settings = self.store.get_user_settings(user.user_id)
        if settings is None:
            logger.warning("No second-factor settings for user_id=%s; creating defaults", user.user_id)
            self.store.ensure_user_settings(user.user_id)
            return self.issue(user)

        if skip_two_factor and (settings.totp_enabled or settings.webauthn_enabled):
            logger.info("Second factor skipped at caller request for user_id=%s", user.user_id)

        if settings.totp_enabled and not skip_two_factor:
            temp_token = self._create_pending(user, device_info, ip_address)
            return LoginOutcome(user=user, requires_two_factor=True, two_factor_type="totp", temp_token=temp_token)

        if settings.webauthn_enabled and not skip_two_factor:
            temp_token = secrets.token_urlsafe(32)
            # Raises NoCredentials before the pending token is stored.
            options = self.webauthn.assertion_options_for(user, challenge_key=_webauthn_key(temp_token))
            self._create_pending(user, device_info, ip_address, token=temp_token)
            return LoginOutcome(
                user=user,
                requires_two_factor=True,
                two_factor_type="webauthn",
                temp_token=temp_token,
                options=options,
            )

        return self.issue(user)

    def issue(self, user: User) -> LoginOutcome:
        return LoginOutcome(user=user, token=issue_access_token(self.store, user))

    def verify_totp(self, temp_token: str, code: str) -> LoginOutcome:
        pending = self._pending(temp_token)
        if not self.totp.validate_for_user(pending.user_id, code):
            raise InvalidCode()
        return self._consume_and_issue(pending)

    def validate_webauthn(self, temp_token: str, assertion: dict[str, Any]) -> LoginOutcome:
        pending = self._pending(temp_token)
        user = self._user_for(pending)
        self.webauthn.complete_assertion_for(user, assertion, challenge_key=_webauthn_key(pending.token))
        return self._consume_and_issue(pending)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _create_pending(
        self,
        user: User,
        device_info: str | None,
        ip_address: str | None,
        token: str | None = None,
    ) -> str:
        token = token or secrets.token_urlsafe(32)
        self.store.create_two_factor_token(
            PendingTwoFactorToken(
                token=token,
                user_id=user.user_id,
                created_at_ms=now_ms(),
                expires_at_ms=expires_in_ms(self.ttl_minutes),
                device_info=device_info,
                ip_address=ip_address,
            )
        )
        return token

    def _pending(self, temp_token: str) -> PendingTwoFactorToken:
        pending = self.store.get_two_factor_token(temp_token)
        if pending is None or pending.is_used or pending.expires_at_ms <= now_ms():
            raise InvalidOrExpiredToken()
        return pending

    def _user_for(self, pending: PendingTwoFactorToken) -> User:
        user = self.store.get_by_user_id(pending.user_id)
        if user is None or not user.is_active:
            raise InvalidOrExpiredToken()
        return user

    def _consume_and_issue(self, pending: PendingTwoFactorToken) -> LoginOutcome:
        user = self._user_for(pending)
        if not self.store.consume_two_factor_token(pending.token):
            raise InvalidOrExpiredToken()
        logger.info("Second factor verified for user_id=%s", user.user_id)
        return self.issue(user)
