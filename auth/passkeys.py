"""
auth/passkeys.py -- WebAuthn / FIDO2 registration and assertion ceremonies.

Cryptographic verification is delegated to py_webauthn. This module owns the
state around it:

  Challenges   cached per ceremony for WEBAUTHN_CHALLENGE_TTL_MINUTES and
               popped on completion, so each challenge backs at most one
               ceremony. Registration and passwordless login key on the user
               ("webauthn_reg_{user_id}", "webauthn_auth_{user_id}"); a second
               factor keys on its temp token ("webauthn_2fa_{temp_token}"), so
               the two login flows never overwrite each other's challenge.
  Credentials  persisted by CredentialStore. Registering the first credential
               enables WebAuthn for the user; removing the last one disables it.
  Counters     a successful assertion must move the signature counter forward.
               Authenticators that do not implement a counter report 0 forever,
               which is accepted only while the stored value is also 0.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from webauthn import (
    generate_authentication_options,
    generate_registration_options,
    options_to_json,
    verify_authentication_response,
    verify_registration_response,
)
from webauthn.helpers import base64url_to_bytes, bytes_to_base64url
from webauthn.helpers.exceptions import InvalidAuthenticationResponse, InvalidRegistrationResponse
from webauthn.helpers.structs import (
    AuthenticatorSelectionCriteria,
    PublicKeyCredentialDescriptor,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from auth.errors import (
    AccountNotFound,
    CeremonyFailed,
    Forbidden,
    InvalidOrExpiredToken,
    NoCredentials,
    NotFound,
)
from auth.models import User, WebAuthnCredential
from auth.store import CredentialStore
from cache.store import EphemeralCache
from core.config import Settings

logger = logging.getLogger("avtopark.auth.webauthn")


def _credential_id_of(response: dict[str, Any]) -> str:
    cred_id = response.get("rawId") or response.get("id")
    if not cred_id:
        raise CeremonyFailed("Credential id missing from response.")
    return cred_id


class WebAuthnService:
    def __init__(self, store: CredentialStore, cache: EphemeralCache, settings: Settings) -> None:
        self.store = store
        self.cache = cache
        self.rp_id = settings.webauthn_rp_id
        self.rp_name = settings.webauthn_rp_name
        self.origin = settings.webauthn_origin
        self.challenge_ttl = settings.webauthn_challenge_ttl_minutes * 60

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def get_credential_create_options(self, user_id: str, username: str) -> dict[str, Any]:
        existing = self.store.list_webauthn_credentials(user_id)
        options = generate_registration_options(
            rp_id=self.rp_id,
            rp_name=self.rp_name,
            user_id=user_id.encode("utf-8"),
            user_name=username,
            exclude_credentials=[PublicKeyCredentialDescriptor(id=base64url_to_bytes(c.credential_id)) for c in existing],
            authenticator_selection=AuthenticatorSelectionCriteria(
                resident_key=ResidentKeyRequirement.PREFERRED,
                user_verification=UserVerificationRequirement.PREFERRED,
            ),
        )
        self.cache.set(
            f"webauthn_reg_{user_id}",
            {"challenge": bytes_to_base64url(options.challenge)},
            self.challenge_ttl,
        )
        return json.loads(options_to_json(options))

    def complete_registration(
        self,
        user_id: str,
        attestation: dict[str, Any],
        device_name: str | None = None,
    ) -> WebAuthnCredential:
        pending = self.cache.pop(f"webauthn_reg_{user_id}")
        if pending is None:
            raise InvalidOrExpiredToken("Registration challenge expired. Start again.")
        try:
            verified = verify_registration_response(
                credential=attestation,
                expected_challenge=base64url_to_bytes(pending["challenge"]),
                expected_rp_id=self.rp_id,
                expected_origin=self.origin,
            )
        except InvalidRegistrationResponse as exc:
            logger.warning("WebAuthn registration rejected for user_id=%s: %s", user_id, exc)
            raise CeremonyFailed("Registration could not be verified.") from exc

        credential = WebAuthnCredential(
            user_id=user_id,
            credential_id=bytes_to_base64url(verified.credential_id),
            public_key=bytes_to_base64url(verified.credential_public_key),
            sign_count=verified.sign_count,
            device_name=device_name,
        )
        self.store.add_webauthn_credential(credential)
        self.store.set_webauthn_enabled(user_id, True)
        logger.info("WebAuthn credential registered for user_id=%s", user_id)
        return credential

    # ------------------------------------------------------------------
    # Assertion
    # ------------------------------------------------------------------

    def get_assertion_options(self, username: str) -> dict[str, Any]:
        user = self.store.get_by_login(username)
        if user is None or not user.is_active:
            raise AccountNotFound()
        return self.assertion_options_for(user)

    def assertion_options_for(self, user: User, challenge_key: str | None = None) -> dict[str, Any]:
        """Options for an assertion by user. challenge_key defaults to the passwordless key."""
        credentials = self.store.list_webauthn_credentials(user.user_id)
        if not credentials:
            raise NoCredentials()
        options = generate_authentication_options(
            rp_id=self.rp_id,
            allow_credentials=[PublicKeyCredentialDescriptor(id=base64url_to_bytes(c.credential_id)) for c in credentials],
            user_verification=UserVerificationRequirement.PREFERRED,
        )
        self.cache.set(
            challenge_key or f"webauthn_auth_{user.user_id}",
            {"challenge": bytes_to_base64url(options.challenge)},
            self.challenge_ttl,
        )
        return json.loads(options_to_json(options))

    def complete_assertion(self, username: str, assertion: dict[str, Any]) -> User:
        user = self.store.get_by_login(username)
        if user is None or not user.is_active:
            raise AccountNotFound()
        return self.complete_assertion_for(user, assertion)

    def complete_assertion_for(
        self, user: User, assertion: dict[str, Any], challenge_key: str | None = None
    ) -> User:
        pending = self.cache.pop(challenge_key or f"webauthn_auth_{user.user_id}")
        if pending is None:
            raise InvalidOrExpiredToken("Authentication challenge expired. Start again.")

        credential = self.store.get_webauthn_credential(_credential_id_of(assertion))
        if credential is None or not credential.is_active or credential.user_id != user.user_id:
            raise NotFound("Credential not registered.")

        try:
            verified = verify_authentication_response(
                credential=assertion,
                expected_challenge=base64url_to_bytes(pending["challenge"]),
                expected_rp_id=self.rp_id,
                expected_origin=self.origin,
                credential_public_key=base64url_to_bytes(credential.public_key),
                credential_current_sign_count=credential.sign_count,
            )
        except InvalidAuthenticationResponse as exc:
            logger.warning("WebAuthn assertion rejected for user_id=%s: %s", user.user_id, exc)
            raise CeremonyFailed("Assertion could not be verified.") from exc

        new_count = verified.new_sign_count
        # Both zero: authenticator without a counter.
        if new_count != 0 or credential.sign_count != 0:
            if new_count <= credential.sign_count:
                logger.warning(
                    "WebAuthn counter did not advance for user_id=%s (stored=%d got=%d); possible clone",
                    user.user_id,
                    credential.sign_count,
                    new_count,
                )
                raise CeremonyFailed("Signature counter did not increase.")
            if not self.store.update_sign_count(credential.credential_id, credential.sign_count, new_count):
                raise CeremonyFailed("Credential was used concurrently.")

        logger.info("WebAuthn assertion verified for user_id=%s", user.user_id)
        return user

    # ------------------------------------------------------------------
    # Management
    # ------------------------------------------------------------------

    def list_credentials(self, user_id: str) -> list[WebAuthnCredential]:
        return self.store.list_webauthn_credentials(user_id)

    def remove_credential(self, user_id: str, credential_id: str) -> None:
        credential = self.store.get_webauthn_credential(credential_id)
        if credential is None or not credential.is_active:
            raise NotFound("Credential not found.")
        if credential.user_id != user_id:
            raise Forbidden("Credential belongs to a different account.")
        self.store.deactivate_webauthn_credential(credential_id, user_id)
        if not self.store.list_webauthn_credentials(user_id):
            self.store.set_webauthn_enabled(user_id, False)
        logger.info("WebAuthn credential removed for user_id=%s", user_id)
