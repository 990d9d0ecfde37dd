from __future__ import annotations

import json
import secrets
from typing import Any, List, Optional, Protocol

from webauthn import (
    base64url_to_bytes,
    generate_authentication_options,
    generate_registration_options,
    options_to_json,
    verify_authentication_response,
    verify_registration_response,
)
from webauthn.helpers.structs import (
    AuthenticatorSelectionCriteria,
    PublicKeyCredentialDescriptor,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from showauth.config import Settings
from showauth.logging import get_logger, hash_email
from showauth.service.auth import AuthService
from showauth.service.errors import AuthError, AuthErrorCode
from showauth.service.tokens import SignupConsent
from showauth.storage.errors import ConstraintViolation
from showauth.storage.models import Account, PasskeyChallenge, PasskeyCredential, utcnow

logger = get_logger(__name__)

OP_REGISTRATION = "registration"
OP_AUTHENTICATION = "authentication"
OP_SIGNUP = "signup"


class PasskeyStore(Protocol):
    def get_account(self, account_id: int) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def hard_delete_account(self, account_id: int) -> bool: ...

    def add_passkey_credential(self, account_id: int, credential_id: bytes, public_key: bytes, **fields) -> PasskeyCredential: ...

    def get_passkey_credential(self, credential_id: bytes) -> Optional[PasskeyCredential]: ...

    def list_passkey_credentials(self, account_id: int) -> List[PasskeyCredential]: ...

    def update_passkey_usage(self, passkey_id: int, sign_count: int, **fields) -> None: ...

    def flag_passkey_clone(self, passkey_id: int) -> None: ...

    def rename_passkey_credential(self, account_id: int, passkey_id: int, display_name: str) -> Optional[PasskeyCredential]: ...

    def delete_passkey_credential(self, account_id: int, passkey_id: int) -> bool: ...

    def save_passkey_challenge(self, challenge: PasskeyChallenge) -> None: ...

    def get_passkey_challenge(self, challenge_id: str) -> Optional[PasskeyChallenge]: ...

    def delete_passkey_challenge(self, challenge_id: str) -> None: ...


def sign_count_is_valid(stored: int, presented: int) -> bool:
    """Sign counts must strictly increase; 0/0 means the authenticator has no counter."""
    if stored == 0 and presented == 0:
        return True
    return presented > stored


class PasskeyService:
    """WebAuthn registration, assertion and passkey-first signup ceremonies.

    Each ``begin_*`` persists a five-minute challenge and returns its id
    with the options JSON; the matching ``finish_*`` consumes the challenge
    whether or not verification succeeds.
    """

    def __init__(self, store: PasskeyStore, settings: Settings, *, auth: AuthService) -> None:
        self.store = store
        self.settings = settings
        self.auth = auth
        self.rp_id = settings.webauthn_rp_id
        self.rp_name = settings.webauthn_rp_name
        self.origins = settings.webauthn_origins

    # -- helpers ------------------------------------------------------------

    @staticmethod
    def _require_account(account: Optional[Account]) -> Account:
        if account is None:
            raise AuthError(AuthErrorCode.UNAUTHORIZED, "Authentication required")
        return account

    def _consume_challenge(self, challenge_id: Optional[str], operation: str) -> PasskeyChallenge:
        challenge = self.store.get_passkey_challenge(challenge_id) if challenge_id else None
        if challenge is not None:
            self.store.delete_passkey_challenge(challenge.id)
        if challenge is None or challenge.operation != operation:
            raise AuthError(AuthErrorCode.VALIDATION_FAILED, "Invalid or expired challenge")
        return challenge

    @staticmethod
    def _credential_id(credential: dict[str, Any]) -> bytes:
        raw = credential.get("rawId") or credential.get("id")
        if not raw or not isinstance(raw, str):
            raise AuthError(AuthErrorCode.VALIDATION_FAILED, "Invalid credential response")
        try:
            return base64url_to_bytes(raw)
        except ValueError as exc:
            raise AuthError(AuthErrorCode.VALIDATION_FAILED, "Invalid credential response") from exc

    def _registration_options(
        self,
        *,
        user_id: bytes,
        user_name: str,
        display_name: Optional[str],
        exclude: List[PasskeyCredential],
    ):
        return generate_registration_options(
            rp_id=self.rp_id,
            rp_name=self.rp_name,
            user_id=user_id,
            user_name=user_name,
            user_display_name=display_name or user_name,
            exclude_credentials=[
                PublicKeyCredentialDescriptor(id=cred.credential_id) for cred in exclude
            ],
            authenticator_selection=AuthenticatorSelectionCriteria(
                resident_key=ResidentKeyRequirement.PREFERRED,
                user_verification=UserVerificationRequirement.PREFERRED,
            ),
        )

    def _verify_registration(self, credential: dict[str, Any], challenge: PasskeyChallenge):
        try:
            return verify_registration_response(
                credential=credential,
                expected_challenge=challenge.challenge,
                expected_rp_id=self.rp_id,
                expected_origin=self.origins,
            )
        except Exception as exc:
            logger.warning("passkey_registration_verify_failed", error=str(exc))
            raise AuthError(AuthErrorCode.VALIDATION_FAILED, "Invalid credential response") from exc

    def _store_credential(
        self,
        account_id: int,
        credential: dict[str, Any],
        verified,
        display_name: Optional[str],
    ) -> PasskeyCredential:
        response = credential.get("response") or {}
        try:
            return self.store.add_passkey_credential(
                account_id,
                verified.credential_id,
                verified.credential_public_key,
                sign_count=verified.sign_count,
                aaguid=str(verified.aaguid) if verified.aaguid else None,
                transports=list(response.get("transports") or []),
                backup_eligible=getattr(verified, "credential_device_type", None) == "multi_device",
                backup_state=bool(getattr(verified, "credential_backed_up", False)),
                display_name=display_name or "Passkey",
            )
        except ConstraintViolation as exc:
            raise AuthError(
                AuthErrorCode.VALIDATION_FAILED, "This passkey is already registered"
            ) from exc

    # -- registration (authenticated) ---------------------------------------

    def begin_registration(self, account: Optional[Account]) -> dict[str, Any]:
        account = self._require_account(account)
        existing = self.store.list_passkey_credentials(account.id)
        options = self._registration_options(
            user_id=str(account.id).encode(),
            user_name=account.email or account.username or f"user-{account.id}",
            display_name=account.username or account.email,
            exclude=existing,
        )
        challenge = PasskeyChallenge.new(
            options.challenge, OP_REGISTRATION, account_id=account.id
        )
        self.store.save_passkey_challenge(challenge)
        return {"options": json.loads(options_to_json(options)), "challenge_id": challenge.id}

    def finish_registration(
        self,
        account: Optional[Account],
        challenge_id: Optional[str],
        credential: Optional[dict[str, Any]],
        display_name: Optional[str] = None,
    ) -> PasskeyCredential:
        account = self._require_account(account)
        challenge = self._consume_challenge(challenge_id, OP_REGISTRATION)
        if challenge.account_id != account.id:
            raise AuthError(AuthErrorCode.UNAUTHORIZED, "Challenge belongs to different user")
        if not credential:
            raise AuthError(AuthErrorCode.VALIDATION_FAILED, "Invalid credential response")
        verified = self._verify_registration(credential, challenge)
        stored = self._store_credential(account.id, credential, verified, display_name)
        logger.info("passkey_registered", account_id=account.id, passkey_id=stored.id)
        if self.auth.audit:
            self.auth.audit.record("passkey_registered", account.id, passkey_id=stored.id)
        return stored

    # -- assertion ----------------------------------------------------------

    def begin_login(self, email: Optional[str] = None) -> dict[str, Any]:
        account_id = None
        allow: List[PublicKeyCredentialDescriptor] = []
        if email:
            account = self.store.get_account_by_email(email)
            credentials = self.store.list_passkey_credentials(account.id) if account else []
            if not credentials:
                logger.info("passkey_login_no_credentials", email_hash=hash_email(email))
                raise AuthError(
                    AuthErrorCode.INVALID_CREDENTIALS, "No passkeys registered for this account"
                )
            account_id = account.id
            allow = [
                PublicKeyCredentialDescriptor(id=cred.credential_id) for cred in credentials
            ]
        options = generate_authentication_options(
            rp_id=self.rp_id,
            allow_credentials=allow or None,
            user_verification=UserVerificationRequirement.PREFERRED,
        )
        challenge = PasskeyChallenge.new(
            options.challenge, OP_AUTHENTICATION, account_id=account_id
        )
        self.store.save_passkey_challenge(challenge)
        return {"options": json.loads(options_to_json(options)), "challenge_id": challenge.id}

    def finish_login(
        self, challenge_id: Optional[str], credential: Optional[dict[str, Any]]
    ) -> Account:
        """Verify an assertion and return the signing account.

        Raises:
            AuthError: ``VALIDATION_FAILED`` for a bad challenge or payload,
                ``INVALID_CREDENTIALS`` for unknown credentials, inactive
                accounts and non-increasing sign counts.
        """
        challenge = self._consume_challenge(challenge_id, OP_AUTHENTICATION)
        if not credential:
            raise AuthError(AuthErrorCode.VALIDATION_FAILED, "Invalid credential response")
        stored = self.store.get_passkey_credential(self._credential_id(credential))
        if stored is None or (
            challenge.account_id is not None and stored.account_id != challenge.account_id
        ):
            raise AuthError(AuthErrorCode.INVALID_CREDENTIALS, "Invalid passkey")

        try:
            verified = verify_authentication_response(
                credential=credential,
                expected_challenge=challenge.challenge,
                expected_rp_id=self.rp_id,
                expected_origin=self.origins,
                credential_public_key=stored.public_key,
                # counter regression is judged below so it can flag the credential
                credential_current_sign_count=0,
            )
        except Exception as exc:
            logger.warning(
                "passkey_assertion_verify_failed", passkey_id=stored.id, error=str(exc)
            )
            raise AuthError(AuthErrorCode.VALIDATION_FAILED, "Invalid credential response") from exc

        if not sign_count_is_valid(stored.sign_count, verified.new_sign_count):
            self.store.flag_passkey_clone(stored.id)
            logger.warning(
                "passkey_clone_detected",
                passkey_id=stored.id,
                account_id=stored.account_id,
                stored_sign_count=stored.sign_count,
                presented_sign_count=verified.new_sign_count,
            )
            if self.auth.audit:
                self.auth.audit.record("passkey_clone_detected", stored.account_id, passkey_id=stored.id)
            raise AuthError(AuthErrorCode.INVALID_CREDENTIALS, "Invalid passkey")

        account = self.store.get_account(stored.account_id)
        if account is None or account.deleted_at is not None or not account.is_active:
            raise AuthError(AuthErrorCode.INVALID_CREDENTIALS, "Invalid passkey")

        self.store.update_passkey_usage(
            stored.id,
            verified.new_sign_count,
            used_at=utcnow(),
            backup_state=getattr(verified, "credential_backed_up", None),
        )
        logger.info("passkey_login_success", account_id=account.id, passkey_id=stored.id)
        if self.auth.audit:
            self.auth.audit.record("login_success", account.id, method="passkey")
        return account

    # -- passkey-first signup -----------------------------------------------

    def begin_signup(
        self,
        email: Optional[str],
        *,
        display_name: Optional[str] = None,
        terms_accepted: bool = False,
        terms_version: Optional[str] = None,
        privacy_version: Optional[str] = None,
    ) -> dict[str, Any]:
        if not email:
            raise AuthError(AuthErrorCode.VALIDATION_FAILED, "Email is required")
        if not terms_accepted or not terms_version:
            raise AuthError(
                AuthErrorCode.VALIDATION_FAILED,
                "Terms acceptance is required for account creation",
            )
        if self.store.get_account_by_email(email):
            raise AuthError(AuthErrorCode.USER_EXISTS, "An account with this email already exists")

        consent = SignupConsent(
            terms_accepted=True,
            terms_version=terms_version,
            privacy_version=privacy_version,
            accepted_at=utcnow(),
        )
        options = self._registration_options(
            user_id=secrets.token_bytes(16),
            user_name=email,
            display_name=display_name,
            exclude=[],
        )
        challenge = PasskeyChallenge.new(
            options.challenge,
            OP_SIGNUP,
            email=email,
            display_name=display_name,
            meta={"consent": consent.to_claim()},
        )
        self.store.save_passkey_challenge(challenge)
        return {"options": json.loads(options_to_json(options)), "challenge_id": challenge.id}

    def finish_signup(
        self, challenge_id: Optional[str], credential: Optional[dict[str, Any]]
    ) -> Account:
        challenge = self._consume_challenge(challenge_id, OP_SIGNUP)
        if not credential or not challenge.email:
            raise AuthError(AuthErrorCode.VALIDATION_FAILED, "Invalid credential response")
        if self.store.get_account_by_email(challenge.email):
            raise AuthError(AuthErrorCode.USER_EXISTS, "An account with this email already exists")
        verified = self._verify_registration(credential, challenge)

        consent = SignupConsent.from_claim((challenge.meta or {}).get("consent") or {})
        account = self.auth.create_passkey_account(
            challenge.email, consent, display_name=challenge.display_name
        )
        try:
            self._store_credential(account.id, credential, verified, None)
        except AuthError:
            self.store.hard_delete_account(account.id)
            raise
        logger.info("passkey_signup_complete", account_id=account.id)
        return account

    # -- credential management ----------------------------------------------

    def list_credentials(self, account: Optional[Account]) -> List[PasskeyCredential]:
        account = self._require_account(account)
        return self.store.list_passkey_credentials(account.id)

    def delete_credential(self, account: Optional[Account], passkey_id: int) -> None:
        account = self._require_account(account)
        if not self.store.delete_passkey_credential(account.id, passkey_id):
            raise AuthError(AuthErrorCode.VALIDATION_FAILED, "Failed to delete credential")
        logger.info("passkey_deleted", account_id=account.id, passkey_id=passkey_id)
        if self.auth.audit:
            self.auth.audit.record("passkey_deleted", account.id, passkey_id=passkey_id)

    def rename_credential(
        self, account: Optional[Account], passkey_id: int, display_name: Optional[str]
    ) -> PasskeyCredential:
        account = self._require_account(account)
        name = (display_name or "").strip()
        if not name or len(name) > 100:
            raise AuthError(
                AuthErrorCode.VALIDATION_FAILED, "Display name must be 1-100 characters"
            )
        renamed = self.store.rename_passkey_credential(account.id, passkey_id, name)
        if renamed is None:
            raise AuthError(AuthErrorCode.VALIDATION_FAILED, "Failed to update credential")
        return renamed
