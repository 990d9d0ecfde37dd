from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from showauth.config import Settings
from showauth.logging import get_logger, hash_email
from showauth.service.audit import AuditLog
from showauth.service.errors import AuthError, AuthErrorCode
from showauth.service.password_validator import PasswordValidator
from showauth.service.tokens import SignupConsent
from showauth.storage.errors import ConstraintViolation
from showauth.storage.models import Account, OAuthAccount, PasskeyCredential

logger = get_logger(__name__)

MAX_FAILED_LOGIN_ATTEMPTS = 5
ACCOUNT_LOCK_DURATION = timedelta(minutes=15)

UNLINK_ONLY_METHOD_MESSAGE = (
    "Cannot unlink - this is your only sign-in method. Add a password or passkey first."
)


class AuthStore(Protocol):
    def create_account(self, **fields) -> Account: ...

    def get_account(self, account_id: int) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def update_password_hash(self, account_id: int, password_hash: str) -> Account: ...

    def record_failed_login(
        self,
        account_id: int,
        *,
        threshold: int,
        lock_duration: timedelta,
        now: Optional[datetime] = None,
    ) -> Account: ...

    def reset_failed_logins(self, account_id: int) -> Account: ...

    def hard_delete_account(self, account_id: int) -> bool: ...

    def get_oauth_account(self, provider: str, provider_user_id: str) -> Optional[OAuthAccount]: ...

    def link_oauth_account(self, account_id: int, provider: str, provider_user_id: str, **fields) -> OAuthAccount: ...

    def list_oauth_accounts(self, account_id: int) -> List[OAuthAccount]: ...

    def unlink_oauth_account(self, account_id: int, provider: str) -> bool: ...

    def list_passkey_credentials(self, account_id: int) -> List[PasskeyCredential]: ...


@dataclass
class ExternalIdentity:
    """A provider-verified identity handed back by an OAuth or Apple exchange."""

    provider: str
    provider_user_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    avatar_url: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    # false when the provider could not vouch for ``email``; such an address
    # never links to an existing account
    email_verified: bool = True


class ConsentRequired(AuthError):
    """A new account would be created without an accepted signup consent."""

    def __init__(self) -> None:
        super().__init__(
            AuthErrorCode.VALIDATION_FAILED,
            "terms acceptance required for account creation",
        )


class AuthService:
    """Password authentication with lockout, registration and identity linking."""

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        validator: Optional[PasswordValidator] = None,
        audit: Optional[AuditLog] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.validator = validator or PasswordValidator(
            check_breaches=settings.hibp_check_enabled
        )
        self.audit = audit
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against when there is no real hash so unknown emails cost
        # the same as wrong passwords
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    def _audit(self, action: str, account_id: Optional[int] = None, **metadata) -> None:
        if self.audit:
            self.audit.record(action, account_id, **metadata)

    # -- password hashing ---------------------------------------------------

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, account: Account, password: str) -> bool:
        """Check ``password`` against the account's stored Argon2 hash."""
        if not account.password_hash:
            self.dummy_verify(password)
            return False
        try:
            return self._pwd_hasher.verify(account.password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def dummy_verify(self, password: str) -> None:
        try:
            self._pwd_hasher.verify(self._dummy_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            pass

    # -- credential and lockout guard ---------------------------------------

    def authenticate_with_password(self, email: Optional[str], password: Optional[str]) -> Account:
        """Verify an email/password pair, maintaining the lockout counter.

        Raises:
            AuthError: ``VALIDATION_FAILED`` for missing fields,
                ``ACCOUNT_LOCKED`` while a lock is in force, otherwise
                ``INVALID_CREDENTIALS`` for unknown, inactive or wrong
                credentials alike.
        """
        if not email or not password:
            raise AuthError(AuthErrorCode.VALIDATION_FAILED, "Email and password are required")

        email_hash = hash_email(email)
        account = self.store.get_account_by_email(email)
        if account is None or account.deleted_at is not None or not account.is_active:
            self.dummy_verify(password)
            self.logger.warning("login_failed", email_hash=email_hash, reason="unknown_or_inactive")
            self._audit("login_failed", account.id if account else None, reason="unknown_or_inactive")
            raise AuthError(AuthErrorCode.USER_NOT_FOUND)

        now = self._now()
        if account.is_locked(now):
            remaining = account.locked_until - now
            minutes = int(remaining.total_seconds() // 60) + 1
            self.logger.warning(
                "login_account_locked", account_id=account.id, minutes_remaining=minutes
            )
            self._audit("login_locked", account.id, minutes_remaining=minutes)
            raise AuthError(
                AuthErrorCode.ACCOUNT_LOCKED,
                f"Account is temporarily locked. Please try again in {minutes} minutes.",
                data={"minutes_remaining": minutes},
            )

        if not account.has_password:
            self.dummy_verify(password)
            self.logger.warning("login_failed", account_id=account.id, reason="no_password")
            self._audit("login_failed", account.id, reason="no_password")
            raise AuthError(AuthErrorCode.INVALID_CREDENTIALS)

        if not self.verify_password(account, password):
            updated = self.store.record_failed_login(
                account.id,
                threshold=MAX_FAILED_LOGIN_ATTEMPTS,
                lock_duration=ACCOUNT_LOCK_DURATION,
                now=now,
            )
            self.logger.warning(
                "login_failed",
                account_id=account.id,
                reason="bad_password",
                failed_attempts=updated.failed_login_attempts,
                locked=updated.locked_until is not None,
            )
            self._audit(
                "login_failed",
                account.id,
                reason="bad_password",
                failed_attempts=updated.failed_login_attempts,
            )
            raise AuthError(AuthErrorCode.INVALID_CREDENTIALS)

        account = self.store.reset_failed_logins(account.id)
        self.logger.info("login_success", account_id=account.id, email_hash=email_hash)
        self._audit("login_success", account.id, method="password")
        return account

    def change_password(
        self,
        account_id: int,
        current_password: Optional[str],
        new_password: Optional[str],
    ) -> None:
        """Replace the password hash after re-verifying the current password.

        Sessions issued before the change stay valid until they expire.
        """
        if not current_password or not new_password:
            raise AuthError(
                AuthErrorCode.VALIDATION_FAILED,
                "Current password and new password are required",
            )
        if current_password == new_password:
            raise AuthError(
                AuthErrorCode.VALIDATION_FAILED,
                "New password must be different from current password",
            )
        account = self.store.get_account(account_id)
        if account is None:
            raise AuthError(AuthErrorCode.UNAUTHORIZED, "User not found")
        if not account.has_password:
            raise AuthError(
                AuthErrorCode.NO_PASSWORD_SET,
                "No password is set for this account. Use your sign-in provider or passkey instead.",
            )
        if not self.verify_password(account, current_password):
            self.logger.warning("change_password_invalid_current", account_id=account_id)
            raise AuthError(AuthErrorCode.INVALID_CREDENTIALS, "Current password is incorrect")

        result = self.validator.validate(new_password)
        if not result.valid:
            raise AuthError(AuthErrorCode.VALIDATION_FAILED, result.first_error)

        self.store.update_password_hash(account_id, self.hash_password(new_password))
        self.logger.info("password_changed", account_id=account_id)
        self._audit("password_changed", account_id)

    # -- registration -------------------------------------------------------

    def register(
        self,
        email: Optional[str],
        password: Optional[str],
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        consent: Optional[SignupConsent] = None,
    ) -> Account:
        if not email or not password:
            raise AuthError(AuthErrorCode.VALIDATION_FAILED, "Email and password are required")

        result = self.validator.validate(password)
        if not result.valid:
            raise AuthError(AuthErrorCode.VALIDATION_FAILED, result.first_error)
        for warning in result.warnings:
            self.logger.warning("register_password_warning", warning=warning)

        if self.store.get_account_by_email(email):
            raise AuthError(AuthErrorCode.USER_EXISTS, "An account with this email already exists")

        accepted = consent if consent and consent.is_complete() else None
        try:
            account = self.store.create_account(
                email=email,
                password_hash=self.hash_password(password),
                first_name=first_name,
                last_name=last_name,
                email_verified=False,
                terms_accepted_at=(accepted.accepted_at or self._now()) if accepted else None,
                terms_version=accepted.terms_version if accepted else None,
                privacy_version=accepted.privacy_version if accepted else None,
            )
        except ConstraintViolation as exc:
            if exc.field == "email":
                raise AuthError(
                    AuthErrorCode.USER_EXISTS, "An account with this email already exists"
                ) from exc
            raise
        self.logger.info("account_registered", account_id=account.id, method="password")
        self._audit("account_registered", account.id, method="password")
        return account

    def create_passkey_account(
        self,
        email: str,
        consent: SignupConsent,
        *,
        display_name: Optional[str] = None,
    ) -> Account:
        """Create a password-less account for a passkey-first signup."""
        if not consent.is_complete():
            raise ConsentRequired()
        try:
            account = self.store.create_account(
                email=email,
                username=display_name,
                email_verified=False,
                terms_accepted_at=consent.accepted_at or self._now(),
                terms_version=consent.terms_version,
                privacy_version=consent.privacy_version,
            )
        except ConstraintViolation as exc:
            raise AuthError(
                AuthErrorCode.USER_EXISTS, "An account with this email already exists"
            ) from exc
        self.logger.info("account_registered", account_id=account.id, method="passkey")
        self._audit("account_registered", account.id, method="passkey")
        return account

    # -- external identities ------------------------------------------------

    def find_or_create_oauth_account(
        self, identity: ExternalIdentity, consent: Optional[SignupConsent]
    ) -> tuple[Account, bool]:
        """Resolve an OAuth identity to an account, creating one only with consent.

        Returns the account and whether it was newly created.
        """
        return self._resolve_identity(identity, consent=consent, require_consent=True)

    def find_or_create_apple_account(self, identity: ExternalIdentity) -> tuple[Account, bool]:
        return self._resolve_identity(identity, consent=None, require_consent=False)

    def _resolve_identity(
        self,
        identity: ExternalIdentity,
        *,
        consent: Optional[SignupConsent],
        require_consent: bool,
    ) -> tuple[Account, bool]:
        link = self.store.get_oauth_account(identity.provider, identity.provider_user_id)
        if link:
            account = self.store.get_account(link.account_id)
            if account is None:
                raise AuthError(AuthErrorCode.INTERNAL, "linked account missing")
            self._ensure_usable(account)
            self._link(account, identity)
            self._audit("login_success", account.id, method=identity.provider)
            return account, False

        if identity.email and identity.email_verified:
            existing = self.store.get_account_by_email(identity.email)
            if existing:
                self._ensure_usable(existing)
                self._link(existing, identity)
                self.logger.info(
                    "oauth_account_linked", account_id=existing.id, provider=identity.provider
                )
                self._audit("oauth_linked", existing.id, provider=identity.provider)
                return existing, False

        if require_consent and not (consent and consent.is_complete()):
            self.logger.warning(
                "oauth_signup_without_consent",
                provider=identity.provider,
                email_hash=hash_email(identity.email),
            )
            raise ConsentRequired()

        first_name, last_name = identity.first_name, identity.last_name
        if not first_name and identity.name:
            first_name, _, last_name = identity.name.partition(" ")
            last_name = last_name or None
        try:
            account = self.store.create_account(
                email=identity.email,
                first_name=first_name,
                last_name=last_name,
                avatar_url=identity.avatar_url,
                email_verified=bool(identity.email) and identity.email_verified,
                terms_accepted_at=(consent.accepted_at or self._now()) if consent else None,
                terms_version=consent.terms_version if consent else None,
                privacy_version=consent.privacy_version if consent else None,
            )
        except ConstraintViolation as exc:
            raise AuthError(AuthErrorCode.USER_EXISTS) from exc
        try:
            self._link(account, identity)
        except AuthError:
            # Another request linked this identity first
            self.store.hard_delete_account(account.id)
            raise
        self.logger.info("account_registered", account_id=account.id, method=identity.provider)
        self._audit("account_registered", account.id, method=identity.provider)
        return account, True

    def _ensure_usable(self, account: Account) -> None:
        if account.deleted_at is not None or not account.is_active:
            raise AuthError(AuthErrorCode.INVALID_CREDENTIALS, "This account is not active")

    def _link(self, account: Account, identity: ExternalIdentity) -> OAuthAccount:
        try:
            return self.store.link_oauth_account(
                account.id,
                identity.provider,
                identity.provider_user_id,
                provider_email=identity.email,
                provider_name=identity.name,
                provider_avatar_url=identity.avatar_url,
                access_token=identity.access_token,
                refresh_token=identity.refresh_token,
                expires_at=identity.expires_at,
            )
        except ConstraintViolation as exc:
            self.logger.error(
                "oauth_link_conflict", account_id=account.id, provider=identity.provider
            )
            raise AuthError(AuthErrorCode.INVALID_CREDENTIALS, "authentication failed") from exc

    def list_oauth_accounts(self, account: Account) -> List[OAuthAccount]:
        return self.store.list_oauth_accounts(account.id)

    def unlink_oauth_account(self, account: Account, provider: str) -> None:
        """Remove a linked provider unless it is the account's last sign-in method."""
        links = self.store.list_oauth_accounts(account.id)
        if not any(link.provider == provider for link in links):
            raise AuthError(AuthErrorCode.VALIDATION_FAILED, "OAuth account not found")
        current = self.store.get_account(account.id) or account
        others = [link for link in links if link.provider != provider]
        passkeys = self.store.list_passkey_credentials(account.id)
        if not current.has_password and not others and not passkeys:
            raise AuthError(AuthErrorCode.VALIDATION_FAILED, UNLINK_ONLY_METHOD_MESSAGE)
        self.store.unlink_oauth_account(account.id, provider)
        self.logger.info("oauth_account_unlinked", account_id=account.id, provider=provider)
        self._audit("oauth_unlinked", account.id, provider=provider)
