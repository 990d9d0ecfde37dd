from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol

from showauth.config import Settings
from showauth.logging import get_logger, hash_email
from showauth.service.audit import AuditLog
from showauth.service.auth import AuthService
from showauth.service.email import EmailSender
from showauth.service.errors import AuthError, AuthErrorCode
from showauth.service.tokens import TokenIssuer, TokenPurpose
from showauth.storage.models import Account, OAuthAccount, PasskeyCredential, ShowRecord

logger = get_logger(__name__)

RECOVERY_WINDOW = timedelta(days=30)
GRACE_PERIOD_DAYS = 30
EXPORT_VERSION = "1.0"

OAUTH_DELETE_MESSAGE = (
    "OAuth users must confirm deletion via email. Please use the email confirmation option."
)


class LifecycleStore(Protocol):
    def get_account(self, account_id: int) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def set_email_verified(self, account_id: int, verified: bool = True) -> Account: ...

    def soft_delete_account(
        self, account_id: int, *, reason: Optional[str] = None, now: Optional[datetime] = None
    ) -> Account: ...

    def reactivate_account(self, account_id: int) -> Account: ...

    def list_expired_deleted_accounts(self, cutoff: datetime) -> List[Account]: ...

    def hard_delete_account(self, account_id: int) -> bool: ...

    def list_oauth_accounts(self, account_id: int) -> List[OAuthAccount]: ...

    def list_passkey_credentials(self, account_id: int) -> List[PasskeyCredential]: ...


class ShowActivitySource(Protocol):
    """Read-only view of an account's show activity owned by the listings domain."""

    def count_submitted_shows(self, account_id: int) -> int: ...

    def count_saved_shows(self, account_id: int) -> int: ...

    def list_saved_shows(self, account_id: int) -> List[ShowRecord]: ...

    def list_submitted_shows(self, account_id: int) -> List[ShowRecord]: ...


@dataclass
class DeletionSummary:
    shows_count: int
    saved_shows_count: int
    passkeys_count: int
    has_password: bool


@dataclass
class DeletionResult:
    deletion_date: datetime
    grace_period_days: int = GRACE_PERIOD_DAYS


def days_remaining(deleted_at: datetime, now: datetime) -> int:
    remaining = deleted_at + RECOVERY_WINDOW - now
    hours = remaining.total_seconds() / 3600
    return int(hours / 24) + 1


def _show_dict(show: ShowRecord) -> Dict[str, Any]:
    return {
        "id": show.id,
        "title": show.title,
        "event_date": show.event_date,
        "venue": show.venue,
        "saved_at": show.saved_at.isoformat() if show.saved_at else None,
    }


class AccountLifecycleService:
    """Soft delete, recovery, export, email verification and magic links.

    Deleted accounts stay recoverable for thirty days from ``deleted_at``;
    after that only the administrative purge touches them.
    """

    def __init__(
        self,
        store: LifecycleStore,
        settings: Settings,
        *,
        auth: AuthService,
        tokens: TokenIssuer,
        email: EmailSender,
        shows: Optional[ShowActivitySource] = None,
        audit: Optional[AuditLog] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.auth = auth
        self.tokens = tokens
        self.email = email
        self.shows = shows
        self.audit = audit
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _now(self) -> datetime:
        return self._clock()

    def _audit(self, action: str, account_id: Optional[int] = None, **metadata) -> None:
        if self.audit:
            self.audit.record(action, account_id, **metadata)

    def is_recoverable(self, account: Account) -> bool:
        if account.deleted_at is None:
            return False
        return self._now() - account.deleted_at <= RECOVERY_WINDOW

    def _require_email_service(self) -> None:
        if not self.email.is_configured:
            raise AuthError(
                AuthErrorCode.SERVICE_UNAVAILABLE, "Email service is not configured"
            )

    def _account_for_token(
        self,
        purpose: TokenPurpose,
        token: str,
        *,
        invalid_message: str,
        mismatch_message: Optional[str] = None,
    ) -> Account:
        try:
            claims = self.tokens.validate_token(purpose, token)
        except AuthError as exc:
            raise AuthError(exc.code, invalid_message) from exc
        account = self.store.get_account(claims.account_id)
        if account is None:
            raise AuthError(AuthErrorCode.TOKEN_INVALID, invalid_message)
        try:
            self.tokens.validate_for_account(purpose, token, account)
        except AuthError as exc:
            if exc.code is AuthErrorCode.EMAIL_MISMATCH and mismatch_message:
                raise AuthError(exc.code, mismatch_message) from exc
            raise
        return account

    # -- recovery -------------------------------------------------------------

    def request_account_recovery(self, email: Optional[str]) -> bool:
        """Email a recovery link to a soft-deleted account.

        Returns False when nothing was sent because the account is unknown;
        the caller reports that as success.
        """
        if not email:
            raise AuthError(AuthErrorCode.VALIDATION_FAILED, "Email is required")
        account = self.store.get_account_by_email(email)
        if account is None:
            logger.info("recovery_request_unknown", email_hash=hash_email(email))
            return False
        if account.deleted_at is None and account.is_active:
            raise AuthError(
                AuthErrorCode.ACCOUNT_ACTIVE,
                "This account is active. Please log in normally.",
                data={"has_password": account.has_password},
            )
        if not self.is_recoverable(account):
            raise AuthError(
                AuthErrorCode.ACCOUNT_NOT_RECOVERABLE,
                "This account can no longer be recovered. The 30-day recovery period has expired.",
            )
        self._require_email_service()

        token = self.tokens.create_token(
            TokenPurpose.ACCOUNT_RECOVERY, account.id, account.email
        )
        remaining = days_remaining(account.deleted_at, self._now())
        if not self.email.send_recovery_email(account.email, token, remaining):
            raise AuthError(
                AuthErrorCode.SERVICE_UNAVAILABLE, "Failed to send recovery email"
            )
        logger.info("recovery_email_sent", account_id=account.id, days_remaining=remaining)
        self._audit("recovery_requested", account.id)
        return True

    def confirm_account_recovery(self, token: Optional[str]) -> Account:
        if not token:
            raise AuthError(AuthErrorCode.VALIDATION_FAILED, "Recovery token is required")
        account = self._account_for_token(
            TokenPurpose.ACCOUNT_RECOVERY,
            token,
            invalid_message="Invalid or expired recovery token. Please request a new one.",
        )
        if account.deleted_at is None and account.is_active:
            raise AuthError(AuthErrorCode.ACCOUNT_ACTIVE, "This account is already active")
        if not self.is_recoverable(account):
            raise AuthError(
                AuthErrorCode.ACCOUNT_NOT_RECOVERABLE,
                "This account can no longer be recovered. The 30-day recovery period has expired.",
            )
        restored = self.store.reactivate_account(account.id)
        logger.info("account_recovered", account_id=account.id, method="email")
        self._audit("account_recovered", account.id, method="email")
        return restored

    def recover_account(self, email: Optional[str], password: Optional[str]) -> Account:
        """Restore a soft-deleted account by re-entering its password."""
        if not email or not password:
            raise AuthError(AuthErrorCode.VALIDATION_FAILED, "Email and password are required")
        account = self.store.get_account_by_email(email)
        if account is None:
            self.auth.dummy_verify(password)
            raise AuthError(AuthErrorCode.INVALID_CREDENTIALS, "Invalid credentials")
        if account.deleted_at is None and account.is_active:
            raise AuthError(
                AuthErrorCode.ACCOUNT_ACTIVE,
                "This account is already active. Please log in normally.",
            )
        if not self.is_recoverable(account):
            raise AuthError(
                AuthErrorCode.ACCOUNT_NOT_RECOVERABLE,
                "This account can no longer be recovered. The 30-day recovery period has expired.",
            )
        if not account.has_password:
            raise AuthError(
                AuthErrorCode.NO_PASSWORD,
                "This account does not have a password. Please use the email recovery option.",
            )
        if not self.auth.verify_password(account, password):
            logger.warning("recover_account_bad_password", account_id=account.id)
            raise AuthError(AuthErrorCode.INVALID_CREDENTIALS, "Invalid credentials")
        restored = self.store.reactivate_account(account.id)
        logger.info("account_recovered", account_id=account.id, method="password")
        self._audit("account_recovered", account.id, method="password")
        return restored

    # -- deletion and export ------------------------------------------------

    def get_deletion_summary(self, account: Account) -> DeletionSummary:
        return DeletionSummary(
            shows_count=self.shows.count_submitted_shows(account.id) if self.shows else 0,
            saved_shows_count=self.shows.count_saved_shows(account.id) if self.shows else 0,
            passkeys_count=len(self.store.list_passkey_credentials(account.id)),
            has_password=account.has_password,
        )

    def delete_account(
        self,
        account: Account,
        password: Optional[str],
        reason: Optional[str] = None,
    ) -> DeletionResult:
        if not account.has_password:
            raise AuthError(AuthErrorCode.VALIDATION_FAILED, OAUTH_DELETE_MESSAGE)
        if not password:
            raise AuthError(AuthErrorCode.VALIDATION_FAILED, "Password is required")
        if not self.auth.verify_password(account, password):
            logger.warning("delete_account_bad_password", account_id=account.id)
            raise AuthError(AuthErrorCode.INVALID_CREDENTIALS, "Password is incorrect")

        now = self._now()
        reason = (reason or "").strip()[:500] or None
        self.store.soft_delete_account(account.id, reason=reason, now=now)
        logger.info("account_soft_deleted", account_id=account.id, has_reason=bool(reason))
        self._audit("account_deleted", account.id, reason=reason)
        return DeletionResult(deletion_date=now + RECOVERY_WINDOW)

    def export_data(self, account: Account) -> Dict[str, Any]:
        """Everything the account owner is entitled to download about themselves."""
        profile = account.to_public_dict()
        profile.update(
            {
                "terms_accepted_at": account.terms_accepted_at.isoformat()
                if account.terms_accepted_at
                else None,
                "terms_version": account.terms_version,
                "privacy_version": account.privacy_version,
            }
        )
        passkeys = [
            {
                "id": cred.id,
                "display_name": cred.display_name,
                "created_at": cred.created_at.isoformat(),
                "last_used_at": cred.last_used_at.isoformat() if cred.last_used_at else None,
                "backup_eligible": cred.backup_eligible,
            }
            for cred in self.store.list_passkey_credentials(account.id)
        ]
        saved = self.shows.list_saved_shows(account.id) if self.shows else []
        submitted = self.shows.list_submitted_shows(account.id) if self.shows else []
        self._audit("data_exported", account.id)
        return {
            "export_version": EXPORT_VERSION,
            "exported_at": self._now().isoformat(),
            "profile": profile,
            "oauth_accounts": [
                link.to_public_dict() for link in self.store.list_oauth_accounts(account.id)
            ],
            "passkeys": passkeys,
            "saved_shows": [_show_dict(show) for show in saved],
            "submitted_shows": [_show_dict(show) for show in submitted],
        }

    def purge_expired_accounts(self, now: Optional[datetime] = None) -> int:
        """Hard-delete accounts whose recovery window has closed."""
        cutoff = (now or self._now()) - RECOVERY_WINDOW
        purged = 0
        for account in self.store.list_expired_deleted_accounts(cutoff):
            if self.store.hard_delete_account(account.id):
                purged += 1
                self._audit("account_purged", account.id)
        if purged:
            logger.info("expired_accounts_purged", count=purged)
        return purged

    # -- email verification ---------------------------------------------------

    def send_verification_email(self, account: Account) -> None:
        if not account.email:
            raise AuthError(AuthErrorCode.NO_EMAIL, "User does not have an email address")
        if account.email_verified:
            raise AuthError(AuthErrorCode.ALREADY_VERIFIED, "Email is already verified")
        self._require_email_service()
        token = self.tokens.create_token(
            TokenPurpose.EMAIL_VERIFICATION, account.id, account.email
        )
        if not self.email.send_verification_email(account.email, token):
            raise AuthError(
                AuthErrorCode.SERVICE_UNAVAILABLE, "Failed to send verification email"
            )
        logger.info("verification_email_sent", account_id=account.id)

    def confirm_email_verification(self, token: Optional[str]) -> tuple[Account, bool]:
        """Mark the token's account verified.

        Returns the account and whether this call changed it; a second
        confirmation of the same address is a no-op success.
        """
        if not token:
            raise AuthError(AuthErrorCode.VALIDATION_FAILED, "Verification token is required")
        account = self._account_for_token(
            TokenPurpose.EMAIL_VERIFICATION,
            token,
            invalid_message="Invalid or expired verification token",
            mismatch_message="Verification token does not match current email",
        )
        if account.email_verified:
            return account, False
        account = self.store.set_email_verified(account.id, True)
        logger.info("email_verified", account_id=account.id)
        self._audit("email_verified", account.id)
        return account, True

    # -- magic link -------------------------------------------------------------

    def send_magic_link(self, email: Optional[str]) -> None:
        """Email a one-click sign-in link.

        Unknown, inactive and unverified addresses get the same outcome as
        a real send so the endpoint cannot be used to probe for accounts.
        """
        if not email:
            raise AuthError(AuthErrorCode.VALIDATION_FAILED, "Email is required")
        self._require_email_service()
        account = self.store.get_account_by_email(email)
        if (
            account is None
            or account.deleted_at is not None
            or not account.is_active
            or not account.email_verified
        ):
            logger.info("magic_link_not_sent", email_hash=hash_email(email))
            return
        token = self.tokens.create_token(TokenPurpose.MAGIC_LINK, account.id, account.email)
        if not self.email.send_magic_link_email(account.email, token):
            logger.error("magic_link_send_failed", account_id=account.id)
            return
        logger.info("magic_link_sent", account_id=account.id)

    def verify_magic_link(self, token: Optional[str]) -> Account:
        if not token:
            raise AuthError(AuthErrorCode.VALIDATION_FAILED, "Magic link token is required")
        account = self._account_for_token(
            TokenPurpose.MAGIC_LINK,
            token,
            invalid_message="Invalid or expired magic link. Please request a new one.",
            mismatch_message="This magic link is no longer valid",
        )
        if account.deleted_at is not None or not account.is_active:
            raise AuthError(AuthErrorCode.INVALID_CREDENTIALS, "This account is not active")
        if not account.email_verified:
            account = self.store.set_email_verified(account.id, True)
        logger.info("magic_link_login", account_id=account.id)
        self._audit("login_success", account.id, method="magic_link")
        return account
