from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Protocol

from showauth.config import Settings
from showauth.logging import get_logger
from showauth.service.audit import AuditLog
from showauth.service.errors import AuthError, AuthErrorCode
from showauth.storage.models import Account, ApiToken, utcnow

logger = get_logger(__name__)

# "psychic homily key"
TOKEN_PREFIX = "phk_"
TOKEN_BYTES = 32
# revoked or long-expired rows are kept this long for the admin listing
CLEANUP_AFTER = timedelta(days=30)


def hash_api_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def is_api_token(token: Optional[str]) -> bool:
    return bool(token) and token.startswith(TOKEN_PREFIX)


class ApiTokenStore(Protocol):
    def get_account(self, account_id: int) -> Optional[Account]: ...

    def create_api_token(
        self,
        account_id: int,
        token_hash: str,
        expires_at: datetime,
        *,
        description: Optional[str] = None,
        scope: str = "admin",
    ) -> ApiToken: ...

    def get_api_token_by_hash(self, token_hash: str) -> Optional[ApiToken]: ...

    def list_api_tokens(self, account_id: int) -> List[ApiToken]: ...

    def revoke_api_token(
        self, account_id: int, token_id: int, *, now: Optional[datetime] = None
    ) -> bool: ...

    def touch_api_token(self, token_id: int, *, used_at: Optional[datetime] = None) -> None: ...

    def cleanup_api_tokens(self, cutoff: datetime, *, now: Optional[datetime] = None) -> int: ...


@dataclass
class IssuedApiToken:
    """A freshly created token; ``token`` is the only time the plaintext exists."""

    token: str
    record: ApiToken

    def to_public_dict(self) -> dict:
        data = self.record.to_public_dict()
        data.pop("last_used_at", None)
        data.pop("is_expired", None)
        data["token"] = self.token
        return data


class ApiTokenService:
    """Admin API tokens for scripted access (scrapers, imports).

    Tokens are ``phk_`` followed by 64 hex characters. Only their SHA-256 is
    stored, so a lost token cannot be recovered, only revoked and reissued.
    """

    def __init__(
        self,
        store: ApiTokenStore,
        settings: Settings,
        *,
        audit: Optional[AuditLog] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.audit = audit

    def create(
        self,
        account: Account,
        *,
        description: Optional[str] = None,
        expiration_days: Optional[int] = None,
    ) -> IssuedApiToken:
        if not account.is_admin:
            raise AuthError(AuthErrorCode.UNAUTHORIZED, "Admin access required", status_code=403)
        days = expiration_days if expiration_days and expiration_days > 0 else self.settings.api_token_default_days
        if days > self.settings.api_token_max_days:
            raise AuthError(
                AuthErrorCode.VALIDATION_FAILED,
                f"Token lifetime cannot exceed {self.settings.api_token_max_days} days",
            )
        plaintext = TOKEN_PREFIX + secrets.token_hex(TOKEN_BYTES)
        record = self.store.create_api_token(
            account.id,
            hash_api_token(plaintext),
            utcnow() + timedelta(days=days),
            description=(description or "").strip() or None,
        )
        logger.info("api_token_created", account_id=account.id, api_token_id=record.id, days=days)
        if self.audit:
            self.audit.record("api_token_created", account.id, api_token_id=record.id)
        return IssuedApiToken(token=plaintext, record=record)

    def validate(self, token: str) -> Account:
        """Resolve a presented ``phk_`` token to its active admin account."""
        record = self.store.get_api_token_by_hash(hash_api_token(token))
        reason = None
        account = None
        if record is None:
            reason = "unknown"
        elif record.is_revoked:
            reason = "revoked"
        elif record.is_expired():
            reason = "expired"
        else:
            account = self.store.get_account(record.account_id)
            if account is None or not account.is_active or account.deleted_at is not None:
                reason = "account_inactive"
            elif record.scope == "admin" and not account.is_admin:
                reason = "not_admin"
        if reason is not None:
            logger.warning("api_token_rejected", reason=reason)
            raise AuthError(AuthErrorCode.TOKEN_INVALID, "Invalid API token", status_code=401)
        self.store.touch_api_token(record.id)
        return account

    def list_tokens(self, account: Account) -> List[ApiToken]:
        return self.store.list_api_tokens(account.id)

    def revoke(self, account: Account, token_id: int) -> None:
        if not self.store.revoke_api_token(account.id, token_id):
            raise AuthError(
                AuthErrorCode.VALIDATION_FAILED,
                "Token not found or already revoked",
                status_code=404,
            )
        logger.info("api_token_revoked", account_id=account.id, api_token_id=token_id)
        if self.audit:
            self.audit.record("api_token_revoked", account.id, api_token_id=token_id)

    def cleanup(self, *, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        return self.store.cleanup_api_tokens(now - CLEANUP_AFTER, now=now)
