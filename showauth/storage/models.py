from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Account:
    id: int
    email: Optional[str] = None
    password_hash: Optional[str] = None
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    avatar_url: Optional[str] = None
    is_active: bool = True
    is_admin: bool = False
    email_verified: bool = False
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    deletion_reason: Optional[str] = None
    terms_accepted_at: Optional[datetime] = None
    terms_version: Optional[str] = None
    privacy_version: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now

    def to_public_dict(self) -> Dict:
        """Fields safe to return to the account owner."""
        return {
            "id": self.id,
            "email": self.email,
            "username": self.username,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "avatar_url": self.avatar_url,
            "is_active": self.is_active,
            "is_admin": self.is_admin,
            "email_verified": self.email_verified,
            "has_password": self.has_password,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class OAuthAccount:
    account_id: int
    provider: str
    provider_user_id: str
    provider_email: Optional[str] = None
    provider_name: Optional[str] = None
    provider_avatar_url: Optional[str] = None
    # Fernet ciphertext; never serialised to clients
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_public_dict(self) -> Dict:
        return {
            "provider": self.provider,
            "provider_email": self.provider_email,
            "provider_name": self.provider_name,
            "provider_avatar_url": self.provider_avatar_url,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class PasskeyCredential:
    id: int
    account_id: int
    credential_id: bytes
    public_key: bytes
    sign_count: int = 0
    aaguid: Optional[str] = None
    transports: List[str] = field(default_factory=list)
    backup_eligible: bool = False
    backup_state: bool = False
    clone_warning: bool = False
    display_name: str = "Passkey"
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: Optional[datetime] = None


@dataclass
class PasskeyChallenge:
    id: str
    challenge: bytes
    operation: str
    expires_at: datetime
    account_id: Optional[int] = None
    email: Optional[str] = None
    display_name: Optional[str] = None
    # signup consent captured at ceremony start
    meta: Dict | None = None

    @classmethod
    def new(
        cls,
        challenge: bytes,
        operation: str,
        *,
        account_id: Optional[int] = None,
        email: Optional[str] = None,
        display_name: Optional[str] = None,
        meta: Optional[Dict] = None,
        ttl: timedelta = timedelta(minutes=5),
    ) -> "PasskeyChallenge":
        return cls(
            id=str(uuid.uuid4()),
            challenge=challenge,
            operation=operation,
            expires_at=utcnow() + ttl,
            account_id=account_id,
            email=email,
            display_name=display_name,
            meta=meta,
        )


@dataclass
class AuditEvent:
    action: str
    account_id: Optional[int] = None
    metadata: Dict | None = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class ShowRecord:
    """Read-only projection of a show for exports and deletion summaries."""

    id: int
    title: str
    event_date: Optional[str] = None
    venue: Optional[str] = None
    saved_at: Optional[datetime] = None


@dataclass
class ApiToken:
    """Long-lived admin credential; only the SHA-256 of the token is stored."""

    id: int
    account_id: int
    token_hash: str
    expires_at: datetime
    description: Optional[str] = None
    scope: str = "admin"
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    def to_public_dict(self) -> Dict:
        return {
            "id": self.id,
            "description": self.description,
            "scope": self.scope,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "last_used_at": self.last_used_at.isoformat() if self.last_used_at else None,
            "is_expired": self.is_expired(),
        }
