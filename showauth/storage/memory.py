from __future__ import annotations

import base64
import json
import threading
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

from showauth.logging import get_logger
from showauth.storage.common import ProviderTokenCipher, normalize_email
from showauth.storage.errors import ConstraintViolation
from showauth.storage.models import (
    Account,
    ApiToken,
    AuditEvent,
    OAuthAccount,
    PasskeyChallenge,
    PasskeyCredential,
    ShowRecord,
    utcnow,
)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class MemoryStore:
    """In-process credential store used for development and tests.

    Every mutation happens under ``_data_lock`` so per-account read-modify-write
    operations (lockout counters, soft delete, recovery) are atomic. Reads
    return copies; callers never hold references into the store's state.
    When ``fs_root`` is given, accounts and linked identities are persisted to
    a JSON snapshot so a dev server keeps its users across restarts.
    """

    def __init__(
        self,
        fs_root: Optional[str] = None,
        *,
        token_encryption_key: Optional[str] = None,
    ) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[int, Account] = {}
        self.oauth_accounts: List[OAuthAccount] = []
        self.passkeys: Dict[int, PasskeyCredential] = {}
        self.challenges: Dict[str, PasskeyChallenge] = {}
        self.audit_events: List[AuditEvent] = []
        self.saved_shows: Dict[int, List[ShowRecord]] = {}
        self.submitted_shows: Dict[int, List[ShowRecord]] = {}
        self.api_tokens: Dict[int, ApiToken] = {}
        self._account_seq = 0
        self._passkey_seq = 0
        self._api_token_seq = 0
        # RLock so helpers can nest inside public operations
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root:
            self.fs_root.mkdir(parents=True, exist_ok=True)
        self.token_cipher = ProviderTokenCipher(token_encryption_key)
        if self.fs_root:
            self._load_state()

    def decrypt_provider_token(self, ciphertext: Optional[str]) -> Optional[str]:
        return self.token_cipher.decrypt(ciphertext)

    # -- accounts -----------------------------------------------------------

    def create_account(
        self,
        *,
        email: Optional[str] = None,
        password_hash: Optional[str] = None,
        username: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
        email_verified: bool = False,
        is_admin: bool = False,
        terms_accepted_at: Optional[datetime] = None,
        terms_version: Optional[str] = None,
        privacy_version: Optional[str] = None,
    ) -> Account:
        normalized = normalize_email(email)
        with self._data_lock:
            if normalized and any(
                a.email == normalized for a in self.accounts.values()
            ):
                raise ConstraintViolation("email already exists", {"field": "email"})
            self._account_seq += 1
            account = Account(
                id=self._account_seq,
                email=normalized,
                password_hash=password_hash,
                username=username,
                first_name=first_name,
                last_name=last_name,
                avatar_url=avatar_url,
                email_verified=email_verified,
                is_admin=is_admin,
                terms_accepted_at=terms_accepted_at,
                terms_version=terms_version,
                privacy_version=privacy_version,
            )
            self.accounts[account.id] = account
            self._persist_state()
            return replace(account)

    def get_account(self, account_id: int) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return replace(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        normalized = normalize_email(email)
        if not normalized:
            return None
        with self._data_lock:
            account = next(
                (a for a in self.accounts.values() if a.email == normalized), None
            )
            return replace(account) if account else None

    def _require(self, account_id: int) -> Account:
        account = self.accounts.get(account_id)
        if not account:
            raise ConstraintViolation("account not found", {"account_id": account_id})
        return account

    def _mutate(self, account_id: int, **changes: Any) -> Account:
        with self._data_lock:
            account = self._require(account_id)
            for name, value in changes.items():
                setattr(account, name, value)
            account.updated_at = utcnow()
            self._persist_state()
            return replace(account)

    def update_email(self, account_id: int, email: str) -> Account:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(
                a.email == normalized and a.id != account_id
                for a in self.accounts.values()
            ):
                raise ConstraintViolation("email already exists", {"field": "email"})
            return self._mutate(account_id, email=normalized, email_verified=False)

    def update_password_hash(self, account_id: int, password_hash: str) -> Account:
        return self._mutate(account_id, password_hash=password_hash)

    def set_email_verified(self, account_id: int, verified: bool = True) -> Account:
        return self._mutate(account_id, email_verified=verified)

    def record_failed_login(
        self,
        account_id: int,
        *,
        threshold: int,
        lock_duration: timedelta,
        now: Optional[datetime] = None,
    ) -> Account:
        """Increment the failure counter and lock once it reaches ``threshold``."""
        now = now or utcnow()
        with self._data_lock:
            account = self._require(account_id)
            account.failed_login_attempts += 1
            if account.failed_login_attempts >= threshold:
                account.locked_until = now + lock_duration
            account.updated_at = now
            self._persist_state()
            return replace(account)

    def reset_failed_logins(self, account_id: int) -> Account:
        return self._mutate(account_id, failed_login_attempts=0, locked_until=None)

    def soft_delete_account(
        self,
        account_id: int,
        *,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Account:
        return self._mutate(
            account_id,
            is_active=False,
            deleted_at=now or utcnow(),
            deletion_reason=reason,
            failed_login_attempts=0,
            locked_until=None,
        )

    def reactivate_account(self, account_id: int) -> Account:
        return self._mutate(
            account_id,
            is_active=True,
            deleted_at=None,
            deletion_reason=None,
            failed_login_attempts=0,
            locked_until=None,
        )

    def list_expired_deleted_accounts(self, cutoff: datetime) -> List[Account]:
        with self._data_lock:
            return [
                replace(a)
                for a in self.accounts.values()
                if a.deleted_at is not None and a.deleted_at < cutoff
            ]

    def hard_delete_account(self, account_id: int) -> bool:
        with self._data_lock:
            if self.accounts.pop(account_id, None) is None:
                return False
            self.oauth_accounts = [
                o for o in self.oauth_accounts if o.account_id != account_id
            ]
            self.passkeys = {
                pk_id: pk
                for pk_id, pk in self.passkeys.items()
                if pk.account_id != account_id
            }
            self.challenges = {
                cid: ch
                for cid, ch in self.challenges.items()
                if ch.account_id != account_id
            }
            self.saved_shows.pop(account_id, None)
            self.submitted_shows.pop(account_id, None)
            self.api_tokens = {
                tid: t for tid, t in self.api_tokens.items() if t.account_id != account_id
            }
            self._persist_state()
            return True

    # -- linked OAuth identities ---------------------------------------------

    def get_oauth_account(
        self, provider: str, provider_user_id: str
    ) -> Optional[OAuthAccount]:
        with self._data_lock:
            link = next(
                (
                    o
                    for o in self.oauth_accounts
                    if o.provider == provider and o.provider_user_id == provider_user_id
                ),
                None,
            )
            return replace(link) if link else None

    def link_oauth_account(
        self,
        account_id: int,
        provider: str,
        provider_user_id: str,
        *,
        provider_email: Optional[str] = None,
        provider_name: Optional[str] = None,
        provider_avatar_url: Optional[str] = None,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> OAuthAccount:
        with self._data_lock:
            self._require(account_id)
            existing = next(
                (
                    o
                    for o in self.oauth_accounts
                    if o.provider == provider and o.provider_user_id == provider_user_id
                ),
                None,
            )
            if existing and existing.account_id != account_id:
                raise ConstraintViolation(
                    "external identity already linked to another account",
                    {"field": "provider_user_id", "provider": provider},
                )
            if existing is None:
                existing = OAuthAccount(
                    account_id=account_id,
                    provider=provider,
                    provider_user_id=provider_user_id,
                )
                self.oauth_accounts.append(existing)
            existing.provider_email = provider_email
            existing.provider_name = provider_name
            existing.provider_avatar_url = provider_avatar_url
            existing.access_token = self.token_cipher.encrypt(access_token)
            existing.refresh_token = self.token_cipher.encrypt(refresh_token)
            existing.expires_at = expires_at
            self._persist_state()
            return replace(existing)

    def list_oauth_accounts(self, account_id: int) -> List[OAuthAccount]:
        with self._data_lock:
            return [replace(o) for o in self.oauth_accounts if o.account_id == account_id]

    def unlink_oauth_account(self, account_id: int, provider: str) -> bool:
        with self._data_lock:
            before = len(self.oauth_accounts)
            self.oauth_accounts = [
                o
                for o in self.oauth_accounts
                if not (o.account_id == account_id and o.provider == provider)
            ]
            removed = len(self.oauth_accounts) != before
            if removed:
                self._persist_state()
            return removed

    # -- passkey credentials --------------------------------------------------

    def add_passkey_credential(
        self,
        account_id: int,
        credential_id: bytes,
        public_key: bytes,
        *,
        sign_count: int = 0,
        aaguid: Optional[str] = None,
        transports: Optional[List[str]] = None,
        backup_eligible: bool = False,
        backup_state: bool = False,
        display_name: str = "Passkey",
    ) -> PasskeyCredential:
        with self._data_lock:
            self._require(account_id)
            if any(pk.credential_id == credential_id for pk in self.passkeys.values()):
                raise ConstraintViolation(
                    "credential already registered", {"field": "credential_id"}
                )
            self._passkey_seq += 1
            credential = PasskeyCredential(
                id=self._passkey_seq,
                account_id=account_id,
                credential_id=credential_id,
                public_key=public_key,
                sign_count=sign_count,
                aaguid=aaguid,
                transports=list(transports or []),
                backup_eligible=backup_eligible,
                backup_state=backup_state,
                display_name=display_name,
            )
            self.passkeys[credential.id] = credential
            self._persist_state()
            return replace(credential)

    def get_passkey_credential(self, credential_id: bytes) -> Optional[PasskeyCredential]:
        with self._data_lock:
            found = next(
                (pk for pk in self.passkeys.values() if pk.credential_id == credential_id),
                None,
            )
            return replace(found) if found else None

    def list_passkey_credentials(self, account_id: int) -> List[PasskeyCredential]:
        with self._data_lock:
            return sorted(
                (replace(pk) for pk in self.passkeys.values() if pk.account_id == account_id),
                key=lambda pk: pk.id,
            )

    def update_passkey_usage(
        self,
        passkey_id: int,
        sign_count: int,
        *,
        used_at: Optional[datetime] = None,
        backup_state: Optional[bool] = None,
    ) -> None:
        with self._data_lock:
            credential = self.passkeys.get(passkey_id)
            if not credential:
                return
            credential.sign_count = sign_count
            credential.last_used_at = used_at or utcnow()
            if backup_state is not None:
                credential.backup_state = backup_state
            self._persist_state()

    def flag_passkey_clone(self, passkey_id: int) -> None:
        with self._data_lock:
            credential = self.passkeys.get(passkey_id)
            if credential:
                credential.clone_warning = True
                self._persist_state()

    def rename_passkey_credential(
        self, account_id: int, passkey_id: int, display_name: str
    ) -> Optional[PasskeyCredential]:
        with self._data_lock:
            credential = self.passkeys.get(passkey_id)
            if not credential or credential.account_id != account_id:
                return None
            credential.display_name = display_name
            self._persist_state()
            return replace(credential)

    def delete_passkey_credential(self, account_id: int, passkey_id: int) -> bool:
        with self._data_lock:
            credential = self.passkeys.get(passkey_id)
            if not credential or credential.account_id != account_id:
                return False
            del self.passkeys[passkey_id]
            self._persist_state()
            return True

    # -- passkey challenges ---------------------------------------------------

    def save_passkey_challenge(self, challenge: PasskeyChallenge) -> None:
        with self._data_lock:
            self.challenges[challenge.id] = challenge

    def get_passkey_challenge(
        self, challenge_id: str, *, now: Optional[datetime] = None
    ) -> Optional[PasskeyChallenge]:
        now = now or utcnow()
        with self._data_lock:
            challenge = self.challenges.get(challenge_id)
            if challenge and challenge.expires_at <= now:
                del self.challenges[challenge_id]
                return None
            return replace(challenge) if challenge else None

    def delete_passkey_challenge(self, challenge_id: str) -> None:
        with self._data_lock:
            self.challenges.pop(challenge_id, None)

    def cleanup_expired_challenges(self, *, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._data_lock:
            expired = [cid for cid, ch in self.challenges.items() if ch.expires_at <= now]
            for cid in expired:
                del self.challenges[cid]
            return len(expired)

    # -- API tokens -------------------------------------------------------------

    def create_api_token(
        self,
        account_id: int,
        token_hash: str,
        expires_at: datetime,
        *,
        description: Optional[str] = None,
        scope: str = "admin",
    ) -> ApiToken:
        with self._data_lock:
            self._api_token_seq += 1
            token = ApiToken(
                id=self._api_token_seq,
                account_id=account_id,
                token_hash=token_hash,
                expires_at=expires_at,
                description=description,
                scope=scope,
            )
            self.api_tokens[token.id] = token
            self._persist_state()
            return replace(token)

    def get_api_token_by_hash(self, token_hash: str) -> Optional[ApiToken]:
        with self._data_lock:
            for token in self.api_tokens.values():
                if token.token_hash == token_hash:
                    return replace(token)
            return None

    def list_api_tokens(self, account_id: int) -> List[ApiToken]:
        with self._data_lock:
            tokens = [
                replace(t)
                for t in self.api_tokens.values()
                if t.account_id == account_id and t.revoked_at is None
            ]
        return sorted(tokens, key=lambda t: (t.created_at, t.id), reverse=True)

    def revoke_api_token(
        self, account_id: int, token_id: int, *, now: Optional[datetime] = None
    ) -> bool:
        with self._data_lock:
            token = self.api_tokens.get(token_id)
            if not token or token.account_id != account_id or token.revoked_at is not None:
                return False
            token.revoked_at = now or utcnow()
            self._persist_state()
            return True

    def touch_api_token(self, token_id: int, *, used_at: Optional[datetime] = None) -> None:
        with self._data_lock:
            token = self.api_tokens.get(token_id)
            if token:
                token.last_used_at = used_at or utcnow()

    def cleanup_api_tokens(self, cutoff: datetime, *, now: Optional[datetime] = None) -> int:
        """Drop tokens expired before ``cutoff`` or revoked before it."""
        now = now or utcnow()
        with self._data_lock:
            stale = [
                tid
                for tid, t in self.api_tokens.items()
                if (t.expires_at < now and t.expires_at < cutoff)
                or (t.revoked_at is not None and t.revoked_at < cutoff)
            ]
            for tid in stale:
                del self.api_tokens[tid]
            if stale:
                self._persist_state()
            return len(stale)

    # -- show activity (read-only projections) -----------------------------

    def add_saved_show(self, account_id: int, show: ShowRecord) -> None:
        with self._data_lock:
            self.saved_shows.setdefault(account_id, []).append(show)

    def add_submitted_show(self, account_id: int, show: ShowRecord) -> None:
        with self._data_lock:
            self.submitted_shows.setdefault(account_id, []).append(show)

    def count_submitted_shows(self, account_id: int) -> int:
        with self._data_lock:
            return len(self.submitted_shows.get(account_id, []))

    def count_saved_shows(self, account_id: int) -> int:
        with self._data_lock:
            return len(self.saved_shows.get(account_id, []))

    def list_saved_shows(self, account_id: int) -> List[ShowRecord]:
        with self._data_lock:
            return [replace(s) for s in self.saved_shows.get(account_id, [])]

    def list_submitted_shows(self, account_id: int) -> List[ShowRecord]:
        with self._data_lock:
            return [replace(s) for s in self.submitted_shows.get(account_id, [])]

    # -- audit ----------------------------------------------------------------

    def record_audit_event(self, event: AuditEvent) -> None:
        with self._data_lock:
            self.audit_events.append(event)

    def list_audit_events(self, account_id: Optional[int] = None) -> List[AuditEvent]:
        with self._data_lock:
            return [
                e for e in self.audit_events
                if account_id is None or e.account_id == account_id
            ]

    # -- persistence ----------------------------------------------------------

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def _serialize_account(self, account: Account) -> dict:
        return {
            "id": account.id,
            "email": account.email,
            "password_hash": account.password_hash,
            "username": account.username,
            "first_name": account.first_name,
            "last_name": account.last_name,
            "avatar_url": account.avatar_url,
            "is_active": account.is_active,
            "is_admin": account.is_admin,
            "email_verified": account.email_verified,
            "failed_login_attempts": account.failed_login_attempts,
            "locked_until": _iso(account.locked_until),
            "deleted_at": _iso(account.deleted_at),
            "deletion_reason": account.deletion_reason,
            "terms_accepted_at": _iso(account.terms_accepted_at),
            "terms_version": account.terms_version,
            "privacy_version": account.privacy_version,
            "created_at": _iso(account.created_at),
            "updated_at": _iso(account.updated_at),
        }

    def _deserialize_account(self, data: dict) -> Account:
        datetimes = {
            key: _parse_dt(data.get(key))
            for key in ("locked_until", "deleted_at", "terms_accepted_at")
        }
        return Account(
            **{k: v for k, v in data.items() if k not in datetimes and k not in {"created_at", "updated_at"}},
            **datetimes,
            created_at=_parse_dt(data.get("created_at")) or utcnow(),
            updated_at=_parse_dt(data.get("updated_at")) or utcnow(),
        )

    def _serialize_passkey(self, credential: PasskeyCredential) -> dict:
        return {
            "id": credential.id,
            "account_id": credential.account_id,
            "credential_id": base64.b64encode(credential.credential_id).decode(),
            "public_key": base64.b64encode(credential.public_key).decode(),
            "sign_count": credential.sign_count,
            "aaguid": credential.aaguid,
            "transports": credential.transports,
            "backup_eligible": credential.backup_eligible,
            "backup_state": credential.backup_state,
            "clone_warning": credential.clone_warning,
            "display_name": credential.display_name,
            "created_at": _iso(credential.created_at),
            "last_used_at": _iso(credential.last_used_at),
        }

    def _deserialize_passkey(self, data: dict) -> PasskeyCredential:
        return PasskeyCredential(
            id=data["id"],
            account_id=data["account_id"],
            credential_id=base64.b64decode(data["credential_id"]),
            public_key=base64.b64decode(data["public_key"]),
            sign_count=data.get("sign_count", 0),
            aaguid=data.get("aaguid"),
            transports=data.get("transports") or [],
            backup_eligible=data.get("backup_eligible", False),
            backup_state=data.get("backup_state", False),
            clone_warning=data.get("clone_warning", False),
            display_name=data.get("display_name") or "Passkey",
            created_at=_parse_dt(data.get("created_at")) or utcnow(),
            last_used_at=_parse_dt(data.get("last_used_at")),
        )

    def _serialize_oauth(self, link: OAuthAccount) -> dict:
        return {
            "account_id": link.account_id,
            "provider": link.provider,
            "provider_user_id": link.provider_user_id,
            "provider_email": link.provider_email,
            "provider_name": link.provider_name,
            "provider_avatar_url": link.provider_avatar_url,
            "access_token": link.access_token,
            "refresh_token": link.refresh_token,
            "expires_at": _iso(link.expires_at),
            "created_at": _iso(link.created_at),
        }

    def _deserialize_oauth(self, data: dict) -> OAuthAccount:
        return OAuthAccount(
            account_id=data["account_id"],
            provider=data["provider"],
            provider_user_id=data["provider_user_id"],
            provider_email=data.get("provider_email"),
            provider_name=data.get("provider_name"),
            provider_avatar_url=data.get("provider_avatar_url"),
            access_token=data.get("access_token"),
            refresh_token=data.get("refresh_token"),
            expires_at=_parse_dt(data.get("expires_at")),
            created_at=_parse_dt(data.get("created_at")) or utcnow(),
        )

    def _serialize_api_token(self, token: ApiToken) -> dict:
        return {
            "id": token.id,
            "account_id": token.account_id,
            "token_hash": token.token_hash,
            "expires_at": _iso(token.expires_at),
            "description": token.description,
            "scope": token.scope,
            "created_at": _iso(token.created_at),
            "last_used_at": _iso(token.last_used_at),
            "revoked_at": _iso(token.revoked_at),
        }

    def _deserialize_api_token(self, data: dict) -> ApiToken:
        return ApiToken(
            id=data["id"],
            account_id=data["account_id"],
            token_hash=data["token_hash"],
            expires_at=_parse_dt(data["expires_at"]),
            description=data.get("description"),
            scope=data.get("scope") or "admin",
            created_at=_parse_dt(data.get("created_at")) or utcnow(),
            last_used_at=_parse_dt(data.get("last_used_at")),
            revoked_at=_parse_dt(data.get("revoked_at")),
        )

    def _persist_state(self) -> None:
        if not self.fs_root:
            return
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "oauth_accounts": [self._serialize_oauth(o) for o in self.oauth_accounts],
            "passkeys": [self._serialize_passkey(p) for p in self.passkeys.values()],
            "api_tokens": [self._serialize_api_token(t) for t in self.api_tokens.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.oauth_accounts = [
            self._deserialize_oauth(o) for o in data.get("oauth_accounts", [])
        ]
        self.passkeys = {
            p["id"]: self._deserialize_passkey(p) for p in data.get("passkeys", [])
        }
        self.api_tokens = {
            t["id"]: self._deserialize_api_token(t) for t in data.get("api_tokens", [])
        }
        self._account_seq = max(self.accounts, default=0)
        self._passkey_seq = max(self.passkeys, default=0)
        self._api_token_seq = max(self.api_tokens, default=0)
        return True
