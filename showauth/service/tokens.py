from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional

from showauth.config import Settings
from showauth.logging import get_logger
from showauth.service.errors import AuthError, AuthErrorCode
from showauth.storage.models import Account

logger = get_logger(__name__)


class TokenPurpose(str, Enum):
    SESSION = "session"
    EMAIL_VERIFICATION = "email_verification"
    MAGIC_LINK = "magic_link"
    ACCOUNT_RECOVERY = "account_recovery"
    SIGNUP_CONSENT = "signup_consent"


# Purposes whose token is only valid while the account keeps the same email
EMAIL_BOUND_PURPOSES = frozenset(
    {
        TokenPurpose.EMAIL_VERIFICATION,
        TokenPurpose.MAGIC_LINK,
        TokenPurpose.ACCOUNT_RECOVERY,
    }
)

_FIXED_LIFETIMES = {
    TokenPurpose.EMAIL_VERIFICATION: timedelta(hours=24),
    TokenPurpose.MAGIC_LINK: timedelta(minutes=15),
    TokenPurpose.ACCOUNT_RECOVERY: timedelta(hours=1),
    TokenPurpose.SIGNUP_CONSENT: timedelta(minutes=10),
}


@dataclass
class TokenClaims:
    purpose: TokenPurpose
    account_id: Optional[int]
    email: Optional[str]
    issued_at: datetime
    expires_at: datetime
    token_id: str
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class SignupConsent:
    terms_accepted: bool
    terms_version: Optional[str]
    privacy_version: Optional[str] = None
    accepted_at: Optional[datetime] = None

    def is_complete(self) -> bool:
        return bool(self.terms_accepted and self.terms_version)

    def to_claim(self) -> dict[str, Any]:
        return {
            "terms_accepted": self.terms_accepted,
            "terms_version": self.terms_version,
            "privacy_version": self.privacy_version,
            "accepted_at": self.accepted_at.isoformat() if self.accepted_at else None,
        }

    @classmethod
    def from_claim(cls, data: dict[str, Any]) -> "SignupConsent":
        accepted_at = data.get("accepted_at")
        return cls(
            terms_accepted=bool(data.get("terms_accepted")),
            terms_version=data.get("terms_version"),
            privacy_version=data.get("privacy_version"),
            accepted_at=datetime.fromisoformat(accepted_at) if accepted_at else None,
        )


class TokenIssuer:
    """Creates and checks HS256 tokens whose use is restricted by a purpose claim.

    All purposes share one signing key, issuer and audience. A token minted
    for one purpose never validates under another, and email-bound purposes
    are rejected once the account's address has changed.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._leeway = timedelta(seconds=settings.token_clock_skew_seconds)

    def _now(self) -> datetime:
        return self._clock()

    def lifetime(self, purpose: TokenPurpose) -> timedelta:
        if purpose is TokenPurpose.SESSION:
            return timedelta(hours=self.settings.jwt_expiry_hours)
        return _FIXED_LIFETIMES[purpose]

    # -- creation -----------------------------------------------------------

    def create_token(
        self,
        purpose: TokenPurpose,
        account_id: Optional[int],
        email: Optional[str] = None,
        *,
        expires_in: Optional[timedelta] = None,
        extra: Optional[dict[str, Any]] = None,
    ) -> str:
        if purpose in EMAIL_BOUND_PURPOSES and not email:
            raise ValueError(f"{purpose.value} tokens must be bound to an email")
        now = self._now()
        payload: dict[str, Any] = {
            "purpose": purpose.value,
            "iat": int(now.timestamp()),
            "exp": int((now + (expires_in or self.lifetime(purpose))).timestamp()),
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "jti": uuid.uuid4().hex,
        }
        if account_id is not None:
            payload["sub"] = str(account_id)
        if email:
            payload["email"] = email
        if extra:
            payload.update(extra)
        return self._encode_jwt(payload)

    def create_session_token(
        self, account: Account, *, expires_in: Optional[timedelta] = None
    ) -> str:
        return self.create_token(
            TokenPurpose.SESSION, account.id, account.email, expires_in=expires_in
        )

    def create_consent_token(self, consent: SignupConsent) -> str:
        return self.create_token(
            TokenPurpose.SIGNUP_CONSENT, None, extra={"consent": consent.to_claim()}
        )

    # -- validation ---------------------------------------------------------

    def validate_token(self, purpose: TokenPurpose, token: str) -> TokenClaims:
        payload = self._decode_jwt(token, check_expiry=True)
        return self._claims_for(purpose, payload)

    def validate_for_account(
        self, purpose: TokenPurpose, token: str, account: Account
    ) -> TokenClaims:
        """Validate ``token`` and check it still belongs to ``account``."""
        claims = self.validate_token(purpose, token)
        if claims.account_id != account.id:
            raise AuthError(AuthErrorCode.TOKEN_INVALID)
        if purpose in EMAIL_BOUND_PURPOSES:
            current = (account.email or "").lower()
            if not current or current != (claims.email or "").lower():
                logger.warning(
                    "token_email_mismatch",
                    account_id=account.id,
                    token_purpose=purpose.value,
                )
                raise AuthError(AuthErrorCode.EMAIL_MISMATCH)
        return claims

    def validate_session_lenient(
        self, token: str, grace: Optional[timedelta] = None
    ) -> TokenClaims:
        """Accept a session token that expired less than ``grace`` ago."""
        grace = grace if grace is not None else timedelta(hours=self.settings.refresh_grace_hours)
        payload = self._decode_jwt(token, check_expiry=False)
        claims = self._claims_for(TokenPurpose.SESSION, payload)
        if self._now() - claims.expires_at > grace:
            raise AuthError(
                AuthErrorCode.TOKEN_INVALID, "Session expired. Please log in again."
            )
        return claims

    def read_consent_token(self, token: str) -> SignupConsent:
        claims = self.validate_token(TokenPurpose.SIGNUP_CONSENT, token)
        data = claims.extra.get("consent")
        if not isinstance(data, dict):
            raise AuthError(AuthErrorCode.TOKEN_INVALID)
        try:
            return SignupConsent.from_claim(data)
        except (TypeError, ValueError) as exc:
            raise AuthError(AuthErrorCode.TOKEN_INVALID) from exc

    def _claims_for(self, purpose: TokenPurpose, payload: dict[str, Any]) -> TokenClaims:
        if payload.get("purpose") != purpose.value:
            logger.warning(
                "token_purpose_mismatch",
                expected=purpose.value,
                presented=str(payload.get("purpose")),
            )
            raise AuthError(AuthErrorCode.TOKEN_PURPOSE_MISMATCH)
        sub = payload.get("sub")
        try:
            account_id = int(sub) if sub is not None else None
        except (TypeError, ValueError) as exc:
            raise AuthError(AuthErrorCode.TOKEN_INVALID) from exc
        if purpose is not TokenPurpose.SIGNUP_CONSENT and account_id is None:
            raise AuthError(AuthErrorCode.TOKEN_INVALID)
        reserved = {"purpose", "sub", "email", "iat", "exp", "iss", "aud", "jti"}
        return TokenClaims(
            purpose=purpose,
            account_id=account_id,
            email=payload.get("email"),
            issued_at=datetime.fromtimestamp(int(payload.get("iat", 0)), tz=timezone.utc),
            expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
            token_id=str(payload.get("jti", "")),
            extra={k: v for k, v in payload.items() if k not in reserved},
        )

    # -- JWT encoding -------------------------------------------------------

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str, *, check_expiry: bool) -> dict[str, Any]:
        invalid = AuthError(AuthErrorCode.TOKEN_INVALID)
        if not token or not isinstance(token, str):
            raise invalid
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise invalid from None

        # Only HS256 is accepted to rule out algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise invalid from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=str(header))
            raise invalid

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            raise invalid
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise invalid from None
        if not isinstance(payload, dict):
            raise invalid
        if payload.get("iss") != self.settings.jwt_issuer:
            raise invalid
        if payload.get("aud") != self.settings.jwt_audience:
            raise invalid
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise invalid from None
        if check_expiry and exp_ts <= (self._now() - self._leeway).timestamp():
            raise invalid
        return payload
