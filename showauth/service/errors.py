from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass fixes an HTTP status code and a stable wire ``error_code``
    from the closed set in ``WIRE_CODES``. ``headers`` are copied onto the
    rendered response.
    """

    status_code: int = 400
    error_code: str = "VALIDATION_FAILED"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}
        self.headers = headers or {}


class RateLimitError(ServiceError):
    """Too many requests from one client for a rate-limited route group (429)."""

    status_code = 429
    error_code = "SERVICE_UNAVAILABLE"

    def __init__(self, retry_after: int, *, limit: Optional[int] = None) -> None:
        retry_after = max(1, int(retry_after))
        headers = {"Retry-After": str(retry_after)}
        if limit is not None:
            headers["X-RateLimit-Limit"] = str(limit)
            headers["X-RateLimit-Remaining"] = "0"
        super().__init__(
            f"Rate limit exceeded. Please try again in {retry_after} seconds.",
            detail={"retry_after": retry_after},
            headers=headers,
        )
        self.retry_after = retry_after


class AuthErrorCode(str, Enum):
    """Every failure kind the auth core can produce.

    Members that are not part of the public contract (``USER_NOT_FOUND``,
    ``TOKEN_PURPOSE_MISMATCH``, ``INTERNAL``) are collapsed onto a public code
    by ``WIRE_CODES`` before anything leaves the process.
    """

    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    USER_EXISTS = "USER_EXISTS"
    NO_PASSWORD_SET = "NO_PASSWORD_SET"
    TOKEN_INVALID = "TOKEN_INVALID"
    EMAIL_MISMATCH = "EMAIL_MISMATCH"
    NO_EMAIL = "NO_EMAIL"
    ALREADY_VERIFIED = "ALREADY_VERIFIED"
    ACCOUNT_ACTIVE = "ACCOUNT_ACTIVE"
    ACCOUNT_NOT_RECOVERABLE = "ACCOUNT_NOT_RECOVERABLE"
    NO_PASSWORD = "NO_PASSWORD"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    UNAUTHORIZED = "UNAUTHORIZED"
    # internal only
    USER_NOT_FOUND = "USER_NOT_FOUND"
    TOKEN_PURPOSE_MISMATCH = "TOKEN_PURPOSE_MISMATCH"
    INTERNAL = "INTERNAL"


WIRE_CODES: dict[AuthErrorCode, str] = {
    AuthErrorCode.INVALID_CREDENTIALS: "INVALID_CREDENTIALS",
    AuthErrorCode.ACCOUNT_LOCKED: "ACCOUNT_LOCKED",
    AuthErrorCode.VALIDATION_FAILED: "VALIDATION_FAILED",
    AuthErrorCode.USER_EXISTS: "USER_EXISTS",
    AuthErrorCode.NO_PASSWORD_SET: "NO_PASSWORD_SET",
    AuthErrorCode.TOKEN_INVALID: "TOKEN_INVALID",
    AuthErrorCode.EMAIL_MISMATCH: "EMAIL_MISMATCH",
    AuthErrorCode.NO_EMAIL: "NO_EMAIL",
    AuthErrorCode.ALREADY_VERIFIED: "ALREADY_VERIFIED",
    AuthErrorCode.ACCOUNT_ACTIVE: "ACCOUNT_ACTIVE",
    AuthErrorCode.ACCOUNT_NOT_RECOVERABLE: "ACCOUNT_NOT_RECOVERABLE",
    AuthErrorCode.NO_PASSWORD: "NO_PASSWORD",
    AuthErrorCode.SERVICE_UNAVAILABLE: "SERVICE_UNAVAILABLE",
    AuthErrorCode.UNAUTHORIZED: "UNAUTHORIZED",
    AuthErrorCode.USER_NOT_FOUND: "INVALID_CREDENTIALS",
    AuthErrorCode.TOKEN_PURPOSE_MISMATCH: "TOKEN_INVALID",
    AuthErrorCode.INTERNAL: "SERVICE_UNAVAILABLE",
}

_unmapped = set(AuthErrorCode) - set(WIRE_CODES)
if _unmapped:
    raise RuntimeError(f"auth error codes without a wire mapping: {sorted(_unmapped)}")

PUBLIC_ERROR_CODES: frozenset[str] = frozenset(WIRE_CODES.values())

# Messages used when the raising site has nothing more specific to say
DEFAULT_MESSAGES: dict[AuthErrorCode, str] = {
    AuthErrorCode.INVALID_CREDENTIALS: "Invalid email or password",
    AuthErrorCode.USER_NOT_FOUND: "Invalid email or password",
    AuthErrorCode.ACCOUNT_LOCKED: "Account is temporarily locked. Please try again later.",
    AuthErrorCode.TOKEN_INVALID: "Invalid or expired token",
    AuthErrorCode.TOKEN_PURPOSE_MISMATCH: "Invalid or expired token",
    AuthErrorCode.EMAIL_MISMATCH: "Token does not match current email",
    AuthErrorCode.UNAUTHORIZED: "Authentication required",
    AuthErrorCode.SERVICE_UNAVAILABLE: "Service temporarily unavailable",
    AuthErrorCode.INTERNAL: "Service temporarily unavailable",
}


def wire_code(code: AuthErrorCode) -> str:
    return WIRE_CODES[code]


class AuthError(ServiceError):
    """A classified authentication failure.

    Rendered as a soft failure (HTTP 200, ``success=false``) unless the
    raising site asks for a transport-level status, e.g. 401 from the
    session dependency.
    """

    status_code = 200

    def __init__(
        self,
        code: AuthErrorCode,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        data: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            message or DEFAULT_MESSAGES.get(code, "Request failed"),
            status_code=status_code,
            detail=detail,
            error_code=wire_code(code),
        )
        self.code = code
        # extra response fields for soft failures (e.g. has_password)
        self.data = data


__all__ = [
    "ServiceError",
    "RateLimitError",
    "AuthErrorCode",
    "AuthError",
    "WIRE_CODES",
    "PUBLIC_ERROR_CODES",
    "wire_code",
]
