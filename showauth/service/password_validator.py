from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import List, Optional

import httpx

from showauth.logging import get_logger

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 12
MAX_PASSWORD_LENGTH = 128

PWNED_RANGE_URL = "https://api.pwnedpasswords.com/range/{prefix}"

# Lowercased; matched case-insensitively. Short entries are already caught by
# the length rule but are kept so the list doubles as a strength-meter hint.
COMMON_PASSWORDS = frozenset(
    {
        "123456", "password", "123456789", "12345678", "qwerty", "abc123",
        "111111", "letmein", "welcome", "monkey", "dragon", "iloveyou",
        "trustno1", "sunshine", "princess", "football", "baseball", "superman",
        "passw0rd", "password1", "password123", "qwerty123", "admin123",
        "administrator", "changeme", "p@ssw0rd", "pa$$w0rd", "1q2w3e4r5t",
        "qwertyuiop", "asdfghjkl", "zxcvbnm", "1qaz2wsx", "qazwsxedc",
        "password1234", "password12345", "passwordpassword", "qwertyqwerty",
        "qwertyuiop123", "123456789012", "1234567890123", "iloveyou1234",
        "letmein12345", "welcome12345", "welcome123456", "1q2w3e4r5t6y",
        "administrator1", "abcdefghijkl", "aaaaaaaaaaaa", "111111111111",
        "football1234", "baseball1234", "superman1234", "sunshine1234",
        "princess1234", "trustno1trustno1", "p@ssw0rd1234", "changeme1234",
    }
)


@dataclass
class PasswordValidationResult:
    valid: bool = True
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def fail(self, message: str) -> None:
        self.valid = False
        self.errors.append(message)

    @property
    def first_error(self) -> str:
        return self.errors[0] if self.errors else "Password does not meet security requirements"


def password_strength(password: str) -> int:
    """Score 0-100 used by the signup form's strength meter."""
    if not password:
        return 0
    score = 0
    length = len(password)
    if length >= 12:
        score += 20
    if length >= 16:
        score += 10
    if length >= 20:
        score += 10

    score += 10 * sum(
        (
            any(c.islower() for c in password),
            any(c.isupper() for c in password),
            any(c.isdigit() for c in password),
            any(not c.isalnum() for c in password),
        )
    )

    unique_ratio = len(set(password)) / length
    if unique_ratio > 0.5 and length >= 12:
        score += 10
    if unique_ratio > 0.7 and length >= 16:
        score += 10
    return min(score, 100)


def strength_label(score: int) -> str:
    if score < 30:
        return "Weak"
    if score < 50:
        return "Fair"
    if score < 70:
        return "Good"
    if score < 90:
        return "Strong"
    return "Excellent"


class PasswordValidator:
    """Length, common-password and breach checks for new passwords.

    The breach check uses the k-anonymity range API: only the first five
    hex characters of the SHA-1 digest leave the process. Failures of the
    remote lookup degrade to a warning.
    """

    def __init__(
        self,
        *,
        check_breaches: bool = True,
        timeout: float = 5.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.check_breaches = check_breaches
        self.timeout = timeout
        self._transport = transport

    def is_common(self, password: str) -> bool:
        return password.lower() in COMMON_PASSWORDS

    def is_breached(self, password: str) -> bool:
        digest = hashlib.sha1(password.encode()).hexdigest().upper()
        prefix, suffix = digest[:5], digest[5:]
        with httpx.Client(
            timeout=self.timeout, transport=self._transport
        ) as client:
            response = client.get(
                PWNED_RANGE_URL.format(prefix=prefix),
                headers={
                    "User-Agent": "PsychicHomily-PasswordCheck",
                    "Add-Padding": "true",
                },
            )
            response.raise_for_status()
        for line in response.text.splitlines():
            candidate, _, count = line.partition(":")
            # padded responses include zero-count decoys
            if candidate.strip().upper() == suffix and count.strip() != "0":
                return True
        return False

    def validate(self, password: str) -> PasswordValidationResult:
        result = PasswordValidationResult()
        if len(password) < MIN_PASSWORD_LENGTH:
            result.fail(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        if len(password) > MAX_PASSWORD_LENGTH:
            result.fail(f"Password must be no more than {MAX_PASSWORD_LENGTH} characters")
        if self.is_common(password):
            result.fail("This password is too common and easily guessed")

        if self.check_breaches and result.valid:
            try:
                if self.is_breached(password):
                    result.fail(
                        "This password has been exposed in a data breach and should not be used"
                    )
            except httpx.HTTPError as exc:
                logger.warning("password_breach_check_failed", error=str(exc))
                result.warnings.append(
                    "Could not verify password against breach database"
                )
        return result
