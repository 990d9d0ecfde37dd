from __future__ import annotations

import re
import unicodedata
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from showauth.service.errors import PUBLIC_ERROR_CODES

MAX_TOKEN_LENGTH = 4096


class Envelope(BaseModel):
    """Uniform body of every JSON response, including soft failures."""

    success: bool
    message: str
    error_code: Optional[str] = None
    request_id: str = ""
    data: Optional[Any] = None

    @field_validator("error_code")
    @classmethod
    def _known_error_code(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value not in PUBLIC_ERROR_CODES:
            raise ValueError(f"unknown error code {value!r}")
        return value


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class LoginRequest(BaseModel):
    # Missing fields are reported by the service as a soft VALIDATION_FAILED
    email: Optional[str] = Field(default=None, max_length=254)
    password: Optional[str] = Field(default=None, max_length=128)


class RegisterRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=128)
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    terms_accepted: bool = False
    terms_version: Optional[str] = Field(default=None, max_length=50)
    privacy_version: Optional[str] = Field(default=None, max_length=50)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)


class EmailRequest(BaseModel):
    email: Optional[str] = Field(default=None, max_length=254)


class TokenRequest(BaseModel):
    token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)


class ChangePasswordRequest(BaseModel):
    current_password: Optional[str] = Field(default=None, max_length=128)
    new_password: Optional[str] = Field(default=None, max_length=128)


class DeleteAccountRequest(BaseModel):
    password: Optional[str] = Field(default=None, max_length=128)
    reason: Optional[str] = Field(default=None, max_length=500)


class RecoverAccountRequest(BaseModel):
    email: Optional[str] = Field(default=None, max_length=254)
    password: Optional[str] = Field(default=None, max_length=128)


class AppleCallbackRequest(BaseModel):
    identity_token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)


class PasskeyRegisterFinishRequest(BaseModel):
    challenge_id: Optional[str] = Field(default=None, max_length=64)
    credential: Optional[dict[str, Any]] = None
    display_name: Optional[str] = Field(default=None, max_length=100)


class PasskeyLoginBeginRequest(BaseModel):
    email: Optional[str] = Field(default=None, max_length=254)


class PasskeyFinishRequest(BaseModel):
    challenge_id: Optional[str] = Field(default=None, max_length=64)
    credential: Optional[dict[str, Any]] = None


class PasskeySignupBeginRequest(BaseModel):
    email: Optional[str] = Field(default=None, max_length=254)
    display_name: Optional[str] = Field(default=None, max_length=100)
    terms_accepted: bool = False
    terms_version: Optional[str] = Field(default=None, max_length=50)
    privacy_version: Optional[str] = Field(default=None, max_length=50)

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value else value


class PasskeyRenameRequest(BaseModel):
    display_name: Optional[str] = Field(default=None, max_length=100)


class ApiTokenCreateRequest(BaseModel):
    description: Optional[str] = Field(default=None, max_length=255)
    expiration_days: Optional[int] = Field(default=None, ge=0)
