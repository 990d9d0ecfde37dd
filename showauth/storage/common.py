"""Helpers shared by the memory and Postgres credential stores."""

from __future__ import annotations

import base64
import hashlib
import os
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from showauth.logging import get_logger

logger = get_logger(__name__)


def normalize_email(email: Optional[str]) -> Optional[str]:
    return email.strip().lower() if email else None


class ProviderTokenCipher:
    """Fernet encryption for OAuth provider tokens stored at rest.

    The key is derived from ``OAUTH_SECRET_KEY`` (falling back to the JWT
    secret). Without key material tokens are dropped instead of being
    stored in plaintext.
    """

    def __init__(self, key_material: Optional[str] = None) -> None:
        material = (
            key_material
            or os.getenv("OAUTH_SECRET_KEY")
            or os.getenv("JWT_SECRET_KEY")
        )
        if not material:
            logger.warning("oauth_token_cipher_unavailable")
            self._fernet: Optional[Fernet] = None
        else:
            self._fernet = Fernet(self.derive_key(material))

    @staticmethod
    def derive_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    @property
    def available(self) -> bool:
        return self._fernet is not None

    def encrypt(self, token: Optional[str]) -> Optional[str]:
        if not token or self._fernet is None:
            return None
        return self._fernet.encrypt(token.encode()).decode()

    def decrypt(self, ciphertext: Optional[str]) -> Optional[str]:
        if not ciphertext or self._fernet is None:
            return None
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken:
            logger.warning("oauth_token_decrypt_failed")
            return None
