from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A uniqueness or ownership rule in the credential store was violated.

    ``detail["field"]`` names the offending column (``email``,
    ``provider_user_id``, ``credential_id``) so callers can map the
    violation onto a stable error code.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def field(self) -> Optional[str]:
        return self.detail.get("field")


__all__ = ["ConstraintViolation"]
