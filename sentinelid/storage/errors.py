from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a user email or (identifier, role) pair is already taken."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def field(self) -> Optional[str]:
        """Name of the colliding field (``email`` or ``identifier``)."""
        return self.detail.get("field")


__all__ = ["ConstraintViolation"]
