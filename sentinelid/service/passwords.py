from __future__ import annotations

import re
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from sentinelid.logging import get_logger

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 12
MAX_PASSWORD_LENGTH = 128
_SPECIAL_RE = re.compile(r"[^A-Za-z0-9]")


class PasswordService:
    """argon2id hashing plus the registration password policy."""

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 4,
    ) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, stored_hash: str, password: str) -> bool:
        if not stored_hash or password is None:
            return False
        try:
            return self._hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False

    def policy_violation(self, password: str) -> Optional[str]:
        """Return a user-facing reason the password is rejected, or None."""
        if len(password) < MIN_PASSWORD_LENGTH:
            return f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
        if len(password) > MAX_PASSWORD_LENGTH:
            return f"Password must be at most {MAX_PASSWORD_LENGTH} characters"
        if not any(c.isupper() for c in password):
            return "Password must contain an uppercase letter"
        if not any(c.islower() for c in password):
            return "Password must contain a lowercase letter"
        if not any(c.isdigit() for c in password):
            return "Password must contain a digit"
        if not _SPECIAL_RE.search(password):
            return "Password must contain a special character"
        return None
