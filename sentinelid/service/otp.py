from __future__ import annotations

import hashlib
import hmac
import secrets
from typing import Callable, Optional

from sentinelid.logging import audit_event, get_logger
from sentinelid.service.errors import ValidationError
from sentinelid.storage.models import OTP_PURPOSES

logger = get_logger(__name__)

OTP_DIGITS = 6


class OTPService:
    """Issues and verifies hashed email one-time codes, one live code per (email, purpose)."""

    def __init__(
        self, store, *, secret: str, ttl_minutes: int = 5, max_attempts: int = 5
    ) -> None:
        self.store = store
        self._key = secret.encode()
        self.ttl_minutes = ttl_minutes
        self.max_attempts = max_attempts

    @property
    def ttl_seconds(self) -> int:
        return self.ttl_minutes * 60

    @staticmethod
    def generate_code() -> str:
        return str(secrets.randbelow(10**OTP_DIGITS)).zfill(OTP_DIGITS)

    def _hash(self, email: str, purpose: str, code: str) -> str:
        message = f"{email}:{purpose}:{code}".encode()
        return hmac.new(self._key, message, hashlib.sha256).hexdigest()

    def issue(
        self, email: str, purpose: str, deliver: Optional[Callable[[str], None]] = None
    ) -> str:
        """Create a fresh code for (email, purpose), invalidating older ones.

        ``deliver`` is called with the plaintext code before anything is stored.
        If it raises, the previously issued code stays live.
        """
        if purpose not in OTP_PURPOSES:
            raise ValueError(f"unknown otp purpose: {purpose}")
        code = self.generate_code()
        if deliver is not None:
            deliver(code)
        self.store.replace_otp(email, purpose, self._hash(email, purpose, code), self.ttl_minutes)
        logger.info("otp_issued", purpose=purpose, email=email)
        return code

    def verify(self, email: str, purpose: str, code: str) -> None:
        """Consume the live code or raise OTP_EXPIRED / INVALID_OTP."""
        otp = self.store.get_live_otp(email, purpose)
        if not otp:
            audit_event("otp_verify", "failure", purpose=purpose, email=email, reason="expired")
            raise ValidationError(
                "Verification code expired. Request a new code.", error_code="OTP_EXPIRED"
            )
        candidate = self._hash(email, purpose, (code or "").strip())
        if not hmac.compare_digest(candidate, otp.code_hash):
            attempts = self.store.record_otp_failure(otp.id, self.max_attempts)
            audit_event(
                "otp_verify",
                "failure",
                purpose=purpose,
                email=email,
                reason="mismatch",
                attempts=attempts,
            )
            raise ValidationError("Invalid verification code", error_code="INVALID_OTP")
        self.store.delete_otp(otp.id)
        audit_event("otp_verify", "success", purpose=purpose, email=email)
