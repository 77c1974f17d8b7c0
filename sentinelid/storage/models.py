from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional

ROLES = ("personnel", "family", "veteran", "cert", "admin")
MFA_METHODS = ("totp", "email")
OTP_PURPOSES = ("registration", "login_mfa", "email_verification")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive timestamps as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class User:
    id: str
    full_name: str
    email: str
    mobile: str
    identifier: str
    role: str
    password_hash: str
    mfa_method: str = "email"
    totp_secret: Optional[str] = None  # Fernet ciphertext, never plaintext
    backup_codes: List[str] = field(default_factory=list)  # sha256 hex digests
    is_active: bool = True
    is_verified: bool = False
    failed_attempts: int = 0
    lockout_until: Optional[datetime] = None
    mfa_failed_attempts: int = 0
    mfa_lockout_until: Optional[datetime] = None
    last_login: Optional[datetime] = None
    email_verified_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        locked_until = ensure_aware(self.lockout_until)
        return bool(locked_until and locked_until > (now or utcnow()))

    def is_mfa_locked(self, now: Optional[datetime] = None) -> bool:
        locked_until = ensure_aware(self.mfa_lockout_until)
        return bool(locked_until and locked_until > (now or utcnow()))

    def lockout_remaining_minutes(self, now: Optional[datetime] = None, *, mfa: bool = False) -> int:
        locked_until = ensure_aware(self.mfa_lockout_until if mfa else self.lockout_until)
        if not locked_until:
            return 0
        remaining = (locked_until - (now or utcnow())).total_seconds()
        # Round up so "0 minutes" is never reported while still locked
        return max(0, -(-int(remaining) // 60))

    def public_profile(self) -> dict:
        return {
            "user_id": self.id,
            "role": self.role,
            "full_name": self.full_name,
            "email": self.email,
            "identifier": self.identifier,
            "mfa_method": self.mfa_method,
        }


@dataclass
class NewUser:
    """Fields collected by the registration wizard before the record exists."""

    full_name: str
    email: str
    mobile: str
    identifier: str
    role: str
    password_hash: str
    mfa_method: str
    totp_secret: Optional[str] = None
    backup_codes: List[str] = field(default_factory=list)


@dataclass
class LockoutStatus:
    """Outcome of recording one failed password or second-factor attempt."""

    attempts: int
    locked_until: Optional[datetime] = None
    already_locked: bool = False

    @property
    def locked(self) -> bool:
        return self.locked_until is not None


@dataclass
class OTPCode:
    id: str
    email: str
    purpose: str
    code_hash: str
    expires_at: datetime
    attempts: int = 0
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return ensure_aware(self.expires_at) <= (now or utcnow())


@dataclass
class AuthorizationCode:
    code: str
    user_id: str
    role: str
    expires_at: datetime
    used: bool = False
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, code: str, user_id: str, role: str, ttl_seconds: int) -> "AuthorizationCode":
        now = utcnow()
        return cls(
            code=code,
            user_id=user_id,
            role=role,
            expires_at=now + timedelta(seconds=ttl_seconds),
            created_at=now,
        )


@dataclass
class RefreshTokenRecord:
    token_id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    revoked: bool = False
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, user_id: str, token_hash_fn, ttl_days: int) -> "RefreshTokenRecord":
        token_id = str(uuid.uuid4())
        now = utcnow()
        return cls(
            token_id=token_id,
            user_id=user_id,
            token_hash=token_hash_fn(token_id),
            expires_at=now + timedelta(days=ttl_days),
            created_at=now,
        )

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        return not self.revoked and ensure_aware(self.expires_at) > (now or utcnow())
