from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional

from sentinelid.logging import get_logger
from sentinelid.storage.errors import ConstraintViolation
from sentinelid.storage.models import (
    AuthorizationCode,
    LockoutStatus,
    NewUser,
    OTPCode,
    RefreshTokenRecord,
    User,
    ensure_aware,
    utcnow,
)


class MemoryStore:
    """Dict-backed store persisted to a JSON state file, for tests and local runs."""

    def __init__(self, fs_root: str = "/tmp/sentinelid") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.otp_codes: Dict[str, OTPCode] = {}
        self.auth_codes: Dict[str, AuthorizationCode] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        # RLock for all data operations; helpers may re-acquire within one call
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return ensure_aware(datetime.fromisoformat(raw)) if raw else None

    # -- users ------------------------------------------------------------

    def _check_unique(self, email: str, identifier: str, role: str) -> None:
        for existing in self.users.values():
            if existing.email == email:
                raise ConstraintViolation(
                    "email already registered", {"field": "email"}
                )
            if existing.identifier == identifier and existing.role == role:
                raise ConstraintViolation(
                    "identifier already registered for role",
                    {"field": "identifier", "role": role},
                )

    def create_user(self, new_user: NewUser) -> User:
        with self._data_lock:
            self._check_unique(new_user.email, new_user.identifier, new_user.role)
            now = utcnow()
            user = User(
                id=str(uuid.uuid4()),
                full_name=new_user.full_name,
                email=new_user.email,
                mobile=new_user.mobile,
                identifier=new_user.identifier,
                role=new_user.role,
                password_hash=new_user.password_hash,
                mfa_method=new_user.mfa_method,
                totp_secret=new_user.totp_secret,
                backup_codes=list(new_user.backup_codes),
                is_active=True,
                is_verified=True,
                email_verified_at=now,
                created_at=now,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def get_user_by_identifier(self, identifier: str, role: str) -> Optional[User]:
        with self._data_lock:
            return next(
                (
                    u
                    for u in self.users.values()
                    if u.identifier == identifier and u.role == role
                ),
                None,
            )

    def list_users(self, role: Optional[str] = None, limit: int = 100) -> List[User]:
        with self._data_lock:
            users = [u for u in self.users.values() if role is None or u.role == role]
            users.sort(key=lambda u: u.created_at)
            return users[:limit]

    def record_failed_login(
        self, user_id: str, max_attempts: int, lockout_minutes: int
    ) -> LockoutStatus:
        """Increment the failure counter and lock the account at the threshold.

        Runs under the data lock so concurrent failures cannot both read the same
        counter value. An account that is already locked is left untouched.
        """
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return LockoutStatus(attempts=0)
            now = utcnow()
            locked_until = ensure_aware(user.lockout_until)
            if locked_until and locked_until > now:
                return LockoutStatus(
                    attempts=user.failed_attempts,
                    locked_until=locked_until,
                    already_locked=True,
                )
            if locked_until:
                # Lockout elapsed; the next failure starts a fresh count
                user.failed_attempts = 0
                user.lockout_until = None
            user.failed_attempts += 1
            if user.failed_attempts >= max_attempts:
                user.lockout_until = now + timedelta(minutes=lockout_minutes)
            self._persist_state()
            return LockoutStatus(
                attempts=user.failed_attempts, locked_until=user.lockout_until
            )

    def record_failed_mfa(
        self, user_id: str, max_attempts: int, lockout_minutes: int
    ) -> LockoutStatus:
        """Count a wrong second-factor code; same locking rules as record_failed_login."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return LockoutStatus(attempts=0)
            now = utcnow()
            locked_until = ensure_aware(user.mfa_lockout_until)
            if locked_until and locked_until > now:
                return LockoutStatus(
                    attempts=user.mfa_failed_attempts,
                    locked_until=locked_until,
                    already_locked=True,
                )
            if locked_until:
                user.mfa_failed_attempts = 0
                user.mfa_lockout_until = None
            user.mfa_failed_attempts += 1
            if user.mfa_failed_attempts >= max_attempts:
                user.mfa_lockout_until = now + timedelta(minutes=lockout_minutes)
            self._persist_state()
            return LockoutStatus(
                attempts=user.mfa_failed_attempts, locked_until=user.mfa_lockout_until
            )

    def reset_failed_logins(self, user_id: str) -> None:
        """Clear password and second-factor counters and stamp last_login."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.failed_attempts = 0
            user.lockout_until = None
            user.mfa_failed_attempts = 0
            user.mfa_lockout_until = None
            user.last_login = utcnow()
            self._persist_state()

    def set_user_active(self, user_id: str, active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = active
            self._persist_state()
            return user

    def unlock_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.failed_attempts = 0
            user.lockout_until = None
            user.mfa_failed_attempts = 0
            user.mfa_lockout_until = None
            self._persist_state()
            return user

    # -- one-time codes ---------------------------------------------------

    def replace_otp(
        self, email: str, purpose: str, code_hash: str, ttl_minutes: int
    ) -> OTPCode:
        with self._data_lock:
            stale = [
                otp_id
                for otp_id, otp in self.otp_codes.items()
                if otp.email == email and otp.purpose == purpose
            ]
            for otp_id in stale:
                del self.otp_codes[otp_id]
            now = utcnow()
            otp = OTPCode(
                id=str(uuid.uuid4()),
                email=email,
                purpose=purpose,
                code_hash=code_hash,
                expires_at=now + timedelta(minutes=ttl_minutes),
                created_at=now,
            )
            self.otp_codes[otp.id] = otp
            self._persist_state()
            return otp

    def get_live_otp(self, email: str, purpose: str) -> Optional[OTPCode]:
        with self._data_lock:
            now = utcnow()
            live = [
                otp
                for otp in self.otp_codes.values()
                if otp.email == email and otp.purpose == purpose and not otp.is_expired(now)
            ]
            if not live:
                return None
            return max(live, key=lambda otp: otp.created_at)

    def record_otp_failure(self, otp_id: str, max_attempts: int) -> int:
        """Count a wrong submission; the code is discarded once the cap is reached."""
        with self._data_lock:
            otp = self.otp_codes.get(otp_id)
            if not otp:
                return max_attempts
            otp.attempts += 1
            if otp.attempts >= max_attempts:
                del self.otp_codes[otp_id]
            self._persist_state()
            return otp.attempts

    def delete_otp(self, otp_id: str) -> bool:
        with self._data_lock:
            removed = self.otp_codes.pop(otp_id, None) is not None
            if removed:
                self._persist_state()
            return removed

    # -- authorization codes ----------------------------------------------

    def create_authorization_code(self, auth_code: AuthorizationCode) -> AuthorizationCode:
        with self._data_lock:
            self.auth_codes[auth_code.code] = auth_code
            self._persist_state()
            return auth_code

    def consume_authorization_code(self, code: str) -> Optional[AuthorizationCode]:
        """Mark a code used and return it, or None when unknown, used or expired."""
        with self._data_lock:
            auth_code = self.auth_codes.get(code)
            if not auth_code or auth_code.used:
                return None
            if ensure_aware(auth_code.expires_at) <= utcnow():
                return None
            auth_code.used = True
            self._persist_state()
            return auth_code

    # -- refresh tokens ---------------------------------------------------

    def create_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        with self._data_lock:
            self.refresh_tokens[record.token_id] = record
            self._persist_state()
            return record

    def get_refresh_token(self, token_id: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            return self.refresh_tokens.get(token_id)

    def revoke_refresh_token(self, token_id: str) -> bool:
        with self._data_lock:
            record = self.refresh_tokens.get(token_id)
            if not record or record.revoked:
                return False
            record.revoked = True
            self._persist_state()
            return True

    def revoke_user_refresh_tokens(self, user_id: str) -> int:
        with self._data_lock:
            revoked = 0
            for record in self.refresh_tokens.values():
                if record.user_id == user_id and not record.revoked:
                    record.revoked = True
                    revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    # -- housekeeping -----------------------------------------------------

    def purge_expired(self) -> Dict[str, int]:
        with self._data_lock:
            now = utcnow()
            expired_otps = [k for k, v in self.otp_codes.items() if v.is_expired(now)]
            for key in expired_otps:
                del self.otp_codes[key]
            spent_codes = [
                k
                for k, v in self.auth_codes.items()
                if v.used or ensure_aware(v.expires_at) <= now
            ]
            for key in spent_codes:
                del self.auth_codes[key]
            dead_tokens = [
                k
                for k, v in self.refresh_tokens.items()
                if ensure_aware(v.expires_at) <= now
            ]
            for key in dead_tokens:
                del self.refresh_tokens[key]
            counts = {
                "otp_codes": len(expired_otps),
                "authorization_codes": len(spent_codes),
                "refresh_tokens": len(dead_tokens),
            }
            if any(counts.values()):
                self._persist_state()
            return counts

    def verify_connection(self) -> bool:
        return True

    # -- persistence ------------------------------------------------------

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "otp_codes": [self._serialize_otp(o) for o in self.otp_codes.values()],
            "auth_codes": [
                self._serialize_auth_code(c) for c in self.auth_codes.values()
            ],
            "refresh_tokens": [
                self._serialize_refresh_token(r) for r in self.refresh_tokens.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.otp_codes = {
            o["id"]: self._deserialize_otp(o) for o in data.get("otp_codes", [])
        }
        self.auth_codes = {
            c["code"]: self._deserialize_auth_code(c) for c in data.get("auth_codes", [])
        }
        self.refresh_tokens = {
            r["token_id"]: self._deserialize_refresh_token(r)
            for r in data.get("refresh_tokens", [])
        }
        self.logger.info("memory_store_loaded", users=len(self.users))
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "full_name": user.full_name,
            "email": user.email,
            "mobile": user.mobile,
            "identifier": user.identifier,
            "role": user.role,
            "password_hash": user.password_hash,
            "mfa_method": user.mfa_method,
            "totp_secret": user.totp_secret,
            "backup_codes": user.backup_codes,
            "is_active": user.is_active,
            "is_verified": user.is_verified,
            "failed_attempts": user.failed_attempts,
            "lockout_until": self._serialize_datetime(user.lockout_until),
            "mfa_failed_attempts": user.mfa_failed_attempts,
            "mfa_lockout_until": self._serialize_datetime(user.mfa_lockout_until),
            "last_login": self._serialize_datetime(user.last_login),
            "email_verified_at": self._serialize_datetime(user.email_verified_at),
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            full_name=data["full_name"],
            email=data["email"],
            mobile=data.get("mobile", ""),
            identifier=data["identifier"],
            role=data["role"],
            password_hash=data["password_hash"],
            mfa_method=data.get("mfa_method", "email"),
            totp_secret=data.get("totp_secret"),
            backup_codes=list(data.get("backup_codes") or []),
            is_active=data.get("is_active", True),
            is_verified=data.get("is_verified", False),
            failed_attempts=int(data.get("failed_attempts", 0)),
            lockout_until=self._deserialize_datetime(data.get("lockout_until")),
            mfa_failed_attempts=int(data.get("mfa_failed_attempts", 0)),
            mfa_lockout_until=self._deserialize_datetime(data.get("mfa_lockout_until")),
            last_login=self._deserialize_datetime(data.get("last_login")),
            email_verified_at=self._deserialize_datetime(data.get("email_verified_at")),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )

    def _serialize_otp(self, otp: OTPCode) -> dict:
        return {
            "id": otp.id,
            "email": otp.email,
            "purpose": otp.purpose,
            "code_hash": otp.code_hash,
            "expires_at": self._serialize_datetime(otp.expires_at),
            "attempts": otp.attempts,
            "created_at": self._serialize_datetime(otp.created_at),
        }

    def _deserialize_otp(self, data: dict) -> OTPCode:
        return OTPCode(
            id=data["id"],
            email=data["email"],
            purpose=data["purpose"],
            code_hash=data["code_hash"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            attempts=int(data.get("attempts", 0)),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )

    def _serialize_auth_code(self, auth_code: AuthorizationCode) -> dict:
        return {
            "code": auth_code.code,
            "user_id": auth_code.user_id,
            "role": auth_code.role,
            "expires_at": self._serialize_datetime(auth_code.expires_at),
            "used": auth_code.used,
            "created_at": self._serialize_datetime(auth_code.created_at),
        }

    def _deserialize_auth_code(self, data: dict) -> AuthorizationCode:
        return AuthorizationCode(
            code=data["code"],
            user_id=data["user_id"],
            role=data["role"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            used=data.get("used", False),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )

    def _serialize_refresh_token(self, record: RefreshTokenRecord) -> dict:
        return {
            "token_id": record.token_id,
            "user_id": record.user_id,
            "token_hash": record.token_hash,
            "expires_at": self._serialize_datetime(record.expires_at),
            "revoked": record.revoked,
            "created_at": self._serialize_datetime(record.created_at),
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            token_id=data["token_id"],
            user_id=data["user_id"],
            token_hash=data["token_hash"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            revoked=data.get("revoked", False),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )
