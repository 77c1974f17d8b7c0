from __future__ import annotations

import json
import uuid
from pathlib import Path
from typing import Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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
)

_CONSTRAINT_FIELDS = {
    "app_user_email_key": "email",
    "app_user_identifier_role_key": "identifier",
}

# counter name -> (attempts column, locked-until column)
_FAILURE_COLUMNS = {
    "password": ("failed_attempts", "lockout_until"),
    "mfa": ("mfa_failed_attempts", "mfa_lockout_until"),
}


class PostgresStore:
    """Postgres-backed credential, code and token store."""

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        """Ensure the portal tables exist before serving requests."""

        required_tables = ["app_user", "otp_code", "authorization_code", "refresh_token"]
        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
            if missing_tables:
                raise RuntimeError(
                    "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                        ", ".join(sorted(missing_tables))
                    )
                )

    def verify_connection(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()
        return True

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _user_from_row(row: dict) -> User:
        backup_codes = row.get("backup_codes") or []
        if isinstance(backup_codes, str):
            backup_codes = json.loads(backup_codes)
        return User(
            id=str(row["id"]),
            full_name=row["full_name"],
            email=str(row["email"]),
            mobile=row["mobile"],
            identifier=row["identifier"],
            role=row["role"],
            password_hash=row["password_hash"],
            mfa_method=row["mfa_method"],
            totp_secret=row.get("totp_secret"),
            backup_codes=list(backup_codes),
            is_active=row["is_active"],
            is_verified=row["is_verified"],
            failed_attempts=row["failed_attempts"],
            lockout_until=ensure_aware(row.get("lockout_until")),
            mfa_failed_attempts=row.get("mfa_failed_attempts", 0),
            mfa_lockout_until=ensure_aware(row.get("mfa_lockout_until")),
            last_login=ensure_aware(row.get("last_login")),
            email_verified_at=ensure_aware(row.get("email_verified_at")),
            created_at=ensure_aware(row["created_at"]),
        )

    @staticmethod
    def _otp_from_row(row: dict) -> OTPCode:
        return OTPCode(
            id=str(row["id"]),
            email=str(row["email"]),
            purpose=row["purpose"],
            code_hash=row["code_hash"],
            expires_at=ensure_aware(row["expires_at"]),
            attempts=row["attempts"],
            created_at=ensure_aware(row["created_at"]),
        )

    @staticmethod
    def _auth_code_from_row(row: dict) -> AuthorizationCode:
        return AuthorizationCode(
            code=row["code"],
            user_id=str(row["user_id"]),
            role=row["role"],
            expires_at=ensure_aware(row["expires_at"]),
            used=row["used"],
            created_at=ensure_aware(row["created_at"]),
        )

    @staticmethod
    def _refresh_from_row(row: dict) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            token_id=str(row["token_id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            expires_at=ensure_aware(row["expires_at"]),
            revoked=row["revoked"],
            created_at=ensure_aware(row["created_at"]),
        )

    # users
    def create_user(self, new_user: NewUser) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (
                        id, full_name, email, mobile, identifier, role, password_hash,
                        mfa_method, totp_secret, backup_codes, is_active, is_verified,
                        email_verified_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, TRUE, TRUE, now())
                    RETURNING *
                    """,
                    (
                        user_id,
                        new_user.full_name,
                        new_user.email,
                        new_user.mobile,
                        new_user.identifier,
                        new_user.role,
                        new_user.password_hash,
                        new_user.mfa_method,
                        new_user.totp_secret,
                        json.dumps(new_user.backup_codes),
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", None)
            field = _CONSTRAINT_FIELDS.get(constraint, "email")
            raise ConstraintViolation(f"{field} already registered", {"field": field})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        try:
            uuid.UUID(str(user_id))
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_identifier(self, identifier: str, role: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE identifier = %s AND role = %s",
                (identifier, role),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def list_users(self, role: Optional[str] = None, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            if role:
                rows = conn.execute(
                    "SELECT * FROM app_user WHERE role = %s ORDER BY created_at LIMIT %s",
                    (role, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM app_user ORDER BY created_at LIMIT %s", (limit,)
                ).fetchall()
        return [self._user_from_row(row) for row in rows]

    def _record_failure(
        self, counter: str, user_id: str, max_attempts: int, lockout_minutes: int
    ) -> LockoutStatus:
        """Increment and decide lockout in one statement.

        The WHERE clause skips accounts that are still locked; an elapsed lockout
        restarts the counter at one.
        """
        count_col, until_col = _FAILURE_COLUMNS[counter]
        with self._connect() as conn:
            row = conn.execute(
                f"""
                WITH bumped AS (
                    SELECT id,
                           CASE WHEN {until_col} IS NOT NULL AND {until_col} <= now()
                                THEN 1 ELSE {count_col} + 1 END AS attempts
                    FROM app_user
                    WHERE id = %s AND ({until_col} IS NULL OR {until_col} <= now())
                    FOR UPDATE
                )
                UPDATE app_user u
                SET {count_col} = bumped.attempts,
                    {until_col} = CASE WHEN bumped.attempts >= %s
                                       THEN now() + make_interval(mins => %s)
                                       ELSE NULL END
                FROM bumped
                WHERE u.id = bumped.id
                RETURNING u.{count_col} AS attempts, u.{until_col} AS locked_until
                """,
                (user_id, max_attempts, lockout_minutes),
            ).fetchone()
            if row:
                return LockoutStatus(
                    attempts=row["attempts"],
                    locked_until=ensure_aware(row["locked_until"]),
                )
            current = conn.execute(
                f"SELECT {count_col} AS attempts, {until_col} AS locked_until"
                " FROM app_user WHERE id = %s",
                (user_id,),
            ).fetchone()
        if not current:
            return LockoutStatus(attempts=0)
        return LockoutStatus(
            attempts=current["attempts"],
            locked_until=ensure_aware(current["locked_until"]),
            already_locked=True,
        )

    def record_failed_login(
        self, user_id: str, max_attempts: int, lockout_minutes: int
    ) -> LockoutStatus:
        return self._record_failure("password", user_id, max_attempts, lockout_minutes)

    def record_failed_mfa(
        self, user_id: str, max_attempts: int, lockout_minutes: int
    ) -> LockoutStatus:
        return self._record_failure("mfa", user_id, max_attempts, lockout_minutes)

    def reset_failed_logins(self, user_id: str) -> None:
        """Clear password and second-factor counters and stamp last_login."""
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE app_user
                SET failed_attempts = 0,
                    lockout_until = NULL,
                    mfa_failed_attempts = 0,
                    mfa_lockout_until = NULL,
                    last_login = now()
                WHERE id = %s
                """,
                (user_id,),
            )

    def set_user_active(self, user_id: str, active: bool) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET is_active = %s WHERE id = %s RETURNING *",
                (active, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def unlock_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user SET failed_attempts = 0, lockout_until = NULL,
                    mfa_failed_attempts = 0, mfa_lockout_until = NULL
                WHERE id = %s RETURNING *
                """,
                (user_id,),
            ).fetchone()
        return self._user_from_row(row) if row else None

    # one-time codes
    def replace_otp(
        self, email: str, purpose: str, code_hash: str, ttl_minutes: int
    ) -> OTPCode:
        with self._connect() as conn, conn.transaction():
            conn.execute(
                "DELETE FROM otp_code WHERE email = %s AND purpose = %s",
                (email, purpose),
            )
            row = conn.execute(
                """
                INSERT INTO otp_code (id, email, purpose, code_hash, expires_at)
                VALUES (%s, %s, %s, %s, now() + make_interval(mins => %s))
                RETURNING *
                """,
                (str(uuid.uuid4()), email, purpose, code_hash, ttl_minutes),
            ).fetchone()
        return self._otp_from_row(row)

    def get_live_otp(self, email: str, purpose: str) -> Optional[OTPCode]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM otp_code
                WHERE email = %s AND purpose = %s AND expires_at > now()
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (email, purpose),
            ).fetchone()
        return self._otp_from_row(row) if row else None

    def record_otp_failure(self, otp_id: str, max_attempts: int) -> int:
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                "UPDATE otp_code SET attempts = attempts + 1 WHERE id = %s RETURNING attempts",
                (otp_id,),
            ).fetchone()
            if not row:
                return max_attempts
            if row["attempts"] >= max_attempts:
                conn.execute("DELETE FROM otp_code WHERE id = %s", (otp_id,))
        return row["attempts"]

    def delete_otp(self, otp_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM otp_code WHERE id = %s", (otp_id,))
            return cur.rowcount > 0

    # authorization codes
    def create_authorization_code(self, auth_code: AuthorizationCode) -> AuthorizationCode:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO authorization_code (code, user_id, role, expires_at, used, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    auth_code.code,
                    auth_code.user_id,
                    auth_code.role,
                    auth_code.expires_at,
                    auth_code.used,
                    auth_code.created_at,
                ),
            )
        return auth_code

    def consume_authorization_code(self, code: str) -> Optional[AuthorizationCode]:
        """Mark a code used and return it, or None when unknown, used or expired."""
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE authorization_code SET used = TRUE
                WHERE code = %s AND used = FALSE AND expires_at > now()
                RETURNING *
                """,
                (code,),
            ).fetchone()
        return self._auth_code_from_row(row) if row else None

    # refresh tokens
    def create_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO refresh_token (token_id, user_id, token_hash, expires_at, revoked, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    record.token_id,
                    record.user_id,
                    record.token_hash,
                    record.expires_at,
                    record.revoked,
                    record.created_at,
                ),
            )
        return record

    def get_refresh_token(self, token_id: str) -> Optional[RefreshTokenRecord]:
        try:
            uuid.UUID(str(token_id))
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token_id = %s", (token_id,)
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def revoke_refresh_token(self, token_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE refresh_token SET revoked = TRUE WHERE token_id = %s AND NOT revoked",
                (token_id,),
            )
            return cur.rowcount > 0

    def revoke_user_refresh_tokens(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE refresh_token SET revoked = TRUE WHERE user_id = %s AND NOT revoked",
                (user_id,),
            )
            return cur.rowcount

    def purge_expired(self) -> Dict[str, int]:
        with self._connect() as conn, conn.transaction():
            otp_cur = conn.execute("DELETE FROM otp_code WHERE expires_at <= now()")
            code_cur = conn.execute(
                "DELETE FROM authorization_code WHERE used OR expires_at <= now()"
            )
            token_cur = conn.execute("DELETE FROM refresh_token WHERE expires_at <= now()")
            return {
                "otp_codes": otp_cur.rowcount,
                "authorization_codes": code_cur.rowcount,
                "refresh_tokens": token_cur.rowcount,
            }
