from __future__ import annotations

import hashlib
import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from sentinelid.logging import get_logger

logger = get_logger(__name__)


class EmailPolicy(str, Enum):
    """How a non-defence email address is treated for dependant (family) accounts."""

    WARN = "warn"
    REJECT = "reject"
    OFF = "off"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return [str(item).strip() for item in value if str(item).strip()]


class Settings(BaseModel):
    """Runtime settings for the identity portal."""

    database_url: str = env_field(
        "postgresql://localhost:5432/sentinelid", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/sentinelid", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow in-process fallbacks and runtime resets used by the test suite",
    )
    server_host: str = env_field("127.0.0.1", "SERVER_HOST")
    server_port: int = env_field(8000, "SERVER_PORT")
    reload: bool = env_field(
        False, "RELOAD", description="Restart the server on code changes (development)"
    )

    # Signing and encryption keys
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    jwt_issuer: str = env_field("sentinelid", "JWT_ISSUER")
    jwt_audience: str = env_field("sentinel-portal", "JWT_AUDIENCE")
    encryption_key: str | None = env_field(
        None,
        "ENCRYPTION_KEY",
        description="Key material for TOTP secret encryption; falls back to JWT_SECRET",
    )

    # Lifetimes
    login_challenge_ttl_minutes: int = env_field(5, "LOGIN_CHALLENGE_TTL_MINUTES")
    registration_challenge_ttl_minutes: int = env_field(
        30, "REGISTRATION_CHALLENGE_TTL_MINUTES"
    )
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS")
    auth_code_ttl_seconds: int = env_field(30, "AUTH_CODE_TTL_SECONDS")
    otp_ttl_minutes: int = env_field(5, "OTP_TTL_MINUTES")
    otp_max_attempts: int = env_field(
        5,
        "OTP_MAX_ATTEMPTS",
        description="Wrong submissions after which a one-time code is discarded",
    )

    # Lockout
    max_login_attempts: int = env_field(3, "MAX_LOGIN_ATTEMPTS")
    lockout_minutes: int = env_field(60, "LOCKOUT_MINUTES")
    mfa_max_attempts: int = env_field(
        5,
        "MFA_MAX_ATTEMPTS",
        description="Wrong second-factor codes before the MFA step is locked",
    )
    mfa_lockout_minutes: int = env_field(5, "MFA_LOCKOUT_MINUTES")

    # Password hashing (argon2id)
    argon2_memory_cost: int = env_field(65536, "ARGON2_MEMORY_COST")
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST")
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM")

    totp_issuer: str = env_field("Defence Incident Portal", "TOTP_ISSUER")

    # Network allow-lists for privileged roles; empty means unrestricted
    admin_allowed_ips: list[str] = env_field([], "ADMIN_ALLOWED_IPS")
    cert_allowed_ips: list[str] = env_field([], "CERT_ALLOWED_IPS")

    # Role dashboards receiving the authorization code
    admin_dashboard_url: str = env_field("http://admin.localhost:3001", "ADMIN_DASHBOARD_URL")
    cert_dashboard_url: str = env_field("http://officer.localhost:3002", "CERT_DASHBOARD_URL")
    user_dashboard_url: str = env_field("http://app.localhost:3003", "USER_DASHBOARD_URL")

    defence_email_domains: list[str] = env_field(
        ["mil", "gov.in", "nic.in"], "DEFENCE_EMAIL_DOMAINS"
    )
    family_email_policy: EmailPolicy = env_field(EmailPolicy.WARN, "FAMILY_EMAIL_POLICY")
    strict_identifier_validation: bool = env_field(True, "STRICT_IDENTIFIER_VALIDATION")

    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    cors_allow_origins: list[str] = env_field(
        [
            "http://admin.localhost:3001",
            "http://officer.localhost:3002",
            "http://app.localhost:3003",
            "http://localhost:5173",
        ],
        "CORS_ALLOW_ORIGINS",
    )

    # Throttles (requests per window)
    login_rate_limit: int = env_field(20, "LOGIN_RATE_LIMIT")
    login_rate_window_seconds: int = env_field(15 * 60, "LOGIN_RATE_WINDOW_SECONDS")
    otp_rate_limit: int = env_field(5, "OTP_RATE_LIMIT")
    otp_rate_window_seconds: int = env_field(60, "OTP_RATE_WINDOW_SECONDS")
    registration_rate_limit: int = env_field(30, "REGISTRATION_RATE_LIMIT")
    registration_rate_window_seconds: int = env_field(
        60 * 60, "REGISTRATION_RATE_WINDOW_SECONDS"
    )

    # Outbound email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Defence Incident Portal", "EMAIL_FROM_NAME")

    cleanup_interval_seconds: int = env_field(300, "CLEANUP_INTERVAL_SECONDS")
    build_sha: str = env_field("dev", "BUILD_SHA")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator(
        "admin_allowed_ips",
        "cert_allowed_ips",
        "defence_email_domains",
        "cors_allow_origins",
        mode="before",
    )
    @classmethod
    def _parse_csv(cls, value: Any) -> list[str]:
        return _split_csv(value)

    @field_validator("defence_email_domains")
    @classmethod
    def _normalize_domains(cls, value: list[str]) -> list[str]:
        return [domain.lower().lstrip(".@") for domain in value]

    @field_validator("family_email_policy")
    @classmethod
    def _validate_email_policy(cls, value: EmailPolicy) -> EmailPolicy:
        return EmailPolicy(value)

    @field_validator(
        "max_login_attempts",
        "lockout_minutes",
        "mfa_max_attempts",
        "mfa_lockout_minutes",
        "auth_code_ttl_seconds",
        "otp_ttl_minutes",
        "otp_max_attempts",
        "access_token_ttl_minutes",
        "refresh_token_ttl_days",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so challenges and tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/sentinelid"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
                message="Could not set directory permissions",
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            # Atomic write: temp file then rename
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        return generated

    @property
    def refresh_signing_secret(self) -> str:
        """Secret for refresh tokens; derived from JWT_SECRET when not configured."""
        if self.jwt_refresh_secret:
            return self.jwt_refresh_secret
        return hashlib.sha256(f"refresh:{self.jwt_secret}".encode()).hexdigest()

    @property
    def cipher_key_material(self) -> str:
        return self.encryption_key or self.jwt_secret

    def dashboard_url_for(self, role: str) -> str:
        if role == "admin":
            return self.admin_dashboard_url
        if role == "cert":
            return self.cert_dashboard_url
        return self.user_dashboard_url

    def allowed_ips_for(self, role: str) -> list[str]:
        if role == "admin":
            return self.admin_allowed_ips
        if role == "cert":
            return self.cert_allowed_ips
        return []


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
