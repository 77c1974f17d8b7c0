from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from sentinelid.config import get_settings, reset_settings_cache
from sentinelid.logging import get_logger
from sentinelid.service.challenge import ChallengeCodec
from sentinelid.service.cipher import SecretCipher
from sentinelid.service.email import EmailService
from sentinelid.service.login import LoginService
from sentinelid.service.mfa import TOTPService
from sentinelid.service.otp import OTPService
from sentinelid.service.passwords import PasswordService
from sentinelid.service.registration import RegistrationService
from sentinelid.service.signing import TokenSigner
from sentinelid.service.tokens import TokenService
from sentinelid.storage.memory import MemoryStore
from sentinelid.storage.postgres import PostgresStore
from sentinelid.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        settings = self.settings
        logger.info(
            "runtime_init_started",
            use_memory_store=settings.use_memory_store,
            test_mode=settings.test_mode,
        )

        store_type = "memory" if settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(fs_root=settings.shared_fs_root)
                if settings.use_memory_store
                else PostgresStore(settings.database_url, fs_root=settings.shared_fs_root)
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = None
        redis_error: Exception | None = None
        if settings.redis_url:
            try:
                # Sync client in test mode avoids event loop binding issues
                if settings.test_mode:
                    cache = SyncRedisCache(settings.redis_url)
                else:
                    cache = RedisCache(settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not settings.test_mode and not settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for shared rate limits; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; rate limits are "
                    "per-process only and not shared across instances."
                ),
                mode=fallback_mode,
            )

        self.access_signer = TokenSigner(
            settings.jwt_secret, issuer=settings.jwt_issuer, audience=settings.jwt_audience
        )
        self.refresh_signer = TokenSigner(
            settings.refresh_signing_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
        )
        # Challenges expire exactly at their TTL
        self.challenges = ChallengeCodec(
            TokenSigner(
                settings.jwt_secret,
                issuer=settings.jwt_issuer,
                audience=f"{settings.jwt_audience}:challenge",
                leeway_seconds=0,
            ),
            login_ttl_seconds=settings.login_challenge_ttl_minutes * 60,
            registration_ttl_seconds=settings.registration_challenge_ttl_minutes * 60,
        )
        self.cipher = SecretCipher(settings.cipher_key_material)
        self.passwords = PasswordService(
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost,
            parallelism=settings.argon2_parallelism,
        )
        self.totp = TOTPService(settings.totp_issuer)
        self.otp = OTPService(
            self.store,
            secret=settings.jwt_secret,
            ttl_minutes=settings.otp_ttl_minutes,
            max_attempts=settings.otp_max_attempts,
        )
        self.email = EmailService(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
        )
        self.tokens = TokenService(
            self.store,
            settings,
            access_signer=self.access_signer,
            refresh_signer=self.refresh_signer,
        )
        wizard_deps = dict(
            codec=self.challenges,
            passwords=self.passwords,
            totp=self.totp,
            otp=self.otp,
            cipher=self.cipher,
            email=self.email,
            tokens=self.tokens,
        )
        self.login = LoginService(self.store, settings, **wizard_deps)
        self.registration = RegistrationService(self.store, settings, **wizard_deps)

        self._local_rate_limits: Dict[str, Tuple[float, datetime]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, SyncRedisCache):
            runtime.cache.client.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token-bucket throttle; shared through Redis, per process without it."""
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            key=key,
            window_seconds=window_seconds,
            message="Invalid rate limit window_seconds; defaulting to 60 seconds",
        )
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    now = datetime.now(timezone.utc)
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        tokens, last_ts = runtime._local_rate_limits.get(key, (float(limit), now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        runtime._local_rate_limits[key] = (tokens, now)
        reset_seconds = int((cost - tokens) / refill_rate) if not allowed else 0
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed
