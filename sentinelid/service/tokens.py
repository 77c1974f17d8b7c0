from __future__ import annotations

import hmac
import secrets
import uuid
from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import quote

from sentinelid.config import Settings
from sentinelid.logging import audit_event, get_logger
from sentinelid.service.errors import AuthenticationError, ValidationError
from sentinelid.service.signing import TokenSigner, sha256_hex
from sentinelid.storage.models import AuthorizationCode, RefreshTokenRecord, User

logger = get_logger(__name__)


def _invalid_auth_code() -> AuthenticationError:
    return AuthenticationError(
        "Invalid or expired authorization code", error_code="INVALID_AUTH_CODE"
    )


def _invalid_refresh() -> AuthenticationError:
    return AuthenticationError(
        "Invalid or expired refresh token", error_code="INVALID_REFRESH_TOKEN"
    )


def _inactive() -> AuthenticationError:
    return AuthenticationError("User account is not active", error_code="ACCOUNT_INACTIVE")


class TokenService:
    """Authorization codes, access/refresh tokens and the refresh token registry."""

    def __init__(
        self,
        store,
        settings: Settings,
        *,
        access_signer: TokenSigner,
        refresh_signer: TokenSigner,
    ) -> None:
        self.store = store
        self.settings = settings
        self.access_signer = access_signer
        self.refresh_signer = refresh_signer

    @property
    def access_ttl_seconds(self) -> int:
        return self.settings.access_token_ttl_minutes * 60

    # -- authorization codes ----------------------------------------------

    def issue_authorization_code(self, user: User) -> dict[str, Any]:
        """Mint a single-use code bound to (user, role) and the role dashboard redirect."""
        ttl = self.settings.auth_code_ttl_seconds
        auth_code = AuthorizationCode.new(
            secrets.token_urlsafe(32), user.id, user.role, ttl
        )
        self.store.create_authorization_code(auth_code)
        dashboard = self.settings.dashboard_url_for(user.role).rstrip("/")
        audit_event("auth_code_issued", "success", user_id=user.id, role=user.role)
        return {
            "redirect_url": f"{dashboard}/callback?code={quote(auth_code.code)}",
            "code": auth_code.code,
            "expires_in": ttl,
        }

    def _consume(self, code: Optional[str]) -> User:
        if not code:
            raise ValidationError("Authorization code is required")
        auth_code = self.store.consume_authorization_code(code)
        if not auth_code:
            audit_event("auth_code_exchange", "failure", reason="invalid_code")
            raise _invalid_auth_code()
        user = self.store.get_user(auth_code.user_id)
        if not user or not user.is_active or user.role != auth_code.role:
            audit_event(
                "auth_code_exchange", "failure", user_id=auth_code.user_id, reason="inactive"
            )
            raise _inactive()
        return user

    def exchange(self, code: Optional[str]) -> dict[str, Any]:
        """Trade an authorization code for access and refresh tokens, exactly once."""
        user = self._consume(code)
        record = RefreshTokenRecord.new(
            user.id, sha256_hex, self.settings.refresh_token_ttl_days
        )
        self.store.create_refresh_token(record)
        refresh_ttl = int((record.expires_at - record.created_at).total_seconds())
        refresh_token = self.refresh_signer.encode(
            {
                "sub": user.id,
                "role": user.role,
                "token_type": "refresh",
                "jti": record.token_id,
            },
            ttl_seconds=refresh_ttl,
        )
        audit_event("auth_code_exchange", "success", user_id=user.id, role=user.role)
        return {
            "message": "Authorization successful",
            "access_token": self._issue_access_token(user),
            "refresh_token": refresh_token,
            "expires_in": self.access_ttl_seconds,
            "token_type": "Bearer",
            "user": user.public_profile(),
        }

    def validate_code(self, code: Optional[str]) -> dict[str, Any]:
        """Consume a code on behalf of an internal service without issuing tokens."""
        user = self._consume(code)
        audit_event("auth_code_validate", "success", user_id=user.id, role=user.role)
        return {
            "user_id": user.id,
            "role": user.role,
            "email": user.email,
            "full_name": user.full_name,
        }

    # -- bearer tokens ----------------------------------------------------

    def _issue_access_token(self, user: User) -> str:
        return self.access_signer.encode(
            {
                "sub": user.id,
                "role": user.role,
                "token_type": "access",
                "jti": str(uuid.uuid4()),
            },
            ttl_seconds=self.access_ttl_seconds,
        )

    def refresh(self, refresh_token: Optional[str]) -> dict[str, Any]:
        """Issue a new access token for a live refresh token.

        The signed ``exp`` must agree with the stored expiry within the signer's
        leeway; on disagreement the record is revoked.
        """
        payload = self.refresh_signer.decode(refresh_token, token_type="refresh")
        if not payload or not payload.get("jti"):
            audit_event("token_refresh", "failure", reason="bad_signature")
            raise _invalid_refresh()
        token_id = str(payload["jti"])
        record = self.store.get_refresh_token(token_id)
        if (
            not record
            or record.user_id != payload.get("sub")
            or not hmac.compare_digest(record.token_hash, sha256_hex(token_id))
        ):
            audit_event("token_refresh", "failure", reason="unknown_record")
            raise _invalid_refresh()
        if not record.is_valid():
            audit_event(
                "token_refresh", "failure", user_id=record.user_id, reason="revoked_or_expired"
            )
            raise _invalid_refresh()
        signed_exp = datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc)
        drift = abs((signed_exp - record.expires_at).total_seconds())
        if drift > self.refresh_signer.leeway_seconds:
            self.store.revoke_refresh_token(token_id)
            logger.warning(
                "refresh_expiry_mismatch", user_id=record.user_id, drift_seconds=drift
            )
            audit_event(
                "token_refresh", "failure", user_id=record.user_id, reason="expiry_mismatch"
            )
            raise _invalid_refresh()
        user = self.store.get_user(record.user_id)
        if not user or not user.is_active:
            self.store.revoke_refresh_token(token_id)
            audit_event(
                "token_refresh", "failure", user_id=record.user_id, reason="inactive"
            )
            raise _inactive()
        audit_event("token_refresh", "success", user_id=user.id)
        return {
            "access_token": self._issue_access_token(user),
            "expires_in": self.access_ttl_seconds,
            "token_type": "Bearer",
        }

    def authenticate(self, access_token: Optional[str]) -> User:
        payload = self.access_signer.decode(access_token, token_type="access")
        if not payload:
            raise AuthenticationError("Authentication required")
        user = self.store.get_user(str(payload.get("sub")))
        if not user or not user.is_active or user.role != payload.get("role"):
            raise AuthenticationError("Authentication required")
        return user

    def logout(self, access_token: Optional[str]) -> int:
        """Revoke every live refresh token of the bearer's account."""
        user = self.authenticate(access_token)
        revoked = self.store.revoke_user_refresh_tokens(user.id)
        audit_event("logout", "success", user_id=user.id, revoked=revoked)
        return revoked


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()
