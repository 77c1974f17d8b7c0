from __future__ import annotations

import hmac
from typing import Optional

from sentinelid.config import Settings
from sentinelid.logging import audit_event, get_logger
from sentinelid.service.challenge import Challenge, ChallengeCodec, LoginStage, StepResult
from sentinelid.service.cipher import SecretCipher
from sentinelid.service.email import EmailService
from sentinelid.service.errors import (
    AccountLockedError,
    AuthenticationError,
    ForbiddenError,
    InvalidCredentialsError,
    ServerError,
    ValidationError,
)
from sentinelid.service.mfa import TOTPService
from sentinelid.service.otp import OTPService
from sentinelid.service.passwords import PasswordService
from sentinelid.service.tokens import TokenService
from sentinelid.service.validation import (
    normalize_identifier,
    normalize_mfa_method,
    normalize_role,
    normalize_unicode,
    require_fields,
)
from sentinelid.storage.models import User

logger = get_logger(__name__)


class LoginService:
    """Identity -> password -> MFA login wizard ending in an authorization code."""

    def __init__(
        self,
        store,
        settings: Settings,
        *,
        codec: ChallengeCodec,
        passwords: PasswordService,
        totp: TOTPService,
        otp: OTPService,
        cipher: SecretCipher,
        email: EmailService,
        tokens: TokenService,
    ) -> None:
        self.store = store
        self.settings = settings
        self.codec = codec
        self.passwords = passwords
        self.totp = totp
        self.otp = otp
        self.cipher = cipher
        self.email = email
        self.tokens = tokens

    def _deactivated(self, **kwargs) -> ForbiddenError:
        return ForbiddenError(
            "Account is deactivated. Please contact support.",
            error_code="ACCOUNT_DEACTIVATED",
            **kwargs,
        )

    def _locked(self, user: User, **kwargs) -> AccountLockedError:
        minutes = user.lockout_remaining_minutes()
        return AccountLockedError(
            f"Account locked for {minutes} minutes due to multiple failed attempts.",
            detail={"remaining_minutes": minutes},
            **kwargs,
        )

    def _mfa_locked(self, minutes: int) -> AccountLockedError:
        return AccountLockedError(
            f"Too many invalid verification codes. Try again in {minutes} minutes.",
            detail={"remaining_minutes": minutes},
            reset_challenge=True,
        )

    def _challenge_user(self, challenge: Challenge, *, mfa: bool = False) -> User:
        """Reload the challenge's user and re-check it may still sign in.

        The password lockout applies before the password step only. Once past
        it, the MFA step answers to its own failure counter instead.
        """
        user = self.store.get_user(str(challenge.get("uid")))
        if not user or user.role != challenge.get("role"):
            raise InvalidCredentialsError(reset_challenge=True)
        if not user.is_active:
            raise self._deactivated(reset_challenge=True)
        if mfa:
            if user.is_mfa_locked():
                audit_event("login_mfa", "failure", user_id=user.id, reason="mfa_locked")
                raise self._mfa_locked(user.lockout_remaining_minutes(mfa=True))
        elif user.is_locked():
            raise self._locked(user, reset_challenge=True)
        return user

    def _record_mfa_failure(self, user: User, reason: str) -> None:
        status = self.store.record_failed_mfa(
            user.id, self.settings.mfa_max_attempts, self.settings.mfa_lockout_minutes
        )
        audit_event(
            "login_mfa", "failure", user_id=user.id, reason=reason, attempts=status.attempts
        )
        if status.locked:
            raise self._mfa_locked(self.settings.mfa_lockout_minutes)

    def identify(
        self, role: Optional[str], identifier: Optional[str], email: Optional[str]
    ) -> StepResult:
        require_fields(role=role, identifier=identifier, email=email)
        role = normalize_role(role)
        identifier = normalize_identifier(identifier, role)
        email = normalize_unicode(email.strip().lower())

        user = self.store.get_user_by_identifier(identifier, role)
        # Same error for an unknown identifier and a wrong email
        if not user or not hmac.compare_digest(user.email.encode(), email.encode()):
            audit_event(
                "login_identity", "failure", role=role, identifier=identifier, reason="no_match"
            )
            raise InvalidCredentialsError()
        if not user.is_active:
            audit_event("login_identity", "failure", user_id=user.id, reason="deactivated")
            raise self._deactivated()
        if user.is_locked():
            audit_event("login_identity", "failure", user_id=user.id, reason="locked")
            raise self._locked(user)

        token = self.codec.issue_login(uid=user.id, role=user.role)
        audit_event("login_identity", "success", user_id=user.id, role=role)
        return StepResult(
            {"nextStep": "PASSWORD", "message": "Identity verified. Proceed to password."},
            challenge=token,
        )

    def verify_password(self, challenge_token: Optional[str], password: Optional[str]) -> StepResult:
        require_fields(password=password)
        challenge = self.codec.load_login(challenge_token, expected=LoginStage.IDENTITY)
        user = self._challenge_user(challenge)

        if not self.passwords.verify(user.password_hash, password):
            status = self.store.record_failed_login(
                user.id, self.settings.max_login_attempts, self.settings.lockout_minutes
            )
            if status.locked:
                audit_event(
                    "login_password",
                    "failure",
                    user_id=user.id,
                    reason="locked",
                    attempts=status.attempts,
                )
                raise AccountLockedError(
                    f"Account locked for {self.settings.lockout_minutes} minutes due to multiple failed attempts.",
                    detail={"remaining_minutes": self.settings.lockout_minutes},
                    reset_challenge=True,
                )
            remaining = max(0, self.settings.max_login_attempts - status.attempts)
            audit_event(
                "login_password",
                "failure",
                user_id=user.id,
                reason="mismatch",
                attempts=status.attempts,
            )
            raise InvalidCredentialsError(detail={"attempts_remaining": remaining})

        token = self.codec.advance(challenge, LoginStage.PASSWORD, mfa_method=user.mfa_method)
        audit_event("login_password", "success", user_id=user.id)
        return StepResult(
            {
                "nextStep": "MFA",
                "mfaRequired": True,
                "allowedMethods": [user.mfa_method.upper()],
            },
            challenge=token,
        )

    def send_mfa_otp(self, challenge_token: Optional[str], method: Optional[str]) -> StepResult:
        challenge = self.codec.load_login(challenge_token, expected=LoginStage.PASSWORD)
        user = self._challenge_user(challenge, mfa=True)
        if normalize_mfa_method(method) != "email" or user.mfa_method != "email":
            audit_event("login_mfa_send", "failure", user_id=user.id, reason="method")
            raise ValidationError(
                "Email verification is not enabled for this account",
                error_code="INVALID_MFA_METHOD",
            )
        self.otp.issue(
            user.email,
            "login_mfa",
            deliver=lambda code: self.email.send_otp(
                user.email, code, "login_mfa", expires_minutes=self.otp.ttl_minutes
            ),
        )
        audit_event("login_mfa_send", "success", user_id=user.id)
        return StepResult(
            {"message": "OTP sent to your email", "expiresIn": self.otp.ttl_seconds}
        )

    def verify_mfa(
        self,
        challenge_token: Optional[str],
        method: Optional[str],
        code: Optional[str],
    ) -> StepResult:
        challenge = self.codec.load_login(challenge_token, expected=LoginStage.PASSWORD)
        require_fields(code=code)
        user = self._challenge_user(challenge, mfa=True)
        method = normalize_mfa_method(method) or user.mfa_method
        if method != user.mfa_method:
            audit_event("login_mfa", "failure", user_id=user.id, reason="method")
            raise ValidationError(
                f"This account uses {user.mfa_method.upper()} verification",
                error_code="INVALID_MFA_METHOD",
            )

        if method == "totp":
            if not user.totp_secret:
                raise AuthenticationError(
                    "Authenticator is not set up for this account", error_code="INVALID_TOTP"
                )
            try:
                secret = self.cipher.decrypt(user.totp_secret)
            except ValueError as exc:
                raise ServerError("Unable to verify authenticator code") from exc
            if not self.totp.verify(secret, code):
                self._record_mfa_failure(user, "totp_mismatch")
                raise AuthenticationError("Invalid verification code", error_code="INVALID_TOTP")
        else:
            try:
                self.otp.verify(user.email, "login_mfa", code)
            except ValidationError as exc:
                if exc.error_code == "INVALID_OTP":
                    self._record_mfa_failure(user, "otp_mismatch")
                raise

        self.store.reset_failed_logins(user.id)
        issued = self.tokens.issue_authorization_code(user)
        audit_event("login_mfa", "success", user_id=user.id, method=method)
        return StepResult(
            {"message": "Authentication successful", **issued}, clear_challenge=True
        )
