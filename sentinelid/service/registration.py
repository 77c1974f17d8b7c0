from __future__ import annotations

from typing import Optional

from sentinelid.config import Settings
from sentinelid.logging import audit_event, get_logger
from sentinelid.service.challenge import (
    Challenge,
    ChallengeCodec,
    RegistrationStage,
    StepResult,
)
from sentinelid.service.cipher import SecretCipher
from sentinelid.service.email import EmailService
from sentinelid.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    ServerError,
    ValidationError,
)
from sentinelid.service.mfa import TOTPService
from sentinelid.service.otp import OTPService
from sentinelid.service.passwords import PasswordService
from sentinelid.service.tokens import TokenService
from sentinelid.service.validation import (
    email_policy_warning,
    enforce_ip_allow_list,
    enforce_mfa_for_role,
    normalize_email,
    normalize_identifier,
    normalize_mfa_method,
    normalize_mobile,
    normalize_role,
    normalize_unicode,
    require_fields,
    validate_identifier,
)
from sentinelid.storage.errors import ConstraintViolation
from sentinelid.storage.models import NewUser, User

logger = get_logger(__name__)

_ANY_STAGE = tuple(RegistrationStage)
_FROM_SERVICE = (
    RegistrationStage.SERVICE,
    RegistrationStage.SECURITY,
    RegistrationStage.ACTIVATE,
)
_FROM_SECURITY = (RegistrationStage.SECURITY, RegistrationStage.ACTIVATE)

MAX_FULL_NAME_LENGTH = 120


class RegistrationService:
    """Email proof -> service details -> security -> activation wizard.

    Nothing is persisted until activation succeeds; the accumulated fields live
    in the signed registration challenge held by the caller.
    """

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

    # -- identity ---------------------------------------------------------

    def send_verification(self, email: Optional[str]) -> StepResult:
        require_fields(email=email)
        email = normalize_email(email)
        if self.store.get_user_by_email(email):
            audit_event("register_send_verification", "failure", email=email, reason="exists")
            raise ConflictError("Email already registered", detail={"field": "email"})
        self.otp.issue(
            email,
            "email_verification",
            deliver=lambda code: self.email.send_otp(
                email, code, "email_verification", expires_minutes=self.otp.ttl_minutes
            ),
        )
        audit_event("register_send_verification", "success", email=email)
        return StepResult(
            {
                "message": "Verification code sent to your email",
                "expiresIn": self.otp.ttl_seconds,
            }
        )

    def confirm_identity(
        self,
        email: Optional[str],
        full_name: Optional[str],
        mobile: Optional[str],
        code: Optional[str],
    ) -> StepResult:
        require_fields(
            email=email, full_name=full_name, mobile=mobile, email_verification_code=code
        )
        email = normalize_email(email)
        full_name = " ".join(normalize_unicode(full_name).split())
        if len(full_name) > MAX_FULL_NAME_LENGTH:
            raise ValidationError(
                f"Full name must be at most {MAX_FULL_NAME_LENGTH} characters"
            )
        mobile = normalize_mobile(mobile)
        self.otp.verify(email, "email_verification", code)

        token = self.codec.issue_registration(
            email=email, full_name=full_name, mobile=mobile, email_verified=True
        )
        audit_event("register_identity", "success", email=email)
        return StepResult(
            {"nextStep": "SERVICE", "message": "Email verified successfully"},
            challenge=token,
        )

    # -- service ----------------------------------------------------------

    def submit_service(
        self,
        challenge_token: Optional[str],
        role: Optional[str],
        identifier: Optional[str],
        client_ip: Optional[str],
    ) -> StepResult:
        challenge = self.codec.load_registration(challenge_token, allowed=_ANY_STAGE)
        require_fields(role=role, identifier=identifier)
        role = normalize_role(role)
        try:
            enforce_ip_allow_list(client_ip, role, self.settings.allowed_ips_for(role))
        except ForbiddenError:
            audit_event(
                "register_service", "failure", role=role, client_ip=client_ip, reason="ip"
            )
            raise
        identifier = normalize_identifier(identifier, role)
        validate_identifier(
            identifier, role, strict=self.settings.strict_identifier_validation
        )
        warning = email_policy_warning(
            challenge.get("email", ""),
            role,
            policy=self.settings.family_email_policy,
            domains=self.settings.defence_email_domains,
        )
        if self.store.get_user_by_identifier(identifier, role):
            audit_event(
                "register_service", "failure", role=role, identifier=identifier, reason="exists"
            )
            raise ConflictError(
                "Identifier already in use for this role", detail={"field": "identifier"}
            )

        token = self.codec.advance(
            challenge, RegistrationStage.SERVICE, role=role, identifier=identifier
        )
        audit_event("register_service", "success", role=role)
        body = {"nextStep": "SECURITY"}
        if warning:
            body["warning"] = warning
        return StepResult(body, challenge=token)

    # -- security ---------------------------------------------------------

    def submit_security(
        self,
        challenge_token: Optional[str],
        password: Optional[str],
        mfa_method: Optional[str],
        terms_accepted: Optional[bool],
    ) -> StepResult:
        challenge = self.codec.load_registration(challenge_token, allowed=_FROM_SERVICE)
        require_fields(password=password, mfa_method=mfa_method)
        if terms_accepted is not True:
            raise ValidationError(
                "Terms and conditions must be accepted", error_code="TERMS_NOT_ACCEPTED"
            )
        violation = self.passwords.policy_violation(password)
        if violation:
            raise ValidationError(violation, error_code="INVALID_PASSWORD")
        method = normalize_mfa_method(mfa_method)
        enforce_mfa_for_role(method, challenge.get("role"))

        token = self.codec.advance(
            challenge,
            RegistrationStage.SECURITY,
            password_hash=self.passwords.hash(password),
            mfa_method=method,
        )
        audit_event("register_security", "success", role=challenge.get("role"))
        return StepResult({"nextStep": "ACTIVATE"}, challenge=token)

    # -- activation -------------------------------------------------------

    def _require_method(self, challenge: Challenge, method: str) -> None:
        if challenge.get("mfa_method") != method:
            raise ValidationError(
                f"This registration uses {str(challenge.get('mfa_method')).upper()} verification",
                error_code="INVALID_MFA_METHOD",
            )

    def generate_totp(self, challenge_token: Optional[str]) -> StepResult:
        """Create the authenticator secret and backup codes shown to the user once."""
        challenge = self.codec.load_registration(challenge_token, allowed=_FROM_SECURITY)
        self._require_method(challenge, "totp")
        secret = self.totp.generate_secret()
        backup_codes, backup_hashes = self.totp.generate_backup_codes()
        token = self.codec.advance(
            challenge,
            RegistrationStage.ACTIVATE,
            totp_secret=self.cipher.encrypt(secret),
            backup_codes=backup_hashes,
        )
        audit_event("register_totp_generated", "success", role=challenge.get("role"))
        return StepResult(
            {
                "manual_entry_key": secret,
                "otpauth_uri": self.totp.provisioning_uri(secret, challenge.get("email")),
                "backup_codes": backup_codes,
            },
            challenge=token,
        )

    def verify_totp(self, challenge_token: Optional[str], code: Optional[str]) -> StepResult:
        challenge = self.codec.load_registration(challenge_token, allowed=_FROM_SECURITY)
        self._require_method(challenge, "totp")
        encrypted = challenge.get("totp_secret")
        if challenge.stage != RegistrationStage.ACTIVATE or not encrypted:
            raise ValidationError(
                "Please generate your authenticator key first",
                error_code="TOTP_NOT_GENERATED",
            )
        try:
            secret = self.cipher.decrypt(encrypted)
        except ValueError as exc:
            raise ServerError("Unable to verify authenticator code") from exc
        if not self.totp.verify(secret, code or ""):
            audit_event("register_activate", "failure", method="totp", reason="mismatch")
            raise AuthenticationError("Invalid TOTP code", error_code="INVALID_TOTP")
        return self._complete(challenge)

    def send_activation_otp(self, challenge_token: Optional[str]) -> StepResult:
        challenge = self.codec.load_registration(challenge_token, allowed=_FROM_SECURITY)
        self._require_method(challenge, "email")
        email = challenge.get("email")
        self.otp.issue(
            email,
            "registration",
            deliver=lambda code: self.email.send_otp(
                email, code, "registration", expires_minutes=self.otp.ttl_minutes
            ),
        )
        token = self.codec.advance(challenge, RegistrationStage.ACTIVATE)
        audit_event("register_activation_otp", "success", email=email)
        return StepResult(
            {
                "message": "Activation OTP sent to your email",
                "expiresIn": self.otp.ttl_seconds,
            },
            challenge=token,
        )

    def verify_activation_otp(
        self, challenge_token: Optional[str], code: Optional[str]
    ) -> StepResult:
        challenge = self.codec.load_registration(
            challenge_token, allowed=(RegistrationStage.ACTIVATE,)
        )
        self._require_method(challenge, "email")
        self.otp.verify(challenge.get("email"), "registration", code or "")
        return self._complete(challenge)

    def activate(
        self,
        challenge_token: Optional[str],
        *,
        action: Optional[str] = None,
        totp_verification_code: Optional[str] = None,
        email_otp_code: Optional[str] = None,
    ) -> StepResult:
        """Dispatch one activation request to the matching half of the TOTP or email path."""
        if action == "generate_totp":
            return self.generate_totp(challenge_token)
        if action == "send_otp":
            return self.send_activation_otp(challenge_token)
        if action is None and totp_verification_code:
            return self.verify_totp(challenge_token, totp_verification_code)
        if action is None and email_otp_code:
            return self.verify_activation_otp(challenge_token, email_otp_code)
        raise ValidationError("Invalid action or missing verification code")

    def _complete(self, challenge: Challenge) -> StepResult:
        required = ("email", "full_name", "mobile", "role", "identifier", "password_hash")
        if any(not challenge.get(key) for key in required):
            raise ValidationError("Registration is incomplete; please start over")
        new_user = NewUser(
            full_name=challenge.get("full_name"),
            email=challenge.get("email"),
            mobile=challenge.get("mobile"),
            identifier=challenge.get("identifier"),
            role=challenge.get("role"),
            password_hash=challenge.get("password_hash"),
            mfa_method=challenge.get("mfa_method"),
            totp_secret=challenge.get("totp_secret") if challenge.get("mfa_method") == "totp" else None,
            backup_codes=list(challenge.get("backup_codes") or []),
        )
        try:
            user: User = self.store.create_user(new_user)
        except ConstraintViolation as exc:
            audit_event(
                "register_activate", "failure", role=new_user.role, reason="duplicate"
            )
            raise ConflictError(
                "Email or identifier already exists", detail={"field": exc.field}
            ) from exc
        issued = self.tokens.issue_authorization_code(user)
        audit_event("register_activate", "success", user_id=user.id, role=user.role)
        return StepResult(
            {"message": "Registration complete! Redirecting to dashboard...", **issued},
            clear_challenge=True,
        )
