from __future__ import annotations

from typing import Any, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from sentinelid.logging import get_correlation_id

# Largest value accepted for any free-text request field
MAX_STRING_LENGTH = 4096

_VALID_ERROR_CODES = frozenset({
    "MISSING_FIELDS",
    "INVALID_ROLE",
    "INVALID_CREDENTIALS",
    "ACCOUNT_DEACTIVATED",
    "ACCOUNT_LOCKED",
    "INVALID_AUTH_STATE",
    "INVALID_TOTP",
    "OTP_EXPIRED",
    "INVALID_OTP",
    "INVALID_AUTH_CODE",
    "IP_NOT_AUTHORIZED",
    "DUPLICATE_ERROR",
    "SERVER_ERROR",
    "INVALID_EMAIL",
    "INVALID_MOBILE",
    "INVALID_IDENTIFIER",
    "INVALID_PASSWORD",
    "INVALID_MFA_METHOD",
    "TERMS_NOT_ACCEPTED",
    "TOTP_NOT_GENERATED",
    "ACCOUNT_INACTIVE",
    "INVALID_REFRESH_TOKEN",
    "UNAUTHORIZED",
    "FORBIDDEN",
    "NOT_FOUND",
    "RATE_LIMIT_EXCEEDED",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable, machine-readable code."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class Envelope(BaseModel):
    """API envelope wrapping every success and error response."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


class _Request(BaseModel):
    # Missing fields are reported by the services as MISSING_FIELDS with the field list
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)


# -- login --------------------------------------------------------------------


class LoginIdentityRequest(_Request):
    role: Optional[str] = Field(default=None, max_length=32)
    identifier: Optional[str] = Field(default=None, max_length=320)
    email: Optional[str] = Field(default=None, max_length=320)


class LoginPasswordRequest(BaseModel):
    # Passwords are taken verbatim
    password: Optional[str] = Field(default=None, max_length=1024)


class LoginMFARequest(_Request):
    method: Optional[str] = Field(default=None, max_length=16)
    code: Optional[str] = Field(default=None, max_length=16)
    action: Optional[Literal["send_otp"]] = None


# -- registration -------------------------------------------------------------


class RegisterIdentityRequest(_Request):
    action: Optional[Literal["send_verification"]] = None
    email: Optional[str] = Field(default=None, max_length=320)
    full_name: Optional[str] = Field(default=None, max_length=MAX_STRING_LENGTH)
    mobile: Optional[str] = Field(default=None, max_length=32)
    email_verification_code: Optional[str] = Field(default=None, max_length=16)


class RegisterServiceRequest(_Request):
    role: Optional[str] = Field(default=None, max_length=32)
    identifier: Optional[str] = Field(default=None, max_length=320)


class RegisterSecurityRequest(BaseModel):
    password: Optional[str] = Field(default=None, max_length=1024)
    mfa_method: Optional[str] = Field(default=None, max_length=16)
    terms_accepted: Optional[bool] = None


class RegisterActivateRequest(_Request):
    action: Optional[Literal["generate_totp", "send_otp"]] = None
    totp_verification_code: Optional[str] = Field(default=None, max_length=16)
    email_otp_code: Optional[str] = Field(default=None, max_length=16)


# -- tokens -------------------------------------------------------------------


class CodeRequest(_Request):
    code: Optional[str] = Field(default=None, max_length=512)


class TokenRefreshRequest(_Request):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class UserProfile(BaseModel):
    user_id: str
    role: str
    full_name: str
    email: str
    identifier: str
    mfa_method: Optional[str] = None


class TokenExchangeResponse(BaseModel):
    message: str
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"
    user: UserProfile


class TokenRefreshResponse(BaseModel):
    access_token: str
    expires_in: int
    token_type: str = "Bearer"
