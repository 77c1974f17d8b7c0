from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, Request, Response

from sentinelid.api.schemas import (
    CodeRequest,
    Envelope,
    LoginIdentityRequest,
    LoginMFARequest,
    LoginPasswordRequest,
    RegisterActivateRequest,
    RegisterIdentityRequest,
    RegisterSecurityRequest,
    RegisterServiceRequest,
    TokenExchangeResponse,
    TokenRefreshRequest,
    TokenRefreshResponse,
    UserProfile,
)
from sentinelid.logging import get_logger
from sentinelid.service.challenge import StepResult
from sentinelid.service.errors import RateLimitedError
from sentinelid.service.runtime import Runtime, check_rate_limit, get_runtime
from sentinelid.service.tokens import extract_bearer

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

LOGIN_COOKIE = "login_challenge"
REGISTRATION_COOKIE = "registration_challenge"
REFRESH_COOKIE = "refresh_token"


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    response: Optional[Response] = None,
) -> RateLimitInfo:
    """Enforce a token-bucket throttle, raising 429 RATE_LIMIT_EXCEEDED when empty."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.warning("rate_limit_exceeded", key=key.split(":", 1)[0], limit=limit)
        raise RateLimitedError(
            "Too many requests. Please try again later.",
            detail={"retry_after_seconds": reset_seconds},
        )
    return info


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _track_challenge(request: Request, runtime: Runtime, cookie_name: str) -> None:
    # Read by the ServiceError handler to clear the cookie on terminal failures
    request.state.challenge_cookie = cookie_name
    request.state.cookie_secure = runtime.settings.cookie_secure


def _apply_step(
    response: Response,
    result: StepResult,
    *,
    cookie_name: str,
    max_age: int,
    secure: bool,
) -> Envelope:
    if result.challenge:
        response.set_cookie(
            cookie_name,
            result.challenge,
            max_age=max_age,
            httponly=True,
            secure=secure,
            samesite="strict",
            path="/",
        )
    elif result.clear_challenge:
        response.delete_cookie(
            cookie_name, path="/", secure=secure, httponly=True, samesite="strict"
        )
    return Envelope(status="ok", data=result.body)


def _login_step(runtime: Runtime, response: Response, result: StepResult) -> Envelope:
    return _apply_step(
        response,
        result,
        cookie_name=LOGIN_COOKIE,
        max_age=runtime.settings.login_challenge_ttl_minutes * 60,
        secure=runtime.settings.cookie_secure,
    )


def _registration_step(runtime: Runtime, response: Response, result: StepResult) -> Envelope:
    return _apply_step(
        response,
        result,
        cookie_name=REGISTRATION_COOKIE,
        max_age=runtime.settings.registration_challenge_ttl_minutes * 60,
        secure=runtime.settings.cookie_secure,
    )


# -- login --------------------------------------------------------------------


@router.post("/auth/login/identity", response_model=Envelope, tags=["login"])
async def login_identity(
    body: LoginIdentityRequest,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
):
    """First login step: role, identifier and email must match one account."""
    _track_challenge(request, runtime, LOGIN_COOKIE)
    await _enforce_rate_limit(
        runtime,
        f"login:{_client_ip(request)}",
        runtime.settings.login_rate_limit,
        runtime.settings.login_rate_window_seconds,
        response=response,
    )
    result = await asyncio.to_thread(
        runtime.login.identify, body.role, body.identifier, body.email
    )
    return _login_step(runtime, response, result)


@router.post("/auth/login/password", response_model=Envelope, tags=["login"])
async def login_password(
    body: LoginPasswordRequest,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
    login_challenge: Optional[str] = Cookie(None),
):
    """Second login step. Three wrong passwords lock the account."""
    _track_challenge(request, runtime, LOGIN_COOKIE)
    await _enforce_rate_limit(
        runtime,
        f"login:{_client_ip(request)}",
        runtime.settings.login_rate_limit,
        runtime.settings.login_rate_window_seconds,
        response=response,
    )
    result = await asyncio.to_thread(
        runtime.login.verify_password, login_challenge, body.password
    )
    return _login_step(runtime, response, result)


@router.post("/auth/login/mfa", response_model=Envelope, tags=["login"])
async def login_mfa(
    body: LoginMFARequest,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
    login_challenge: Optional[str] = Cookie(None),
):
    """Send an email OTP (``action=send_otp``) or verify the second factor.

    A successful verification answers with the single-use authorization code
    and the role dashboard callback.
    """
    _track_challenge(request, runtime, LOGIN_COOKIE)
    if body.action == "send_otp":
        await _enforce_rate_limit(
            runtime,
            f"otp:login:{_client_ip(request)}",
            runtime.settings.otp_rate_limit,
            runtime.settings.otp_rate_window_seconds,
            response=response,
        )
        result = await asyncio.to_thread(
            runtime.login.send_mfa_otp, login_challenge, body.method
        )
    else:
        await _enforce_rate_limit(
            runtime,
            f"login:{_client_ip(request)}",
            runtime.settings.login_rate_limit,
            runtime.settings.login_rate_window_seconds,
            response=response,
        )
        result = await asyncio.to_thread(
            runtime.login.verify_mfa, login_challenge, body.method, body.code
        )
    return _login_step(runtime, response, result)


# -- registration -------------------------------------------------------------


@router.post("/auth/register/identity", response_model=Envelope, tags=["registration"])
async def register_identity(
    body: RegisterIdentityRequest,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
):
    """Send the email verification code, or confirm it and open the registration."""
    _track_challenge(request, runtime, REGISTRATION_COOKIE)
    await _enforce_rate_limit(
        runtime,
        f"register:{_client_ip(request)}",
        runtime.settings.registration_rate_limit,
        runtime.settings.registration_rate_window_seconds,
        response=response,
    )
    if body.action == "send_verification":
        await _enforce_rate_limit(
            runtime,
            f"otp:email:{(body.email or '').lower()}",
            runtime.settings.otp_rate_limit,
            runtime.settings.otp_rate_window_seconds,
        )
        result = await asyncio.to_thread(runtime.registration.send_verification, body.email)
    else:
        result = await asyncio.to_thread(
            runtime.registration.confirm_identity,
            body.email,
            body.full_name,
            body.mobile,
            body.email_verification_code,
        )
    return _registration_step(runtime, response, result)


@router.post("/auth/register/service", response_model=Envelope, tags=["registration"])
async def register_service(
    body: RegisterServiceRequest,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
    registration_challenge: Optional[str] = Cookie(None),
):
    _track_challenge(request, runtime, REGISTRATION_COOKIE)
    result = await asyncio.to_thread(
        runtime.registration.submit_service,
        registration_challenge,
        body.role,
        body.identifier,
        _client_ip(request),
    )
    return _registration_step(runtime, response, result)


@router.post("/auth/register/security", response_model=Envelope, tags=["registration"])
async def register_security(
    body: RegisterSecurityRequest,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
    registration_challenge: Optional[str] = Cookie(None),
):
    _track_challenge(request, runtime, REGISTRATION_COOKIE)
    result = await asyncio.to_thread(
        runtime.registration.submit_security,
        registration_challenge,
        body.password,
        body.mfa_method,
        body.terms_accepted,
    )
    return _registration_step(runtime, response, result)


@router.post("/auth/register/activate", response_model=Envelope, tags=["registration"])
async def register_activate(
    body: RegisterActivateRequest,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
    registration_challenge: Optional[str] = Cookie(None),
):
    """Enrol the second factor and create the account.

    ``action=generate_totp`` returns the authenticator key and backup codes,
    ``action=send_otp`` mails an activation code; a verification code then
    completes registration.
    """
    _track_challenge(request, runtime, REGISTRATION_COOKIE)
    if body.action == "send_otp":
        await _enforce_rate_limit(
            runtime,
            f"otp:activate:{_client_ip(request)}",
            runtime.settings.otp_rate_limit,
            runtime.settings.otp_rate_window_seconds,
            response=response,
        )
    result = await asyncio.to_thread(
        runtime.registration.activate,
        registration_challenge,
        action=body.action,
        totp_verification_code=body.totp_verification_code,
        email_otp_code=body.email_otp_code,
    )
    return _registration_step(runtime, response, result)


# -- tokens -------------------------------------------------------------------


@router.post("/auth/exchange", response_model=Envelope, tags=["tokens"])
async def exchange_code(
    body: CodeRequest,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
):
    """Trade a single-use authorization code for access and refresh tokens."""
    tokens = await asyncio.to_thread(runtime.tokens.exchange, body.code)
    response.set_cookie(
        REFRESH_COOKIE,
        tokens["refresh_token"],
        max_age=runtime.settings.refresh_token_ttl_days * 24 * 3600,
        httponly=True,
        secure=runtime.settings.cookie_secure,
        samesite="strict",
        path="/",
    )
    return Envelope(status="ok", data=TokenExchangeResponse(**tokens))


@router.post("/auth/refresh", response_model=Envelope, tags=["tokens"])
async def refresh_token(
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
    runtime: Runtime = Depends(get_runtime),
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    token = (body.refresh_token if body else None) or refresh_cookie
    tokens = await asyncio.to_thread(runtime.tokens.refresh, token)
    return Envelope(status="ok", data=TokenRefreshResponse(**tokens))


@router.post("/auth/validate-code", response_model=Envelope, tags=["tokens"])
async def validate_code(
    body: CodeRequest,
    runtime: Runtime = Depends(get_runtime),
):
    """Consume an authorization code for an internal service without minting tokens."""
    identity = await asyncio.to_thread(runtime.tokens.validate_code, body.code)
    return Envelope(status="ok", data=identity)


@router.get("/auth/me", response_model=Envelope, tags=["tokens"])
async def me(
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
):
    user = await asyncio.to_thread(runtime.tokens.authenticate, extract_bearer(authorization))
    return Envelope(status="ok", data=UserProfile(**user.public_profile()))


@router.post("/auth/logout", response_model=Envelope, tags=["tokens"])
async def logout(
    response: Response,
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
):
    revoked = await asyncio.to_thread(runtime.tokens.logout, extract_bearer(authorization))
    secure = runtime.settings.cookie_secure
    for name in (LOGIN_COOKIE, REGISTRATION_COOKIE, REFRESH_COOKIE):
        response.delete_cookie(name, path="/", secure=secure, httponly=True, samesite="strict")
    return Envelope(status="ok", data={"message": "Logged out", "revoked": revoked})

