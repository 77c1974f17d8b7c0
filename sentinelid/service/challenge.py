from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Union

from sentinelid.logging import get_logger
from sentinelid.service.errors import InvalidAuthStateError
from sentinelid.service.signing import TokenSigner

logger = get_logger(__name__)


class LoginStage(str, Enum):
    IDENTITY = "IDENTITY"
    PASSWORD = "PASSWORD"


class RegistrationStage(str, Enum):
    IDENTITY = "IDENTITY"
    SERVICE = "SERVICE"
    SECURITY = "SECURITY"
    ACTIVATE = "ACTIVATE"


Stage = Union[LoginStage, RegistrationStage]

# Allowed next stages per current stage. Registration may step back to an earlier
# step (browser back button) but never forward past the next one.
LOGIN_TRANSITIONS: Dict[LoginStage, frozenset] = {
    LoginStage.IDENTITY: frozenset({LoginStage.PASSWORD}),
    LoginStage.PASSWORD: frozenset(),
}
REGISTRATION_TRANSITIONS: Dict[RegistrationStage, frozenset] = {
    RegistrationStage.IDENTITY: frozenset({RegistrationStage.SERVICE}),
    RegistrationStage.SERVICE: frozenset(
        {RegistrationStage.SERVICE, RegistrationStage.SECURITY}
    ),
    RegistrationStage.SECURITY: frozenset(
        {
            RegistrationStage.SERVICE,
            RegistrationStage.SECURITY,
            RegistrationStage.ACTIVATE,
        }
    ),
    RegistrationStage.ACTIVATE: frozenset(
        {
            RegistrationStage.SERVICE,
            RegistrationStage.SECURITY,
            RegistrationStage.ACTIVATE,
        }
    ),
}

# Fields written at each registration stage; stepping back discards later ones
_REGISTRATION_STAGE_FIELDS: Dict[RegistrationStage, tuple] = {
    RegistrationStage.SERVICE: ("role", "identifier"),
    RegistrationStage.SECURITY: ("password_hash", "mfa_method"),
    RegistrationStage.ACTIVATE: ("totp_secret", "backup_codes"),
}
_REGISTRATION_ORDER = list(RegistrationStage)

LOGIN_TOKEN_TYPE = "login_challenge"
REGISTRATION_TOKEN_TYPE = "registration_challenge"


@dataclass
class Challenge:
    """A decoded in-flight login or registration attempt."""

    kind: str
    stage: Stage
    data: Dict[str, Any] = field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)


@dataclass
class StepResult:
    """Response body of one wizard step plus what to do with the challenge cookie."""

    body: Dict[str, Any]
    challenge: Optional[str] = None
    clear_challenge: bool = False


class ChallengeCodec:
    """Signs challenges into short-lived bearer tokens and enforces stage order."""

    def __init__(
        self,
        signer: TokenSigner,
        *,
        login_ttl_seconds: int,
        registration_ttl_seconds: int,
    ) -> None:
        self.signer = signer
        self.login_ttl_seconds = login_ttl_seconds
        self.registration_ttl_seconds = registration_ttl_seconds

    def _encode(self, challenge: Challenge) -> str:
        if challenge.kind == LOGIN_TOKEN_TYPE:
            ttl = self.login_ttl_seconds
        else:
            ttl = self.registration_ttl_seconds
        return self.signer.encode(
            {
                "token_type": challenge.kind,
                "stage": challenge.stage.value,
                "data": challenge.data,
            },
            ttl_seconds=ttl,
        )

    def issue_login(self, **data: Any) -> str:
        return self._encode(Challenge(LOGIN_TOKEN_TYPE, LoginStage.IDENTITY, dict(data)))

    def issue_registration(self, **data: Any) -> str:
        return self._encode(
            Challenge(REGISTRATION_TOKEN_TYPE, RegistrationStage.IDENTITY, dict(data))
        )

    def _decode(self, token: Optional[str], kind: str) -> Challenge:
        payload = self.signer.decode(token, token_type=kind)
        if not payload:
            raise InvalidAuthStateError()
        stage_enum = LoginStage if kind == LOGIN_TOKEN_TYPE else RegistrationStage
        try:
            stage = stage_enum(payload.get("stage"))
        except ValueError:
            logger.warning("challenge_stage_unknown", kind=kind)
            raise InvalidAuthStateError()
        data = payload.get("data")
        if not isinstance(data, dict):
            raise InvalidAuthStateError()
        return Challenge(kind, stage, data)

    def load_login(self, token: Optional[str], *, expected: LoginStage) -> Challenge:
        """Decode a login challenge that must sit exactly at ``expected``."""
        challenge = self._decode(token, LOGIN_TOKEN_TYPE)
        if challenge.stage != expected:
            logger.warning(
                "challenge_stage_mismatch",
                kind="login",
                stage=challenge.stage.value,
                expected=expected.value,
            )
            raise InvalidAuthStateError()
        return challenge

    def load_registration(
        self, token: Optional[str], *, allowed: Iterable[RegistrationStage]
    ) -> Challenge:
        challenge = self._decode(token, REGISTRATION_TOKEN_TYPE)
        allowed_set = set(allowed)
        if challenge.stage not in allowed_set:
            logger.warning(
                "challenge_stage_mismatch",
                kind="registration",
                stage=challenge.stage.value,
                expected=sorted(s.value for s in allowed_set),
            )
            raise InvalidAuthStateError()
        if not challenge.get("email_verified"):
            raise InvalidAuthStateError()
        return challenge

    def advance(self, challenge: Challenge, stage: Stage, **updates: Any) -> str:
        """Move ``challenge`` to ``stage`` and return the re-signed token.

        Raises InvalidAuthStateError when the transition table forbids the move.
        """
        table = LOGIN_TRANSITIONS if challenge.kind == LOGIN_TOKEN_TYPE else REGISTRATION_TRANSITIONS
        if stage not in table.get(challenge.stage, frozenset()):
            logger.warning(
                "challenge_transition_rejected",
                kind=challenge.kind,
                stage=challenge.stage.value,
                target=stage.value,
            )
            raise InvalidAuthStateError()
        data = dict(challenge.data)
        if challenge.kind == REGISTRATION_TOKEN_TYPE:
            for later in _REGISTRATION_ORDER[_REGISTRATION_ORDER.index(stage) + 1 :]:
                for key in _REGISTRATION_STAGE_FIELDS.get(later, ()):
                    data.pop(key, None)
        data.update(updates)
        challenge.stage = stage
        challenge.data = data
        return self._encode(challenge)
