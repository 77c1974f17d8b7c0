from __future__ import annotations

import ipaddress
import re
import unicodedata
from typing import Any, Iterable, Optional

from sentinelid.config import EmailPolicy
from sentinelid.service.errors import ForbiddenError, ValidationError
from sentinelid.storage.models import MFA_METHODS, ROLES

VALID_ROLES = frozenset(ROLES)

IDENTIFIER_PATTERNS = {
    "personnel": re.compile(r"^[A-Z0-9-]{6,15}$"),  # e.g. IC-123456
    "family": re.compile(r"^[A-Z0-9-]{6,20}$"),  # e.g. DEP-2024-5678
    "veteran": re.compile(r"^[A-Z0-9-]{6,20}$"),  # e.g. PPO-2020-9876
    "cert": re.compile(r"^[A-Z0-9-]{5,15}$"),  # e.g. CERT-2024-101
    "admin": re.compile(r"^[a-z0-9._%+-]+@[a-z0-9.-]+\.[a-z]{2,}$"),
}

ENFORCED_MFA = {
    "personnel": "totp",
    "family": "email",
    "veteran": "email",
    "cert": "totp",
    "admin": "totp",
}

# Roles whose email should be a defence address; only advisory
DEPENDANT_ROLES = frozenset({"family"})

_MOBILE_RE = re.compile(r"^\+?\d{10,15}$")
_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_ZERO_WIDTH = "\u200b\u200c\u200d\ufeff"
_BIDI_OVERRIDES = frozenset(
    [chr(c) for c in range(0x202A, 0x202F)] + [chr(c) for c in range(0x2066, 0x206A)]
)


def normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then apply NFKC."""
    cleaned = "".join(
        c for c in value if c not in _ZERO_WIDTH and c not in _BIDI_OVERRIDES
    )
    return unicodedata.normalize("NFKC", cleaned)


def require_fields(**fields: Any) -> None:
    missing = sorted(
        name
        for name, value in fields.items()
        if value is None or (isinstance(value, str) and not value.strip())
    )
    if missing:
        raise ValidationError(
            "Required fields are missing", detail={"fields": missing}
        )


def normalize_role(role: str) -> str:
    normalized = (role or "").strip().lower()
    if normalized not in VALID_ROLES:
        raise ValidationError("Invalid role", error_code="INVALID_ROLE")
    return normalized


def normalize_email(value: str) -> str:
    """Case-fold and validate an email address; raises INVALID_EMAIL."""
    normalized = normalize_unicode((value or "").strip().lower())
    local, sep, domain = normalized.partition("@")
    valid = (
        3 <= len(normalized) <= 254
        and sep
        and local
        and len(local) <= 64
        and _EMAIL_LOCAL_PART.match(local)
    )
    if valid:
        labels = domain.split(".")
        valid = len(labels) >= 2 and all(
            len(label) <= 63 and _EMAIL_DOMAIN_LABEL.match(label) for label in labels
        )
    if not valid:
        raise ValidationError("Invalid email format", error_code="INVALID_EMAIL")
    return normalized


def normalize_identifier(identifier: str, role: str) -> str:
    # Administrators identify by email address, everyone else by service number
    cleaned = normalize_unicode((identifier or "").strip())
    if role == "admin":
        return cleaned.lower()
    return cleaned.upper()


def validate_identifier(identifier: str, role: str, *, strict: bool = True) -> None:
    if not identifier:
        raise ValidationError("Identifier is required", error_code="INVALID_IDENTIFIER")
    if not strict:
        return
    if not IDENTIFIER_PATTERNS[role].match(identifier):
        raise ValidationError(
            f"Invalid identifier format for {role}", error_code="INVALID_IDENTIFIER"
        )


def normalize_mobile(mobile: str) -> str:
    """Keep a leading ``+`` and digits only; raises INVALID_MOBILE."""
    raw = (mobile or "").strip()
    digits = "".join(c for c in raw if c.isdigit())
    normalized = f"+{digits}" if raw.startswith("+") else digits
    if not _MOBILE_RE.match(normalized):
        raise ValidationError("Invalid mobile number", error_code="INVALID_MOBILE")
    return normalized


def normalize_mfa_method(method: Optional[str]) -> Optional[str]:
    if method is None:
        return None
    normalized = method.strip().lower()
    if normalized not in MFA_METHODS:
        raise ValidationError(
            "Invalid MFA method. Must be TOTP or EMAIL", error_code="INVALID_MFA_METHOD"
        )
    return normalized


def enforce_mfa_for_role(method: str, role: str) -> None:
    enforced = ENFORCED_MFA[role]
    if method != enforced:
        raise ValidationError(
            f"{role} accounts must use {enforced.upper()} verification",
            error_code="INVALID_MFA_METHOD",
        )


def ip_allowed(client_ip: Optional[str], allow_list: Iterable[str]) -> bool:
    """Empty allow-lists admit everyone; entries may be single addresses or CIDRs."""
    entries = [entry for entry in allow_list if entry]
    if not entries:
        return True
    if not client_ip:
        return False
    try:
        address = ipaddress.ip_address(client_ip)
    except ValueError:
        return False
    for entry in entries:
        try:
            if address in ipaddress.ip_network(entry, strict=False):
                return True
        except ValueError:
            continue
    return False


def enforce_ip_allow_list(client_ip: Optional[str], role: str, allow_list: Iterable[str]) -> None:
    if not ip_allowed(client_ip, allow_list):
        raise ForbiddenError(
            f"{role.upper()} registration is only allowed from authorized IP addresses.",
            error_code="IP_NOT_AUTHORIZED",
        )


def is_defence_email(email: str, domains: Iterable[str]) -> bool:
    domain = email.rpartition("@")[2]
    return any(domain == d or domain.endswith(f".{d}") for d in domains)


def email_policy_warning(
    email: str, role: str, *, policy: EmailPolicy, domains: Iterable[str]
) -> Optional[str]:
    """Apply the dependant email policy; returns a warning or raises on reject."""
    if role not in DEPENDANT_ROLES or policy == EmailPolicy.OFF:
        return None
    if is_defence_email(email, domains):
        return None
    message = "Family members are encouraged to register with a defence-issued email address."
    if policy == EmailPolicy.REJECT:
        raise ValidationError(
            "Family members must register with a defence-issued email address.",
            error_code="INVALID_EMAIL",
        )
    return message
