import pytest

from sentinelid.config import EmailPolicy
from sentinelid.service.errors import ForbiddenError, ValidationError
from sentinelid.service.validation import (
    email_policy_warning,
    enforce_ip_allow_list,
    enforce_mfa_for_role,
    ip_allowed,
    normalize_email,
    normalize_identifier,
    normalize_mfa_method,
    normalize_mobile,
    normalize_role,
    require_fields,
    validate_identifier,
)

DOMAINS = ["mil", "gov.in", "nic.in"]


def test_require_fields_lists_missing_names():
    with pytest.raises(ValidationError) as excinfo:
        require_fields(role="personnel", identifier="  ", email=None)
    assert excinfo.value.error_code == "MISSING_FIELDS"
    assert excinfo.value.detail == {"fields": ["email", "identifier"]}


@pytest.mark.parametrize("role", ["Personnel", " CERT ", "admin"])
def test_normalize_role(role):
    assert normalize_role(role) == role.strip().lower()


def test_unknown_role():
    with pytest.raises(ValidationError) as excinfo:
        normalize_role("contractor")
    assert excinfo.value.error_code == "INVALID_ROLE"


def test_normalize_email_case_folds():
    assert normalize_email("  User@Example.MIL ") == "user@example.mil"


@pytest.mark.parametrize("email", ["", "no-at-sign", "a@b", "two@@example.mil", "x@-bad-.mil"])
def test_invalid_email(email):
    with pytest.raises(ValidationError) as excinfo:
        normalize_email(email)
    assert excinfo.value.error_code == "INVALID_EMAIL"


def test_identifier_case_by_role():
    assert normalize_identifier(" ic-123456 ", "personnel") == "IC-123456"
    assert normalize_identifier("Admin@Example.MIL", "admin") == "admin@example.mil"


@pytest.mark.parametrize(
    "identifier,role",
    [
        ("IC-123456", "personnel"),
        ("DEP-2024-5678", "family"),
        ("PPO-2020-9876", "veteran"),
        ("CERT-2024-101", "cert"),
        ("ops@example.mil", "admin"),
    ],
)
def test_valid_identifiers(identifier, role):
    validate_identifier(identifier, role)


@pytest.mark.parametrize(
    "identifier,role",
    [
        ("IC-1", "personnel"),
        ("IC 123456", "personnel"),
        ("CERT-2024-1010101", "cert"),
        ("not-an-email", "admin"),
    ],
)
def test_invalid_identifiers(identifier, role):
    with pytest.raises(ValidationError) as excinfo:
        validate_identifier(identifier, role)
    assert excinfo.value.error_code == "INVALID_IDENTIFIER"


def test_lenient_identifier_validation_only_requires_value():
    validate_identifier("X", "personnel", strict=False)
    with pytest.raises(ValidationError):
        validate_identifier("", "personnel", strict=False)


@pytest.mark.parametrize(
    "raw,expected",
    [("+91 98765-43210", "+919876543210"), ("(555) 010 9999", "5550109999")],
)
def test_normalize_mobile(raw, expected):
    assert normalize_mobile(raw) == expected


@pytest.mark.parametrize("raw", ["12345", "+1234567890123456", ""])
def test_invalid_mobile(raw):
    with pytest.raises(ValidationError) as excinfo:
        normalize_mobile(raw)
    assert excinfo.value.error_code == "INVALID_MOBILE"


def test_mfa_method_normalisation():
    assert normalize_mfa_method("TOTP") == "totp"
    assert normalize_mfa_method(None) is None
    with pytest.raises(ValidationError) as excinfo:
        normalize_mfa_method("sms")
    assert excinfo.value.error_code == "INVALID_MFA_METHOD"


@pytest.mark.parametrize(
    "role,method",
    [("personnel", "totp"), ("cert", "totp"), ("admin", "totp"), ("family", "email"), ("veteran", "email")],
)
def test_enforced_mfa(role, method):
    enforce_mfa_for_role(method, role)
    other = "email" if method == "totp" else "totp"
    with pytest.raises(ValidationError) as excinfo:
        enforce_mfa_for_role(other, role)
    assert excinfo.value.error_code == "INVALID_MFA_METHOD"


class TestIPAllowList:
    def test_empty_list_allows_everyone(self):
        assert ip_allowed("203.0.113.9", [])
        assert ip_allowed(None, [])

    def test_exact_and_cidr_entries(self):
        allow = ["10.0.0.5", "192.168.1.0/24"]
        assert ip_allowed("10.0.0.5", allow)
        assert ip_allowed("192.168.1.77", allow)
        assert not ip_allowed("10.0.0.6", allow)

    def test_unparseable_client_is_denied(self):
        assert not ip_allowed("testclient", ["10.0.0.0/8"])

    def test_enforcement_raises_ip_not_authorized(self):
        with pytest.raises(ForbiddenError) as excinfo:
            enforce_ip_allow_list("8.8.8.8", "cert", ["10.0.0.0/8"])
        assert excinfo.value.error_code == "IP_NOT_AUTHORIZED"
        assert excinfo.value.status_code == 403


class TestDependantEmailPolicy:
    def test_warns_for_family_on_public_domain(self):
        warning = email_policy_warning(
            "someone@gmail.com", "family", policy=EmailPolicy.WARN, domains=DOMAINS
        )
        assert warning and "defence" in warning

    def test_defence_subdomain_accepted(self):
        assert (
            email_policy_warning("kin@army.mil", "family", policy=EmailPolicy.WARN, domains=DOMAINS)
            is None
        )

    def test_other_roles_unaffected(self):
        assert (
            email_policy_warning("vet@gmail.com", "veteran", policy=EmailPolicy.REJECT, domains=DOMAINS)
            is None
        )

    def test_reject_policy(self):
        with pytest.raises(ValidationError) as excinfo:
            email_policy_warning(
                "someone@gmail.com", "family", policy=EmailPolicy.REJECT, domains=DOMAINS
            )
        assert excinfo.value.error_code == "INVALID_EMAIL"

    def test_off_policy(self):
        assert (
            email_policy_warning("someone@gmail.com", "family", policy=EmailPolicy.OFF, domains=DOMAINS)
            is None
        )
