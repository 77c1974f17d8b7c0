"""Tests for authorization codes, the exchange, refresh registry and bearer tokens."""

from datetime import timedelta

import pytest

from sentinelid.service.errors import AuthenticationError, ValidationError
from sentinelid.service.tokens import extract_bearer


@pytest.fixture
def user(make_user):
    created, _ = make_user()
    return created


def test_issue_authorization_code_targets_role_dashboard(runtime, user):
    issued = runtime.tokens.issue_authorization_code(user)
    assert issued["expires_in"] == 30
    assert issued["redirect_url"].startswith("http://app.localhost:3003/callback?code=")
    assert issued["code"] in issued["redirect_url"]


def test_cert_and_admin_have_their_own_dashboards(runtime, make_user):
    cert, _ = make_user(role="cert", identifier="CERT-2024-101", email="cert@example.mil")
    admin, _ = make_user(role="admin", identifier="ops@example.mil", email="ops@example.mil")
    assert runtime.tokens.issue_authorization_code(cert)["redirect_url"].startswith(
        "http://officer.localhost:3002/callback"
    )
    assert runtime.tokens.issue_authorization_code(admin)["redirect_url"].startswith(
        "http://admin.localhost:3001/callback"
    )


def test_exchange_returns_tokens_and_profile(runtime, user):
    code = runtime.tokens.issue_authorization_code(user)["code"]
    tokens = runtime.tokens.exchange(code)
    assert tokens["token_type"] == "Bearer"
    assert tokens["expires_in"] == 15 * 60
    assert tokens["user"]["user_id"] == user.id
    assert tokens["user"]["identifier"] == "IC-123456"
    access = runtime.access_signer.decode(tokens["access_token"], token_type="access")
    assert access["sub"] == user.id and access["role"] == "personnel"
    refresh = runtime.refresh_signer.decode(tokens["refresh_token"], token_type="refresh")
    record = runtime.store.get_refresh_token(refresh["jti"])
    assert record.user_id == user.id
    assert record.is_valid()


def test_code_is_single_use(runtime, user):
    code = runtime.tokens.issue_authorization_code(user)["code"]
    runtime.tokens.exchange(code)
    with pytest.raises(AuthenticationError) as excinfo:
        runtime.tokens.exchange(code)
    assert excinfo.value.error_code == "INVALID_AUTH_CODE"


def test_expired_code_rejected(runtime, user):
    code = runtime.tokens.issue_authorization_code(user)["code"]
    stored = runtime.store.auth_codes[code]
    stored.expires_at = stored.expires_at - timedelta(seconds=31)
    with pytest.raises(AuthenticationError) as excinfo:
        runtime.tokens.exchange(code)
    assert excinfo.value.error_code == "INVALID_AUTH_CODE"


def test_missing_code(runtime):
    with pytest.raises(ValidationError) as excinfo:
        runtime.tokens.exchange(None)
    assert excinfo.value.error_code == "MISSING_FIELDS"


def test_inactive_user_cannot_exchange(runtime, user):
    code = runtime.tokens.issue_authorization_code(user)["code"]
    runtime.store.set_user_active(user.id, False)
    with pytest.raises(AuthenticationError) as excinfo:
        runtime.tokens.exchange(code)
    assert excinfo.value.error_code == "ACCOUNT_INACTIVE"


def test_validate_code_consumes_without_tokens(runtime, user):
    code = runtime.tokens.issue_authorization_code(user)["code"]
    identity = runtime.tokens.validate_code(code)
    assert identity == {
        "user_id": user.id,
        "role": "personnel",
        "email": "officer@example.mil",
        "full_name": "Test Officer",
    }
    assert runtime.store.refresh_tokens == {}
    with pytest.raises(AuthenticationError):
        runtime.tokens.validate_code(code)


class TestRefresh:
    def _exchange(self, runtime, user):
        return runtime.tokens.exchange(runtime.tokens.issue_authorization_code(user)["code"])

    def test_refresh_issues_new_access_token(self, runtime, user):
        tokens = self._exchange(runtime, user)
        refreshed = runtime.tokens.refresh(tokens["refresh_token"])
        assert refreshed["token_type"] == "Bearer"
        assert runtime.tokens.authenticate(refreshed["access_token"]).id == user.id

    def test_access_token_is_not_a_refresh_token(self, runtime, user):
        tokens = self._exchange(runtime, user)
        with pytest.raises(AuthenticationError) as excinfo:
            runtime.tokens.refresh(tokens["access_token"])
        assert excinfo.value.error_code == "INVALID_REFRESH_TOKEN"

    def test_revoked_record_rejected(self, runtime, user):
        tokens = self._exchange(runtime, user)
        runtime.store.revoke_user_refresh_tokens(user.id)
        with pytest.raises(AuthenticationError) as excinfo:
            runtime.tokens.refresh(tokens["refresh_token"])
        assert excinfo.value.error_code == "INVALID_REFRESH_TOKEN"

    def test_expiry_disagreement_revokes_record(self, runtime, user):
        tokens = self._exchange(runtime, user)
        jti = runtime.refresh_signer.decode(tokens["refresh_token"])["jti"]
        record = runtime.store.get_refresh_token(jti)
        record.expires_at = record.expires_at + timedelta(days=1)
        with pytest.raises(AuthenticationError) as excinfo:
            runtime.tokens.refresh(tokens["refresh_token"])
        assert excinfo.value.error_code == "INVALID_REFRESH_TOKEN"
        assert runtime.store.get_refresh_token(jti).revoked

    def test_inactive_user_revokes_record(self, runtime, user):
        tokens = self._exchange(runtime, user)
        runtime.store.set_user_active(user.id, False)
        with pytest.raises(AuthenticationError) as excinfo:
            runtime.tokens.refresh(tokens["refresh_token"])
        assert excinfo.value.error_code == "ACCOUNT_INACTIVE"
        jti = runtime.refresh_signer.decode(tokens["refresh_token"])["jti"]
        assert runtime.store.get_refresh_token(jti).revoked


def test_logout_revokes_every_refresh_token(runtime, user):
    first = runtime.tokens.exchange(runtime.tokens.issue_authorization_code(user)["code"])
    runtime.tokens.exchange(runtime.tokens.issue_authorization_code(user)["code"])
    assert runtime.tokens.logout(first["access_token"]) == 2
    with pytest.raises(AuthenticationError):
        runtime.tokens.refresh(first["refresh_token"])


def test_authenticate_rejects_garbage(runtime):
    with pytest.raises(AuthenticationError) as excinfo:
        runtime.tokens.authenticate("not-a-token")
    assert excinfo.value.error_code == "UNAUTHORIZED"


@pytest.mark.parametrize(
    "header,expected",
    [
        ("Bearer abc", "abc"),
        ("bearer  abc ", "abc"),
        ("Basic abc", None),
        ("Bearer", None),
        (None, None),
    ],
)
def test_extract_bearer(header, expected):
    assert extract_bearer(header) == expected
