"""Integration tests for the identity -> password -> MFA login flow over HTTP."""

import time

import pytest
from fastapi.testclient import TestClient

from sentinelid import app as app_module

DEFAULT_PASSWORD = "Str0ng!Passw0rd"


@pytest.fixture
def client():
    return TestClient(app_module.app)


@pytest.fixture
def officer(make_user):
    return make_user(role="personnel", identifier="IC-123456", email="officer@example.mil")


@pytest.fixture
def dependant(make_user):
    user, _ = make_user(
        role="family", identifier="DEP-2024-5678", email="kin@example.com", mfa_method="email"
    )
    return user


def _identify(client, role="personnel", identifier="IC-123456", email="officer@example.mil"):
    return client.post(
        "/v1/auth/login/identity",
        json={"role": role, "identifier": identifier, "email": email},
    )


def _wrong_totp(runtime, secret):
    now = time.time()
    valid = {runtime.totp.generate(secret, now + step * 30) for step in (-1, 0, 1)}
    return next(code for code in ("000000", "111111", "222222", "333333") if code not in valid)


class TestIdentityStep:
    def test_match_sets_challenge_cookie(self, client, officer):
        response = _identify(client, identifier=" ic-123456 ", email="Officer@Example.mil")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["nextStep"] == "PASSWORD"
        assert "login_challenge" in client.cookies
        set_cookie = response.headers["set-cookie"].lower()
        assert "httponly" in set_cookie
        assert "samesite=strict" in set_cookie
        assert "max-age=300" in set_cookie

    def test_unknown_identifier_and_wrong_email_look_identical(self, client, officer):
        unknown = _identify(client, identifier="IC-999999")
        wrong_email = _identify(client, email="someone@example.mil")
        assert unknown.status_code == wrong_email.status_code == 401
        assert unknown.json()["error"] == wrong_email.json()["error"]
        assert unknown.json()["error"]["code"] == "INVALID_CREDENTIALS"
        assert "login_challenge" not in client.cookies

    def test_missing_fields(self, client):
        response = client.post("/v1/auth/login/identity", json={"role": "personnel"})
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "MISSING_FIELDS"
        assert error["details"]["fields"] == ["email", "identifier"]

    def test_invalid_role(self, client):
        response = _identify(client, role="contractor")
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_ROLE"

    def test_deactivated_account(self, client, runtime, officer):
        runtime.store.set_user_active(officer[0].id, False)
        response = _identify(client)
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "ACCOUNT_DEACTIVATED"


class TestPasswordStep:
    def test_requires_identity_challenge(self, client, officer):
        response = client.post("/v1/auth/login/password", json={"password": DEFAULT_PASSWORD})
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "INVALID_AUTH_STATE"

    def test_correct_password_requests_mfa(self, client, officer):
        _identify(client)
        response = client.post("/v1/auth/login/password", json={"password": DEFAULT_PASSWORD})
        assert response.status_code == 200
        assert response.json()["data"] == {
            "nextStep": "MFA",
            "mfaRequired": True,
            "allowedMethods": ["TOTP"],
        }

    def test_three_failures_lock_the_account(self, client, runtime, officer):
        _identify(client)
        first = client.post("/v1/auth/login/password", json={"password": "Wrong-Passw0rd!"})
        assert first.status_code == 401
        assert first.json()["error"]["code"] == "INVALID_CREDENTIALS"
        assert first.json()["error"]["details"] == {"attempts_remaining": 2}

        second = client.post("/v1/auth/login/password", json={"password": "Wrong-Passw0rd!"})
        assert second.json()["error"]["details"] == {"attempts_remaining": 1}

        third = client.post("/v1/auth/login/password", json={"password": "Wrong-Passw0rd!"})
        assert third.status_code == 403
        assert third.json()["error"]["code"] == "ACCOUNT_LOCKED"
        assert third.json()["error"]["details"] == {"remaining_minutes": 60}
        assert "login_challenge" not in client.cookies

        user = runtime.store.get_user(officer[0].id)
        assert user.failed_attempts == 3
        assert user.is_locked()

        # Still locked at the identity step, and the counter is not consumed
        again = _identify(client)
        assert again.status_code == 403
        assert again.json()["error"]["code"] == "ACCOUNT_LOCKED"
        assert runtime.store.get_user(officer[0].id).failed_attempts == 3

    def test_lockout_applies_to_an_open_challenge(self, client, runtime, officer):
        _identify(client)
        for _ in range(3):
            runtime.store.record_failed_login(officer[0].id, 3, 60)
        response = client.post("/v1/auth/login/password", json={"password": DEFAULT_PASSWORD})
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "ACCOUNT_LOCKED"


class TestMFAStep:
    def _to_mfa(self, client, **identity):
        _identify(client, **identity)
        response = client.post("/v1/auth/login/password", json={"password": DEFAULT_PASSWORD})
        assert response.status_code == 200

    def test_totp_success_issues_authorization_code(self, client, runtime, officer):
        user, secret = officer
        runtime.store.record_failed_login(user.id, 3, 60)
        self._to_mfa(client)
        response = client.post(
            "/v1/auth/login/mfa",
            json={"method": "TOTP", "code": runtime.totp.generate(secret)},
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["message"] == "Authentication successful"
        assert data["expires_in"] == 30
        assert data["redirect_url"] == f"http://app.localhost:3003/callback?code={data['code']}"
        assert "login_challenge" not in client.cookies

        refreshed = runtime.store.get_user(user.id)
        assert refreshed.failed_attempts == 0
        assert refreshed.last_login is not None

    def test_wrong_totp_keeps_state(self, client, runtime, officer):
        _, secret = officer
        self._to_mfa(client)
        response = client.post(
            "/v1/auth/login/mfa",
            json={"method": "TOTP", "code": _wrong_totp(runtime, secret)},
        )
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "INVALID_TOTP"
        retry = client.post(
            "/v1/auth/login/mfa",
            json={"method": "TOTP", "code": runtime.totp.generate(secret)},
        )
        assert retry.status_code == 200

    def test_repeated_wrong_totp_locks_the_mfa_step(self, client, runtime, officer):
        user, secret = officer
        wrong = _wrong_totp(runtime, secret)
        self._to_mfa(client)
        for _ in range(runtime.settings.mfa_max_attempts - 1):
            response = client.post("/v1/auth/login/mfa", json={"method": "TOTP", "code": wrong})
            assert response.json()["error"]["code"] == "INVALID_TOTP"

        last = client.post("/v1/auth/login/mfa", json={"method": "TOTP", "code": wrong})
        assert last.status_code == 403
        assert last.json()["error"]["code"] == "ACCOUNT_LOCKED"
        assert last.json()["error"]["details"] == {
            "remaining_minutes": runtime.settings.mfa_lockout_minutes
        }
        assert "login_challenge" not in client.cookies

        # A fresh challenge does not reopen the second factor, even with the right code
        self._to_mfa(client)
        blocked = client.post(
            "/v1/auth/login/mfa",
            json={"method": "TOTP", "code": runtime.totp.generate(secret)},
        )
        assert blocked.status_code == 403
        assert blocked.json()["error"]["code"] == "ACCOUNT_LOCKED"
        refreshed = runtime.store.get_user(user.id)
        assert refreshed.is_mfa_locked()
        # The password lockout is a separate counter
        assert not refreshed.is_locked()

    def test_password_lockout_does_not_block_an_open_mfa_challenge(
        self, client, runtime, officer
    ):
        user, secret = officer
        self._to_mfa(client)
        for _ in range(3):
            runtime.store.record_failed_login(user.id, 3, 60)
        assert runtime.store.get_user(user.id).is_locked()

        response = client.post(
            "/v1/auth/login/mfa",
            json={"method": "TOTP", "code": runtime.totp.generate(secret)},
        )
        assert response.status_code == 200
        assert response.json()["data"]["code"]
        refreshed = runtime.store.get_user(user.id)
        assert not refreshed.is_locked()
        assert refreshed.failed_attempts == 0

    def test_method_must_match_account(self, client, officer):
        self._to_mfa(client)
        response = client.post("/v1/auth/login/mfa", json={"method": "EMAIL", "code": "123456"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_MFA_METHOD"

    def test_email_otp_not_offered_to_totp_accounts(self, client, officer, sent_codes):
        self._to_mfa(client)
        response = client.post(
            "/v1/auth/login/mfa", json={"method": "EMAIL", "action": "send_otp"}
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_MFA_METHOD"
        assert sent_codes == {}

    def test_mfa_requires_password_stage(self, client, officer):
        _identify(client)
        response = client.post("/v1/auth/login/mfa", json={"method": "TOTP", "code": "123456"})
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "INVALID_AUTH_STATE"

    def test_email_otp_flow(self, client, runtime, dependant, sent_codes):
        self._to_mfa(client, role="family", identifier="DEP-2024-5678", email="kin@example.com")
        sent = client.post("/v1/auth/login/mfa", json={"method": "EMAIL", "action": "send_otp"})
        assert sent.status_code == 200
        assert sent.json()["data"]["expiresIn"] == 300
        code = sent_codes[("kin@example.com", "login_mfa")]

        wrong = client.post(
            "/v1/auth/login/mfa",
            json={"method": "EMAIL", "code": "000000" if code != "000000" else "111111"},
        )
        assert wrong.status_code == 400
        assert wrong.json()["error"]["code"] == "INVALID_OTP"
        assert runtime.store.get_user(dependant.id).mfa_failed_attempts == 1

        response = client.post("/v1/auth/login/mfa", json={"method": "EMAIL", "code": code})
        assert response.status_code == 200
        assert response.json()["data"]["code"]
        assert runtime.store.get_user(dependant.id).mfa_failed_attempts == 0

    def test_email_otp_without_send_is_expired(self, client, dependant):
        self._to_mfa(client, role="family", identifier="DEP-2024-5678", email="kin@example.com")
        response = client.post("/v1/auth/login/mfa", json={"method": "EMAIL", "code": "123456"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "OTP_EXPIRED"

    def test_email_delivery_failure_is_server_error(self, client, runtime, dependant, monkeypatch):
        monkeypatch.setattr(runtime.email, "_send_email", lambda *args, **kwargs: False)
        self._to_mfa(client, role="family", identifier="DEP-2024-5678", email="kin@example.com")
        response = client.post("/v1/auth/login/mfa", json={"method": "EMAIL", "action": "send_otp"})
        assert response.status_code == 500
        assert response.json()["error"]["code"] == "SERVER_ERROR"


class TestTokenEndpoints:
    def _login(self, client, runtime, officer):
        _, secret = officer
        _identify(client)
        client.post("/v1/auth/login/password", json={"password": DEFAULT_PASSWORD})
        response = client.post(
            "/v1/auth/login/mfa", json={"method": "TOTP", "code": runtime.totp.generate(secret)}
        )
        return response.json()["data"]["code"]

    def test_exchange_refresh_me_logout(self, client, runtime, officer):
        code = self._login(client, runtime, officer)
        exchanged = client.post("/v1/auth/exchange", json={"code": code})
        assert exchanged.status_code == 200
        data = exchanged.json()["data"]
        assert data["message"] == "Authorization successful"
        assert data["token_type"] == "Bearer"
        assert data["user"]["role"] == "personnel"
        assert "refresh_token" in client.cookies

        replay = client.post("/v1/auth/exchange", json={"code": code})
        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "INVALID_AUTH_CODE"

        headers = {"Authorization": f"Bearer {data['access_token']}"}
        me = client.get("/v1/auth/me", headers=headers)
        assert me.status_code == 200
        assert me.json()["data"]["identifier"] == "IC-123456"

        # Refresh token read from the cookie when the body omits it
        refreshed = client.post("/v1/auth/refresh")
        assert refreshed.status_code == 200
        assert refreshed.json()["data"]["access_token"]

        logout = client.post("/v1/auth/logout", headers=headers)
        assert logout.status_code == 200
        assert logout.json()["data"]["revoked"] == 1

        after = client.post("/v1/auth/refresh", json={"refresh_token": data["refresh_token"]})
        assert after.status_code == 401
        assert after.json()["error"]["code"] == "INVALID_REFRESH_TOKEN"

    def test_exchange_unknown_code(self, client):
        response = client.post("/v1/auth/exchange", json={"code": "does-not-exist"})
        assert response.status_code == 401
        body = response.json()
        assert body["error"]["code"] == "INVALID_AUTH_CODE"
        assert body["data"] is None
        assert "refresh_token" not in client.cookies

    def test_validate_code_endpoint(self, client, runtime, officer):
        code = self._login(client, runtime, officer)
        response = client.post("/v1/auth/validate-code", json={"code": code})
        assert response.status_code == 200
        assert response.json()["data"]["email"] == "officer@example.mil"
        assert client.post("/v1/auth/exchange", json={"code": code}).status_code == 401

    def test_me_requires_bearer(self, client):
        response = client.get("/v1/auth/me")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "UNAUTHORIZED"
