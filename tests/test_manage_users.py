"""Tests for the account administration script."""

import importlib.util
from pathlib import Path

import pytest

from sentinelid.service.errors import NotFoundError, ValidationError

DEFAULT_PASSWORD = "Str0ng!Passw0rd"

_SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "manage_users.py"


@pytest.fixture(scope="module")
def manage_users():
    spec = importlib.util.spec_from_file_location("manage_users", _SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class TestCreateAdmin:
    def test_creates_admin_with_authenticator(self, manage_users, runtime):
        result = manage_users.create_admin(
            runtime, "Ops@Example.mil", "Duty  Admin", "+91 12345 67890", DEFAULT_PASSWORD
        )
        assert result["status"] == "created"
        assert len(result["backup_codes"]) == 10
        assert result["otpauth_uri"].startswith("otpauth://totp/")

        user = runtime.store.get_user(result["user_id"])
        assert user.role == "admin"
        assert user.identifier == "ops@example.mil"
        assert user.full_name == "Duty Admin"
        assert user.mfa_method == "totp"
        assert runtime.cipher.decrypt(user.totp_secret) == result["manual_entry_key"]
        assert runtime.passwords.verify(user.password_hash, DEFAULT_PASSWORD)
        assert len(user.backup_codes) == 10
        assert result["backup_codes"][0] not in user.backup_codes

    def test_existing_email_is_left_alone(self, manage_users, runtime, make_user):
        existing, _ = make_user(email="ops@example.mil")
        result = manage_users.create_admin(
            runtime, "ops@example.mil", "Duty Admin", "+911234567890", DEFAULT_PASSWORD
        )
        assert result == {"user_id": existing.id, "email": "ops@example.mil", "status": "exists"}

    def test_dry_run_writes_nothing(self, manage_users, runtime):
        result = manage_users.create_admin(
            runtime, "ops@example.mil", "Duty Admin", "+911234567890", DEFAULT_PASSWORD, dry_run=True
        )
        assert result["status"] == "dry_run"
        assert runtime.store.get_user_by_email("ops@example.mil") is None

    def test_weak_password_rejected(self, manage_users, runtime):
        with pytest.raises(ValidationError) as excinfo:
            manage_users.create_admin(runtime, "ops@example.mil", "Duty Admin", "+911234567890", "weak")
        assert excinfo.value.error_code == "INVALID_PASSWORD"


class TestAccountState:
    def test_deactivate_revokes_refresh_tokens(self, manage_users, runtime, make_user):
        user, _ = make_user()
        runtime.tokens.exchange(runtime.tokens.issue_authorization_code(user)["code"])
        result = manage_users.set_active(runtime, "officer@example.mil", False)
        assert result["status"] == "deactivated"
        assert result["revoked"] == 1
        assert not runtime.store.get_user(user.id).is_active

        restored = manage_users.set_active(runtime, "officer@example.mil", True)
        assert restored["status"] == "activated"
        assert runtime.store.get_user(user.id).is_active

    def test_unlock_clears_lockout(self, manage_users, runtime, make_user):
        user, _ = make_user()
        for _ in range(3):
            runtime.store.record_failed_login(user.id, 3, 60)
        assert manage_users.unlock(runtime, "officer@example.mil")["status"] == "unlocked"
        unlocked = runtime.store.get_user(user.id)
        assert not unlocked.is_locked()
        assert unlocked.failed_attempts == 0

    def test_unknown_account(self, manage_users, runtime):
        with pytest.raises(NotFoundError):
            manage_users.unlock(runtime, "nobody@example.mil")


class TestListAccounts:
    def test_lists_by_role_with_state(self, manage_users, runtime, make_user):
        officer, _ = make_user()
        make_user(role="family", identifier="DEP-2024-5678", email="kin@example.com")
        for _ in range(5):
            runtime.store.record_failed_mfa(officer.id, 5, 5)

        accounts = manage_users.list_accounts(runtime, role="Personnel")
        assert accounts == [
            {
                "user_id": officer.id,
                "email": "officer@example.mil",
                "role": "personnel",
                "identifier": "IC-123456",
                "active": True,
                "locked": True,
            }
        ]
        assert len(manage_users.list_accounts(runtime)) == 2
        assert len(manage_users.list_accounts(runtime, limit=1)) == 1

    def test_unknown_role_rejected(self, manage_users, runtime):
        with pytest.raises(ValidationError) as excinfo:
            manage_users.list_accounts(runtime, role="contractor")
        assert excinfo.value.error_code == "INVALID_ROLE"
