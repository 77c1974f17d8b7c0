"""Tests for TOTP enrolment material and hashed email one-time codes."""

from datetime import timedelta
from urllib.parse import parse_qs, unquote, urlparse

import pytest

from sentinelid.service.errors import ServerError, ValidationError
from sentinelid.service.mfa import TOTPService, hash_backup_code
from sentinelid.service.otp import OTPService
from sentinelid.storage.memory import MemoryStore

# RFC 6238 appendix B seed "12345678901234567890" in base32
RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"


@pytest.fixture
def totp():
    return TOTPService("Defence Incident Portal")


class TestTOTP:
    @pytest.mark.parametrize(
        "timestamp,expected",
        [(59, "287082"), (1111111109, "081804"), (1234567890, "005924")],
    )
    def test_rfc6238_vectors(self, totp, timestamp, expected):
        assert totp.generate(RFC_SECRET, timestamp) == expected

    def test_accepts_adjacent_step(self, totp):
        secret = totp.generate_secret()
        now = 1_700_000_000
        previous = totp.generate(secret, now - 30)
        assert totp.verify(secret, previous, timestamp=now)

    def test_rejects_codes_outside_window(self, totp):
        secret = totp.generate_secret()
        now = 1_700_000_000
        stale = totp.generate(secret, now - 90)
        assert not totp.verify(secret, stale, timestamp=now)

    @pytest.mark.parametrize("code", ["", "12345", "1234567", "abcdef"])
    def test_rejects_malformed_codes(self, totp, code):
        assert not totp.verify(totp.generate_secret(), code)

    def test_generated_secret_is_base32(self, totp):
        secret = totp.generate_secret()
        assert len(secret) == 32
        assert set(secret) <= set("ABCDEFGHIJKLMNOPQRSTUVWXYZ234567")

    def test_provisioning_uri(self, totp):
        uri = totp.provisioning_uri("JBSWY3DPEHPK3PXP", "officer@example.mil")
        parsed = urlparse(uri)
        assert parsed.scheme == "otpauth"
        assert parsed.netloc == "totp"
        assert unquote(parsed.path) == "/Defence Incident Portal:officer@example.mil"
        query = parse_qs(parsed.query)
        assert query["secret"] == ["JBSWY3DPEHPK3PXP"]
        assert query["issuer"] == ["Defence Incident Portal"]
        assert query["digits"] == ["6"]
        assert query["period"] == ["30"]

    def test_backup_codes(self, totp):
        codes, hashes = totp.generate_backup_codes()
        assert len(codes) == 10
        assert len(set(codes)) == 10
        for code, digest in zip(codes, hashes):
            assert len(code) == 8
            assert code == code.upper()
            int(code, 16)
            assert digest == hash_backup_code(code.lower())


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def otp(store):
    return OTPService(store, secret="otp-test-key", ttl_minutes=5, max_attempts=3)


class TestOTPService:
    def test_code_is_six_digits(self, otp):
        code = otp.issue("user@example.mil", "email_verification")
        assert len(code) == 6
        assert code.isdigit()

    def test_only_hash_is_stored(self, otp, store):
        code = otp.issue("user@example.mil", "email_verification")
        stored = store.get_live_otp("user@example.mil", "email_verification")
        assert stored.code_hash != code
        assert code not in stored.code_hash

    def test_verify_consumes_code(self, otp):
        code = otp.issue("user@example.mil", "email_verification")
        otp.verify("user@example.mil", "email_verification", code)
        with pytest.raises(ValidationError) as excinfo:
            otp.verify("user@example.mil", "email_verification", code)
        assert excinfo.value.error_code == "OTP_EXPIRED"

    def test_newer_code_invalidates_older(self, otp, monkeypatch):
        codes = iter(["111111", "222222"])
        monkeypatch.setattr(OTPService, "generate_code", staticmethod(lambda: next(codes)))
        otp.issue("user@example.mil", "login_mfa")
        otp.issue("user@example.mil", "login_mfa")
        with pytest.raises(ValidationError) as excinfo:
            otp.verify("user@example.mil", "login_mfa", "111111")
        assert excinfo.value.error_code == "INVALID_OTP"
        otp.verify("user@example.mil", "login_mfa", "222222")

    def test_failed_delivery_keeps_previous_code(self, otp, monkeypatch):
        codes = iter(["111111", "222222"])
        monkeypatch.setattr(OTPService, "generate_code", staticmethod(lambda: next(codes)))
        delivered = []
        otp.issue("user@example.mil", "login_mfa", deliver=delivered.append)
        assert delivered == ["111111"]

        def _bounce(code):
            raise ServerError("Unable to deliver verification code")

        with pytest.raises(ServerError):
            otp.issue("user@example.mil", "login_mfa", deliver=_bounce)
        otp.verify("user@example.mil", "login_mfa", "111111")

    def test_codes_are_scoped_by_purpose(self, otp):
        code = otp.issue("user@example.mil", "registration")
        with pytest.raises(ValidationError) as excinfo:
            otp.verify("user@example.mil", "login_mfa", code)
        assert excinfo.value.error_code == "OTP_EXPIRED"

    def test_expired_code(self, otp, store):
        code = otp.issue("user@example.mil", "registration")
        live = store.get_live_otp("user@example.mil", "registration")
        live.expires_at = live.expires_at - timedelta(minutes=10)
        with pytest.raises(ValidationError) as excinfo:
            otp.verify("user@example.mil", "registration", code)
        assert excinfo.value.error_code == "OTP_EXPIRED"

    def test_code_discarded_after_max_attempts(self, otp, monkeypatch):
        monkeypatch.setattr(OTPService, "generate_code", staticmethod(lambda: "123456"))
        otp.issue("user@example.mil", "registration")
        for _ in range(3):
            with pytest.raises(ValidationError) as excinfo:
                otp.verify("user@example.mil", "registration", "000000")
            assert excinfo.value.error_code == "INVALID_OTP"
        with pytest.raises(ValidationError) as excinfo:
            otp.verify("user@example.mil", "registration", "123456")
        assert excinfo.value.error_code == "OTP_EXPIRED"

    def test_unknown_purpose_rejected(self, otp):
        with pytest.raises(ValueError):
            otp.issue("user@example.mil", "password_reset")
