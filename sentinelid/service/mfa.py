from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets
import time
from typing import List, Optional, Tuple
from urllib.parse import quote, urlencode

from sentinelid.logging import get_logger

logger = get_logger(__name__)

TOTP_DIGITS = 6
TOTP_INTERVAL = 30
BACKUP_CODE_COUNT = 10


class TOTPService:
    """RFC 6238 TOTP compatible with common authenticator apps (SHA1, 6 digits, 30 s)."""

    def __init__(self, issuer: str, *, window: int = 1) -> None:
        self.issuer = issuer
        self.window = window

    @staticmethod
    def generate_secret() -> str:
        return base64.b32encode(secrets.token_bytes(20)).decode().rstrip("=")

    def generate(
        self, secret: str, timestamp: Optional[float] = None, *, interval: int = TOTP_INTERVAL
    ) -> str:
        padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
        try:
            key = base64.b32decode(padded, True)
        except (binascii.Error, ValueError):
            logger.warning("totp_secret_invalid")
            return ""
        ts = time.time() if timestamp is None else timestamp
        counter = int(ts // interval).to_bytes(8, "big")
        digest = hmac.new(key, counter, hashlib.sha1).digest()
        offset = digest[-1] & 0x0F
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**TOTP_DIGITS
        )
        return str(code_int).zfill(TOTP_DIGITS)

    def verify(self, secret: str, code: str, *, timestamp: Optional[float] = None) -> bool:
        """Accept the current step and ``window`` adjacent steps for clock skew."""
        if not secret or not code:
            return False
        code = code.strip()
        if len(code) != TOTP_DIGITS or not code.isdigit():
            return False
        now = time.time() if timestamp is None else timestamp
        for offset in range(-self.window, self.window + 1):
            generated = self.generate(secret, now + offset * TOTP_INTERVAL)
            # Constant-time comparison
            if generated and hmac.compare_digest(generated, code):
                return True
        return False

    def provisioning_uri(self, secret: str, account_name: str) -> str:
        label = quote(f"{self.issuer}:{account_name}")
        params = urlencode(
            {
                "secret": secret,
                "issuer": self.issuer,
                "algorithm": "SHA1",
                "digits": TOTP_DIGITS,
                "period": TOTP_INTERVAL,
            },
            quote_via=quote,
        )
        return f"otpauth://totp/{label}?{params}"

    @staticmethod
    def generate_backup_codes(count: int = BACKUP_CODE_COUNT) -> Tuple[List[str], List[str]]:
        """Return (plaintext codes shown once, sha256 digests to persist)."""
        codes = [secrets.token_hex(4).upper() for _ in range(count)]
        return codes, [hash_backup_code(code) for code in codes]


def hash_backup_code(code: str) -> str:
    return hashlib.sha256(code.strip().upper().encode()).hexdigest()
