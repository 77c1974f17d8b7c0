from __future__ import annotations

import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken

from sentinelid.logging import get_logger

logger = get_logger(__name__)


class SecretCipher:
    """Fernet encryption for TOTP secrets at rest and inside challenges."""

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise RuntimeError("Unable to initialize secret cipher: no key material")
        self._fernet = Fernet(self._derive_key(key_material))

    @staticmethod
    def _derive_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken as exc:
            logger.error("secret_decrypt_failed")
            raise ValueError("unable to decrypt secret; key may have rotated") from exc
