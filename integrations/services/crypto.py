from __future__ import annotations
from base64 import urlsafe_b64decode
from functools import lru_cache
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from integrations.core.config import settings


class CryptoError(RuntimeError):
    pass


class TokenCipher:
    """
    Fernet wrapper for OAuth secrets at rest.
    Key must be a urlsafe base64 string that decodes to 32 bytes.
    """

    def __init__(self, key: str):
        key = (key or "").strip()
        if not key:
            raise CryptoError("ENCRYPTION_KEY is empty. Set it in .env")
        try:
            raw = urlsafe_b64decode(key.encode())
        except ValueError as e:
            raise CryptoError("Invalid ENCRYPTION_KEY format (must be urlsafe base64 of 32 bytes)") from e
        if len(raw) != 32:
            raise CryptoError("ENCRYPTION_KEY must decode to exactly 32 bytes")
        self._fernet = Fernet(key.encode())

    def encrypt(self, plaintext: Optional[str]) -> Optional[str]:
        # None/"" stay unset; an empty refresh token is never stored as ciphertext
        if not plaintext:
            return None
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("utf-8")

    def decrypt(self, token: Optional[str]) -> Optional[str]:
        """Returns None for an empty column; raises CryptoError if the ciphertext is bad."""
        if not token:
            return None
        try:
            return self._fernet.decrypt(token.encode("utf-8")).decode("utf-8")
        except InvalidToken as e:
            raise CryptoError("stored secret cannot be decrypted with the current key") from e


@lru_cache(maxsize=1)
def get_cipher() -> TokenCipher:
    return TokenCipher(settings.ENCRYPTION_KEY)
