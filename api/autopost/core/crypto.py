from __future__ import annotations

from cryptography.fernet import Fernet, InvalidToken


class CredentialCipherError(Exception):
    """Raised when a stored secret cannot be decrypted."""


class CredentialCipher:
    """Fernet wrapper for bring-your-own-app client secrets at rest."""

    def __init__(self, key: str | bytes) -> None:
        self._fernet = Fernet(key.encode("utf-8") if isinstance(key, str) else key)

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except (InvalidToken, ValueError) as exc:
            raise CredentialCipherError("stored client secret could not be decrypted") from exc


def build_cipher(key: str | None) -> CredentialCipher | None:
    if not key:
        return None
    return CredentialCipher(key)
