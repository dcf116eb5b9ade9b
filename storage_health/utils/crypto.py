"""
Token encryption for Storage Health Core.

Provider access and refresh tokens are stored as Fernet ciphertext. The
current key encrypts; retired keys remain accepted for decryption so keys
can be rotated without re-authorizing every connection.
"""

from typing import Iterable, List, Optional

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

from ..config import get_settings


class CryptoServiceError(Exception):
    """Base exception for CryptoService operations."""

    pass


class DecryptionError(CryptoServiceError):
    """Raised when a ciphertext cannot be decrypted with any known key."""

    pass


class CryptoService:
    """
    Encrypts and decrypts provider tokens with MultiFernet.

    Usage:
        crypto = CryptoService(primary_key)
        ciphertext = crypto.encrypt_token("ya29...")
        plaintext = crypto.decrypt_token(ciphertext)
    """

    def __init__(self, primary_key: str, previous_keys: Iterable[str] = ()):
        if not primary_key:
            raise CryptoServiceError("FERNET_KEY is required for token storage")

        keys: List[Fernet] = [self._load_key(primary_key, "FERNET_KEY")]
        for key in previous_keys:
            if key.strip():
                keys.append(self._load_key(key.strip(), "FERNET_PREVIOUS_KEYS"))

        self._multi_fernet = MultiFernet(keys)
        self._key_count = len(keys)

    @staticmethod
    def _load_key(key_b64: str, source: str) -> Fernet:
        try:
            return Fernet(key_b64.encode())
        except (ValueError, TypeError) as e:
            raise CryptoServiceError(f"Invalid key in {source}: {e}") from e

    @property
    def key_count(self) -> int:
        return self._key_count

    def encrypt_token(self, plaintext_token: str) -> bytes:
        """
        Encrypt a token with the current key.

        Raises:
            CryptoServiceError: If the token is empty
        """
        if not plaintext_token:
            raise CryptoServiceError("Cannot encrypt empty token")
        return self._multi_fernet.encrypt(plaintext_token.encode("utf-8"))

    def decrypt_token(self, ciphertext: bytes) -> str:
        """
        Decrypt a token, trying every configured key.

        Raises:
            DecryptionError: If no key can decrypt the ciphertext
        """
        if not ciphertext:
            raise DecryptionError("Cannot decrypt empty ciphertext")

        try:
            return self._multi_fernet.decrypt(ciphertext).decode("utf-8")
        except InvalidToken as e:
            raise DecryptionError(
                f"Failed to decrypt token with any of the {self._key_count} configured keys"
            ) from e


_crypto_service: Optional[CryptoService] = None


def get_crypto_service() -> CryptoService:
    """Get the global CryptoService built from settings."""
    global _crypto_service

    if _crypto_service is None:
        settings = get_settings()
        _crypto_service = CryptoService(
            settings.fernet_key, settings.fernet_previous_keys
        )

    return _crypto_service


def reset_crypto_service() -> None:
    """Reset the global CryptoService (for tests)."""
    global _crypto_service
    _crypto_service = None
