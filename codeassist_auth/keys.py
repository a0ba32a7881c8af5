"""
Fernet key for encrypting token columns at rest.
Load from file or generate and persist (owner-only permissions); no key material in code.
"""
import logging
import os
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


class EncryptionKeyError(RuntimeError):
    """The key file exists but does not hold a usable key."""


def load_or_create_key(path: str | os.PathLike) -> bytes:
    """
    Return the Fernet key stored at path, generating and saving one only if the file
    does not exist. A key file that cannot be read or parsed raises EncryptionKeyError
    and is left untouched, since replacing it would orphan every stored token.
    A new key that cannot be saved is still returned for this process.
    """
    p = Path(path)
    if p.exists():
        try:
            key = p.read_bytes().strip()
            Fernet(key)
        except (OSError, ValueError) as e:
            logger.error("Failed to load encryption key from %s: %s", p, e)
            raise EncryptionKeyError(f"Encryption key at {p} cannot be loaded: {e}") from e
        return key
    key = Fernet.generate_key()
    try:
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_bytes(key)
        os.chmod(p, 0o600)
        logger.info("Generated and saved encryption key to %s", p)
    except OSError as e:
        logger.warning("Could not save encryption key to %s: %s", p, e)
    return key


class TokenCipher:
    """Encrypts token strings for storage. decrypt() returns None for ciphertext from another key."""

    def __init__(self, key: bytes):
        self._fernet = Fernet(key)

    @classmethod
    def from_path(cls, path: str | os.PathLike) -> "TokenCipher":
        return cls(load_or_create_key(path))

    def encrypt(self, value: str) -> str:
        return self._fernet.encrypt(value.encode("utf-8")).decode("ascii")

    def decrypt(self, value: str) -> str | None:
        try:
            return self._fernet.decrypt(value.encode("ascii")).decode("utf-8")
        except (InvalidToken, ValueError):
            return None
