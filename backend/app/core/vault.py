"""OAuth token encryption at rest.

Tokens are sealed with AES-256-GCM. The stored form is
``base64(nonce[12] || ciphertext || tag)``; nothing else about a token is
ever persisted.
"""

import base64
import binascii
import os
from functools import lru_cache

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from app.core.config import settings
from app.core.errors import ErrorKind, MockupSuiteError

NONCE_SIZE = 12
TAG_SIZE = 16
KEY_SALT = b"mockupsuite-token-vault"
KEY_ITERATIONS = 100_000


class TokenDecryptionError(MockupSuiteError):
    """Raised when a stored token cannot be authenticated or decoded."""

    kind = ErrorKind.INTEGRATION_DISCONNECTED


@lru_cache(maxsize=8)
def derive_key(secret: str) -> bytes:
    """Derive the 256-bit vault key from a server-side secret."""
    if not secret:
        raise ValueError("Token encryption secret must not be empty")
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=KEY_SALT,
        iterations=KEY_ITERATIONS,
    )
    return kdf.derive(secret.encode())


def encrypt(plain_token: str, key: bytes) -> str:
    """Seal a token with a fresh random nonce."""
    nonce = os.urandom(NONCE_SIZE)
    sealed = AESGCM(key).encrypt(nonce, plain_token.encode(), None)
    return base64.b64encode(nonce + sealed).decode("ascii")


def decrypt(cipher_text: str, key: bytes) -> str:
    """Open a sealed token, failing closed on any tampering or truncation."""
    try:
        raw = base64.b64decode(cipher_text.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError, ValueError) as exc:
        raise TokenDecryptionError("Stored token is not valid base64") from exc

    if len(raw) < NONCE_SIZE + TAG_SIZE:
        raise TokenDecryptionError("Stored token is truncated")

    nonce, sealed = raw[:NONCE_SIZE], raw[NONCE_SIZE:]
    try:
        plain = AESGCM(key).decrypt(nonce, sealed, None)
    except InvalidTag as exc:
        raise TokenDecryptionError("Stored token failed authentication") from exc
    return plain.decode()


class TokenVault:
    """Key holder injected into the OAuth coordinator and sync engine."""

    def __init__(self, secret: str | None = None) -> None:
        self._key = derive_key(secret or settings.TOKEN_ENCRYPTION_KEY)

    def encrypt(self, plain_token: str) -> str:
        return encrypt(plain_token, self._key)

    def decrypt(self, cipher_text: str) -> str:
        return decrypt(cipher_text, self._key)

    def encrypt_optional(self, plain_token: str | None) -> str | None:
        return self.encrypt(plain_token) if plain_token else None

    def decrypt_optional(self, cipher_text: str | None) -> str | None:
        return self.decrypt(cipher_text) if cipher_text else None

    def __repr__(self) -> str:
        return "<TokenVault>"


def get_token_vault() -> TokenVault:
    """FastAPI dependency returning the process vault."""
    return TokenVault()
