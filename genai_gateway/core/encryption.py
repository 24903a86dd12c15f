"""Fernet encryption helpers for stored API credentials.

The Fernet key is derived from ``ENCRYPTION_SECRET`` with scrypt, so any
sufficiently long passphrase can be configured. Fernet tokens carry a random
IV and an HMAC, so encrypting the same secret twice yields different tokens
and any tampering is detected on decrypt.
"""

import base64
import logging
import re

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from genai_gateway.core.config import Settings
from genai_gateway.core.exceptions import ConfigurationError, DecryptionError

logger = logging.getLogger(__name__)

_KDF_SALT = b"genai-gateway-credential-vault"
MASK_MARKER = "***"

# key=... / api_key=... query parameters, and bare Google API keys anywhere in text
_SECRET_PARAM_PATTERN = re.compile(r"([?&;](?:key|api[-_]?key)=)([^&\s'\"]+)", re.IGNORECASE)
_GOOGLE_KEY_PATTERN = re.compile(r"AIza[0-9A-Za-z_-]{20,}")


def derive_fernet_key(secret: str) -> bytes:
    """Derive a urlsafe-base64 Fernet key from an arbitrary passphrase."""
    kdf = Scrypt(salt=_KDF_SALT, length=32, n=2**14, r=8, p=1)
    return base64.urlsafe_b64encode(kdf.derive(secret.encode("utf-8")))


def mask_secret(value: str | None) -> str:
    """Mask a secret for display: first 4 + ``...`` + last 4 characters."""
    if not value or len(value) <= 8:
        return MASK_MARKER
    return f"{value[:4]}...{value[-4:]}"


def redact_secrets(text: str | None) -> str | None:
    """Mask API keys embedded in free text (error messages, URLs, tracebacks)."""
    if not text:
        return text
    text = _SECRET_PARAM_PATTERN.sub(lambda m: m.group(1) + mask_secret(m.group(2)), text)
    return _GOOGLE_KEY_PATTERN.sub(lambda m: mask_secret(m.group(0)), text)


class CredentialVault:
    """Encrypts and decrypts credential secrets."""

    def __init__(self, secret: str):
        if not secret:
            raise ConfigurationError("ENCRYPTION_SECRET is not configured — cannot encrypt/decrypt credentials")
        self._fernet = Fernet(derive_fernet_key(secret))

    @classmethod
    def from_settings(cls, settings: Settings) -> "CredentialVault":
        return cls(settings.encryption_secret)

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a string value. Returns an ASCII token suitable for a TEXT column."""
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str | bytes) -> str:
        """Decrypt a token back to the original string.

        Raises DecryptionError when the token is empty, malformed, was
        produced with another key or has been tampered with.
        """
        if not ciphertext:
            raise DecryptionError("Empty ciphertext")
        try:
            return self._fernet.decrypt(ciphertext).decode("utf-8")
        except (InvalidToken, TypeError, ValueError) as e:
            logger.error("Failed to decrypt credential — invalid encryption secret or corrupted data")
            raise DecryptionError("Credential ciphertext is malformed or has been tampered with") from e

    mask = staticmethod(mask_secret)
