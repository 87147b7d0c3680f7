"""
Seller access-token encryption at rest.

AES-256-GCM with a random 12-byte nonce per encryption. Stored format is
base64(nonce || ciphertext || tag). Tokens are decrypted just-in-time for a
single provider call and never persisted in plaintext.
"""

import base64
import logging
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from config import Config
from utils.marketplace_errors import MarketplaceError, ValidationError

logger = logging.getLogger(__name__)

NONCE_LENGTH = 12
TAG_LENGTH = 16


class TokenDecryptionError(ValidationError):
    """Stored credential could not be decrypted"""

    def __init__(self, message: str):
        super().__init__(message, "Seller GitHub credentials are invalid. The seller must reconnect GitHub.")


class TokenKeyConfigurationError(MarketplaceError):
    """Encryption key missing or malformed"""

    def __init__(self, message: str):
        super().__init__(message, "Secure credential storage is unavailable. Please try again later.")


class TokenEncryption:
    """Encrypts and decrypts provider access tokens"""

    def __init__(self, hex_key: Optional[str] = None):
        self._hex_key = hex_key

    def _get_key(self) -> bytes:
        hex_key = self._hex_key or Config.GITHUB_TOKEN_ENCRYPTION_KEY
        if not hex_key:
            raise TokenKeyConfigurationError("GITHUB_TOKEN_ENCRYPTION_KEY is not set")
        try:
            key = bytes.fromhex(hex_key)
        except ValueError as e:
            raise TokenKeyConfigurationError("GITHUB_TOKEN_ENCRYPTION_KEY must be a hex string") from e
        if len(key) != 32:
            raise TokenKeyConfigurationError("GITHUB_TOKEN_ENCRYPTION_KEY must be a 64-character hex string (32 bytes)")
        return key

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(NONCE_LENGTH)
        # AESGCM appends the 16-byte tag to the ciphertext
        sealed = AESGCM(self._get_key()).encrypt(nonce, plaintext.encode("utf-8"), None)
        return base64.b64encode(nonce + sealed).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        try:
            combined = base64.b64decode(ciphertext, validate=True)
        except (ValueError, TypeError) as e:
            raise TokenDecryptionError("Invalid ciphertext: not base64") from e

        if len(combined) < NONCE_LENGTH + TAG_LENGTH:
            raise TokenDecryptionError("Invalid ciphertext: too short")

        nonce, sealed = combined[:NONCE_LENGTH], combined[NONCE_LENGTH:]
        try:
            return AESGCM(self._get_key()).decrypt(nonce, sealed, None).decode("utf-8")
        except InvalidTag as e:
            logger.error("🔐 TOKEN_DECRYPT_FAILED: authentication tag mismatch")
            raise TokenDecryptionError("Invalid ciphertext: authentication failed") from e


token_encryption = TokenEncryption()
