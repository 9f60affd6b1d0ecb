"""
Secret encryption service for provider credentials

AES-256-GCM with a per-call subkey derived from the master key:
    base64( salt(32) | iv(16) | auth_tag(16) | ciphertext )

The subkey is PBKDF2-HMAC-SHA256(master_key, salt, 100,000 iterations),
so two encryptions of the same plaintext never share key material.
Tampering with any byte of the blob fails the tag check.
"""
import base64
import binascii
import hashlib
import hmac
import json
import logging
import os
import secrets
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from integration_engine.core.config import settings
from integration_engine.core.exceptions import ConfigurationError, DecryptionError

logger = logging.getLogger(__name__)

SALT_LENGTH = 32
IV_LENGTH = 16
TAG_LENGTH = 16
KEY_LENGTH = 32
PBKDF2_ITERATIONS = 100_000

DEV_KEY_PREFIX = "integration-engine-dev-key-"

# Key fragments that mark a credential field as secret (compared lowercase)
SENSITIVE_KEY_PATTERNS = (
    "apikey",
    "api_key",
    "apisecret",
    "api_secret",
    "secretkey",
    "secret_key",
    "password",
    "secret",
    "token",
    "accesstoken",
    "access_token",
    "refreshtoken",
    "refresh_token",
    "privatekey",
    "private_key",
    "clientsecret",
    "client_secret",
    "licensekey",
    "license_key",
    "webhooksecret",
)


def _resolve_master_key(hex_key: Optional[str], environment: str) -> bytes:
    if not hex_key:
        logger.warning(
            "INTEGRATION_ENCRYPTION_KEY not set, using a derived development key. "
            "Never run production without an explicit key."
        )
        return hashlib.sha256(f"{DEV_KEY_PREFIX}{environment}".encode()).digest()

    try:
        key = bytes.fromhex(hex_key)
    except ValueError:
        raise ConfigurationError("INTEGRATION_ENCRYPTION_KEY must be hex encoded")

    if len(key) != KEY_LENGTH:
        raise ConfigurationError(
            f"INTEGRATION_ENCRYPTION_KEY must decode to {KEY_LENGTH} bytes, got {len(key)}"
        )
    return key


class SecretCipher:
    """
    Authenticated encryption and masking for stored provider secrets.

    Args:
        master_key: Raw 32-byte key. Defaults to INTEGRATION_ENCRYPTION_KEY
            (or the derived development key when unset).
    """

    def __init__(self, master_key: Optional[bytes] = None):
        if master_key is None:
            master_key = _resolve_master_key(settings.INTEGRATION_ENCRYPTION_KEY, settings.ENVIRONMENT)
        if len(master_key) != KEY_LENGTH:
            raise ConfigurationError(f"Master key must be {KEY_LENGTH} bytes")
        self._master_key = master_key

    def _derive_key(self, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=PBKDF2_ITERATIONS,
        )
        return kdf.derive(self._master_key)

    # ==================== Encrypt / Decrypt ====================

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a string. Empty input yields an empty string."""
        if not plaintext:
            return ""

        salt = os.urandom(SALT_LENGTH)
        iv = os.urandom(IV_LENGTH)
        key = self._derive_key(salt)

        # AESGCM appends the tag to the ciphertext
        sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]

        return base64.b64encode(salt + iv + tag + ciphertext).decode("ascii")

    def decrypt(self, blob: str) -> str:
        """
        Decrypt a blob produced by encrypt().

        Raises:
            DecryptionError: blob is not base64, is truncated, or fails
                the authentication tag check.
        """
        if not blob:
            return ""

        try:
            raw = base64.b64decode(blob, validate=True)
        except (binascii.Error, ValueError):
            raise DecryptionError("Encrypted value is not valid base64")

        header = SALT_LENGTH + IV_LENGTH + TAG_LENGTH
        if len(raw) <= header:
            raise DecryptionError("Encrypted value is truncated")

        salt = raw[:SALT_LENGTH]
        iv = raw[SALT_LENGTH:SALT_LENGTH + IV_LENGTH]
        tag = raw[SALT_LENGTH + IV_LENGTH:header]
        ciphertext = raw[header:]

        key = self._derive_key(salt)
        try:
            plaintext = AESGCM(key).decrypt(iv, ciphertext + tag, None)
        except InvalidTag:
            raise DecryptionError("Encrypted value failed authentication")

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError:
            raise DecryptionError("Decrypted value is not valid UTF-8")

    def encrypt_json(self, data: Dict[str, Any]) -> str:
        """Serialize a mapping to JSON and encrypt it."""
        return self.encrypt(json.dumps(data))

    def decrypt_json(self, blob: str) -> Dict[str, Any]:
        """Decrypt a blob holding a JSON object. Empty input yields {}."""
        if not blob:
            return {}

        plaintext = self.decrypt(blob)
        try:
            data = json.loads(plaintext)
        except json.JSONDecodeError:
            raise DecryptionError("Decrypted value is not valid JSON")

        if not isinstance(data, dict):
            raise DecryptionError("Decrypted value is not a JSON object")
        return data

    # ==================== Masking ====================

    @staticmethod
    def mask_secret(value: Optional[str], visible_chars: int = 4) -> str:
        """
        Mask all but the trailing visible_chars characters.

        At most 20 asterisks are emitted so long secrets don't leak length.
        Values no longer than visible_chars are fully masked.
        """
        if not value or len(value) <= visible_chars:
            return "****"

        masked_length = min(len(value) - visible_chars, 20)
        return "*" * masked_length + value[-visible_chars:]

    @classmethod
    def _is_sensitive_key(cls, key: str) -> bool:
        lowered = key.lower()
        return any(pattern in lowered for pattern in SENSITIVE_KEY_PATTERNS)

    @classmethod
    def mask_credentials(cls, credentials: Any) -> Any:
        """Return a copy with every secret-looking string value masked, recursing into dicts and lists."""
        if isinstance(credentials, list):
            return [cls.mask_credentials(item) for item in credentials]
        if not isinstance(credentials, dict):
            return credentials

        masked = {}
        for key, value in credentials.items():
            if isinstance(value, (dict, list)):
                masked[key] = cls.mask_credentials(value)
            elif isinstance(value, str) and cls._is_sensitive_key(str(key)):
                masked[key] = cls.mask_secret(value)
            else:
                masked[key] = value
        return masked

    # ==================== Hashing / Generation ====================

    @staticmethod
    def hash(value: str) -> str:
        """One-way SHA-256 hex digest."""
        return hashlib.sha256(value.encode("utf-8")).hexdigest()

    @classmethod
    def verify_hash(cls, value: str, hashed: str) -> bool:
        return hmac.compare_digest(cls.hash(value), hashed)

    @staticmethod
    def generate_webhook_secret() -> str:
        return secrets.token_hex(32)

    @staticmethod
    def generate_api_key(prefix: str = "hos") -> str:
        return f"{prefix}_{secrets.token_urlsafe(24)}"


# Cached process-wide cipher
_cipher: Optional[SecretCipher] = None


def get_cipher() -> SecretCipher:
    """Get or create the process-wide SecretCipher."""
    global _cipher

    if _cipher is None:
        _cipher = SecretCipher()

    return _cipher
