"""
Tests for credential encryption and masking.
"""
import base64

import pytest

from integration_engine.core.exceptions import ConfigurationError, DecryptionError
from integration_engine.services.encryption import (
    SALT_LENGTH,
    IV_LENGTH,
    TAG_LENGTH,
    SecretCipher,
    _resolve_master_key,
)


class TestEncryption:
    """Test AES-GCM encryption/decryption."""

    def test_encrypt_decrypt_roundtrip(self, cipher):
        original = "sk_live_abcdef123456"
        encrypted = cipher.encrypt(original)

        assert encrypted != original
        assert cipher.decrypt(encrypted) == original

    def test_blob_layout(self, cipher):
        """Blob carries salt, iv and tag ahead of the ciphertext."""
        raw = base64.b64decode(cipher.encrypt("abc"))
        assert len(raw) == SALT_LENGTH + IV_LENGTH + TAG_LENGTH + 3

    def test_encrypt_unicode(self, cipher):
        original = "José García 中文"
        assert cipher.decrypt(cipher.encrypt(original)) == original

    def test_encryption_not_deterministic(self, cipher):
        first = cipher.encrypt("same value")
        second = cipher.encrypt("same value")

        assert first != second
        assert cipher.decrypt(first) == cipher.decrypt(second) == "same value"

    def test_empty_values(self, cipher):
        assert cipher.encrypt("") == ""
        assert cipher.decrypt("") == ""
        assert cipher.decrypt_json("") == {}

    def test_tampered_blob_rejected(self, cipher):
        raw = bytearray(base64.b64decode(cipher.encrypt("secret value")))
        raw[-1] ^= 0x01
        tampered = base64.b64encode(bytes(raw)).decode("ascii")

        with pytest.raises(DecryptionError, match="authentication"):
            cipher.decrypt(tampered)

    def test_tampered_salt_rejected(self, cipher):
        raw = bytearray(base64.b64decode(cipher.encrypt("secret value")))
        raw[0] ^= 0xFF
        tampered = base64.b64encode(bytes(raw)).decode("ascii")

        with pytest.raises(DecryptionError):
            cipher.decrypt(tampered)

    def test_truncated_blob_rejected(self, cipher):
        short = base64.b64encode(b"x" * (SALT_LENGTH + IV_LENGTH + TAG_LENGTH)).decode("ascii")
        with pytest.raises(DecryptionError, match="truncated"):
            cipher.decrypt(short)

    def test_invalid_base64_rejected(self, cipher):
        with pytest.raises(DecryptionError, match="base64"):
            cipher.decrypt("not*base64!")

    def test_wrong_key_rejected(self, cipher):
        encrypted = cipher.encrypt("secret value")
        other = SecretCipher(b"\x01" * 32)

        with pytest.raises(DecryptionError):
            other.decrypt(encrypted)

    def test_json_roundtrip(self, cipher, fedex_credentials):
        assert cipher.decrypt_json(cipher.encrypt_json(fedex_credentials)) == fedex_credentials

    def test_json_non_object_rejected(self, cipher):
        with pytest.raises(DecryptionError, match="JSON object"):
            cipher.decrypt_json(cipher.encrypt("[1, 2, 3]"))

    def test_json_garbage_rejected(self, cipher):
        with pytest.raises(DecryptionError, match="JSON"):
            cipher.decrypt_json(cipher.encrypt("{not json"))


class TestMasterKey:
    """Test master key resolution."""

    def test_hex_key_decoded(self):
        key = _resolve_master_key("ab" * 32, "production")
        assert key == bytes.fromhex("ab" * 32)

    def test_missing_key_derives_dev_key(self):
        first = _resolve_master_key("", "development")
        second = _resolve_master_key(None, "development")

        assert len(first) == 32
        assert first == second
        assert _resolve_master_key("", "staging") != first

    def test_non_hex_key_rejected(self):
        with pytest.raises(ConfigurationError, match="hex"):
            _resolve_master_key("zz" * 32, "production")

    def test_short_key_rejected(self):
        with pytest.raises(ConfigurationError, match="32 bytes"):
            _resolve_master_key("ab" * 16, "production")

    def test_cipher_rejects_wrong_length(self):
        with pytest.raises(ConfigurationError):
            SecretCipher(b"short")


class TestMasking:
    """Test credential masking."""

    def test_mask_secret_keeps_last_four(self):
        assert SecretCipher.mask_secret("abcdefgh1234") == "********1234"

    def test_mask_secret_caps_asterisks(self):
        masked = SecretCipher.mask_secret("x" * 100 + "9876")
        assert masked == "*" * 20 + "9876"

    def test_mask_secret_short_values(self):
        assert SecretCipher.mask_secret("abcd") == "****"
        assert SecretCipher.mask_secret("") == "****"
        assert SecretCipher.mask_secret(None) == "****"

    def test_mask_credentials(self, fedex_credentials):
        masked = SecretCipher.mask_credentials(fedex_credentials)

        assert masked["apiKey"] == "************3456"
        assert masked["secretKey"].endswith("cdef")
        assert "fedex-secret" not in masked["secretKey"]
        # Account numbers are identifiers, not secrets
        assert masked["accountNumber"] == "740561073"

    def test_mask_credentials_nested(self):
        credentials = {
            "oauth": {"client_secret": "very-secret-value", "clientId": "public-id"},
            "keys": [{"api_key": "key-000011112222"}],
            "sandbox": True,
        }
        masked = SecretCipher.mask_credentials(credentials)

        assert masked["oauth"]["client_secret"].endswith("alue")
        assert "very-secret" not in masked["oauth"]["client_secret"]
        assert masked["oauth"]["clientId"] == "public-id"
        assert masked["keys"][0]["api_key"].endswith("2222")
        assert masked["sandbox"] is True

    def test_mask_credentials_does_not_mutate(self, avalara_credentials):
        original = dict(avalara_credentials)
        SecretCipher.mask_credentials(avalara_credentials)
        assert avalara_credentials == original


class TestHashing:
    """Test hashing and generators."""

    def test_hash_and_verify(self):
        hashed = SecretCipher.hash("webhook-payload")

        assert len(hashed) == 64
        assert SecretCipher.verify_hash("webhook-payload", hashed)
        assert not SecretCipher.verify_hash("other-payload", hashed)

    def test_generate_webhook_secret(self):
        first = SecretCipher.generate_webhook_secret()
        assert len(first) == 64
        assert first != SecretCipher.generate_webhook_secret()

    def test_generate_api_key(self):
        key = SecretCipher.generate_api_key("int")
        assert key.startswith("int_")
        assert len(key) > 20
