"""
Token Encryption Tests
AES-GCM at-rest encryption of seller GitHub tokens
"""

import base64

import pytest

from config import Config
from utils.token_encryption import TokenDecryptionError, TokenEncryption, TokenKeyConfigurationError

KEY = "ab" * 32
OTHER_KEY = "cd" * 32


class TestTokenEncryption:

    def test_roundtrip(self):
        cipher = TokenEncryption(hex_key=KEY)
        assert cipher.decrypt(cipher.encrypt("ghp_abc123")) == "ghp_abc123"

    def test_random_nonce_per_encryption(self):
        cipher = TokenEncryption(hex_key=KEY)
        assert cipher.encrypt("ghp_abc123") != cipher.encrypt("ghp_abc123")

    def test_stored_format_is_nonce_ciphertext_tag(self):
        sealed = base64.b64decode(TokenEncryption(hex_key=KEY).encrypt("token"))
        # 12-byte nonce, 5-byte ciphertext, 16-byte tag
        assert len(sealed) == 12 + 5 + 16

    def test_wrong_key_fails_authentication(self):
        ciphertext = TokenEncryption(hex_key=KEY).encrypt("ghp_abc123")
        with pytest.raises(TokenDecryptionError, match="authentication failed"):
            TokenEncryption(hex_key=OTHER_KEY).decrypt(ciphertext)

    def test_tampered_ciphertext_rejected(self):
        cipher = TokenEncryption(hex_key=KEY)
        sealed = bytearray(base64.b64decode(cipher.encrypt("ghp_abc123")))
        sealed[15] ^= 0x01
        with pytest.raises(TokenDecryptionError):
            cipher.decrypt(base64.b64encode(bytes(sealed)).decode("ascii"))

    @pytest.mark.parametrize("ciphertext", ["not base64!!", base64.b64encode(b"short").decode("ascii")])
    def test_malformed_ciphertext(self, ciphertext):
        with pytest.raises(TokenDecryptionError):
            TokenEncryption(hex_key=KEY).decrypt(ciphertext)

    def test_decryption_error_is_user_safe(self):
        with pytest.raises(TokenDecryptionError) as exc_info:
            TokenEncryption(hex_key=KEY).decrypt("AAAA")
        assert exc_info.value.status_code == 400
        assert "reconnect GitHub" in exc_info.value.user_message

    @pytest.mark.parametrize("bad_key", ["zz" * 32, "ab" * 16])
    def test_invalid_key_rejected(self, bad_key):
        with pytest.raises(TokenKeyConfigurationError):
            TokenEncryption(hex_key=bad_key).encrypt("token")

    def test_missing_key_is_a_mapped_server_error(self, monkeypatch):
        monkeypatch.setattr(Config, "GITHUB_TOKEN_ENCRYPTION_KEY", None)
        with pytest.raises(TokenKeyConfigurationError) as exc_info:
            TokenEncryption().decrypt(TokenEncryption(hex_key=KEY).encrypt("ghp_abc123"))
        assert exc_info.value.status_code == 500
        assert "GITHUB_TOKEN_ENCRYPTION_KEY" not in exc_info.value.user_message
