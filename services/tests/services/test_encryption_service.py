"""Tests for Fernet encryption of server access tokens."""

from unittest.mock import patch

import pytest
from cryptography.fernet import Fernet

from berth.services import encryption_service
from berth.services.encryption_service import (
    decrypt_value,
    encrypt_value,
    init_encryption,
    is_encryption_available,
)


@pytest.fixture(autouse=True)
def reset_fernet():
    yield
    encryption_service._fernet = None


def _init(key: str) -> None:
    with patch("berth.services.encryption_service.settings") as mock_settings:
        mock_settings.encryption_key = key
        init_encryption()


class TestEncryption:
    def test_round_trip(self):
        _init(Fernet.generate_key().decode())

        ciphertext = encrypt_value("agent-token")

        assert ciphertext != "agent-token"
        assert decrypt_value(ciphertext) == "agent-token"

    def test_no_key(self):
        _init("")
        assert is_encryption_available() is False
        with pytest.raises(RuntimeError):
            encrypt_value("agent-token")

    def test_invalid_key(self):
        _init("not-a-fernet-key")
        assert is_encryption_available() is False

    def test_key_mismatch(self):
        _init(Fernet.generate_key().decode())
        ciphertext = encrypt_value("agent-token")
        _init(Fernet.generate_key().decode())

        with pytest.raises(ValueError, match="key mismatch"):
            decrypt_value(ciphertext)
