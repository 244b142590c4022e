"""Tests for local password hashing and strength checks."""

import pytest

from berth.auth.passwords import (
    generate_password,
    hash_password,
    validate_password_strength,
    verify_password,
)


class TestHashing:
    def test_roundtrip(self):
        hashed = hash_password("correct horse battery staple")
        assert hashed.startswith("pbkdf2:sha256:")
        assert verify_password("correct horse battery staple", hashed)

    def test_wrong_password(self):
        assert not verify_password("wrong", hash_password("right-password"))

    def test_salted(self):
        assert hash_password("same") != hash_password("same")

    @pytest.mark.parametrize("stored", [None, "", "garbage", "md5:1$salt$digest"])
    def test_malformed_hash_never_raises(self, stored):
        assert verify_password("anything", stored) is False


class TestStrength:
    def test_weak_password_rejected(self):
        with pytest.raises(ValueError):
            validate_password_strength("password")

    def test_user_inputs_penalised(self):
        with pytest.raises(ValueError):
            validate_password_strength("alice", ["alice"])

    def test_too_long_rejected(self):
        with pytest.raises(ValueError, match="72"):
            validate_password_strength("x" * 73)

    def test_generated_password_is_strong(self):
        password = generate_password()
        assert len(password) == 24
        assert validate_password_strength(password) == password
