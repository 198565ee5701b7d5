"""Unit tests for password hashing and verification."""

import pytest

from jwtpizza.service.passwords import PasswordHasher


@pytest.fixture
def hasher():
    return PasswordHasher(time_cost=1)


class TestPasswordHashing:
    def test_hash_is_not_plaintext(self, hasher):
        digest = hasher.hash("a")

        assert digest != "a"
        assert digest.startswith("$argon2id$")

    def test_same_password_produces_different_hashes(self, hasher):
        assert hasher.hash("toomanysecrets") != hasher.hash("toomanysecrets")

    def test_verify_round_trip(self, hasher):
        digest = hasher.hash("toomanysecrets")

        assert hasher.verify("toomanysecrets", digest) is True

    def test_verify_rejects_other_password(self, hasher):
        digest = hasher.hash("toomanysecrets")

        assert hasher.verify("toofewsecrets", digest) is False

    def test_verify_malformed_hash_returns_false(self, hasher):
        assert hasher.verify("a", "not-a-real-hash") is False

    def test_verify_empty_hash_returns_false(self, hasher):
        assert hasher.verify("a", "") is False

    def test_hash_written_with_other_cost_still_verifies(self, hasher):
        digest = PasswordHasher(time_cost=2).hash("a")

        assert hasher.verify("a", digest) is True

    def test_burn_never_raises(self, hasher):
        assert hasher.burn("anything") is None
