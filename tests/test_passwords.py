"""Unit tests for argon2id password hashing."""

import pytest

from hackauth.service.passwords import PasswordHasher


@pytest.fixture
def hasher():
    return PasswordHasher(time_cost=1, memory_cost=8, parallelism=1)


class TestPasswordHasher:
    def test_hash_is_argon2id_and_salted(self, hasher):
        first = hasher.hash("CorrectHorse1!")
        second = hasher.hash("CorrectHorse1!")

        assert first.startswith("$argon2id$")
        assert first != second
        assert "CorrectHorse1!" not in first

    def test_verify_accepts_matching_password(self, hasher):
        stored = hasher.hash("CorrectHorse1!")
        assert hasher.verify(stored, "CorrectHorse1!") is True

    def test_verify_rejects_wrong_password(self, hasher):
        stored = hasher.hash("CorrectHorse1!")
        assert hasher.verify(stored, "correcthorse1!") is False

    def test_verify_without_hash_is_false(self, hasher):
        assert hasher.verify(None, "anything") is False
        assert hasher.verify("", "anything") is False

    def test_verify_malformed_hash_is_false(self, hasher):
        assert hasher.verify("not-a-hash", "anything") is False

    def test_dummy_verify_never_raises(self, hasher):
        hasher.dummy_verify("whatever")
        hasher.dummy_verify("")

    def test_needs_rehash_when_parameters_change(self, hasher):
        stored = hasher.hash("CorrectHorse1!")
        stronger = PasswordHasher(time_cost=2, memory_cost=16, parallelism=1)

        assert hasher.needs_rehash(stored) is False
        assert stronger.needs_rehash(stored) is True
        assert hasher.needs_rehash("garbage") is True

    def test_any_single_character_mutation_fails(self, hasher):
        password = "CorrectHorse1!"
        stored = hasher.hash(password)

        for index in range(len(password)):
            mutated = password[:index] + chr(ord(password[index]) ^ 1) + password[index + 1:]
            assert hasher.verify(stored, mutated) is False
