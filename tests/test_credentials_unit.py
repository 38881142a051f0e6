"""Unit tests for CredentialManager.

Tests for:
- Password hashing and verification
- Password policy
- Lockout counting and admin unlock
"""

import pytest

from verigate.service.credentials import CredentialManager
from verigate.service.errors import (
    AccountLockedError,
    InternalError,
    InvalidCredentialsError,
    ValidationError,
)
from verigate.storage.models import Identity


@pytest.fixture
def credentials(memory_store, settings, clock):
    return CredentialManager(memory_store, settings, clock=clock)


@pytest.fixture
def identity(memory_store, credentials):
    identity = Identity.new(
        name="Ada Lovelace",
        email="ada@example.com",
        password_hash=credentials.hash_password("Correct-Horse1"),
    )
    return memory_store.create_identity(identity)


class TestPasswordHashing:
    def test_hash_is_argon2id(self, credentials):
        pwd_hash = credentials.hash_password("Correct-Horse1")

        assert pwd_hash.startswith("$argon2id$")
        assert "Correct-Horse1" not in pwd_hash

    def test_same_password_produces_different_hashes(self, credentials):
        """Salting makes every hash unique."""
        assert credentials.hash_password("Correct-Horse1") != credentials.hash_password("Correct-Horse1")

    def test_verify_matches_only_the_right_password(self, credentials):
        pwd_hash = credentials.hash_password("Correct-Horse1")

        assert credentials.verify_password("Correct-Horse1", pwd_hash) is True
        assert credentials.verify_password("correct-horse1", pwd_hash) is False
        assert credentials.verify_password("", pwd_hash) is False

    def test_unreadable_hash_is_internal_error(self, credentials):
        with pytest.raises(InternalError):
            credentials.verify_password("Correct-Horse1", "plaintext-in-db")

    def test_dummy_verification_never_raises(self, credentials):
        credentials.burn_dummy_verification("anything")
        credentials.burn_dummy_verification("anything else")


class TestPasswordPolicy:
    @pytest.mark.parametrize(
        "password",
        ["Short1A", "a" * 7 + "A1" * 61, "alllowercase1", "ALLUPPERCASE1", "NoDigitsHere"],
    )
    def test_rejects_weak_passwords(self, credentials, password):
        with pytest.raises(ValidationError) as excinfo:
            credentials.validate_password(password)

        assert excinfo.value.field == "password"

    def test_accepts_policy_compliant_password(self, credentials):
        assert credentials.validate_password("Correct-Horse1") == "Correct-Horse1"


class TestLockout:
    def test_failures_increment_and_lock_at_threshold(self, credentials, identity):
        for expected in range(1, 5):
            updated = credentials.record_login_result(identity.id, False)
            assert updated.login_attempts == expected
            assert updated.locked is False

        updated = credentials.record_login_result(identity.id, False)

        assert updated.login_attempts == 5
        assert updated.locked is True
        assert updated.last_failed_login is not None

    def test_success_resets_counter(self, credentials, identity, clock):
        credentials.record_login_result(identity.id, False)

        updated = credentials.record_login_result(identity.id, True)

        assert updated.login_attempts == 0
        assert updated.last_login == clock.now

    def test_locked_account_rejected_before_password_check(self, credentials, identity, memory_store):
        for _ in range(5):
            credentials.record_login_result(identity.id, False)
        locked = memory_store.get_identity(identity.id)

        with pytest.raises(AccountLockedError):
            credentials.authenticate(locked, "Correct-Horse1")

        assert memory_store.get_identity(identity.id).login_attempts == 5

    def test_authenticate_reports_mismatch_as_outcome(self, credentials, identity):
        outcome = credentials.authenticate(identity, "Wrong-Password1")

        assert outcome.success is False
        assert outcome.identity.login_attempts == 1

    def test_authenticate_success(self, credentials, identity):
        outcome = credentials.authenticate(identity, "Correct-Horse1")

        assert outcome.success is True
        assert outcome.identity.login_attempts == 0

    def test_admin_unlock(self, credentials, identity):
        for _ in range(5):
            credentials.record_login_result(identity.id, False)

        updated = credentials.admin_unlock(identity.id)

        assert updated.locked is False
        assert updated.login_attempts == 0

    def test_set_password_clears_lock(self, credentials, identity):
        for _ in range(5):
            credentials.record_login_result(identity.id, False)

        updated = credentials.set_password(identity.id, credentials.hash_password("Battery-Staple2"))

        assert updated.locked is False
        assert credentials.verify_password("Battery-Staple2", updated.password_hash)

    def test_rehash_on_login_when_costs_change(self, memory_store, settings, identity):
        stronger = CredentialManager(
            memory_store, settings.model_copy(update={"argon2_time_cost": 2})
        )

        outcome = stronger.authenticate(identity, "Correct-Horse1")

        assert outcome.success
        assert outcome.identity.password_hash != identity.password_hash
        assert "t=2" in outcome.identity.password_hash

    def test_login_with_stale_read_keeps_concurrent_password_change(
        self, memory_store, settings, identity
    ):
        stale = memory_store.get_identity(identity.id)
        stronger = CredentialManager(
            memory_store, settings.model_copy(update={"argon2_time_cost": 2})
        )
        stronger.set_password(identity.id, stronger.hash_password("Brand-New-Pass1"))

        with pytest.raises(InvalidCredentialsError):
            stronger.authenticate(stale, "Correct-Horse1")

        stored = memory_store.get_identity(identity.id)
        assert stronger.verify_password("Brand-New-Pass1", stored.password_hash)
        assert not stronger.verify_password("Correct-Horse1", stored.password_hash)
