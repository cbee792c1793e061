"""Tests for argon2id password storage."""
import pytest

from roomgate.service.errors import ValidationError
from roomgate.service.passwords import PasswordVault
from roomgate.storage import keys


@pytest.fixture
def vault(store, fast_hasher):
    return PasswordVault(store, min_length=8, max_length=128, hasher=fast_hasher)


class TestPasswordVault:
    async def test_set_and_verify(self, vault):
        await vault.set_password("alice", "hunter2hunter2")
        assert await vault.verify_password("alice", "hunter2hunter2") is True
        assert await vault.verify_password("alice", "hunter3hunter3") is False

    async def test_hash_is_argon2id_not_plaintext(self, vault, store):
        await vault.set_password("alice", "hunter2hunter2")
        digest = await store.get(keys.password("alice"))
        assert digest.startswith("$argon2id$")
        assert "hunter2hunter2" not in digest

    async def test_same_password_gets_distinct_salts(self, vault, store):
        await vault.set_password("alice", "same-password")
        await vault.set_password("bob", "same-password")
        assert await store.get(keys.password("alice")) != await store.get(keys.password("bob"))

    async def test_missing_record_fails_closed(self, vault):
        assert await vault.verify_password("nobody", "whatever1") is False
        assert await vault.has_password("nobody") is False

    async def test_corrupt_hash_fails_closed(self, vault, store):
        await store.set(keys.password("alice"), "not-a-hash")
        assert await vault.verify_password("alice", "whatever1") is False

    async def test_empty_password_never_verifies(self, vault):
        await vault.set_password("alice", "hunter2hunter2")
        assert await vault.verify_password("alice", "") is False

    async def test_replacing_password(self, vault):
        await vault.set_password("alice", "first-password")
        await vault.set_password("alice", "second-password")
        assert await vault.verify_password("alice", "first-password") is False
        assert await vault.verify_password("alice", "second-password") is True
        assert await vault.has_password("alice") is True

    @pytest.mark.parametrize("password", ["short", "x" * 129])
    async def test_length_bounds(self, vault, password):
        with pytest.raises(ValidationError):
            await vault.set_password("alice", password)
