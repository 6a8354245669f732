"""
Tests for token store implementations.
Validates InMemoryTokenStore, FileTokenStore and (when reachable) RedisTokenStore.
"""
import json
import os
import stat
import uuid

import pytest

from marketplace_client.models.schemas import User
from marketplace_client.session import (
    FileTokenStore,
    InMemoryTokenStore,
    RedisTokenStore,
    StoredSession,
    TokenStoreError,
    TOKEN_KEY,
    REFRESH_TOKEN_KEY,
    USER_KEY,
    create_token_store,
    create_token_store_from_settings,
)
from marketplace_client.session.distributed_lock import (
    DistributedLock,
    LockAcquisitionError,
    LockReleaseError,
)
from marketplace_client.utils.encryption import TokenEncryption


USER = User(id="u1", email="a@b.com")


def full_session() -> StoredSession:
    return StoredSession(access_token="t1", refresh_token="r1", user=USER)


# ===========================
# Fixtures
# ===========================

@pytest.fixture
def file_store(tmp_path) -> FileTokenStore:
    return FileTokenStore(tmp_path / "session.json")


@pytest.fixture
async def redis_store():
    """Create Redis token store for testing (if available)."""
    store = RedisTokenStore(
        redis_url="redis://localhost:6379/15",  # Use test DB
        key_prefix=f"test:session:{uuid.uuid4().hex[:8]}:"
    )

    if not await store.ping():
        await store.close()
        pytest.skip("Redis not running")

    yield store

    await store.clear()
    await store.close()


@pytest.fixture(params=["in_memory", "file"])
def token_store(request, tmp_path):
    """Parametrized fixture covering the local store implementations."""
    if request.param == "in_memory":
        return InMemoryTokenStore()
    return FileTokenStore(tmp_path / "session.json")


# ===========================
# StoredSession Tests
# ===========================

@pytest.mark.unit
def test_stored_session_blank_tokens_are_absent():
    stored = StoredSession(access_token="  ", refresh_token="", user=None)

    assert stored.access_token is None
    assert stored.refresh_token is None
    assert stored.is_empty


@pytest.mark.unit
def test_stored_session_uses_fixed_keys():
    items = full_session().to_items()

    assert set(items) == {"token", "refresh_token", "user"}
    assert json.loads(items[USER_KEY])["id"] == "u1"


@pytest.mark.unit
def test_corrupted_user_snapshot_is_dropped():
    stored = StoredSession.from_items({TOKEN_KEY: "t1", USER_KEY: "{not json"})

    assert stored.access_token == "t1"
    assert stored.user is None


# ===========================
# Common Store Behaviour
# ===========================

@pytest.mark.unit
async def test_empty_store_loads_signed_out(token_store):
    stored = await token_store.load()

    assert stored.is_empty
    assert stored.access_token is None


@pytest.mark.unit
async def test_save_and_load(token_store):
    await token_store.save(full_session())

    stored = await token_store.load()

    assert stored.access_token == "t1"
    assert stored.refresh_token == "r1"
    assert stored.user.id == "u1"


@pytest.mark.unit
async def test_save_tokens_keeps_cached_user(token_store):
    await token_store.save(full_session())

    await token_store.save_tokens("t2", "r2")

    stored = await token_store.load()
    assert (stored.access_token, stored.refresh_token) == ("t2", "r2")
    assert stored.user.id == "u1"


@pytest.mark.unit
async def test_save_with_missing_values_removes_keys(token_store):
    await token_store.save(full_session())

    await token_store.save(StoredSession(access_token="t9"))

    stored = await token_store.load()
    assert stored.access_token == "t9"
    assert stored.refresh_token is None
    assert stored.user is None


@pytest.mark.unit
async def test_clear(token_store):
    await token_store.save(full_session())

    await token_store.clear()

    assert (await token_store.load()).is_empty


@pytest.mark.unit
async def test_health_check(token_store):
    await token_store.save(full_session())

    health = await token_store.health_check()

    assert health["healthy"] is True
    assert health["signed_in"] is True
    assert health["stats"]["store_type"] == token_store.store_type


# ===========================
# File Store
# ===========================

@pytest.mark.unit
async def test_file_store_survives_restart(tmp_path):
    path = tmp_path / "nested" / "session.json"
    await FileTokenStore(path).save(full_session())

    stored = await FileTokenStore(path).load()

    assert stored.access_token == "t1"
    assert stored.user.id == "u1"


@pytest.mark.unit
@pytest.mark.skipif(os.name != "posix", reason="POSIX permissions only")
async def test_file_store_is_private(file_store):
    await file_store.save(full_session())

    mode = stat.S_IMODE(file_store.path.stat().st_mode)
    assert mode == 0o600


@pytest.mark.unit
async def test_file_store_clear_removes_file(file_store):
    await file_store.save(full_session())

    await file_store.clear()

    assert not file_store.path.exists()


@pytest.mark.unit
async def test_corrupted_file_is_signed_out(file_store):
    file_store.path.write_text("{definitely not json", encoding="utf-8")

    stored = await file_store.load()

    assert stored.is_empty


# ===========================
# Encryption
# ===========================

@pytest.mark.unit
async def test_encrypted_file_store_hides_tokens(tmp_path):
    path = tmp_path / "session.json"
    store = create_token_store("file", encryption_key=TokenEncryption.generate_key(), path=path)

    await store.save(full_session())

    raw = path.read_text(encoding="utf-8")
    assert "t1" not in json.loads(raw)[TOKEN_KEY]
    assert (await store.load()).access_token == "t1"


@pytest.mark.unit
async def test_wrong_key_reads_as_signed_out(tmp_path):
    path = tmp_path / "session.json"
    await create_token_store("file", encryption_key="first passphrase", path=path).save(full_session())

    stored = await create_token_store("file", encryption_key="second passphrase", path=path).load()

    assert stored.access_token is None
    assert stored.user is None


# ===========================
# Factory
# ===========================

@pytest.mark.unit
def test_factory_rejects_unknown_type():
    with pytest.raises(ValueError):
        create_token_store("sqlite")


@pytest.mark.unit
def test_factory_from_settings(test_settings):
    store = create_token_store_from_settings(test_settings)

    assert isinstance(store, InMemoryTokenStore)
    assert store.encryptor is None


# ===========================
# Redis Store
# ===========================

@pytest.mark.integration
@pytest.mark.requires_redis
async def test_redis_store_round_trip(redis_store):
    await redis_store.save(full_session())

    stored = await redis_store.load()

    assert stored.access_token == "t1"
    assert stored.user.id == "u1"


@pytest.mark.integration
@pytest.mark.requires_redis
async def test_redis_store_lock_and_clear(redis_store):
    await redis_store.save(full_session())

    async with redis_store.lock():
        await redis_store.save_tokens("t2", "r2")

    assert (await redis_store.load()).access_token == "t2"

    await redis_store.clear()
    stats = await redis_store.get_stats()
    assert stats["keys_present"] == 0


@pytest.mark.integration
@pytest.mark.requires_redis
async def test_distributed_lock_excludes_second_holder(redis_store):
    client = await redis_store._ensure_connection()
    name = f"test:{uuid.uuid4().hex[:8]}"
    first = DistributedLock(client, name, ttl=5)
    second = DistributedLock(client, name, ttl=5, wait_timeout=0.2)

    async with first:
        with pytest.raises(LockAcquisitionError):
            await second.acquire()

    await second.acquire()
    assert second.held
    assert await second.release() is True
    assert await second.release() is False


@pytest.mark.integration
@pytest.mark.requires_redis
async def test_expired_lock_release_does_not_delete_new_owner(redis_store):
    client = await redis_store._ensure_connection()
    name = f"test:{uuid.uuid4().hex[:8]}"
    stale = DistributedLock(client, name, ttl=0.05)
    await stale.acquire()
    await client.delete(stale.key)

    fresh = DistributedLock(client, name, ttl=5)
    await fresh.acquire(blocking=False)

    assert await stale.release() is False
    assert await client.exists(fresh.key) == 1
    await fresh.release()


@pytest.mark.integration
@pytest.mark.requires_redis
async def test_busy_refresh_lock_surfaces_as_token_store_error(redis_store):
    client = await redis_store._ensure_connection()
    redis_store.lock_wait_timeout = 0.05
    holder = DistributedLock(client, f"{redis_store.key_prefix}refresh", ttl=5)

    async with holder:
        with pytest.raises(TokenStoreError):
            async with redis_store.lock():
                pass

    async with redis_store.lock():
        await redis_store.save_tokens("t2", "r2")
    assert (await redis_store.load()).access_token == "t2"


@pytest.mark.unit
def test_lock_errors_are_token_store_errors():
    assert issubclass(LockAcquisitionError, TokenStoreError)
    assert issubclass(LockReleaseError, TokenStoreError)
