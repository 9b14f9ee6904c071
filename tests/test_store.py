"""
Unit tests for the tiered cache store and its storage tiers.

A fake clock drives expiry so no test sleeps.
"""
import json
import logging

import pytest

from tributestream.cache.core import StorageType, make_cache_key, make_storage_key
from tributestream.cache.errors import StorageUnavailableError
from tributestream.cache.storage import MemoryStorage, SQLiteStorage
from tributestream.cache.store import TieredCache


class FakeClock:
    """Manually advanced replacement for time.time()."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class BrokenStorage:
    """Storage tier that refuses every call."""

    def get_item(self, key):
        raise StorageUnavailableError("storage disabled", tier="local")

    def set_item(self, key, value):
        raise StorageUnavailableError("storage disabled", tier="local")

    def remove_item(self, key):
        raise StorageUnavailableError("storage disabled", tier="local")

    def clear(self):
        raise StorageUnavailableError("storage disabled", tier="local")

    def keys(self):
        raise StorageUnavailableError("storage disabled", tier="local")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def local_storage():
    return MemoryStorage(name="local")


@pytest.fixture
def session_storage():
    return MemoryStorage(name="session")


@pytest.fixture
def cache(clock, session_storage, local_storage):
    return TieredCache(
        session_storage=session_storage,
        local_storage=local_storage,
        clock=clock,
    )


# =============================================================================
# Memory index
# =============================================================================

def test_set_then_get_returns_value(cache):
    assert cache.set("tribute:1", {"name": "Jane"}, ttl=5) == {"name": "Jane"}
    assert cache.get("tribute:1") == {"name": "Jane"}
    assert cache.has("tribute:1")


def test_missing_key_returns_default(cache):
    assert cache.get("nope") is None
    assert cache.get("nope", default="fallback") == "fallback"
    assert not cache.has("nope")


def test_falsy_values_are_cache_hits(cache):
    cache.set("zero", 0)
    cache.set("empty", [])
    assert cache.get("zero", default="missing") == 0
    assert cache.get("empty", default="missing") == []


def test_set_overwrites_previous_entry(cache):
    cache.set("k", 1)
    cache.set("k", 2)
    assert cache.get("k") == 2
    assert len(cache) == 1


def test_entry_expires_after_ttl(cache, clock):
    cache.set("k", "v", ttl=0.010)
    clock.advance(0.015)
    assert cache.get("k") is None
    assert not cache.has("k")
    assert len(cache) == 0


def test_entry_is_live_at_exactly_ttl(cache, clock):
    cache.set("k", "v", ttl=1.0)
    clock.advance(1.0)
    assert cache.get("k") == "v"


def test_has_evicts_expired_entry(cache, clock):
    cache.set("k", "v", ttl=1)
    clock.advance(2)
    assert not cache.has("k")
    assert cache.keys() == []


def test_default_ttl_applies(clock):
    cache = TieredCache(default_ttl=10, clock=clock)
    cache.set("k", "v")
    clock.advance(9)
    assert cache.get("k") == "v"
    clock.advance(2)
    assert cache.get("k") is None


def test_namespaces_do_not_collide(cache):
    cache.set("k", 1, namespace="a")
    cache.set("k", 2, namespace="b")
    assert cache.get("k", namespace="a") == 1
    assert cache.get("k", namespace="b") == 2
    assert cache.get("k") is None


def test_remove_deletes_entry(cache):
    cache.set("k", "v")
    assert cache.remove("k") is True
    assert cache.get("k") is None
    assert cache.remove("k") is False


def test_storage_type_accepts_strings(cache, local_storage):
    cache.set("k", "v", storage_type="local")
    assert local_storage.get_item("cache:app:k") is not None


# =============================================================================
# Persistent tiers
# =============================================================================

def test_persistent_set_writes_blob(cache, clock, session_storage):
    cache.set("k", {"a": 1}, ttl=30, storage_type=StorageType.SESSION)

    raw = session_storage.get_item(make_storage_key(make_cache_key("k", "app")))
    assert json.loads(raw) == {"value": {"a": 1}, "timestamp": clock.now, "ttl": 30}


def test_memory_entries_are_not_persisted(cache, session_storage, local_storage):
    cache.set("k", "v")
    assert session_storage.keys() == []
    assert local_storage.keys() == []


def test_remove_deletes_from_recorded_tier(cache, local_storage):
    cache.set("k", "v", storage_type="local")
    cache.remove("k")
    assert local_storage.keys() == []


def test_remove_uses_given_tier_when_not_in_memory(clock, local_storage):
    TieredCache(local_storage=local_storage, clock=clock).set("k", "v", storage_type="local")

    fresh = TieredCache(local_storage=local_storage, clock=clock)
    fresh.remove("k", storage_type="local")
    assert local_storage.keys() == []


def test_overwrite_in_memory_drops_old_blob(cache, local_storage):
    cache.set("k", "old", storage_type="local")
    cache.set("k", "new")

    assert local_storage.keys() == []
    cache.remove("k")
    assert cache.get("k") is None


def test_overwrite_into_other_tier_drops_old_blob(cache, session_storage, local_storage):
    cache.set("k", "old", storage_type="session")
    cache.set("k", "new", storage_type="local")

    assert session_storage.keys() == []
    assert local_storage.keys() == ["cache:app:k"]


def test_overwrite_after_reload_does_not_resurrect_old_value(clock, local_storage):
    TieredCache(local_storage=local_storage, clock=clock).set("k", "old", storage_type="local")

    reloaded = TieredCache(local_storage=local_storage, clock=clock)
    reloaded.set("k", "new")

    again = TieredCache(local_storage=local_storage, clock=clock)
    assert again.get("k") is None


def test_reload_recovers_from_local_tier_until_ttl(clock, local_storage):
    first = TieredCache(local_storage=local_storage, clock=clock)
    first.set("session:42", {"status": "pending"}, ttl=1.0, storage_type="local")

    # Simulated reload: new memory index, same durable storage
    reloaded = TieredCache(local_storage=local_storage, clock=clock)
    clock.advance(0.5)
    assert reloaded.get("session:42") == {"status": "pending"}
    assert reloaded.keys() == ["session:42"]

    clock.advance(0.6)
    assert reloaded.get("session:42") is None
    assert local_storage.get_item("cache:app:session:42") is None


def test_reload_recovers_from_sqlite_tier(tmp_path, clock):
    db_path = tmp_path / "cache.db"
    TieredCache(local_storage=SQLiteStorage(db_path), clock=clock).set(
        "session:42", {"status": "pending"}, ttl=1.0, storage_type="local"
    )

    reloaded = TieredCache(local_storage=SQLiteStorage(db_path), clock=clock)
    assert reloaded.get("session:42") == {"status": "pending"}

    clock.advance(2)
    fresh = TieredCache(local_storage=SQLiteStorage(db_path), clock=clock)
    assert fresh.get("session:42") is None
    assert SQLiteStorage(db_path).keys() == []


def test_recovered_entry_remembers_its_tier(clock, session_storage):
    TieredCache(session_storage=session_storage, clock=clock).set(
        "k", "v", storage_type="session"
    )

    reloaded = TieredCache(session_storage=session_storage, clock=clock)
    assert reloaded.has("k")
    reloaded.remove("k")
    assert session_storage.keys() == []


def test_recovery_prefers_local_tier(clock, session_storage, local_storage):
    TieredCache(session_storage=session_storage, clock=clock).set("k", "session", storage_type="session")
    TieredCache(local_storage=local_storage, clock=clock).set("k", "local", storage_type="local")

    reloaded = TieredCache(session_storage=session_storage, local_storage=local_storage, clock=clock)
    assert reloaded.get("k") == "local"


def test_recovery_limited_to_requested_tier(clock, session_storage, local_storage):
    TieredCache(session_storage=session_storage, clock=clock).set("k", "session", storage_type="session")

    reloaded = TieredCache(session_storage=session_storage, local_storage=local_storage, clock=clock)
    assert reloaded.get("k", storage_type="local") is None
    assert reloaded.get("k", storage_type="session") == "session"


def test_corrupt_blob_is_a_miss_and_removed(cache, local_storage):
    local_storage.set_item("cache:app:k", "{not json")
    assert cache.get("k") is None
    assert local_storage.get_item("cache:app:k") is None


def test_persistent_set_without_tier_stays_in_memory(clock):
    cache = TieredCache(clock=clock)
    cache.set("k", "v", storage_type="local")
    assert cache.get("k") == "v"


# =============================================================================
# Degraded storage
# =============================================================================

def test_quota_exceeded_degrades_to_memory(clock, caplog):
    tiny = MemoryStorage(quota_bytes=10, name="local")
    cache = TieredCache(local_storage=tiny, clock=clock)

    with caplog.at_level(logging.ERROR, logger="cache.store"):
        assert cache.set("k", "a value too large for the quota", storage_type="local")

    assert cache.get("k") == "a value too large for the quota"
    assert tiny.keys() == []
    assert "Cache storage error" in caplog.text


def test_failed_overwrite_removes_previous_blob(clock):
    tiny = MemoryStorage(quota_bytes=80, name="local")
    cache = TieredCache(local_storage=tiny, clock=clock)

    cache.set("k", "old", storage_type="local")
    assert tiny.keys() == ["cache:app:k"]

    cache.set("k", "a value far too large for the storage quota", storage_type="local")
    assert tiny.keys() == []

    cache.remove("k")
    assert cache.get("k") is None


def test_unserializable_value_degrades_to_memory(cache, local_storage):
    value = object()
    cache.set("k", value, storage_type="local")
    assert cache.get("k") is value
    assert local_storage.keys() == []


def test_broken_tier_never_raises(clock):
    cache = TieredCache(local_storage=BrokenStorage(), clock=clock)

    cache.set("k", "v", storage_type="local")
    assert cache.get("k") == "v"
    assert cache.get("other") is None
    cache.remove("k")
    cache.clear(namespace="app")
    cache.clear()


# =============================================================================
# Clearing, stats, purge
# =============================================================================

def test_clear_namespace_only(cache, local_storage):
    cache.set("k1", 1, namespace="calc", storage_type="local")
    cache.set("k2", 2, namespace="calc")
    cache.set("k1", 3, namespace="other", storage_type="local")

    assert cache.clear(namespace="calc") == 2
    assert cache.get("k1", namespace="calc") is None
    assert cache.get("k2", namespace="calc") is None
    assert cache.get("k1", namespace="other") == 3
    assert local_storage.keys() == ["cache:other:k1"]


def test_namespaces_cannot_contain_separator(cache):
    with pytest.raises(ValueError):
        cache.set("k", "v", namespace="calc:v2")
    with pytest.raises(ValueError):
        cache.clear(namespace="calc:v2")


def test_clear_all_wipes_tiers_including_foreign_data(cache, local_storage, session_storage):
    local_storage.set_item("theme", "dark")
    session_storage.set_item("jwt", "token")
    cache.set("k", "v", storage_type="local")

    assert cache.clear() == 1
    assert len(cache) == 0
    assert local_storage.keys() == []
    assert session_storage.keys() == []


def test_get_stats_counts_namespace(cache, clock):
    cache.set("a", {"x": 1}, ttl=1)
    cache.set("b", "hello", ttl=10)
    cache.set("c", 1, namespace="other")
    clock.advance(2)

    stats = cache.get_stats()
    assert stats.count == 2
    assert stats.expired == 1
    assert stats.memory_size == len(json.dumps({"x": 1})) + len(json.dumps("hello"))
    assert stats.timestamp == clock.now

    assert cache.get_stats(all_namespaces=True).count == 3


def test_get_stats_defaults_to_instance_namespace(clock):
    cache = TieredCache(default_namespace="calc", clock=clock)
    cache.set("a", 1)
    cache.set("b", 2, namespace="app")

    assert cache.get_stats().count == 1
    assert cache.get_stats(namespace="app").count == 1


def test_purge_expired(cache, clock, local_storage):
    cache.set("old", 1, ttl=1, storage_type="local")
    cache.set("new", 2, ttl=100)
    clock.advance(5)

    assert cache.purge_expired() == 1
    assert cache.keys() == ["new"]
    assert local_storage.keys() == []


# =============================================================================
# Storage tiers
# =============================================================================

def test_memory_storage_quota():
    storage = MemoryStorage(quota_bytes=8)
    storage.set_item("a", "1234")
    with pytest.raises(StorageUnavailableError):
        storage.set_item("b", "1234")
    # Replacing an item only counts its new size
    storage.set_item("a", "123456")
    assert storage.get_item("a") == "123456"


def test_sqlite_storage_round_trip(tmp_path):
    storage = SQLiteStorage(tmp_path / "nested" / "store.db")
    storage.set_item("a", "1")
    storage.set_item("b", "2")
    storage.set_item("a", "3")

    assert storage.get_item("a") == "3"
    assert sorted(storage.keys()) == ["a", "b"]

    storage.remove_item("a")
    assert storage.get_item("a") is None

    storage.clear()
    assert storage.keys() == []


def test_sqlite_storage_unopenable_path(tmp_path):
    with pytest.raises(StorageUnavailableError):
        SQLiteStorage(tmp_path)
