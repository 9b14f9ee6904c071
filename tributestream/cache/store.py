"""
Tiered key/value cache with TTL expiration.

Every entry lives in an in-memory index. Entries written with a persistent
storage type are also mirrored into a storage tier (session-scoped or
durable) so a fresh cache over the same tiers can recover them. Expiry is
checked lazily on read; nothing sweeps in the background.
"""
import json
import time
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from .core import (
    DEFAULT_NAMESPACE,
    DEFAULT_TTL_SECONDS,
    CacheEntry,
    CacheStats,
    StorageType,
    make_cache_key,
    make_storage_key,
)
from .errors import CacheSerializationError, StorageUnavailableError
from .storage import StorageArea

logger = logging.getLogger("cache.store")

# Recovery looks at the durable tier before the session tier
_RECOVERY_ORDER = (StorageType.LOCAL, StorageType.SESSION)


class TieredCache:
    """
    Memory index plus optional session and durable storage tiers.

    Usage:
        cache = TieredCache(local_storage=SQLiteStorage(path))
        cache.set("session:42", {"status": "pending"}, ttl=1.0, storage_type="local")
        cache.get("session:42")
    """

    def __init__(
        self,
        session_storage: Optional[StorageArea] = None,
        local_storage: Optional[StorageArea] = None,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        default_namespace: str = DEFAULT_NAMESPACE,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            session_storage: Tier used for StorageType.SESSION entries
            local_storage: Tier used for StorageType.LOCAL entries
            default_ttl: TTL in seconds when set() is not given one
            default_namespace: Namespace when a call does not name one
            clock: Returns the current time in epoch seconds
        """
        self._entries: Dict[str, CacheEntry] = {}
        self._tiers: Dict[StorageType, Optional[StorageArea]] = {
            StorageType.SESSION: session_storage,
            StorageType.LOCAL: local_storage,
        }
        self.default_ttl = default_ttl
        self.default_namespace = default_namespace
        self._clock = clock

    # ----- public API -----

    def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[float] = None,
        storage_type: "StorageType | str" = StorageType.MEMORY,
        namespace: Optional[str] = None,
    ) -> Any:
        """
        Store a value, overwriting any entry under the same key.

        Returns:
            The stored value
        """
        entry = CacheEntry(
            key=key,
            value=value,
            timestamp=self._clock(),
            ttl=self.default_ttl if ttl is None else ttl,
            storage_type=StorageType.coerce(storage_type),
            namespace=namespace or self.default_namespace,
        )
        self._entries[entry.cache_key] = entry
        self._drop_stale_blobs(entry)
        logger.debug(
            f"Cache set: {entry.cache_key} [storage={entry.storage_type.value}, ttl={entry.ttl}s]"
        )

        if entry.storage_type.is_persistent:
            self._persist(entry)

        return value

    def get(
        self,
        key: str,
        namespace: Optional[str] = None,
        storage_type: "StorageType | str | None" = None,
        default: Any = None,
    ) -> Any:
        """
        Get a live value.

        Falls back to the storage tiers when the key is not in memory.

        Returns:
            The cached value, or ``default`` if missing or expired
        """
        entry = self._lookup(key, namespace, storage_type)
        if entry is None:
            return default
        logger.debug(f"Cache hit: {entry.cache_key}")
        return entry.value

    def has(
        self,
        key: str,
        namespace: Optional[str] = None,
        storage_type: "StorageType | str | None" = None,
    ) -> bool:
        """True if a live entry exists for the key."""
        return self._lookup(key, namespace, storage_type) is not None

    def remove(
        self,
        key: str,
        namespace: Optional[str] = None,
        storage_type: "StorageType | str | None" = None,
    ) -> bool:
        """
        Remove an entry from memory and from the tier it was written to.

        ``storage_type`` is only consulted when the entry is not in memory.

        Returns:
            True if an in-memory entry was removed
        """
        cache_key = make_cache_key(key, namespace or self.default_namespace)
        entry = self._entries.pop(cache_key, None)

        if entry is not None:
            tier_type = entry.storage_type
        else:
            tier_type = StorageType.coerce(storage_type)

        if tier_type.is_persistent:
            self._unpersist(cache_key, tier_type)

        logger.debug(f"Cache removed: {cache_key}")
        return entry is not None

    def clear(self, namespace: Optional[str] = None) -> int:
        """
        Clear one namespace, or everything.

        Without a namespace every storage tier is wiped wholesale, including
        data the cache did not write there.

        Returns:
            Number of in-memory entries cleared
        """
        if namespace:
            doomed = [
                entry for entry in self._entries.values()
                if entry.namespace == namespace
            ]
            for entry in doomed:
                self._entries.pop(entry.cache_key, None)
            self._clear_persisted_namespace(namespace)
            logger.debug(f"Cache cleared for namespace '{namespace}' ({len(doomed)} entries)")
            return len(doomed)

        count = len(self._entries)
        self._entries.clear()
        for storage_type, tier in self._tiers.items():
            if tier is None:
                continue
            try:
                tier.clear()
            except StorageUnavailableError as e:
                logger.error(f"Cache clear error ({storage_type.value}): {e}")
        logger.info(f"Cleared all cache ({count} entries)")
        return count

    def get_stats(
        self,
        namespace: Optional[str] = None,
        all_namespaces: bool = False,
    ) -> CacheStats:
        """
        Count entries in a namespace (the default one when None), or in
        every namespace with ``all_namespaces=True``.

        Expired entries that have not been read since expiring are counted
        in both ``count`` and ``expired``.
        """
        if not all_namespaces:
            namespace = namespace or self.default_namespace
        now = self._clock()
        stats = CacheStats(timestamp=now)

        for entry in self._entries.values():
            if not all_namespaces and entry.namespace != namespace:
                continue
            stats.count += 1
            if entry.is_expired(now):
                stats.expired += 1
            try:
                stats.memory_size += len(json.dumps(entry.value))
            except (TypeError, ValueError):
                pass  # Not JSON-sized; count it without a size

        return stats

    def purge_expired(self, namespace: Optional[str] = None) -> int:
        """
        Evict every expired entry, optionally within one namespace.

        Returns:
            Number of entries evicted
        """
        now = self._clock()
        expired = [
            entry for entry in self._entries.values()
            if (not namespace or entry.namespace == namespace) and entry.is_expired(now)
        ]
        for entry in expired:
            self._evict(entry)
        if expired:
            logger.info(f"Purged {len(expired)} expired cache entries")
        return len(expired)

    def keys(self, namespace: Optional[str] = None) -> List[str]:
        """In-memory keys (without namespace prefix), live or not."""
        return [
            entry.key for entry in self._entries.values()
            if not namespace or entry.namespace == namespace
        ]

    def __len__(self) -> int:
        return len(self._entries)

    # ----- internals -----

    def _lookup(
        self,
        key: str,
        namespace: Optional[str],
        storage_type: "StorageType | str | None",
    ) -> Optional[CacheEntry]:
        namespace = namespace or self.default_namespace
        cache_key = make_cache_key(key, namespace)
        entry = self._entries.get(cache_key)

        if entry is None:
            return self._recover(key, namespace, self._recovery_tiers(storage_type))

        if entry.is_expired(self._clock()):
            logger.debug(f"Cache expired: {cache_key}")
            self._evict(entry)
            return None

        return entry

    def _recovery_tiers(self, storage_type: "StorageType | str | None") -> Iterable[StorageType]:
        if storage_type is not None:
            requested = StorageType.coerce(storage_type)
            if requested.is_persistent:
                return (requested,)
        return _RECOVERY_ORDER

    def _recover(
        self,
        key: str,
        namespace: str,
        tiers: Iterable[StorageType],
    ) -> Optional[CacheEntry]:
        """Rebuild a memory entry from the first tier holding a live blob."""
        cache_key = make_cache_key(key, namespace)
        storage_key = make_storage_key(cache_key)

        for storage_type in tiers:
            tier = self._tiers.get(storage_type)
            if tier is None:
                continue

            try:
                raw = tier.get_item(storage_key)
            except StorageUnavailableError as e:
                logger.error(f"Cache recovery error ({storage_type.value}): {e}")
                continue
            if raw is None:
                continue

            try:
                blob = self._decode(raw)
            except CacheSerializationError as e:
                logger.error(f"Cache recovery error for {cache_key}: {e}")
                self._unpersist(cache_key, storage_type)
                continue

            entry = CacheEntry(
                key=key,
                value=blob["value"],
                timestamp=blob["timestamp"],
                ttl=blob["ttl"],
                storage_type=storage_type,
                namespace=namespace,
            )
            if entry.is_expired(self._clock()):
                logger.debug(f"Persisted cache expired: {cache_key} ({storage_type.value})")
                self._unpersist(cache_key, storage_type)
                continue

            self._entries[cache_key] = entry
            logger.debug(f"Cache recovered from {storage_type.value} storage: {cache_key}")
            return entry

        return None

    @staticmethod
    def _decode(raw: str) -> Dict[str, Any]:
        try:
            blob = json.loads(raw)
            return {
                "value": blob["value"],
                "timestamp": float(blob["timestamp"]),
                "ttl": float(blob["ttl"]),
            }
        except (ValueError, KeyError, TypeError) as e:
            raise CacheSerializationError(f"Unreadable cache blob: {e}") from e

    def _evict(self, entry: CacheEntry) -> None:
        self._entries.pop(entry.cache_key, None)
        if entry.storage_type.is_persistent:
            self._unpersist(entry.cache_key, entry.storage_type)

    def _persist(self, entry: CacheEntry) -> None:
        tier = self._tiers.get(entry.storage_type)
        if tier is None:
            logger.debug(
                f"No {entry.storage_type.value} storage configured, "
                f"keeping {entry.cache_key} in memory only"
            )
            return

        try:
            payload = json.dumps(entry.to_blob())
        except (TypeError, ValueError) as e:
            error = CacheSerializationError(f"Cannot serialize {entry.cache_key}: {e}")
            logger.error(f"Cache storage error: {error}")
            self._unpersist(entry.cache_key, entry.storage_type)
            return

        try:
            tier.set_item(make_storage_key(entry.cache_key), payload)
        except StorageUnavailableError as e:
            logger.error(f"Cache storage error ({entry.storage_type.value}): {e}")
            # Drop any older blob under this key
            self._unpersist(entry.cache_key, entry.storage_type)

    def _drop_stale_blobs(self, entry: CacheEntry) -> None:
        """Remove blobs for this key from every tier other than the entry's own."""
        for storage_type in _RECOVERY_ORDER:
            if storage_type is not entry.storage_type:
                self._unpersist(entry.cache_key, storage_type)

    def _unpersist(self, cache_key: str, storage_type: StorageType) -> None:
        tier = self._tiers.get(storage_type)
        if tier is None:
            return
        try:
            tier.remove_item(make_storage_key(cache_key))
        except StorageUnavailableError as e:
            logger.error(f"Cache removal error ({storage_type.value}): {e}")

    def _clear_persisted_namespace(self, namespace: str) -> None:
        prefix = make_storage_key(make_cache_key("", namespace))
        for storage_type, tier in self._tiers.items():
            if tier is None:
                continue
            try:
                for storage_key in tier.keys():
                    if storage_key.startswith(prefix):
                        tier.remove_item(storage_key)
            except StorageUnavailableError as e:
                logger.error(f"Cache clear error ({storage_type.value}): {e}")
