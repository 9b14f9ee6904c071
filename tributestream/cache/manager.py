"""
Cache context: one object owning the tiered store, the response cache and
the loaders built on them.
"""
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from config.settings import Settings, settings as default_settings

from .core import StorageType
from .errors import StorageUnavailableError
from .loader import DataLoader, BatchLoadFn
from .response_cache import Fetcher, ResponseCache
from .storage import MemoryStorage, SQLiteStorage, StorageArea
from .store import TieredCache

logger = logging.getLogger("cache.manager")


def open_local_storage(db_path: Path) -> Optional[StorageArea]:
    """
    Open the durable tier, or None when it can't be opened.

    Without it, entries asked to go to local storage stay in memory.
    """
    try:
        return SQLiteStorage(db_path)
    except StorageUnavailableError as e:
        logger.error(f"Durable cache storage unavailable, using memory only: {e}")
        return None


class CacheManager:
    """
    Explicit cache context, passed to whatever needs caching.

    Tests build their own isolated instance; the application uses the one
    returned by get_cache_manager().
    """

    def __init__(
        self,
        store: Optional[TieredCache] = None,
        fetcher: Optional[Fetcher] = None,
        config: Optional[Settings] = None,
    ):
        """
        Args:
            store: Tiered cache to share (a memory + session-tier one when omitted)
            fetcher: Network fetch coroutine for the response cache
            config: Settings for TTLs and batch sizes
        """
        self.config = config or default_settings
        self.store = store or TieredCache(
            session_storage=MemoryStorage(quota_bytes=self.config.storage_quota_bytes),
            default_ttl=self.config.cache_default_ttl_seconds,
        )
        self.responses = ResponseCache(
            self.store,
            fetcher=fetcher,
            default_ttl=self.config.api_cache_ttl_seconds,
            enabled=self.config.cache_enabled,
        )
        self._loaders: List[DataLoader] = []

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None, fetcher: Optional[Fetcher] = None) -> "CacheManager":
        """Build a manager whose store has the session and durable tiers."""
        config = config or default_settings
        store = TieredCache(
            session_storage=MemoryStorage(quota_bytes=config.storage_quota_bytes),
            local_storage=open_local_storage(config.cache_db_path),
            default_ttl=config.cache_default_ttl_seconds,
        )
        return cls(store=store, fetcher=fetcher, config=config)

    def create_loader(
        self,
        batch_load_fn: BatchLoadFn,
        namespace: Optional[str] = None,
        **options: Any,
    ) -> DataLoader:
        """
        Create a data loader backed by this manager's store.

        Each loader gets its own namespace unless one is given, so
        clear_all() on one loader leaves the others alone.
        """
        options.setdefault("max_batch_size", self.config.loader_max_batch_size)
        options.setdefault("cache_ttl", self.config.loader_cache_ttl_seconds)
        options.setdefault("cache_storage_type", StorageType.MEMORY)
        if not self.config.cache_enabled:
            options["cache"] = False
        loader = DataLoader(
            batch_load_fn,
            store=self.store,
            namespace=namespace or f"dataloader-{len(self._loaders) + 1}",
            **options,
        )
        self._loaders.append(loader)
        return loader

    def clear(self) -> int:
        """
        Clear every namespace and storage tier.

        Returns:
            Number of in-memory entries cleared
        """
        count = self.store.clear()
        self.responses.invalidate_all()
        return count

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics across the store, responses and loaders."""
        return {
            "entries": len(self.store),
            "store": self.store.get_stats(all_namespaces=True).to_dict(),
            "responses": self.responses.get_stats(),
            "loaders": {
                loader.namespace: loader.get_stats() for loader in self._loaders
            },
        }

    async def aclose(self) -> None:
        await self.responses.aclose()


# Global cache manager instance
_cache_manager: Optional[CacheManager] = None


def get_cache_manager() -> CacheManager:
    """Get or create the global cache manager."""
    global _cache_manager
    if _cache_manager is None:
        _cache_manager = CacheManager.from_settings()
    return _cache_manager


def reset_cache_manager() -> None:
    """Forget the global manager (next get_cache_manager() builds a new one)."""
    global _cache_manager
    _cache_manager = None
