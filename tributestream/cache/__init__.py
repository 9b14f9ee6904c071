"""
Client-side caching: tiered TTL store, response cache with tag invalidation,
and a batching data loader.
"""
from .core import CacheEntry, CacheStats, StorageType, DEFAULT_NAMESPACE
from .errors import (
    CacheError,
    StorageUnavailableError,
    CacheSerializationError,
    NetworkError,
    BatchShapeMismatchError,
)
from .storage import StorageArea, MemoryStorage, SQLiteStorage
from .store import TieredCache
from .coalescer import RequestCoalescer
from .response_cache import (
    API_CACHE_NAMESPACE,
    ResponseCache,
    generate_cache_key,
)
from .loader import DataLoader, create_data_loader, create_entity_loader
from .manager import CacheManager, get_cache_manager

__all__ = [
    # Core types
    "CacheEntry",
    "CacheStats",
    "StorageType",
    "DEFAULT_NAMESPACE",
    # Errors
    "CacheError",
    "StorageUnavailableError",
    "CacheSerializationError",
    "NetworkError",
    "BatchShapeMismatchError",
    # Storage tiers
    "StorageArea",
    "MemoryStorage",
    "SQLiteStorage",
    # Store
    "TieredCache",
    # Coalescing
    "RequestCoalescer",
    # Response cache
    "API_CACHE_NAMESPACE",
    "ResponseCache",
    "generate_cache_key",
    # Loader
    "DataLoader",
    "create_data_loader",
    "create_entity_loader",
    # Manager
    "CacheManager",
    "get_cache_manager",
]
