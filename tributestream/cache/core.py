"""
Core cache data structures.
"""
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from enum import Enum


# Default namespace for plain cache calls
DEFAULT_NAMESPACE = "app"

# Default TTL in seconds (1 minute)
DEFAULT_TTL_SECONDS = 60.0

# Marker prefixed to every key the cache writes into a storage tier
STORAGE_KEY_PREFIX = "cache:"


class StorageType(Enum):
    """Where an entry lives besides the in-memory index."""
    MEMORY = "memory"     # Process memory only
    SESSION = "session"   # Mirrored to the session-scoped tier
    LOCAL = "local"       # Mirrored to the durable tier

    @property
    def is_persistent(self) -> bool:
        return self is not StorageType.MEMORY

    @classmethod
    def coerce(cls, value: "StorageType | str | None") -> "StorageType":
        """Accept enum members or their string values ("memory", "local", ...)."""
        if value is None:
            return cls.MEMORY
        if isinstance(value, cls):
            return value
        return cls(str(value).lower())


def make_cache_key(key: str, namespace: str = DEFAULT_NAMESPACE) -> str:
    """
    Composite key used by the in-memory index.

    Namespaces may not contain ":" so a namespace prefix never matches
    keys of another namespace.
    """
    if ":" in namespace:
        raise ValueError(f"Cache namespace cannot contain ':': {namespace!r}")
    return f"{namespace}:{key}"


def make_storage_key(cache_key: str) -> str:
    """Key a composite cache key is persisted under in a storage tier."""
    return f"{STORAGE_KEY_PREFIX}{cache_key}"


@dataclass
class CacheEntry:
    """
    Represents a cached item with metadata for TTL tracking.

    Times are epoch seconds; ``ttl`` is a duration in seconds.
    """
    key: str
    value: Any
    timestamp: float
    ttl: float = DEFAULT_TTL_SECONDS
    storage_type: StorageType = StorageType.MEMORY
    namespace: str = DEFAULT_NAMESPACE

    @property
    def cache_key(self) -> str:
        return make_cache_key(self.key, self.namespace)

    def age_seconds(self, now: Optional[float] = None) -> float:
        """Seconds since the entry was written."""
        if now is None:
            now = time.time()
        return now - self.timestamp

    def is_live(self, now: Optional[float] = None) -> bool:
        """An entry is live while its age has not passed its TTL."""
        return self.age_seconds(now) <= self.ttl

    def is_expired(self, now: Optional[float] = None) -> bool:
        return not self.is_live(now)

    def to_blob(self) -> Dict[str, Any]:
        """Payload persisted into a storage tier."""
        return {
            "value": self.value,
            "timestamp": self.timestamp,
            "ttl": self.ttl,
        }


@dataclass
class CacheStats:
    """
    Snapshot of a namespace's cache usage.
    """
    count: int = 0
    expired: int = 0
    memory_size: int = 0
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        return {
            "count": self.count,
            "expired": self.expired,
            "memorySize": self.memory_size,
            "timestamp": self.timestamp,
        }
