"""
Exceptions raised by the cache, response cache and data loader.

Storage and serialization errors are recovered inside the cache and only
logged; network and batch errors reach whoever asked for the data.
"""
from typing import Optional


class CacheError(Exception):
    """Base class for cache layer errors."""


class StorageUnavailableError(CacheError):
    """A storage tier refused a read or write (quota, disabled, I/O)."""

    def __init__(self, message: str, tier: Optional[str] = None):
        super().__init__(message)
        self.tier = tier


class CacheSerializationError(CacheError):
    """A value could not be written to or read back from a storage tier."""


class NetworkError(CacheError):
    """The upstream request failed or returned a non-success status."""

    def __init__(
        self,
        message: str,
        url: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class BatchShapeMismatchError(CacheError):
    """A batch load function returned a different number of values than keys."""

    def __init__(self, expected: int, actual: Optional[int]):
        got = f"{actual} values" if actual is not None else "a non-list result"
        super().__init__(
            "DataLoader batch function must return a list of values with the same "
            f"length as the list of keys. Got {got} for {expected} keys."
        )
        self.expected = expected
        self.actual = actual
