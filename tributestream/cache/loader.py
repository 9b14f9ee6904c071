"""
Batching and deduplicating data loader.

Individual ``load(key)`` calls made in the same event loop pass (or within
a configured batching window) are collapsed into one call of a batch load
function. Keys already in flight share one pending load, and resolved
values can be cached in a TieredCache so later loads skip the batch path.
"""
import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Generic,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    TypeVar,
    Union,
)

from .core import StorageType
from .errors import BatchShapeMismatchError
from .store import TieredCache

logger = logging.getLogger("cache.loader")

K = TypeVar("K")
V = TypeVar("V")

DATALOADER_NAMESPACE = "dataloader"
DEFAULT_MAX_BATCH_SIZE = 100
DEFAULT_LOADER_CACHE_TTL_SECONDS = 60.0

BatchLoadFn = Callable[[List[K]], Union[Awaitable[Sequence[V]], Sequence[V]]]

_MISSING = object()


@dataclass
class _Batch:
    """Keys accumulated for one dispatch, with one future per key."""
    keys: List[Any] = field(default_factory=list)
    cache_keys: List[str] = field(default_factory=list)
    futures: List["asyncio.Future[Any]"] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.keys)


class DataLoader(Generic[K, V]):
    """
    Collapses many single-key loads into batched calls.

    States: idle -> accumulating (first load) -> dispatching (window
    elapsed, batch full, or end of the current loop pass) -> idle.

    Usage:
        async def load_tributes(ids):
            rows = await api.fetch("/api/tributes", {"params": {"ids": ",".join(ids)}})
            return [row_by_id.get(i) for i in ids]

        loader = DataLoader(load_tributes, store=cache)
        a, b = await asyncio.gather(loader.load("1"), loader.load("2"))  # one call
    """

    def __init__(
        self,
        batch_load_fn: BatchLoadFn,
        cache_key_fn: Optional[Callable[[K], str]] = None,
        max_batch_size: int = DEFAULT_MAX_BATCH_SIZE,
        batching_window: float = 0.0,
        cache: bool = True,
        cache_ttl: float = DEFAULT_LOADER_CACHE_TTL_SECONDS,
        cache_storage_type: "StorageType | str" = StorageType.MEMORY,
        store: Optional[TieredCache] = None,
        namespace: str = DATALOADER_NAMESPACE,
    ):
        """
        Args:
            batch_load_fn: Takes the ordered key list, returns values in the same order
            cache_key_fn: Maps a key to its cache/dedup string (default ``str``)
            max_batch_size: Dispatch as soon as a batch holds this many keys
            batching_window: Seconds to accumulate; 0 means the end of the current loop pass
            cache: Cache resolved values in ``store``
            cache_ttl: Seconds resolved values stay cached
            cache_storage_type: Tier cached values are mirrored into
            store: Cache to use; a private memory-only one when omitted
            namespace: Store namespace for this loader's values
        """
        if max_batch_size < 1:
            raise ValueError("max_batch_size must be at least 1")
        if batching_window < 0:
            raise ValueError("batching_window cannot be negative")
        if ":" in namespace:
            raise ValueError("namespace cannot contain ':'")

        self.batch_load_fn = batch_load_fn
        self.cache_key_fn: Callable[[K], str] = cache_key_fn or str
        self.max_batch_size = max_batch_size
        self.batching_window = batching_window
        self.cache = cache
        self.cache_ttl = cache_ttl
        self.cache_storage_type = StorageType.coerce(cache_storage_type)
        self.namespace = namespace
        self._store = store if store is not None else TieredCache()

        # Batch state
        self._batch: Optional[_Batch] = None
        self._dispatch_handle: Optional[asyncio.Handle] = None

        # cache key -> internal future of a load that has not settled yet; callers
        # only ever see followers of it
        self._pending: Dict[str, "asyncio.Future[V]"] = {}
        self._running: set = set()
        self._batches_dispatched = 0

    def load(self, key: K) -> "asyncio.Future[V]":
        """
        Load a single key.

        Must be called with an event loop running. Calls made back to back
        without awaiting in between land in the same batch.

        Returns:
            Future resolving to the value (or raising the batch's error)
        """
        loop = asyncio.get_running_loop()
        cache_key = self.cache_key_fn(key)

        if self.cache:
            cached = self._store.get(
                cache_key,
                namespace=self.namespace,
                storage_type=self.cache_storage_type,
                default=_MISSING,
            )
            if cached is not _MISSING:
                logger.debug(f"Cache hit for key: {cache_key}")
                future = loop.create_future()
                future.set_result(cached)
                return future

        in_flight = self._pending.get(cache_key)
        if in_flight is not None:
            logger.debug(f"Joining in-flight load for key: {cache_key}")
            return _follow(loop, in_flight)

        future = loop.create_future()
        self._pending[cache_key] = future

        if self._batch is None:
            self._batch = _Batch()
            self._schedule_dispatch(loop)

        self._batch.keys.append(key)
        self._batch.cache_keys.append(cache_key)
        self._batch.futures.append(future)

        caller_future = _follow(loop, future)
        if len(self._batch) >= self.max_batch_size:
            self.dispatch_batch()

        return caller_future

    async def load_many(self, keys: Iterable[K]) -> List[V]:
        """Load several keys; an empty list never reaches the batch function."""
        keys = list(keys)
        if not keys:
            return []
        futures = [self.load(key) for key in keys]
        return list(await asyncio.gather(*futures))

    def prime(self, key: K, value: V) -> "DataLoader[K, V]":
        """Seed the cache so later loads of ``key`` skip batching."""
        if not self.cache:
            return self
        cache_key = self.cache_key_fn(key)
        self._store.set(
            cache_key,
            value,
            ttl=self.cache_ttl,
            storage_type=self.cache_storage_type,
            namespace=self.namespace,
        )
        logger.debug(f"Primed cache for key: {cache_key}")
        return self

    def clear(self, key: K) -> "DataLoader[K, V]":
        """Drop the cached value for one key. In-flight batches are untouched."""
        if not self.cache:
            return self
        cache_key = self.cache_key_fn(key)
        self._store.remove(
            cache_key,
            namespace=self.namespace,
            storage_type=self.cache_storage_type,
        )
        logger.debug(f"Cleared cache for key: {cache_key}")
        return self

    def clear_all(self) -> "DataLoader[K, V]":
        """Drop every cached value in this loader's namespace."""
        if not self.cache:
            return self
        self._store.clear(namespace=self.namespace)
        logger.debug(f"Cleared all dataloader cache ({self.namespace})")
        return self

    def dispatch_batch(self) -> None:
        """
        Detach the accumulating batch and call the batch function once.

        A new batch can start accumulating as soon as this returns.
        """
        batch = self._batch
        self._batch = None

        if self._dispatch_handle is not None:
            self._dispatch_handle.cancel()
            self._dispatch_handle = None

        if not batch:
            return

        self._batches_dispatched += 1
        logger.debug(f"Dispatching batch of {len(batch)} keys")

        try:
            result = self.batch_load_fn(list(batch.keys))
        except Exception as e:
            self._reject(batch, e)
            return

        if not inspect.isawaitable(result):
            self._settle(batch, result)
            return

        task = asyncio.ensure_future(self._await_batch(batch, result))
        self._running.add(task)
        task.add_done_callback(self._running.discard)

    def get_stats(self) -> Dict[str, Any]:
        """Get loader statistics."""
        stats = {
            "batches_dispatched": self._batches_dispatched,
            "pending_keys": len(self._pending),
            "accumulating": len(self._batch) if self._batch else 0,
        }
        if self.cache:
            stats["cache"] = self._store.get_stats(namespace=self.namespace).to_dict()
        return stats

    # ----- internals -----

    def _schedule_dispatch(self, loop: asyncio.AbstractEventLoop) -> None:
        if self.batching_window > 0:
            self._dispatch_handle = loop.call_later(self.batching_window, self.dispatch_batch)
        else:
            # Runs after every callback already queued, i.e. after the current pass
            self._dispatch_handle = loop.call_soon(self.dispatch_batch)

    async def _await_batch(self, batch: _Batch, result: Awaitable[Sequence[V]]) -> None:
        try:
            values = await result
        except asyncio.CancelledError:
            for future in batch.futures:
                future.cancel()
            self._forget(batch)
            raise
        except Exception as e:
            self._reject(batch, e)
            return
        self._settle(batch, values)

    def _settle(self, batch: _Batch, values: Any) -> None:
        if not isinstance(values, (list, tuple)):
            self._reject(batch, BatchShapeMismatchError(len(batch), None))
            return
        if len(values) != len(batch):
            self._reject(batch, BatchShapeMismatchError(len(batch), len(values)))
            return

        for cache_key, future, value in zip(batch.cache_keys, batch.futures, values):
            if self.cache:
                self._store.set(
                    cache_key,
                    value,
                    ttl=self.cache_ttl,
                    storage_type=self.cache_storage_type,
                    namespace=self.namespace,
                )
            if not future.done():
                future.set_result(value)

        self._forget(batch)

    def _reject(self, batch: _Batch, error: BaseException) -> None:
        logger.warning(f"Batch of {len(batch)} keys failed: {error}")
        for future in batch.futures:
            if not future.done():
                future.set_exception(error)
        self._forget(batch)

    def _forget(self, batch: _Batch) -> None:
        for cache_key, future in zip(batch.cache_keys, batch.futures):
            if self._pending.get(cache_key) is future:
                del self._pending[cache_key]


def _follow(loop: asyncio.AbstractEventLoop, source: "asyncio.Future[V]") -> "asyncio.Future[V]":
    """
    Future that settles like ``source``.

    Each caller gets one of these, so cancelling it leaves ``source`` and
    every other caller untouched.
    """
    follower = loop.create_future()

    def relay(done: "asyncio.Future[V]") -> None:
        if follower.done():
            return
        if done.cancelled():
            follower.cancel()
        elif done.exception() is not None:
            follower.set_exception(done.exception())
        else:
            follower.set_result(done.result())

    source.add_done_callback(relay)
    return follower


def create_data_loader(batch_load_fn: BatchLoadFn, **options: Any) -> DataLoader:
    """Create a new data loader."""
    return DataLoader(batch_load_fn, **options)


def _entity_id(entity: Any, id_attr: str) -> Any:
    if isinstance(entity, Mapping):
        return entity.get(id_attr)
    return getattr(entity, id_attr, None)


def create_entity_loader(
    fetch_fn: Callable[[List[str]], Awaitable[Iterable[Any]]],
    id_attr: str = "id",
    **options: Any,
) -> DataLoader:
    """
    Create a loader for entities fetched by id.

    ``fetch_fn`` may return entities in any order and may omit some; values
    are re-ordered to match the requested ids, and missing ids resolve to
    None.
    """

    async def batch_load(ids: List[str]) -> List[Any]:
        entities = await fetch_fn(ids)
        by_id = {str(_entity_id(entity, id_attr)): entity for entity in entities}
        return [by_id.get(str(entity_id)) for entity_id in ids]

    options.setdefault("cache_key_fn", str)
    return DataLoader(batch_load, **options)
