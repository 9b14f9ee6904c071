"""
Response cache for idempotent API reads.

Wraps a fetch coroutine with the tiered cache: keys derive from the
request shape, cached responses can be grouped under tags for bulk
invalidation, and hits can be refreshed in the background
(stale-while-revalidate).
"""
import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Set
from urllib.parse import urlencode

from .coalescer import RequestCoalescer
from .core import StorageType
from .store import TieredCache

logger = logging.getLogger("cache.response")

# Namespace holding every cached response
API_CACHE_NAMESPACE = "api-cache"

# Default TTL for cached responses (10 minutes)
DEFAULT_API_TTL_SECONDS = 600.0

# Only reads are cached; these methods get a body hash in their key
READ_METHODS = frozenset({"GET"})
BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})

Fetcher = Callable[[str, Dict[str, Any]], Awaitable[Any]]

_MISSING = object()


def hash_body(body: Any) -> str:
    """
    32-bit signed rolling hash (h * 31 + c) of the compact JSON body.

    Bodies that aren't JSON-serializable are keyed by ``str(body)`` instead.
    """
    try:
        text = json.dumps(body, separators=(",", ":"))
    except (TypeError, ValueError):
        return str(body)

    h = 0
    for char in text:
        h = (h * 31 + ord(char)) & 0xFFFFFFFF
    if h & 0x80000000:
        h -= 0x100000000
    return str(h)


def generate_cache_key(
    url: str,
    method: str = "GET",
    params: Optional[Dict[str, Any]] = None,
    body: Any = None,
) -> str:
    """
    Deterministic cache key for a request.

    ``METHOD:URL``, then the query string with parameter names sorted, then
    ``:<hash>`` of the body for mutating methods. The query is encoded the
    way requests sends it, so values are escaped and sequences repeat per
    item. None values are left out.
    """
    method = (method or "GET").upper()
    key = f"{method}:{url}"

    if params:
        query = urlencode(
            sorted((name, value) for name, value in params.items() if value is not None),
            doseq=True,
        )
        if query:
            key += f"?{query}"

    if body is not None and method in BODY_METHODS:
        key += f":{hash_body(body)}"

    return key


class ResponseCache:
    """
    Caches parsed responses of read requests in a TieredCache namespace.

    Pattern:
    - Reads check the cache first; hits return immediately
    - ``revalidate=True`` refreshes a hit in the background
    - Misses go to the network (concurrent identical misses are coalesced)
    - Successful reads are stored and indexed under their tags

    Usage:
        responses = ResponseCache(store, fetcher=ApiClient().fetch)
        tributes = await responses.fetch_with_cache(
            "/api/tributes", {"params": {"page": 1}}, tags=["tributes"]
        )
        responses.invalidate_by_tags(["tributes"])
    """

    def __init__(
        self,
        store: TieredCache,
        fetcher: Optional[Fetcher] = None,
        namespace: str = API_CACHE_NAMESPACE,
        default_ttl: float = DEFAULT_API_TTL_SECONDS,
        coalescer: Optional[RequestCoalescer] = None,
        enabled: bool = True,
    ):
        """
        Args:
            store: Cache the responses are kept in
            fetcher: ``await fetcher(url, fetch_options)`` returns parsed data;
                defaults to ApiClient().fetch
            namespace: Store namespace for responses
            default_ttl: TTL in seconds when a call does not give one
            coalescer: Shared in-flight request table
            enabled: When False every call goes to the network and nothing is
                stored; identical reads in flight are still coalesced
        """
        if fetcher is None:
            from tributestream.api_client import ApiClient
            fetcher = ApiClient().fetch

        self._store = store
        self._fetcher = fetcher
        self.namespace = namespace
        self.default_ttl = default_ttl
        self._coalescer = coalescer or RequestCoalescer()
        self.enabled = enabled

        # tag -> response cache keys stored under it
        self._tag_index: Dict[str, Set[str]] = {}

        # Background revalidation
        self._revalidating: Dict[str, "asyncio.Task[None]"] = {}

        # Stats tracking
        self._stats = {
            "hits": 0,
            "misses": 0,
            "revalidations": 0,
        }

    async def fetch_with_cache(
        self,
        url: str,
        fetch_options: Optional[Dict[str, Any]] = None,
        *,
        ttl: Optional[float] = None,
        storage_type: "StorageType | str" = StorageType.MEMORY,
        bypass_cache: bool = False,
        revalidate: bool = False,
        tags: Iterable[str] = (),
    ) -> Any:
        """
        Get a response from cache or the network.

        Args:
            url: Request URL
            fetch_options: method, params, json, headers passed to the fetcher
            ttl: Seconds to keep the response (default_ttl when None)
            storage_type: Tier the response is mirrored into
            bypass_cache: Skip the lookup and always fetch
            revalidate: On a hit, refresh the entry in the background
            tags: Labels to invalidate this response by

        Returns:
            Parsed response data

        Raises:
            Whatever the fetcher raises (NetworkError for ApiClient); nothing
            is cached in that case
        """
        fetch_options = dict(fetch_options or {})
        method = str(fetch_options.get("method", "GET")).upper()
        cache_key = generate_cache_key(
            url,
            method=method,
            params=fetch_options.get("params"),
            body=fetch_options.get("json"),
        )
        ttl = self.default_ttl if ttl is None else ttl
        storage_type = StorageType.coerce(storage_type)
        tags = list(tags)

        if method in READ_METHODS and self.enabled and not bypass_cache:
            cached = self._store.get(
                cache_key,
                namespace=self.namespace,
                storage_type=storage_type,
                default=_MISSING,
            )
            if cached is not _MISSING:
                logger.debug(f"CACHE HIT: {cache_key}")
                self._stats["hits"] += 1
                if revalidate:
                    self._trigger_background_revalidate(
                        cache_key, url, fetch_options, ttl, storage_type, tags
                    )
                return cached

        logger.debug(f"CACHE MISS: {cache_key}" + (" (bypass)" if bypass_cache else ""))
        self._stats["misses"] += 1
        return await self._fetch_and_cache(
            cache_key, url, fetch_options, ttl, storage_type, tags
        )

    async def prefetch(
        self,
        url: str,
        fetch_options: Optional[Dict[str, Any]] = None,
        **cache_options: Any,
    ) -> None:
        """
        Fetch a URL into the cache, ignoring any existing entry.

        Failures are logged, not raised.
        """
        cache_options["bypass_cache"] = True
        try:
            await self.fetch_with_cache(url, fetch_options, **cache_options)
            logger.debug(f"Prefetched {url}")
        except Exception as e:
            logger.error(f"Prefetch error for {url}: {e}")

    def invalidate_by_tags(self, tags: Iterable[str]) -> int:
        """
        Remove every response stored under any of the tags.

        Returns:
            Number of cache keys removed
        """
        removed = 0
        for tag in tags:
            keys = self._tag_index.pop(tag, set())
            for key in keys:
                self._store.remove(key, namespace=self.namespace)
                removed += 1
                logger.debug(f"Invalidated cache for tag {tag}: {key}")
        if removed:
            logger.info(f"Invalidated {removed} cached responses by tag")
        return removed

    def invalidate_all(self) -> int:
        """
        Drop every cached response and every tag.

        Returns:
            Number of entries cleared
        """
        count = self._store.clear(namespace=self.namespace)
        self._tag_index.clear()
        logger.info(f"Invalidated all API cache ({count} entries)")
        return count

    def tagged_keys(self, tag: str) -> Set[str]:
        """Cache keys currently indexed under a tag."""
        return set(self._tag_index.get(tag, ()))

    @property
    def pending_revalidations(self) -> int:
        return len(self._revalidating)

    async def aclose(self) -> None:
        """Wait for outstanding background revalidations."""
        tasks = list(self._revalidating.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def get_stats(self) -> Dict[str, Any]:
        """Store statistics for the response namespace plus tag and hit counts."""
        stats = self._store.get_stats(namespace=self.namespace).to_dict()
        total = self._stats["hits"] + self._stats["misses"]
        stats.update({
            "tags": {tag: len(keys) for tag, keys in self._tag_index.items()},
            "hits": self._stats["hits"],
            "misses": self._stats["misses"],
            "revalidations": self._stats["revalidations"],
            "hitRatePercent": round(self._stats["hits"] / total * 100, 1) if total else 0,
            "revalidating": len(self._revalidating),
            "coalescer": self._coalescer.get_stats(),
        })
        return stats

    # ----- internals -----

    async def _fetch_and_cache(
        self,
        cache_key: str,
        url: str,
        fetch_options: Dict[str, Any],
        ttl: float,
        storage_type: StorageType,
        tags: Iterable[str],
        coalesce_key: Optional[str] = None,
    ) -> Any:
        method = str(fetch_options.get("method", "GET")).upper()
        is_read = method in READ_METHODS
        logger.info(f"Fetching from network: {method} {url}")

        try:
            if is_read:
                data = await self._coalescer.get_or_fetch(
                    coalesce_key or cache_key,
                    lambda: self._fetcher(url, fetch_options),
                )
            else:
                data = await self._fetcher(url, fetch_options)
        except Exception as e:
            logger.error(f"Fetch error for {url}: {e}")
            raise

        if is_read and self.enabled:
            self._store.set(
                cache_key,
                data,
                ttl=ttl,
                storage_type=storage_type,
                namespace=self.namespace,
            )
            self._index_tags(cache_key, tags)
            logger.debug(f"Cached response for {url} (tags={list(tags)})")

        return data

    def _index_tags(self, cache_key: str, tags: Iterable[str]) -> None:
        for tag in tags:
            self._tag_index.setdefault(tag, set()).add(cache_key)

    def _trigger_background_revalidate(
        self,
        cache_key: str,
        url: str,
        fetch_options: Dict[str, Any],
        ttl: float,
        storage_type: StorageType,
        tags: Iterable[str],
    ) -> None:
        """Refresh a cached response without blocking the caller."""
        if cache_key in self._revalidating:
            logger.debug(f"Already revalidating: {cache_key}")
            return

        async def do_revalidate():
            try:
                logger.debug(f"Background revalidation started: {cache_key}")
                # Separate coalesce key so revalidation never joins a caller's fetch
                await self._fetch_and_cache(
                    cache_key, url, fetch_options, ttl, storage_type, tags,
                    coalesce_key=f"{cache_key}:revalidate",
                )
                self._stats["revalidations"] += 1
                logger.debug(f"Background revalidation complete: {cache_key}")
            except Exception as e:
                logger.warning(f"Background revalidation failed: {cache_key} - {e}")
            finally:
                self._revalidating.pop(cache_key, None)

        self._revalidating[cache_key] = asyncio.get_running_loop().create_task(do_revalidate())
