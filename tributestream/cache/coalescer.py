"""
Request coalescing to prevent duplicate upstream API calls.

When several coroutines ask for the same data while a fetch is already
running, only one upstream call is made and all of them share the result.
"""
import asyncio
import time
import logging
from typing import Any, Awaitable, Callable, Dict, Optional
from dataclasses import dataclass, field

logger = logging.getLogger("cache.coalescer")


@dataclass
class InFlightRequest:
    """Tracks an in-progress upstream request."""
    task: "asyncio.Task[Any]"
    started_at: float = field(default_factory=time.time)
    waiter_count: int = 0


class RequestCoalescer:
    """
    Ensures concurrent requests for the same cache key share one upstream call.

    Pattern:
    - First request for a key starts the fetch as a task
    - Later requests for the same key await that task
    - When the task settles, every waiter gets the same result or error
    - No locking: the in-flight table is only touched from the event loop

    Usage:
        coalescer = RequestCoalescer()
        result = await coalescer.get_or_fetch(
            cache_key="GET:/api/tributes",
            fetch_fn=lambda: client.fetch("/api/tributes"),
        )
    """

    def __init__(self, timeout: Optional[float] = 30.0):
        """
        Initialize the coalescer.

        Args:
            timeout: Max seconds a joining waiter waits for an in-flight request
        """
        self._in_flight: Dict[str, InFlightRequest] = {}
        self._timeout = timeout

    async def get_or_fetch(
        self,
        cache_key: str,
        fetch_fn: Callable[[], Awaitable[Any]],
    ) -> Any:
        """
        Either join an existing in-flight request or initiate a new one.

        Args:
            cache_key: Unique key for this request
            fetch_fn: Coroutine function to call if we need to fetch

        Returns:
            The fetched data (shared among all concurrent callers)

        Raises:
            asyncio.TimeoutError: If waiting for an in-flight request times out
            Exception: Any error from fetch_fn is propagated
        """
        in_flight = self._in_flight.get(cache_key)

        if in_flight is None:
            # Start new request
            task = asyncio.ensure_future(fetch_fn())
            in_flight = InFlightRequest(task=task)
            self._in_flight[cache_key] = in_flight
            task.add_done_callback(lambda _: self._release(cache_key, in_flight))
            logger.debug(f"Initiating fetch for {cache_key}")
            return await asyncio.shield(task)

        # Join existing request
        in_flight.waiter_count += 1
        logger.debug(
            f"Coalescing request for {cache_key} "
            f"(waiters: {in_flight.waiter_count})"
        )
        try:
            # shield: a timed-out waiter must not cancel the shared fetch
            return await asyncio.wait_for(asyncio.shield(in_flight.task), self._timeout)
        except asyncio.TimeoutError:
            logger.error(f"Timeout waiting for coalesced request: {cache_key}")
            raise

    def _release(self, cache_key: str, in_flight: InFlightRequest) -> None:
        if self._in_flight.get(cache_key) is in_flight:
            del self._in_flight[cache_key]
        if not in_flight.task.cancelled() and in_flight.task.exception() is not None:
            logger.warning(f"Fetch failed for {cache_key}: {in_flight.task.exception()}")

    @property
    def active_requests(self) -> int:
        """Number of currently in-flight requests."""
        return len(self._in_flight)

    def get_stats(self) -> Dict[str, Any]:
        """Get coalescer statistics."""
        return {
            "active_requests": len(self._in_flight),
            "active_keys": list(self._in_flight.keys()),
        }
