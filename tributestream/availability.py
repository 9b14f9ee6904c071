"""
Backend availability monitor.

Probes the content API and keeps a status value other components can read
or subscribe to. An unreachable backend is retried on a timer until the
retry budget runs out.
"""
import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, List, Optional

import requests

from config.settings import Settings, settings as default_settings

logger = logging.getLogger("availability")

# Returns the HTTP status code of a GET against the probe URL
Probe = Callable[[str, float], Awaitable[int]]
Listener = Callable[["AvailabilityState"], None]


class AvailabilityPhase(Enum):
    """Where the monitor sits in its retry cycle."""
    UNKNOWN = "unknown"           # Never probed
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"   # Down, retry may be scheduled
    GIVEN_UP = "given_up"         # Down and out of retries


@dataclass(frozen=True)
class AvailabilityState:
    """Snapshot of backend availability."""
    available: bool = False
    last_checked: Optional[datetime] = None
    error: Optional[str] = None
    retry_count: int = 0
    retry_scheduled: bool = False

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        return {
            "available": self.available,
            "lastChecked": self.last_checked.isoformat() if self.last_checked else None,
            "error": self.error,
            "retryCount": self.retry_count,
            "retryScheduled": self.retry_scheduled,
        }


def describe_probe_error(error: BaseException) -> str:
    """Human-readable reason a probe could not reach the backend."""
    if isinstance(error, (asyncio.TimeoutError, requests.Timeout)):
        return "Connection to backend timed out"
    if isinstance(error, (requests.ConnectionError, ConnectionRefusedError)):
        return "Backend server is not running or unreachable"
    return f"Connection error: {error}"


class AvailabilityMonitor:
    """
    Retry state machine around a connectivity probe.

    Any response other than 404 counts as available: a 401/403 still
    means the server is up.

    Usage:
        monitor = AvailabilityMonitor()
        unsubscribe = monitor.subscribe(lambda state: print(state.available))
        await monitor.start()
        ...
        monitor.stop()
    """

    def __init__(
        self,
        probe_url: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_interval: Optional[float] = None,
        probe: Optional[Probe] = None,
        enabled: Optional[bool] = None,
        config: Optional[Settings] = None,
    ):
        """
        Args:
            probe_url: URL to GET (defaults to the configured Strapi probe URL)
            timeout: Seconds before a probe is abandoned
            max_retries: Retries after a failed check before giving up
            retry_interval: Seconds between retries
            probe: Coroutine function ``(url, timeout) -> status code``;
                defaults to an ApiClient GET in a worker thread
            enabled: Whether start() probes at all
            config: Settings to read defaults from
        """
        config = config or default_settings
        self.probe_url = probe_url or config.probe_url
        self.timeout = timeout if timeout is not None else config.api_timeout_seconds
        self.max_retries = max_retries if max_retries is not None else config.api_max_retries
        self.retry_interval = (
            retry_interval if retry_interval is not None else config.api_retry_interval_seconds
        )
        self.enabled = config.enable_backend_check if enabled is None else enabled
        self._probe = probe or self._default_probe

        self._state = AvailabilityState()
        self._listeners: List[Listener] = []
        self._retry_task: Optional["asyncio.Task[None]"] = None

    # ----- observable state -----

    @property
    def status(self) -> AvailabilityState:
        return self._state

    @property
    def phase(self) -> AvailabilityPhase:
        state = self._state
        if state.last_checked is None:
            return AvailabilityPhase.UNKNOWN
        if state.available:
            return AvailabilityPhase.AVAILABLE
        if not state.retry_scheduled and state.retry_count >= self.max_retries:
            return AvailabilityPhase.GIVEN_UP
        return AvailabilityPhase.UNAVAILABLE

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """
        Call ``listener`` with the current state now and on every change.

        Returns:
            Function that removes the listener
        """
        self._listeners.append(listener)
        listener(self._state)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _update(self, **changes) -> None:
        self._state = replace(self._state, **changes)
        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception as e:
                logger.error(f"Availability listener failed: {e}")

    # ----- checks -----

    async def check_now(self) -> bool:
        """
        Probe the backend once and record the outcome.

        Returns:
            True if the backend answered with anything but 404
        """
        logger.info(f"Checking backend availability ({self.probe_url})")

        try:
            status_code = await asyncio.wait_for(
                self._probe(self.probe_url, self.timeout),
                timeout=self.timeout,
            )
        except Exception as e:
            message = describe_probe_error(e)
            logger.error(f"Backend availability check failed: {message}")
            self._update(
                available=False,
                last_checked=datetime.now(timezone.utc),
                error=message,
            )
            return False

        available = status_code != 404
        if available:
            self._cancel_retry()
            self._update(
                available=True,
                last_checked=datetime.now(timezone.utc),
                error=None,
                retry_count=0,
                retry_scheduled=False,
            )
            logger.info("Backend is available")
        else:
            self._update(
                available=False,
                last_checked=datetime.now(timezone.utc),
                error=f"Backend responded with status {status_code}",
            )
            logger.warning(f"Backend responded with status {status_code}")

        return available

    async def force_check(self) -> bool:
        """
        Reset retry bookkeeping and probe immediately.

        Re-enters the retry cycle if the backend is still unreachable.
        """
        logger.info("Forcing backend availability check")
        self._cancel_retry()
        self._update(retry_count=0, retry_scheduled=False)

        available = await self.check_now()
        if not available:
            self._schedule_retry()
        return available

    async def start(self) -> bool:
        """
        Initial check, entering the retry cycle on failure.

        Does nothing (and reports available) when the check is disabled.
        """
        if not self.enabled:
            logger.info("Backend availability check disabled")
            return True

        logger.info("Initializing backend availability checker")
        available = await self.check_now()
        if not available:
            self._schedule_retry()
        return available

    def stop(self) -> None:
        """Cancel any scheduled retry."""
        if self._cancel_retry():
            self._update(retry_scheduled=False)

    # ----- retry cycle -----

    def _schedule_retry(self) -> None:
        self._cancel_retry()

        if self._state.retry_count >= self.max_retries:
            logger.warning(
                f"Maximum retry attempts ({self.max_retries}) reached, stopping retries"
            )
            self._update(retry_scheduled=False)
            return

        attempt = self._state.retry_count + 1
        logger.info(
            f"Scheduling retry in {self.retry_interval}s "
            f"(attempt {attempt}/{self.max_retries})"
        )
        self._update(retry_scheduled=True, retry_count=attempt)
        self._retry_task = asyncio.get_running_loop().create_task(self._retry_after(attempt))

    async def _retry_after(self, attempt: int) -> None:
        # Stays registered as _retry_task through the probe, so force_check()
        # and stop() cancel a retry that is already probing
        await asyncio.sleep(self.retry_interval)

        logger.info(f"Executing scheduled retry attempt {attempt}/{self.max_retries}")
        available = await self.check_now()

        if not available:
            self._schedule_retry()
        else:
            logger.info("Backend is now available after retry")

    def _cancel_retry(self) -> bool:
        task = self._retry_task
        self._retry_task = None
        if task is None or task.done():
            return False
        if task is asyncio.current_task():
            # The retry finishing its own probe
            return False
        task.cancel()
        return True

    async def _default_probe(self, url: str, timeout: float) -> int:
        from tributestream.api_client import ApiClient
        client = ApiClient(base_url="", timeout=timeout)
        try:
            return await asyncio.to_thread(client.probe, url, timeout)
        finally:
            client.close()
