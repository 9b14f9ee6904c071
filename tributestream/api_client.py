"""
HTTP client for the Tributestream content API.

Thin wrapper over a requests session. The async entry points hand the
blocking call to a worker thread so the event loop keeps scheduling.
"""
import asyncio
import logging
from typing import Any, Dict, Optional

import requests

from tributestream.cache.errors import NetworkError
from config.settings import settings

logger = logging.getLogger("api_client")

# Fetch options understood by ApiClient.fetch()
FETCH_OPTION_KEYS = ("method", "params", "json", "headers", "timeout")


class ApiClient:
    """
    requests-based client used as the response cache's default fetcher
    and as the availability monitor's probe.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.base_url = (base_url if base_url is not None else settings.get_strapi_url()).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.api_timeout_seconds
        self._session = session or requests.Session()
        if headers:
            self._session.headers.update(headers)

    def build_url(self, url: str) -> str:
        """Absolute URLs pass through; paths are joined onto the base URL."""
        if url.startswith(("http://", "https://")) or not self.base_url:
            return url
        return f"{self.base_url}/{url.lstrip('/')}"

    def request(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Make a blocking request and parse the JSON body.

        Raises:
            NetworkError: On transport failure, non-2xx status or unparseable body
        """
        full_url = self.build_url(url)
        logger.info(f"{method.upper()} {full_url}")

        try:
            response = self._session.request(
                method.upper(),
                full_url,
                params=params,
                json=json,
                headers=headers,
                timeout=timeout or self.timeout,
            )
        except requests.Timeout as e:
            raise NetworkError(f"Request to {full_url} timed out", url=full_url) from e
        except requests.RequestException as e:
            raise NetworkError(f"Request to {full_url} failed: {e}", url=full_url) from e

        if not response.ok:
            raise NetworkError(
                f"API error: {response.status_code}",
                url=full_url,
                status_code=response.status_code,
            )

        if not response.content:
            return None

        try:
            return response.json()
        except ValueError as e:
            raise NetworkError(
                f"Invalid JSON from {full_url}",
                url=full_url,
                status_code=response.status_code,
            ) from e

    async def fetch(self, url: str, options: Optional[Dict[str, Any]] = None) -> Any:
        """
        Async request using fetch-style options.

        Args:
            url: Absolute URL or path under the base URL
            options: Any of method, params, json, headers, timeout
        """
        options = dict(options or {})
        unknown = set(options) - set(FETCH_OPTION_KEYS)
        if unknown:
            raise TypeError(f"Unsupported fetch options: {sorted(unknown)}")
        method = options.pop("method", "GET")
        return await asyncio.to_thread(self.request, method, url, **options)

    def probe(self, url: str, timeout: Optional[float] = None) -> int:
        """
        GET a URL and return its status code, whatever it is.

        Transport errors (timeouts, refused connections) propagate as
        requests exceptions.
        """
        response = self._session.get(self.build_url(url), timeout=timeout or self.timeout)
        return response.status_code

    def close(self) -> None:
        self._session.close()
