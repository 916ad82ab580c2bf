#!/usr/bin/env python3
"""
Outbound HTTP client for third-party APIs.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

import requests

logger = logging.getLogger(__name__)


class FetchError(Exception):
    """Outbound request failed (network error or error status)"""


class FetchTimeoutError(FetchError):
    """Outbound request did not complete in time"""


@dataclass
class FetchResult:
    """Outcome of a fetch; url is the final URL after redirects"""
    url: str
    status: int
    headers: Dict[str, str] = field(default_factory=dict)


class FetchClient:
    """Async facade over a requests session"""

    def __init__(self, timeout_seconds: float = 10.0, session: Optional[requests.Session] = None):
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()

    def _fetch_sync(self, url: str, method: str, headers: Dict[str, str]) -> FetchResult:
        try:
            response = self.session.request(
                method,
                url,
                headers=headers,
                timeout=self.timeout_seconds,
                allow_redirects=True,
            )
        except requests.Timeout as e:
            raise FetchTimeoutError(f"{method} {url} timed out: {e}") from e
        except requests.RequestException as e:
            raise FetchError(f"{method} {url} failed: {e}") from e

        try:
            if response.status_code >= 400:
                raise FetchError(f"{method} {url} returned HTTP {response.status_code}")
            return FetchResult(
                url=response.url,
                status=response.status_code,
                headers=dict(response.headers),
            )
        finally:
            response.close()

    async def fetch(
        self,
        url: str,
        method: str = "GET",
        headers: Optional[Dict[str, str]] = None,
    ) -> FetchResult:
        """Perform an HTTP request without blocking the event loop.

        Args:
            url: Target URL
            method: HTTP method
            headers: Optional request headers

        Returns:
            FetchResult for the final response

        Raises:
            FetchTimeoutError: If the request exceeds timeout_seconds
            FetchError: On network failure or an HTTP error status
        """
        logger.debug(f"Fetching {method} {url}")
        # requests only bounds each socket read; wait_for bounds the whole call
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._fetch_sync, url, method.upper(), dict(headers or {})),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise FetchTimeoutError(f"{method} {url} timed out after {self.timeout_seconds}s")
