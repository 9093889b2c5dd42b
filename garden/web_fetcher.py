"""
Web Fetcher: retrieves bookmark URLs into raw HTTP response records.

Sends browser-like headers, follows up to 10 redirects and retries once over
plain http when the TLS handshake fails on a certificate problem.
"""

import asyncio
import json
import logging
import os
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

import aiohttp

from garden.errors import BackendError

logger = logging.getLogger(__name__)

# Limits
FETCH_TIMEOUT_MS = int(os.getenv("FETCH_TIMEOUT_MS", "25000"))
MAX_REDIRECTS = 10

USER_AGENT = "Mozilla/5.0 (X11; Linux x86_64; rv:120.0) Gecko/20100101 Firefox/136.0"
BROWSER_HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
}

TLS_ERROR_MARKERS = ("certificate", "x509", "tls")


@dataclass
class FetchedPage:
    status_code: int
    headers: str
    content: bytes


def sanitize_url(url: str) -> str:
    return url.strip()


def is_tls_error(error: BaseException) -> bool:
    """True for SSL failures or errors whose message names a TLS condition."""
    if isinstance(error, aiohttp.ClientSSLError):
        return True
    message = str(error).lower()
    return any(marker in message for marker in TLS_ERROR_MARKERS)


def cleartext_url(url: str) -> Optional[str]:
    if url.startswith("https://"):
        return "http://" + url[len("https://"):]
    return None


def headers_to_json(headers: Iterable[Tuple[str, str]]) -> str:
    """Serialise response headers, keeping the first value of repeated names."""
    flat = {}
    for name, value in headers:
        if name not in flat:
            flat[name] = value
    return json.dumps(flat)


def _describe(error: BaseException, timeout_ms: int) -> str:
    if isinstance(error, asyncio.TimeoutError):
        return f"request timed out after {timeout_ms}ms"
    return str(error) or error.__class__.__name__


class WebFetcher:
    """Fetches a URL with its own deadline, independent of the caller's."""

    def __init__(self, timeout_ms: int = FETCH_TIMEOUT_MS):
        self.timeout_ms = timeout_ms

    async def fetch(self, url: str, timeout_ms: Optional[int] = None) -> FetchedPage:
        timeout_ms = timeout_ms or self.timeout_ms
        url = sanitize_url(url)
        try:
            return await self._get(url, timeout_ms)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            fallback = cleartext_url(url)
            if fallback is None or not is_tls_error(e):
                raise BackendError("fetch", _describe(e, timeout_ms)) from e
            logger.warning(f"TLS error fetching {url} ({e}), retrying over http")
            try:
                return await self._get(fallback, timeout_ms)
            except (aiohttp.ClientError, asyncio.TimeoutError) as retry_error:
                raise BackendError(
                    "fetch", f"cleartext retry failed: {_describe(retry_error, timeout_ms)}"
                ) from retry_error

    async def _get(self, url: str, timeout_ms: int) -> FetchedPage:
        timeout = aiohttp.ClientTimeout(total=timeout_ms / 1000)
        async with aiohttp.ClientSession(timeout=timeout, headers=BROWSER_HEADERS) as session:
            async with session.get(
                url,
                allow_redirects=True,
                max_redirects=MAX_REDIRECTS,
            ) as response:
                body = await response.read()
                logger.info(f"Fetched {url}: {response.status} ({len(body)} bytes)")
                return FetchedPage(
                    status_code=response.status,
                    headers=headers_to_json(response.headers.items()),
                    content=body,
                )
