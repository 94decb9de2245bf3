"""
Producers for URL resources.

requests is blocking, so each fetch runs in a worker thread. Cancelling the
awaiting load abandons the result; the thread itself finishes its request.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import requests
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from config.settings import settings
from .cancellation import CancellationToken
from .coordinator import CacheCoordinator
from .keys import make_cache_key

logger = logging.getLogger("cache.fetchers")

Producer = Callable[[], Awaitable[Any]]

# Transient network failures worth another attempt; HTTP errors are final
RETRYABLE_ERRORS = (requests.ConnectionError, requests.Timeout)


@retry(
    stop=stop_after_attempt(settings.http_max_attempts),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type(RETRYABLE_ERRORS),
    reraise=True,
)
def _get(url: str, timeout: float, headers: Optional[Dict[str, str]] = None) -> requests.Response:
    """
    GET url with retry on connection errors and timeouts.

    Raises:
        requests.HTTPError: If the response status is not 2xx
    """
    response = requests.get(url, headers=headers, timeout=timeout)
    response.raise_for_status()
    return response


def http_text_producer(
    url: str,
    timeout: Optional[float] = None,
    headers: Optional[Dict[str, str]] = None,
) -> Producer:
    """Producer returning the body of url as text."""
    async def produce() -> str:
        logger.debug(f"Fetching {url}")
        response = await asyncio.to_thread(
            _get, url, timeout or settings.http_timeout_seconds, headers
        )
        return response.text

    return produce


def http_json_producer(
    url: str,
    timeout: Optional[float] = None,
    headers: Optional[Dict[str, str]] = None,
) -> Producer:
    """Producer returning the decoded JSON body of url."""
    async def produce() -> Any:
        logger.debug(f"Fetching {url}")
        response = await asyncio.to_thread(
            _get, url, timeout or settings.http_timeout_seconds, headers
        )
        return response.json()

    return produce


async def resolve_url_key(key: str) -> str:
    """
    Prefetch resolver for keys built by make_cache_key().

    "GET:https://host/path" is fetched as text from https://host/path.
    """
    _, _, url = key.partition(":")
    return await http_text_producer(url)()


async def load_url(
    coordinator: CacheCoordinator,
    url: str,
    force_refresh: bool = False,
    *,
    as_json: bool = False,
    ttl_seconds: Optional[float] = None,
    token: Optional[CancellationToken] = None,
) -> Any:
    """
    Load a URL resource through the cache.

    Returns:
        The body (text, or decoded JSON if as_json), or None if superseded
    """
    producer = http_json_producer(url) if as_json else http_text_producer(url)
    return await coordinator.load(
        make_cache_key(url),
        producer,
        force_refresh,
        ttl_seconds=ttl_seconds,
        token=token,
    )
