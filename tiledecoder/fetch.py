"""Network fetcher for tile and image payloads."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests

from .constants import FETCH_TIMEOUT
from .errors import NetworkError

logger = logging.getLogger(__name__)


@dataclass
class FetchResult:
    data: bytes
    status: int


def build_request_url(url: str, url_params: Optional[str] = None) -> str:
    """Escape ``+`` and append the service's extra query string."""
    request_url = url.replace("+", "%2B")
    if url_params:
        request_url += ("&" if "?" in url else "?") + url_params.lstrip("?&")
    return request_url


def fetch_array_buffer(url: str, fetch_options: Optional[Dict[str, Any]] = None) -> FetchResult:
    """Blocking GET; raises NetworkError for transport failures and HTTP >= 400."""
    options = dict(fetch_options or {})
    options.setdefault("timeout", FETCH_TIMEOUT)
    try:
        response = requests.get(url, **options)
    except requests.RequestException as exc:
        raise NetworkError(url, reason=str(exc)) from exc
    if response.status_code >= 400:
        raise NetworkError(url, status=response.status_code, reason=response.reason or "")
    logger.debug(f"Fetched {url}: {len(response.content)} bytes")
    return FetchResult(data=response.content, status=response.status_code)


async def fetch_tile(url: str, fetch_options: Optional[Dict[str, Any]] = None) -> FetchResult:
    """Run the blocking fetch in a thread so the decode loop stays responsive."""
    return await asyncio.to_thread(fetch_array_buffer, url, fetch_options)
