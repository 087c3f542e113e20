"""Shared HTTP client utilities for search API calls."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import httpx

DEFAULT_TIMEOUT = httpx.Timeout(20.0, connect=10.0, read=15.0)
POOL_LIMITS = httpx.Limits(max_keepalive_connections=20, max_connections=50)
USER_AGENT = "ScrapeStream/1"


@asynccontextmanager
async def get_client(
    proxy: Optional[str] = None,
    retries: int = 0,
    timeout: Optional[httpx.Timeout] = None,
) -> AsyncIterator[httpx.AsyncClient]:
    """Yield a configured AsyncClient with sane defaults.

    ``proxy`` routes every request through the given proxy URL; retries at
    the transport level stay off so the pipeline's retry policy owns them.
    """
    transport = httpx.AsyncHTTPTransport(retries=retries, proxy=proxy)

    async with httpx.AsyncClient(
        timeout=timeout or DEFAULT_TIMEOUT,
        limits=POOL_LIMITS,
        headers={"accept": "application/json", "user-agent": USER_AGENT},
        follow_redirects=True,
        transport=transport,
    ) as client:
        yield client
