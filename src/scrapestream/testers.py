"""
Proxy connectivity testing.

Sends one request through each proxy and feeds the result into the pool's
health tracking, so proxies are vetted before runs rely on them.
"""

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional

import aiohttp
from aiohttp_socks import ProxyConnector, ProxyError

from .config import AppSettings
from .errors import ProxyConfigurationFailure
from .models import AttemptOutcome, ProxyProtocol, ProxyRecord, ProxyStatus
from .proxy_pool import ProxyPool

logger = logging.getLogger(__name__)


def connector_url(proxy: ProxyRecord) -> str:
    """Proxy URL in the form aiohttp-socks accepts.

    HTTPS proxies tunnel with CONNECT over a plain HTTP hop.
    """
    url = proxy.to_proxy_url()
    if proxy.protocol is ProxyProtocol.HTTPS and url.startswith("https://"):
        return "http://" + url[len("https://") :]
    return url


def build_connector(proxy: ProxyRecord) -> ProxyConnector:
    try:
        return ProxyConnector.from_url(connector_url(proxy))
    except ValueError as exc:
        raise ProxyConfigurationFailure(
            f"Cannot route through {proxy.display_name()}: {exc}"
        ) from exc


class ProxyTester:
    """Checks proxies against a known endpoint and records the outcome in the pool."""

    def __init__(
        self,
        pool: ProxyPool,
        settings: Optional[AppSettings] = None,
        test_url: Optional[str] = None,
    ) -> None:
        self.pool = pool
        self.settings = settings or pool.settings
        self.test_url = test_url or self.settings.PROXY_TEST_URL
        self.timeout = self.settings.PROXY_TEST_TIMEOUT_SECONDS

    async def test(self, proxy: ProxyRecord) -> Dict[str, Any]:
        """Test one proxy; returns its health snapshot after the result is recorded."""
        try:
            connector = build_connector(proxy)
        except ProxyConfigurationFailure as exc:
            logger.warning("Skipping test of %s: %s", proxy.display_name(), exc.message)
            return self.pool.get(proxy.id).health_snapshot()

        loop = asyncio.get_running_loop()
        start_time = loop.time()
        latency_ms: Optional[float] = None
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with aiohttp.ClientSession(connector=connector, timeout=timeout) as session:
                async with session.get(self.test_url) as response:
                    await response.read()
                    if 200 <= response.status < 300:
                        latency_ms = round((loop.time() - start_time) * 1000, 2)
                        outcome = AttemptOutcome.SUCCESS
                    else:
                        logger.info(
                            "Proxy %s answered HTTP %d", proxy.display_name(), response.status
                        )
                        outcome = AttemptOutcome.NETWORK_ERROR
        except asyncio.TimeoutError:
            outcome = AttemptOutcome.TIMEOUT
        except (aiohttp.ClientError, ProxyError, OSError) as exc:
            logger.debug("Test request via %s failed: %s", proxy.display_name(), exc)
            outcome = AttemptOutcome.NETWORK_ERROR

        snapshot = self.pool.record_outcome(proxy.id, outcome, latency_ms)
        if outcome is AttemptOutcome.SUCCESS:
            logger.info("Proxy %s is working (%.0fms)", proxy.display_name(), latency_ms)
        else:
            logger.warning("Proxy %s failed its test (%s)", proxy.display_name(), outcome.value)
        return snapshot

    async def test_many(self, proxies: Iterable[ProxyRecord]) -> List[Dict[str, Any]]:
        semaphore = asyncio.Semaphore(max(1, self.settings.PROXY_TEST_CONCURRENCY))

        async def _bounded(proxy: ProxyRecord) -> Dict[str, Any]:
            async with semaphore:
                return await self.test(proxy)

        results = await asyncio.gather(*(_bounded(proxy) for proxy in proxies))
        return list(results)

    async def test_untested(self) -> List[Dict[str, Any]]:
        untested = self._with_status(ProxyStatus.UNTESTED)
        logger.info("Testing %d untested proxies...", len(untested))
        results = await self.test_many(untested)
        logger.info("Finished testing %d proxies", len(results))
        return results

    async def test_active(self) -> List[Dict[str, Any]]:
        """Re-test proxies currently in rotation (healthy or degraded)."""
        active = self._with_status(ProxyStatus.HEALTHY, ProxyStatus.DEGRADED)
        logger.info("Re-testing %d active proxies...", len(active))
        results = await self.test_many(active)
        logger.info("Finished re-testing %d proxies", len(results))
        return results

    def _with_status(self, *statuses: ProxyStatus) -> List[ProxyRecord]:
        return [record for record in self.pool.records() if record.status in statuses]
