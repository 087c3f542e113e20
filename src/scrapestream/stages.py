"""
Stage executors and the attempt harness.

Each executor performs one unit of pipeline work (search API call, page
scrape, link extraction). ``StageRunner.attempt`` wraps a single call with a
deadline, converts library exceptions into ``StageFailure`` kinds and feeds
the outcome back into the proxy pool.
"""

from __future__ import annotations

import asyncio
import codecs
import itertools
import logging
import re
import time
from dataclasses import dataclass
from html import unescape
from typing import Any, Iterable, List, Optional, Sequence
from urllib.parse import quote_plus, urldefrag, urljoin

import aiohttp
import httpx
from aiohttp_socks import ProxyError

from .config import AppSettings
from .constants import DEFAULT_USER_AGENT, MAX_PAGE_BYTES, SEARCH_API_TEMPLATE
from .domain_filter import DomainFilter
from .errors import (
    BlockedDomainFailure,
    NetworkFailure,
    ProtocolFailure,
    ProxyConfigurationFailure,
    StageFailure,
    TimeoutFailure,
    UnexpectedFailure,
)
from .http_client import get_client
from .models import (
    Attempt,
    AttemptOutcome,
    LinkResult,
    PipelineStage,
    ProxyProtocol,
    ProxyRecord,
    ScrapedPage,
    SearchQuery,
)
from .proxy_pool import ProxyPool
from .testers import build_connector

logger = logging.getLogger(__name__)

_HREF_RE = re.compile(r"""<a\s[^>]*?href\s*=\s*(?:"([^"]*)"|'([^']*)'|([^\s>]+))""", re.IGNORECASE)
_RETRYABLE_STATUS = frozenset({408, 425, 429})


class StageExecutor:
    """Base class for one pipeline stage's work."""

    stage: PipelineStage = PipelineStage.STARTED
    needs_proxy: bool = True
    protocol_preference: Optional[ProxyProtocol] = None

    def deadline(self, settings: AppSettings) -> float:
        return settings.PAGE_LOAD_TIMEOUT_SECONDS

    def precheck(self, stage_input: Any) -> None:
        """Reject input that must never reach the network. Runs before a proxy is picked."""

    async def execute(self, stage_input: Any, proxy: Optional[ProxyRecord], deadline: float) -> Any:
        raise NotImplementedError


@dataclass
class AttemptReport:
    attempt: Attempt
    output: Any = None
    failure: Optional[StageFailure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None


class StageRunner:
    """Runs single executor attempts and reports them to the proxy pool."""

    def __init__(self, pool: ProxyPool):
        self.pool = pool

    async def attempt(
        self,
        executor: StageExecutor,
        stage_input: Any,
        proxy: Optional[ProxyRecord],
        deadline: float,
        run_id: Optional[str] = None,
    ) -> AttemptReport:
        started = time.perf_counter()
        output: Any = None
        failure: Optional[StageFailure] = None
        try:
            output = await asyncio.wait_for(
                executor.execute(stage_input, proxy, deadline), timeout=deadline
            )
        except StageFailure as exc:
            failure = exc
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            failure = TimeoutFailure(f"{executor.stage.value} exceeded {deadline}s: {exc!r}")
        except (httpx.TransportError, aiohttp.ClientError, ProxyError, OSError) as exc:
            failure = NetworkFailure(f"{type(exc).__name__}: {exc}")
        except ValueError as exc:
            # json.JSONDecodeError included
            failure = ProtocolFailure(f"{type(exc).__name__}: {exc}")
        except Exception as exc:
            logger.exception(
                "Unexpected error in run %s at stage %s via proxy %s",
                run_id,
                executor.stage.value,
                proxy.id if proxy else None,
            )
            failure = UnexpectedFailure(f"{type(exc).__name__}: {exc}")

        latency_ms = (time.perf_counter() - started) * 1000
        outcome = AttemptOutcome.SUCCESS if failure is None else failure.kind.outcome
        attempt = Attempt(
            stage=executor.stage,
            proxy_id=proxy.id if proxy else None,
            outcome=outcome,
            latency_ms=round(latency_ms, 2),
        )

        if failure is not None:
            logger.warning(
                "Run %s: %s attempt failed (%s): %s",
                run_id,
                executor.stage.value,
                failure.kind.value,
                failure.message,
            )
        if proxy is not None and (failure is None or failure.charge_proxy):
            self.pool.record_attempt(attempt)
        return AttemptReport(attempt=attempt, output=output, failure=failure)


# ==================== Search API ====================


def build_search_uri(
    template: str,
    query: str,
    api_key: str,
    search_engine_id: str,
    start_index: int,
    count: int,
) -> str:
    return (
        template.replace("<query>", quote_plus(query))
        .replace("<api_key>", quote_plus(api_key))
        .replace("<search_engine_id>", quote_plus(search_engine_id))
        .replace("<start_index>", str(start_index))
        .replace("<count>", str(count))
    )


def parse_search_items(payload: Any) -> List[LinkResult]:
    """Pull ``items[].link/title/snippet`` out of a search API response."""
    if not isinstance(payload, dict):
        raise ProtocolFailure("Search response is not a JSON object")
    items = payload.get("items")
    if items is None:
        return []
    if not isinstance(items, list):
        raise ProtocolFailure("Search response 'items' is not a list")

    results = []
    for item in items:
        if not isinstance(item, dict):
            continue
        link = item.get("link")
        if not link or not str(link).strip():
            continue
        results.append(
            LinkResult(
                link=str(link).strip(),
                title=str(item.get("title") or ""),
                snippet=str(item.get("snippet") or ""),
            )
        )
    return results


class ApiCallerStage(StageExecutor):
    """Queries the search API for candidate URLs, rotating API keys per attempt."""

    stage = PipelineStage.API_CALLER_STARTED

    def __init__(
        self,
        api_keys: Sequence[str],
        search_engine_id: str,
        settings: Optional[AppSettings] = None,
        template: str = SEARCH_API_TEMPLATE,
        use_proxy: bool = False,
    ):
        if not api_keys:
            raise ValueError("At least one API key is required")
        self.settings = settings or AppSettings()
        self.search_engine_id = search_engine_id
        self.template = template
        self.needs_proxy = use_proxy
        self._keys = itertools.cycle(list(api_keys))

    def deadline(self, settings: AppSettings) -> float:
        return settings.API_CALL_TIMEOUT_SECONDS

    async def execute(
        self, stage_input: SearchQuery, proxy: Optional[ProxyRecord], deadline: float
    ) -> List[LinkResult]:
        api_key = next(self._keys)
        per_page = self.settings.SEARCH_RESULTS_PER_PAGE
        proxy_url = None
        if proxy is not None:
            try:
                proxy_url = proxy.to_proxy_url()
            except ValueError as exc:
                raise ProxyConfigurationFailure(str(exc)) from exc

        results: List[LinkResult] = []
        seen = set()
        async with get_client(proxy=proxy_url, timeout=httpx.Timeout(deadline)) as client:
            for page in range(self.settings.MAX_SEARCH_PAGES):
                uri = build_search_uri(
                    self.template,
                    stage_input.sentence,
                    api_key,
                    self.search_engine_id,
                    start_index=page * per_page + 1,
                    count=per_page,
                )
                response = await client.get(uri)
                self._check_status(response)
                try:
                    payload = response.json()
                except ValueError as exc:
                    raise ProtocolFailure(f"Malformed search response: {exc}") from exc

                items = parse_search_items(payload)
                if not items:
                    logger.debug("No items on search page %d for query %s", page, stage_input.id)
                    break
                for item in items:
                    if item.link not in seen:
                        seen.add(item.link)
                        results.append(item)

        logger.info("Search API returned %d links for query %s", len(results), stage_input.id)
        return results

    @staticmethod
    def _check_status(response: httpx.Response) -> None:
        status = response.status_code
        if status in _RETRYABLE_STATUS or status >= 500:
            raise NetworkFailure(f"Search API returned HTTP {status}")
        if status >= 400:
            raise ProtocolFailure(f"Search API rejected request with HTTP {status}")


# ==================== Scraper ====================


class ScraperStage(StageExecutor):
    """Fetches a batch of pages through the selected proxy."""

    stage = PipelineStage.SCRAPER_STARTED

    def __init__(
        self,
        domain_filter: Optional[DomainFilter] = None,
        user_agent: str = DEFAULT_USER_AGENT,
        max_page_bytes: int = MAX_PAGE_BYTES,
    ):
        self.domain_filter = domain_filter or DomainFilter()
        self.user_agent = user_agent
        self.max_page_bytes = max_page_bytes

    def check_targets(self, urls: Sequence[str]) -> None:
        """Reject the batch before any network call if it names a blocked domain."""
        _, blocked = self.domain_filter.partition(urls)
        if blocked:
            raise BlockedDomainFailure(
                f"{len(blocked)} URL(s) on blocked domains", urls=blocked
            )

    def precheck(self, stage_input: Sequence[str]) -> None:
        self.check_targets(stage_input)

    async def execute(
        self, stage_input: Sequence[str], proxy: Optional[ProxyRecord], deadline: float
    ) -> List[ScrapedPage]:
        urls = list(stage_input)
        self.check_targets(urls)
        if not urls:
            return []

        if proxy is not None:
            connector = build_connector(proxy)
        else:
            connector = aiohttp.TCPConnector()
        timeout = aiohttp.ClientTimeout(total=deadline)
        headers = {"User-Agent": self.user_agent, "Accept": "text/html,application/xhtml+xml"}

        async with aiohttp.ClientSession(
            connector=connector, timeout=timeout, headers=headers
        ) as session:
            fetched = await asyncio.gather(*(self._fetch(session, url) for url in urls))
        return [page for page in fetched if page is not None]

    async def _fetch(self, session: aiohttp.ClientSession, url: str) -> Optional[ScrapedPage]:
        async with session.get(url, allow_redirects=True) as response:
            status = response.status
            if status in _RETRYABLE_STATUS or status >= 500:
                raise NetworkFailure(f"HTTP {status} from {url}", url=url)
            if status >= 400:
                logger.info("Skipping %s: HTTP %d", url, status)
                return None
            content_type = response.headers.get("Content-Type", "")
            if content_type and "html" not in content_type.lower():
                logger.debug("Skipping %s: content type %s", url, content_type)
                return None
            if response.content_length and response.content_length > self.max_page_bytes:
                logger.info("Skipping %s: %d bytes exceeds limit", url, response.content_length)
                return None
            body = await response.content.read(self.max_page_bytes)
            html = body.decode(_codec_name(response.charset, url), errors="replace")
            return ScrapedPage(url=str(response.url), html=html, status=status)


def _codec_name(charset: Optional[str], url: str) -> str:
    """Python codec for a declared charset; utf-8 when absent or unknown."""
    if not charset:
        return "utf-8"
    try:
        return codecs.lookup(charset).name
    except LookupError:
        logger.debug("Unknown charset %r from %s, decoding as utf-8", charset, url)
        return "utf-8"


# ==================== Parser ====================


def extract_links(html: str, base_url: str = "") -> List[str]:
    """Return the distinct absolute http(s) links in ``html``, in document order."""
    links: List[str] = []
    seen = set()
    for match in _HREF_RE.finditer(html or ""):
        raw = next((group for group in match.groups() if group is not None), "")
        href = unescape(raw).strip()
        if not href or href.startswith(("#", "mailto:", "javascript:", "tel:", "data:")):
            continue
        absolute, _ = urldefrag(urljoin(base_url, href))
        if not absolute.startswith(("http://", "https://")):
            continue
        if absolute not in seen:
            seen.add(absolute)
            links.append(absolute)
    return links


class ParserStage(StageExecutor):
    """Extracts outbound links from scraped pages. Purely local; no proxy."""

    stage = PipelineStage.PARSER_STARTED
    needs_proxy = False

    async def execute(
        self, stage_input: Iterable[ScrapedPage], proxy: Optional[ProxyRecord], deadline: float
    ) -> List[str]:
        links: List[str] = []
        seen = set()
        for page in stage_input:
            for link in extract_links(page.html, page.url):
                if link not in seen:
                    seen.add(link)
                    links.append(link)
        return links


@dataclass
class StageExecutors:
    """The executor set a run drives, one per working stage."""

    api_caller: StageExecutor
    scraper: StageExecutor
    parser: StageExecutor
