import asyncio
import json
from unittest.mock import patch

import httpx
import pytest
import respx
from aiohttp import web
from aiohttp_socks import ProxyError

from scrapestream.config import AppSettings
from scrapestream.errors import (
    BlockedDomainFailure,
    FailureKind,
    NetworkFailure,
    ProtocolFailure,
    ProxyConfigurationFailure,
)
from scrapestream.models import (
    AttemptOutcome,
    PipelineStage,
    ProxyProtocol,
    ProxyStatus,
    ScrapedPage,
    SearchQuery,
    V2RayParams,
)
from scrapestream.proxy_pool import ProxyPool
from scrapestream.stages import (
    ApiCallerStage,
    ParserStage,
    ScraperStage,
    StageExecutor,
    StageRunner,
    build_search_uri,
    extract_links,
    parse_search_items,
)

SEARCH_URL = "https://www.googleapis.com/customsearch/v1"


class _SlowExecutor(StageExecutor):
    stage = PipelineStage.SCRAPER_STARTED

    async def execute(self, stage_input, proxy, deadline):
        await asyncio.sleep(5)


class _RaisingExecutor(StageExecutor):
    stage = PipelineStage.SCRAPER_STARTED

    def __init__(self, exc):
        self.exc = exc

    async def execute(self, stage_input, proxy, deadline):
        raise self.exc


class TestStageRunner:
    async def test_timeout_is_classified_and_recorded(self, pool):
        proxy = pool.select_proxy()
        report = await StageRunner(pool).attempt(_SlowExecutor(), [], proxy, deadline=0.05)

        assert report.failure.kind is FailureKind.TIMEOUT
        assert report.attempt.outcome is AttemptOutcome.TIMEOUT
        assert pool.get(proxy.id).failure_count == 1

    @pytest.mark.parametrize(
        "exc, kind",
        [
            (httpx.ConnectError("refused"), FailureKind.NETWORK_ERROR),
            (httpx.ReadTimeout("slow"), FailureKind.TIMEOUT),
            (ConnectionResetError("reset"), FailureKind.NETWORK_ERROR),
            (json.JSONDecodeError("bad", "{", 0), FailureKind.PROTOCOL_ERROR),
            (KeyError("surprise"), FailureKind.UNEXPECTED),
            (ProtocolFailure("garbled"), FailureKind.PROTOCOL_ERROR),
        ],
    )
    async def test_exception_mapping(self, pool, exc, kind):
        proxy = pool.select_proxy()
        report = await StageRunner(pool).attempt(_RaisingExecutor(exc), [], proxy, deadline=1)
        assert report.failure.kind is kind
        assert not report.ok

    async def test_success_records_latency(self, pool, scripted):
        proxy = pool.select_proxy()
        executor = scripted(PipelineStage.SCRAPER_STARTED, [["page"]])
        report = await StageRunner(pool).attempt(executor, ["u"], proxy, deadline=1)

        assert report.ok
        assert report.output == ["page"]
        record = pool.get(proxy.id)
        assert record.success_count == 1
        assert record.avg_response_time_ms is not None

    async def test_blocked_domain_skips_health_sample(self, pool):
        proxy = pool.select_proxy()
        with patch.object(pool, "record_outcome") as recorded:
            report = await StageRunner(pool).attempt(
                ScraperStage(), ["https://twitter.com/someone"], proxy, deadline=1
            )
        assert report.failure.kind is FailureKind.BLOCKED_DOMAIN
        recorded.assert_not_called()

    async def test_unusable_proxy_config_skips_health_sample(self, settings, proxy_factory):
        proxy = proxy_factory(protocol=ProxyProtocol.VMESS, params=V2RayParams(uuid="u"))
        pool = ProxyPool([proxy], settings=settings)
        report = await StageRunner(pool).attempt(
            ScraperStage(), ["https://shop.test/"], pool.get(proxy.id), deadline=1
        )
        assert report.failure.kind is FailureKind.PROTOCOL_ERROR
        assert pool.get(proxy.id).failure_count == 0
        assert pool.get(proxy.id).status is ProxyStatus.UNTESTED

    async def test_socks_proxy_error_is_network_failure(self, pool):
        proxy = pool.select_proxy()
        report = await StageRunner(pool).attempt(
            _RaisingExecutor(ProxyError("auth rejected")), [], proxy, deadline=1
        )
        assert report.failure.kind is FailureKind.NETWORK_ERROR
        assert pool.get(proxy.id).failure_count == 1

    async def test_no_proxy_attempt_is_not_recorded(self, pool, scripted):
        executor = scripted(PipelineStage.PARSER_STARTED, [[]], needs_proxy=False)
        with patch.object(pool, "record_outcome") as recorded:
            report = await StageRunner(pool).attempt(executor, [], None, deadline=1)
        assert report.ok
        assert report.attempt.proxy_id is None
        recorded.assert_not_called()


class TestSearchHelpers:
    def test_build_search_uri_fills_placeholders(self):
        uri = build_search_uri(
            "https://api.test/?q=<query>&key=<api_key>&cx=<search_engine_id>&start=<start_index>&num=<count>",
            "coffee shops",
            "k1",
            "cx1",
            start_index=11,
            count=10,
        )
        assert uri == "https://api.test/?q=coffee+shops&key=k1&cx=cx1&start=11&num=10"

    def test_parse_search_items(self):
        payload = {
            "items": [
                {"link": "https://a.test/", "title": "A", "snippet": "aa"},
                {"title": "no link"},
                {"link": "  "},
                None,
            ]
        }
        items = parse_search_items(payload)
        assert [item.link for item in items] == ["https://a.test/"]
        assert items[0].title == "A"

    def test_parse_search_items_without_items(self):
        assert parse_search_items({"searchInformation": {}}) == []

    def test_parse_search_items_rejects_non_object(self):
        with pytest.raises(ProtocolFailure):
            parse_search_items(["not", "an", "object"])


class TestApiCallerStage:
    @respx.mock
    async def test_collects_pages_until_empty(self):
        route = respx.get(url__startswith=SEARCH_URL).mock(
            side_effect=[
                httpx.Response(
                    200,
                    json={"items": [{"link": "https://a.test/"}, {"link": "https://b.test/"}]},
                ),
                httpx.Response(200, json={"items": [{"link": "https://b.test/"}, {"link": "https://c.test/"}]}),
                httpx.Response(200, json={}),
            ]
        )
        stage = ApiCallerStage(["k1"], "cx", settings=AppSettings(MAX_SEARCH_PAGES=5))

        results = await stage.execute(SearchQuery(sentence="coffee", target_link_count=3), None, 5)

        assert [item.link for item in results] == ["https://a.test/", "https://b.test/", "https://c.test/"]
        assert route.call_count == 3
        assert "start=11" in str(route.calls[1].request.url)

    @respx.mock
    async def test_rotates_api_keys_per_attempt(self):
        route = respx.get(url__startswith=SEARCH_URL).mock(return_value=httpx.Response(200, json={}))
        stage = ApiCallerStage(["k1", "k2"], "cx", settings=AppSettings(MAX_SEARCH_PAGES=1))
        query = SearchQuery(sentence="coffee", target_link_count=1)

        await stage.execute(query, None, 5)
        await stage.execute(query, None, 5)

        keys = [call.request.url.params["key"] for call in route.calls]
        assert keys == ["k1", "k2"]

    @respx.mock
    async def test_rate_limit_is_network_failure(self):
        respx.get(url__startswith=SEARCH_URL).mock(return_value=httpx.Response(429))
        stage = ApiCallerStage(["k1"], "cx")
        with pytest.raises(NetworkFailure):
            await stage.execute(SearchQuery(sentence="coffee", target_link_count=1), None, 5)

    @respx.mock
    async def test_client_error_is_protocol_failure(self):
        respx.get(url__startswith=SEARCH_URL).mock(return_value=httpx.Response(403))
        stage = ApiCallerStage(["k1"], "cx")
        with pytest.raises(ProtocolFailure):
            await stage.execute(SearchQuery(sentence="coffee", target_link_count=1), None, 5)

    @respx.mock
    async def test_malformed_json_is_protocol_failure(self):
        respx.get(url__startswith=SEARCH_URL).mock(
            return_value=httpx.Response(200, content=b"<html>oops</html>")
        )
        stage = ApiCallerStage(["k1"], "cx")
        with pytest.raises(ProtocolFailure):
            await stage.execute(SearchQuery(sentence="coffee", target_link_count=1), None, 5)

    def test_requires_api_key(self):
        with pytest.raises(ValueError):
            ApiCallerStage([], "cx")

    def test_uses_api_call_deadline(self):
        stage = ApiCallerStage(["k1"], "cx")
        assert stage.deadline(AppSettings(API_CALL_TIMEOUT_SECONDS=7)) == 7
        assert stage.needs_proxy is False


class TestScraperStage:
    async def test_blocked_before_any_network_call(self, proxy_factory):
        stage = ScraperStage()
        with patch("scrapestream.stages.build_connector") as connector:
            with pytest.raises(BlockedDomainFailure) as excinfo:
                await stage.execute(
                    ["https://shop.test/", "https://www.amazon.com/dp/1"], proxy_factory(), 5
                )
        connector.assert_not_called()
        assert excinfo.value.urls == ["https://www.amazon.com/dp/1"]

    async def test_v2ray_proxy_without_local_port_fails_fast(self, proxy_factory):
        proxy = proxy_factory(protocol=ProxyProtocol.VMESS, params=V2RayParams(uuid="u"))
        with pytest.raises(ProxyConfigurationFailure):
            await ScraperStage().execute(["https://shop.test/"], proxy, 5)

    async def test_unknown_charset_decodes_as_utf8(self):
        async def odd_charset(request):
            return web.Response(
                body="<a href='/café'>café</a>".encode("utf-8"),
                headers={"Content-Type": "text/html; charset=bogus-enc"},
            )

        app = web.Application()
        app.router.add_get("/", odd_charset)
        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, "127.0.0.1", 0)
        await site.start()
        port = runner.addresses[0][1]
        try:
            pages = await ScraperStage().execute([f"http://127.0.0.1:{port}/"], None, 5)
        finally:
            await runner.cleanup()

        assert len(pages) == 1
        assert "café" in pages[0].html

    async def test_fetches_pages_directly(self):
        async def html_page(request):
            return web.Response(text='<a href="/next">next</a>', content_type="text/html")

        async def missing(request):
            return web.Response(status=404)

        async def image(request):
            return web.Response(body=b"\x89PNG", content_type="image/png")

        app = web.Application()
        app.router.add_get("/page", html_page)
        app.router.add_get("/missing", missing)
        app.router.add_get("/image", image)
        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, "127.0.0.1", 0)
        await site.start()
        port = runner.addresses[0][1]
        base = f"http://127.0.0.1:{port}"
        try:
            pages = await ScraperStage().execute(
                [f"{base}/page", f"{base}/missing", f"{base}/image"], None, 5
            )
        finally:
            await runner.cleanup()

        assert len(pages) == 1
        assert pages[0].url == f"{base}/page"
        assert "next" in pages[0].html

    async def test_server_error_is_network_failure(self):
        async def broken(request):
            return web.Response(status=503)

        app = web.Application()
        app.router.add_get("/", broken)
        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, "127.0.0.1", 0)
        await site.start()
        port = runner.addresses[0][1]
        try:
            with pytest.raises(NetworkFailure):
                await ScraperStage().execute([f"http://127.0.0.1:{port}/"], None, 5)
        finally:
            await runner.cleanup()


class TestParser:
    def test_extract_links_resolves_and_dedupes(self):
        html = """
        <a href="/about">About</a>
        <A HREF='https://other.test/x#frag'>x</A>
        <a class="c" href=https://other.test/x>dup</a>
        <a href="mailto:someone@example.com">mail</a>
        <a href="#top">top</a>
        <a href="javascript:void(0)">js</a>
        <a href="ftp://files.test/">ftp</a>
        <a href="page?a=1&amp;b=2">q</a>
        """
        assert extract_links(html, "https://site.test/dir/") == [
            "https://site.test/about",
            "https://other.test/x",
            "https://site.test/dir/page?a=1&b=2",
        ]

    def test_extract_links_handles_empty(self):
        assert extract_links("", "https://site.test/") == []

    async def test_parser_stage_merges_pages(self):
        pages = [
            ScrapedPage(url="https://a.test/", html='<a href="/1">1</a><a href="https://b.test/">b</a>'),
            ScrapedPage(url="https://b.test/", html='<a href="https://b.test/">b</a>'),
        ]
        links = await ParserStage().execute(pages, None, 5)
        assert links == ["https://a.test/1", "https://b.test/"]
        assert ParserStage.needs_proxy is False
