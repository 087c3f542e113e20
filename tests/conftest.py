import asyncio
import inspect
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, List, Optional

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from scrapestream.config import AppSettings  # noqa: E402
from scrapestream.models import (  # noqa: E402
    LinkResult,
    PipelineStage,
    ProxyProtocol,
    ProxyRecord,
    ScrapedPage,
)
from scrapestream.proxy_pool import ProxyPool  # noqa: E402
from scrapestream.stages import StageExecutor, StageExecutors  # noqa: E402


def pytest_addoption(parser):
    """Provide stubs for coverage options when pytest-cov is unavailable."""

    try:
        __import__("pytest_cov")
        return
    except ModuleNotFoundError:
        pass

    parser.addoption(
        "--cov",
        action="append",
        default=[],
        metavar="PATH",
        help="Stubbed coverage option; install pytest-cov for real coverage",
    )
    parser.addoption(
        "--cov-report",
        action="append",
        default=[],
        metavar="TYPE",
        help="Stubbed coverage report option; install pytest-cov for reports",
    )
    parser.addini(
        "asyncio_mode",
        "Stub ini option so pytest does not warn when pytest-asyncio is unavailable",
        default="auto",
    )


def pytest_configure(config):
    """Register compatibility markers and defaults."""

    config.addinivalue_line("markers", "asyncio: mark a test as requiring the event loop")


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem):
    """Execute ``async`` tests using a minimal event loop implementation."""

    testfunction = pyfuncitem.obj
    if not inspect.iscoroutinefunction(testfunction):
        return None

    signature = inspect.signature(testfunction)
    call_args = {
        name: value for name, value in pyfuncitem.funcargs.items() if name in signature.parameters
    }

    loop = asyncio.new_event_loop()
    try:
        asyncio.set_event_loop(loop)
        loop.run_until_complete(testfunction(**call_args))
        loop.run_until_complete(loop.shutdown_asyncgens())
    finally:
        asyncio.set_event_loop(None)
        loop.close()

    return True


class FakeClock:
    """Manually advanced UTC clock for health/ban timing."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class ScriptedExecutor(StageExecutor):
    """Executor that replays a script of results.

    Each entry is returned as output, raised if it is an exception, or called
    with ``(stage_input, proxy)`` if callable. The last entry repeats.
    """

    def __init__(self, stage: PipelineStage, script: List[Any], needs_proxy: bool = True):
        self.stage = stage
        self.needs_proxy = needs_proxy
        self.script = list(script)
        self.calls: List[Any] = []
        self.proxies: List[Optional[str]] = []
        self.gate: Optional[asyncio.Event] = None

    async def execute(self, stage_input, proxy, deadline):
        self.calls.append(stage_input)
        self.proxies.append(proxy.id if proxy else None)
        if self.gate is not None:
            await self.gate.wait()
        index = min(len(self.calls), len(self.script)) - 1
        step = self.script[index]
        if isinstance(step, BaseException):
            raise step
        if callable(step):
            return step(stage_input, proxy)
        return step


def make_proxy(host: str = "10.0.0.1", port: int = 1080, **kwargs) -> ProxyRecord:
    kwargs.setdefault("protocol", ProxyProtocol.SOCKS5)
    return ProxyRecord(host=host, port=port, **kwargs)


def links(count: int, prefix: str = "https://site.test/page") -> List[str]:
    return [f"{prefix}{i}" for i in range(count)]


@pytest.fixture
def settings():
    """Settings with zero backoff so retry paths run instantly."""
    return AppSettings(
        BACKOFF_INITIAL_MS=0,
        BACKOFF_MAX_MS=0,
        MAX_ATTEMPTS=3,
        MAX_ROUNDS=5,
        SCRAPE_BATCH_SIZE=5,
        PAGE_LOAD_TIMEOUT_SECONDS=2,
        API_CALL_TIMEOUT_SECONDS=2,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def three_proxies():
    return [make_proxy(f"10.0.0.{i}", 1080 + i) for i in range(1, 4)]


@pytest.fixture
def pool(settings, clock, three_proxies):
    return ProxyPool(three_proxies, settings=settings, clock=clock)


@pytest.fixture
def executor_factory():
    """Build a StageExecutors set from scripts for each stage."""

    def build(api=None, scraper=None, parser=None) -> StageExecutors:
        api_script = api if api is not None else [[LinkResult(link=url) for url in links(3)]]
        scraper_script = (
            scraper
            if scraper is not None
            else [lambda urls, proxy: [ScrapedPage(url=u, html="") for u in urls]]
        )
        parser_script = parser if parser is not None else [[]]
        return StageExecutors(
            api_caller=ScriptedExecutor(PipelineStage.API_CALLER_STARTED, api_script, needs_proxy=False),
            scraper=ScriptedExecutor(PipelineStage.SCRAPER_STARTED, scraper_script),
            parser=ScriptedExecutor(PipelineStage.PARSER_STARTED, parser_script, needs_proxy=False),
        )

    return build


@pytest.fixture
def proxy_factory():
    return make_proxy


@pytest.fixture
def link_factory():
    return links


@pytest.fixture
def scripted():
    return ScriptedExecutor
