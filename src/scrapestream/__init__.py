"""
ScrapeStream - Search and scrape pipeline over a health-aware proxy pool

This package drives search queries through API-call, scrape and parse stages,
rotating proxies by health and retrying failed attempts with backoff.
"""

__version__ = "1.0.0"

# Use selector event loop on Windows to avoid proactor shutdown issues
import asyncio
import sys

if sys.platform.startswith("win"):
    try:
        asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())
    except AttributeError:  # pragma: no cover - non-Windows platforms
        pass


# Lazy imports so the CLI and tests only pay for what they touch
def __getattr__(name):
    if name == "ProxyPool":
        from .proxy_pool import ProxyPool

        return ProxyPool
    elif name == "PipelineRun":
        from .pipeline import PipelineRun

        return PipelineRun
    elif name == "Orchestrator":
        from .orchestrator import Orchestrator

        return Orchestrator
    elif name == "SearchQuery":
        from .models import SearchQuery

        return SearchQuery
    elif name == "parse_proxy_url":
        from .parsers import parse_proxy_url

        return parse_proxy_url
    elif name == "AppSettings":
        from .config import AppSettings

        return AppSettings
    raise AttributeError(f"module '{__name__}' has no attribute '{name}'")


__all__ = [
    "ProxyPool",
    "PipelineRun",
    "Orchestrator",
    "SearchQuery",
    "parse_proxy_url",
    "AppSettings",
    "__version__",
]
