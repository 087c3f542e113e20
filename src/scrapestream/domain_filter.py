"""Static blocklist check for scrape targets."""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Sequence, Tuple
from urllib.parse import urlparse

import tldextract

from .constants import BLOCKED_DOMAINS

logger = logging.getLogger(__name__)

# Bundled public suffix snapshot only; never fetch the list at runtime
_extract = tldextract.TLDExtract(suffix_list_urls=())


def registrable_domain(url: str) -> Optional[str]:
    """Return the registrable domain (``example.co.uk``) of ``url``, or None.

    Hosts without a public suffix (``localhost``, bare IPs) are returned as-is.
    """
    candidate = url.strip()
    if "://" not in candidate:
        candidate = f"http://{candidate}"
    try:
        host = urlparse(candidate).hostname
    except ValueError:
        logger.warning("Failed to parse URL for domain check: %s", url)
        return None
    if not host:
        return None

    host = host.lower().rstrip(".")
    extracted = _extract(host)
    if not extracted.suffix:
        return host or None
    if not extracted.domain:
        return extracted.suffix
    return f"{extracted.domain}.{extracted.suffix}"


class DomainFilter:
    """Rejects URLs whose registrable domain is on the blocklist."""

    def __init__(self, blocked: Iterable[str] = BLOCKED_DOMAINS):
        self._blocked = frozenset(domain.lower().strip(".") for domain in blocked)

    def is_blocked(self, url: str) -> bool:
        domain = registrable_domain(url)
        return domain is not None and domain in self._blocked

    def partition(self, urls: Sequence[str]) -> Tuple[List[str], List[str]]:
        """Split ``urls`` into (allowed, blocked), preserving order."""
        allowed: List[str] = []
        blocked: List[str] = []
        for url in urls:
            (blocked if self.is_blocked(url) else allowed).append(url)
        return allowed, blocked
