"""
Proxy Store.

Persists proxy records, health included, as a JSON file so pool state
survives between CLI invocations.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Iterable, List

from .models import ProxyRecord, utcnow

logger = logging.getLogger(__name__)

STORE_VERSION = 1


class ProxyStore:
    """Loads and saves proxy records to a JSON file."""

    def __init__(self, path: Path = Path("data/proxies.json")):
        self.path = Path(path)

    def load(self) -> List[ProxyRecord]:
        """Load records from disk; a missing file is an empty store."""
        if not self.path.exists():
            return []
        try:
            data: Dict[str, Any] = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ValueError(f"Proxy store {self.path} is corrupt: {e}") from e

        records = []
        for item in data.get("proxies", []):
            try:
                records.append(ProxyRecord.from_dict(item))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping invalid proxy entry %s: %s", item.get("id"), e)
        logger.debug("Loaded %d proxies from %s", len(records), self.path)
        return records

    def save(self, records: Iterable[ProxyRecord]) -> int:
        """Write records atomically; returns how many were written."""
        payload = {
            "version": STORE_VERSION,
            "saved_at": utcnow().isoformat(),
            "proxies": [record.to_dict() for record in records],
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        os.replace(tmp_path, self.path)
        logger.debug("Saved %d proxies to %s", len(payload["proxies"]), self.path)
        return len(payload["proxies"])
