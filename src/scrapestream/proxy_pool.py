"""
Health-aware proxy pool.

Tracks per-proxy health and hands out the best-scoring eligible proxy for
each attempt:

- Score = weighted Laplace-smoothed success rate + weighted inverse latency
- Success/failure samples decay exponentially so recent behaviour dominates
- Failure streaks move a proxy HEALTHY -> DEGRADED -> BANNED_TEMP; a ban is
  a cooldown, after which the proxy returns as UNTESTED
- Ties go to the least recently used proxy to spread load

Each proxy has its own lock; selection and outcome recording never take a
pool-wide lock, so concurrent runs only contend on the proxy they touch.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Collection, Dict, Iterable, List, Optional, Tuple, Union

from .config import AppSettings
from .errors import NoProxyAvailable, UnknownProxy
from .models import (
    Attempt,
    AttemptOutcome,
    ProxyProtocol,
    ProxyRecord,
    ProxyStatus,
    V2RayParams,
    utcnow,
)

logger = logging.getLogger(__name__)

_NEVER_USED = datetime.min.replace(tzinfo=timezone.utc)
_ADMIN_FIELDS = frozenset(
    {"protocol", "host", "port", "username", "password", "params", "description"}
)

ProtocolPreference = Union[ProxyProtocol, Collection[ProxyProtocol], None]


def _detached(record: ProxyRecord) -> ProxyRecord:
    """Copy a record so callers can never write the pool's health state."""
    if isinstance(record.params, V2RayParams):
        return replace(record, params=replace(record.params))
    return replace(record)


class _Entry:
    """A pool-owned record plus the decayed samples and streaks behind its status."""

    __slots__ = (
        "record",
        "lock",
        "recent_successes",
        "recent_failures",
        "failure_streak",
        "success_streak",
    )

    def __init__(self, record: ProxyRecord):
        self.record = record
        self.lock = threading.Lock()
        # Seed decayed samples from persisted lifetime counters
        self.recent_successes = float(record.success_count)
        self.recent_failures = float(record.failure_count)
        self.failure_streak = 0
        self.success_streak = 0


class ProxyPool:
    """Owns proxy records and is the single mutator of their health fields."""

    def __init__(
        self,
        proxies: Iterable[ProxyRecord] = (),
        settings: Optional[AppSettings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings or AppSettings()
        if self.settings.HEALTH_BAN_STREAK <= self.settings.HEALTH_DEGRADE_STREAK:
            raise ValueError("HEALTH_BAN_STREAK must exceed HEALTH_DEGRADE_STREAK")
        if not 0.0 < self.settings.HEALTH_DECAY <= 1.0:
            raise ValueError("HEALTH_DECAY must be in (0, 1]")
        self._clock = clock
        self._entries: Dict[str, _Entry] = {}
        # Guards membership only; never held while scoring or recording
        self._registry_lock = threading.Lock()
        for proxy in proxies:
            self.add(proxy)

    # ==================== Admin CRUD ====================

    def add(self, record: ProxyRecord) -> ProxyRecord:
        """Add a proxy; an existing proxy with the same protocol/host/port is kept instead."""
        with self._registry_lock:
            if record.id in self._entries:
                raise ValueError(f"Proxy id {record.id} already in pool")
            for entry in self._entries.values():
                existing = entry.record
                if (existing.protocol, existing.host, existing.port) == (
                    record.protocol,
                    record.host,
                    record.port,
                ):
                    logger.warning("Proxy %s already exists, skipping", record.display_name())
                    return _detached(existing)
            stored = _detached(record)
            if stored.status is ProxyStatus.BANNED_TEMP and stored.banned_until is None:
                logger.warning(
                    "Proxy %s is banned with no expiry, adding it as untested",
                    stored.display_name(),
                )
                stored.status = ProxyStatus.UNTESTED
            self._entries[record.id] = _Entry(stored)
        logger.info("Added proxy %s", record.display_name())
        return _detached(stored)

    def update(self, proxy_id: str, **changes: Any) -> ProxyRecord:
        """Edit connection fields. Health fields are read-only through this interface."""
        forbidden = set(changes) - _ADMIN_FIELDS
        if forbidden:
            raise ValueError(f"Fields not editable: {', '.join(sorted(forbidden))}")
        entry = self._entry(proxy_id)
        with entry.lock:
            # replace() re-runs validation, so a bad edit leaves the record untouched
            entry.record = replace(entry.record, **changes)
            return _detached(entry.record)

    def remove(self, proxy_id: str) -> None:
        with self._registry_lock:
            if self._entries.pop(proxy_id, None) is None:
                raise UnknownProxy(proxy_id)
        logger.info("Removed proxy %s", proxy_id)

    def get(self, proxy_id: str) -> ProxyRecord:
        entry = self._entry(proxy_id)
        with entry.lock:
            self._refresh(entry, self._clock())
            return _detached(entry.record)

    def records(self) -> List[ProxyRecord]:
        return [self.get(entry.record.id) for entry in self._entries_snapshot()]

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, proxy_id: object) -> bool:
        return proxy_id in self._entries

    # ==================== Selection ====================

    def select_proxy(
        self,
        protocol_preference: ProtocolPreference = None,
        exclude: Collection[str] = (),
    ) -> ProxyRecord:
        """Return a detached copy of the best eligible proxy.

        Args:
            protocol_preference: Protocol(s) to prefer; other protocols are used
                only when no preferred proxy is eligible.
            exclude: Proxy ids to avoid (e.g. already tried for this stage);
                ignored when every eligible proxy is excluded.

        Raises:
            NoProxyAvailable: No proxy is eligible (all banned, or pool empty).
        """
        now = self._clock()
        candidates: List[Tuple[_Entry, float, datetime]] = []
        for entry in self._entries_snapshot():
            with entry.lock:
                self._refresh(entry, now)
                if entry.record.status is ProxyStatus.BANNED_TEMP:
                    continue
                candidates.append(
                    (entry, self._score(entry), entry.record.last_used_at or _NEVER_USED)
                )

        if not candidates:
            raise NoProxyAvailable("No eligible proxies; add proxies or lift temporary bans")

        pool = [c for c in candidates if c[0].record.id not in exclude] or candidates
        preferred = self._preferred(pool, protocol_preference)
        ranked = sorted(preferred, key=lambda c: (-round(c[1], 6), c[2]))

        for entry, score, _ in ranked:
            with entry.lock:
                # Another run may have banned it since scoring
                if entry.record.status is ProxyStatus.BANNED_TEMP:
                    continue
                entry.record.last_used_at = now
                logger.debug("Selected proxy %s (score %.3f)", entry.record.display_name(), score)
                return _detached(entry.record)

        raise NoProxyAvailable("All candidate proxies were banned during selection")

    @staticmethod
    def _preferred(
        candidates: List[Tuple[_Entry, float, datetime]], preference: ProtocolPreference
    ) -> List[Tuple[_Entry, float, datetime]]:
        if preference is None:
            return candidates
        wanted = {preference} if isinstance(preference, ProxyProtocol) else set(preference)
        matching = [c for c in candidates if c[0].record.protocol in wanted]
        return matching or candidates

    def _score(self, entry: _Entry) -> float:
        settings = self.settings
        success_rate = (entry.recent_successes + 1.0) / (
            entry.recent_successes + entry.recent_failures + 2.0
        )
        latency = entry.record.avg_response_time_ms
        if latency is None:
            latency_factor = 0.5
        else:
            latency_factor = 1.0 / (1.0 + max(0.0, latency) / settings.LATENCY_REFERENCE_MS)
        return (
            settings.SCORE_SUCCESS_WEIGHT * success_rate
            + settings.SCORE_LATENCY_WEIGHT * latency_factor
        )

    def score(self, proxy_id: str) -> float:
        entry = self._entry(proxy_id)
        with entry.lock:
            return round(self._score(entry), 4)

    # ==================== Health updates ====================

    def record_outcome(
        self, proxy_id: str, outcome: AttemptOutcome, latency_ms: Optional[float] = None
    ) -> Dict[str, Any]:
        """Fold one attempt outcome into the proxy's health; returns the new snapshot."""
        entry = self._entry(proxy_id)
        if outcome is AttemptOutcome.BLOCKED_DOMAIN:
            # Policy rejections say nothing about the proxy
            with entry.lock:
                return entry.record.health_snapshot()

        now = self._clock()
        decay = self.settings.HEALTH_DECAY
        with entry.lock:
            record = entry.record
            entry.recent_successes *= decay
            entry.recent_failures *= decay
            record.last_tested_at = now
            record.last_used_at = now

            if outcome is AttemptOutcome.SUCCESS:
                record.success_count += 1
                entry.recent_successes += 1.0
                entry.failure_streak = 0
                entry.success_streak += 1
                if latency_ms is not None:
                    self._update_latency(record, latency_ms)
                self._after_success(entry)
            else:
                record.failure_count += 1
                entry.recent_failures += 1.0
                entry.failure_streak += 1
                entry.success_streak = 0
                self._after_failure(entry, now)
            return record.health_snapshot()

    def record_attempt(self, attempt: Attempt) -> Optional[Dict[str, Any]]:
        if attempt.proxy_id is None:
            return None
        return self.record_outcome(attempt.proxy_id, attempt.outcome, attempt.latency_ms)

    def mark_banned(self, proxy_id: str, until: datetime) -> None:
        """Manual ban, independent of the scored health path."""
        entry = self._entry(proxy_id)
        with entry.lock:
            entry.record.status = ProxyStatus.BANNED_TEMP
            entry.record.banned_until = until
            entry.failure_streak = 0
            entry.success_streak = 0
        logger.warning("Proxy %s banned until %s", proxy_id, until.isoformat())

    def _update_latency(self, record: ProxyRecord, latency_ms: float) -> None:
        if record.avg_response_time_ms is None:
            record.avg_response_time_ms = round(latency_ms, 2)
        else:
            alpha = self.settings.LATENCY_EWMA_ALPHA
            record.avg_response_time_ms = round(
                alpha * latency_ms + (1 - alpha) * record.avg_response_time_ms, 2
            )

    def _after_success(self, entry: _Entry) -> None:
        record = entry.record
        if record.status is ProxyStatus.UNTESTED:
            self._set_status(record, ProxyStatus.HEALTHY)
        elif (
            record.status is ProxyStatus.DEGRADED
            and entry.success_streak >= self.settings.HEALTH_RECOVERY_SUCCESSES
        ):
            self._set_status(record, ProxyStatus.HEALTHY)

    def _after_failure(self, entry: _Entry, now: datetime) -> None:
        record = entry.record
        settings = self.settings
        if record.status is ProxyStatus.UNTESTED:
            self._set_status(record, ProxyStatus.DEGRADED)
        elif (
            record.status is ProxyStatus.HEALTHY
            and entry.failure_streak >= settings.HEALTH_DEGRADE_STREAK
        ):
            self._set_status(record, ProxyStatus.DEGRADED)
        elif (
            record.status is ProxyStatus.DEGRADED
            and entry.failure_streak >= settings.HEALTH_BAN_STREAK
        ):
            record.banned_until = now + timedelta(seconds=settings.PROXY_BAN_SECONDS)
            self._set_status(record, ProxyStatus.BANNED_TEMP)

    @staticmethod
    def _set_status(record: ProxyRecord, status: ProxyStatus) -> None:
        logger.info("Proxy %s: %s -> %s", record.display_name(), record.status.value, status.value)
        record.status = status

    def _refresh(self, entry: _Entry, now: datetime) -> None:
        """Lift an expired ban. Caller holds ``entry.lock``."""
        record = entry.record
        if record.status is not ProxyStatus.BANNED_TEMP:
            return
        if record.banned_until is None or record.banned_until <= now:
            record.banned_until = None
            entry.failure_streak = 0
            entry.success_streak = 0
            self._set_status(record, ProxyStatus.UNTESTED)

    # ==================== Observability ====================

    def snapshot(self) -> List[Dict[str, Any]]:
        """Health snapshot of every proxy, for status APIs."""
        now = self._clock()
        snapshots = []
        for entry in self._entries_snapshot():
            with entry.lock:
                self._refresh(entry, now)
                snapshots.append(entry.record.health_snapshot())
        return snapshots

    def eligible_count(self) -> int:
        return sum(1 for item in self.snapshot() if item["status"] != ProxyStatus.BANNED_TEMP.value)

    def _entries_snapshot(self) -> List[_Entry]:
        return list(self._entries.values())

    def _entry(self, proxy_id: str) -> _Entry:
        entry = self._entries.get(proxy_id)
        if entry is None:
            raise UnknownProxy(proxy_id)
        return entry
