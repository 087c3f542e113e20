"""Retry/backoff decisions for stage attempts."""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Optional, Union

from .config import AppSettings
from .errors import FailureKind

_NEVER_RETRY = frozenset({FailureKind.BLOCKED_DOMAIN, FailureKind.UNEXPECTED})


@dataclass(frozen=True)
class Retry:
    backoff_ms: int


@dataclass(frozen=True)
class GiveUp:
    reason: str


Decision = Union[Retry, GiveUp]


class RetryPolicy:
    """Exponential backoff with jitter, capped, bounded by ``max_attempts``.

    ``decide`` has no side effects apart from drawing from its own RNG, so a
    seeded ``rng`` makes decisions reproducible.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        initial_ms: int = 1000,
        multiplier: float = 2.0,
        max_ms: int = 10000,
        jitter_ratio: float = 0.25,
        rng: Optional[random.Random] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.initial_ms = initial_ms
        self.multiplier = multiplier
        self.max_ms = max_ms
        self.jitter_ratio = jitter_ratio
        self._rng = rng or random.Random()

    @classmethod
    def from_settings(cls, settings: AppSettings, rng: Optional[random.Random] = None) -> "RetryPolicy":
        return cls(
            max_attempts=settings.MAX_ATTEMPTS,
            initial_ms=settings.BACKOFF_INITIAL_MS,
            multiplier=settings.BACKOFF_MULTIPLIER,
            max_ms=settings.BACKOFF_MAX_MS,
            rng=rng,
        )

    def base_backoff_ms(self, attempt_number: int) -> int:
        exponent = max(0, attempt_number - 1)
        return int(min(self.max_ms, self.initial_ms * (self.multiplier**exponent)))

    def decide(self, attempt_number: int, failure_kind: FailureKind) -> Decision:
        """Decide what to do after the ``attempt_number``-th failed attempt (1-based)."""
        if failure_kind in _NEVER_RETRY:
            return GiveUp(f"{failure_kind.value} is not retryable")
        if attempt_number >= self.max_attempts:
            return GiveUp(f"{failure_kind.value} after {attempt_number} attempts")

        base = self.base_backoff_ms(attempt_number)
        jitter = self._rng.randint(0, int(base * self.jitter_ratio)) if base > 0 else 0
        return Retry(min(self.max_ms, base + jitter))
