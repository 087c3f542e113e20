"""Exception hierarchy for pipeline runs and the proxy pool."""

from __future__ import annotations

from enum import Enum
from typing import Optional, Sequence

from .models import AttemptOutcome


class FailureKind(Enum):
    TIMEOUT = "TIMEOUT"
    NETWORK_ERROR = "NETWORK_ERROR"
    BLOCKED_DOMAIN = "BLOCKED_DOMAIN"
    PROTOCOL_ERROR = "PROTOCOL_ERROR"
    UNEXPECTED = "UNEXPECTED"

    @property
    def outcome(self) -> AttemptOutcome:
        return AttemptOutcome[self.value]


class ScrapeStreamError(Exception):
    """Base exception for the package."""


class StageFailure(ScrapeStreamError):
    """A single stage attempt failed."""

    kind: FailureKind = FailureKind.UNEXPECTED
    # False when the failure says nothing about the proxy's health
    charge_proxy: bool = True

    def __init__(self, message: str, *, url: Optional[str] = None):
        self.message = message
        self.url = url
        super().__init__(message)


class TimeoutFailure(StageFailure):
    kind = FailureKind.TIMEOUT


class NetworkFailure(StageFailure):
    kind = FailureKind.NETWORK_ERROR


class BlockedDomainFailure(StageFailure):
    """Raised before any network call; carries the rejected URLs."""

    kind = FailureKind.BLOCKED_DOMAIN
    charge_proxy = False

    def __init__(self, message: str, *, urls: Sequence[str] = ()):
        self.urls = list(urls)
        super().__init__(message, url=self.urls[0] if self.urls else None)


class ProtocolFailure(StageFailure):
    kind = FailureKind.PROTOCOL_ERROR


class ProxyConfigurationFailure(ProtocolFailure):
    """The proxy record cannot be turned into a client connector."""

    charge_proxy = False


class UnexpectedFailure(StageFailure):
    kind = FailureKind.UNEXPECTED


class NoProxyAvailable(ScrapeStreamError):
    """No proxy in the pool is currently eligible for selection."""


class GoalUnreachable(ScrapeStreamError):
    """The round cap was hit (or input ran out) before the target link count."""

    def __init__(self, message: str, collected: int, target: int):
        self.collected = collected
        self.target = target
        super().__init__(message)


class InvalidTransition(ScrapeStreamError):
    """A stage or state change not permitted by the run's state machine."""


class InvalidControlRequest(ScrapeStreamError):
    """A pause/resume/cancel/skip request that can never apply to the run."""


class UnknownProxy(ScrapeStreamError, KeyError):
    """The pool has no proxy with the requested id."""


class UnknownRun(ScrapeStreamError, KeyError):
    """The orchestrator has no run with the requested id."""


class ProxyParseError(ScrapeStreamError, ValueError):
    """A proxy share link or line could not be parsed."""
