from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from .constants import MAX_PORT, V2RAY_LOCAL_HOST


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class PipelineStage(Enum):
    STARTED = "STARTED"
    API_CALLER_STARTED = "API_CALLER_STARTED"
    API_CALLER_COMPLETE = "API_CALLER_COMPLETE"
    SCRAPER_STARTED = "SCRAPER_STARTED"
    SCRAPER_COMPLETE = "SCRAPER_COMPLETE"
    PARSER_STARTED = "PARSER_STARTED"
    PARSER_COMPLETE = "PARSER_COMPLETE"


class PipelineState(Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    CANCELLED = "CANCELLED"
    SKIPPING = "SKIPPING"  # abandon the current step and continue
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    def is_finished(self) -> bool:
        return self in (PipelineState.COMPLETED, PipelineState.FAILED, PipelineState.CANCELLED)

    def is_active(self) -> bool:
        return self in (PipelineState.RUNNING, PipelineState.PAUSED, PipelineState.SKIPPING)

    def should_stop(self) -> bool:
        return self in (PipelineState.CANCELLED, PipelineState.PAUSED)


class ProxyProtocol(Enum):
    HTTP = "HTTP"
    HTTPS = "HTTPS"
    SOCKS4 = "SOCKS4"
    SOCKS5 = "SOCKS5"
    VLESS = "VLESS"
    VMESS = "VMESS"
    SHADOWSOCKS = "SHADOWSOCKS"
    TROJAN = "TROJAN"

    @property
    def is_v2ray(self) -> bool:
        return self in V2RAY_PROTOCOLS


V2RAY_PROTOCOLS = frozenset(
    {ProxyProtocol.VLESS, ProxyProtocol.VMESS, ProxyProtocol.SHADOWSOCKS, ProxyProtocol.TROJAN}
)


class ProxyStatus(Enum):
    UNTESTED = "UNTESTED"
    HEALTHY = "HEALTHY"
    DEGRADED = "DEGRADED"
    BANNED_TEMP = "BANNED_TEMP"


class AttemptOutcome(Enum):
    SUCCESS = "SUCCESS"
    TIMEOUT = "TIMEOUT"
    NETWORK_ERROR = "NETWORK_ERROR"
    BLOCKED_DOMAIN = "BLOCKED_DOMAIN"
    PROTOCOL_ERROR = "PROTOCOL_ERROR"
    UNEXPECTED = "UNEXPECTED"


@dataclass(frozen=True)
class StandardParams:
    """Connection parameters for HTTP/HTTPS/SOCKS proxies (nothing beyond host/port/auth)."""


@dataclass
class V2RayParams:
    """Connection parameters for the V2Ray protocol family.

    ``local_port`` is the port of the locally running client that multiplexes
    traffic to the remote server; it is assigned by the tunnel collaborator.
    """

    uuid: str = ""
    encryption: str = ""
    transport: str = "tcp"
    security: str = ""
    sni: str = ""
    local_port: Optional[int] = None
    path: str = ""
    ws_host: str = ""
    alpn: str = ""
    fingerprint: str = ""
    public_key: str = ""
    short_id: str = ""
    alter_id: int = 0
    flow: str = ""
    original_link: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uuid": self.uuid,
            "encryption": self.encryption,
            "transport": self.transport,
            "security": self.security,
            "sni": self.sni,
            "local_port": self.local_port,
            "path": self.path,
            "ws_host": self.ws_host,
            "alpn": self.alpn,
            "fingerprint": self.fingerprint,
            "public_key": self.public_key,
            "short_id": self.short_id,
            "alter_id": self.alter_id,
            "flow": self.flow,
            "original_link": self.original_link,
        }


ProtocolParams = Union[StandardParams, V2RayParams]


@dataclass
class ProxyRecord:
    """A network egress point together with its live health metrics.

    Health fields are written by :class:`~scrapestream.proxy_pool.ProxyPool` only.
    """

    protocol: ProxyProtocol
    host: str
    port: int
    username: str = ""
    password: str = ""
    params: ProtocolParams = field(default_factory=StandardParams)
    description: str = ""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    # Health
    status: ProxyStatus = ProxyStatus.UNTESTED
    last_tested_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    success_count: int = 0
    failure_count: int = 0
    avg_response_time_ms: Optional[float] = None
    banned_until: Optional[datetime] = None

    def __post_init__(self) -> None:
        if isinstance(self.protocol, str):
            self.protocol = ProxyProtocol[self.protocol.upper()]
        if isinstance(self.status, str):
            self.status = ProxyStatus[self.status.upper()]
        if not self.host:
            raise ValueError("Proxy host cannot be empty")
        if not (1 <= int(self.port) <= MAX_PORT):
            raise ValueError(f"Proxy port out of range: {self.port}")
        if self.protocol.is_v2ray and not isinstance(self.params, V2RayParams):
            raise ValueError(f"{self.protocol.value} proxy requires V2Ray parameters")
        if not self.protocol.is_v2ray and isinstance(self.params, V2RayParams):
            raise ValueError(f"{self.protocol.value} proxy cannot carry V2Ray parameters")
        if self.success_count < 0 or self.failure_count < 0:
            raise ValueError("Proxy success/failure counts must be non-negative")

    @property
    def is_v2ray(self) -> bool:
        return self.protocol.is_v2ray

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    def to_proxy_url(self) -> str:
        """Return the URL traffic should be sent through.

        V2Ray-family proxies are reached through their local SOCKS5 listener.
        """
        if isinstance(self.params, V2RayParams):
            if self.params.local_port is None:
                raise ValueError(
                    f"V2Ray proxy {self.id} has no local port; start its client before use"
                )
            return f"socks5://{V2RAY_LOCAL_HOST}:{self.params.local_port}"

        auth = ""
        if self.username:
            auth = self.username
            if self.password:
                auth += f":{self.password}"
            auth += "@"
        return f"{self.protocol.value.lower()}://{auth}{self.host}:{self.port}"

    def display_name(self) -> str:
        """Log-friendly description; never raises and never shows credentials."""
        name = f"{self.protocol.value} {self.address}"
        if self.description:
            name += f" ({self.description})"
        return name

    def health_snapshot(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "avg_response_time_ms": self.avg_response_time_ms,
            "last_tested_at": _iso(self.last_tested_at),
            "last_used_at": _iso(self.last_used_at),
        }

    def to_dict(self) -> Dict[str, Any]:
        """Convert the record to a dictionary for JSON serialization."""
        data: Dict[str, Any] = {
            "id": self.id,
            "protocol": self.protocol.value,
            "host": self.host,
            "port": self.port,
            "username": self.username,
            "password": self.password,
            "description": self.description,
            "banned_until": _iso(self.banned_until),
            **self.health_snapshot(),
        }
        if isinstance(self.params, V2RayParams):
            data["v2ray"] = self.params.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProxyRecord":
        def _dt(value: Optional[str]) -> Optional[datetime]:
            return datetime.fromisoformat(value) if value else None

        v2ray = data.get("v2ray")
        params: ProtocolParams = V2RayParams(**v2ray) if v2ray else StandardParams()
        return cls(
            id=data.get("id") or str(uuid.uuid4()),
            protocol=ProxyProtocol[str(data["protocol"]).upper()],
            host=data["host"],
            port=int(data["port"]),
            username=data.get("username") or "",
            password=data.get("password") or "",
            params=params,
            description=data.get("description") or "",
            status=ProxyStatus[data.get("status") or "UNTESTED"],
            last_tested_at=_dt(data.get("last_tested_at")),
            last_used_at=_dt(data.get("last_used_at")),
            success_count=int(data.get("success_count") or 0),
            failure_count=int(data.get("failure_count") or 0),
            avg_response_time_ms=data.get("avg_response_time_ms"),
            banned_until=_dt(data.get("banned_until")),
        )


@dataclass
class SearchQuery:
    """The unit of work: a search sentence and how many links it should yield."""

    sentence: str
    target_link_count: int
    description: str = ""
    link_count: int = 0
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    deleted: bool = False

    def __post_init__(self) -> None:
        if not self.sentence or not self.sentence.strip():
            raise ValueError("Search sentence cannot be blank")
        if self.target_link_count < 1:
            raise ValueError("Target link count must be at least 1")
        if self.link_count < 0:
            raise ValueError("Link count must be non-negative")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sentence": self.sentence,
            "target_link_count": self.target_link_count,
            "link_count": self.link_count,
            "description": self.description,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "deleted": self.deleted,
        }


@dataclass(frozen=True)
class LinkResult:
    link: str
    title: str = ""
    snippet: str = ""


@dataclass(frozen=True)
class ScrapedPage:
    url: str
    html: str
    status: int = 200


@dataclass(frozen=True)
class Attempt:
    """One stage-executor invocation; feeds proxy health and the retry policy."""

    stage: PipelineStage
    proxy_id: Optional[str]
    outcome: AttemptOutcome
    latency_ms: float
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class StageEvent:
    run_id: str
    stage: PipelineStage
    state: PipelineState
    attempt_count: int
    updated_at: datetime = field(default_factory=utcnow)
    cause: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "stage": self.stage.value,
            "state": self.state.value,
            "attempt_count": self.attempt_count,
            "updated_at": self.updated_at.isoformat(),
            "cause": self.cause,
        }


@dataclass
class RunStats:
    links_created: int = 0
    pages_scraped: int = 0
    blocked_urls: int = 0
    errors_count: int = 0
    rounds: int = 0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.start_time is None:
            return None
        end = self.end_time or utcnow()
        return (end - self.start_time).total_seconds()

    def duration_formatted(self) -> str:
        seconds = self.duration_seconds
        if seconds is None:
            return "N/A"
        total = int(seconds)
        hours, remainder = divmod(total, 3600)
        minutes, secs = divmod(remainder, 60)
        if hours > 0:
            return f"{hours}h {minutes}m {secs}s"
        if minutes > 0:
            return f"{minutes}m {secs}s"
        return f"{secs}s"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "links_created": self.links_created,
            "pages_scraped": self.pages_scraped,
            "blocked_urls": self.blocked_urls,
            "errors_count": self.errors_count,
            "rounds": self.rounds,
            "start_time": _iso(self.start_time),
            "end_time": _iso(self.end_time),
            "duration": self.duration_formatted(),
        }


@dataclass
class RunResult:
    run_id: str
    collected_link_count: int
    description: str
    final_state: PipelineState
    cause: Optional[str] = None
    stats: RunStats = field(default_factory=RunStats)
    links: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "collected_link_count": self.collected_link_count,
            "description": self.description,
            "final_state": self.final_state.value,
            "cause": self.cause,
            "stats": self.stats.to_dict(),
        }
