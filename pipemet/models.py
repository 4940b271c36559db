"""Core domain models used by the aggregation engine."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Mapping, Optional, Sequence

LATENCY_STAGES = (
    "lang_detection",
    "nmt",
    "llm",
    "back_nmt",
    "tts",
    "overall",
)
USAGE_DIMENSIONS = ("nmt", "llm", "back_nmt", "tts")
SERVICES = ("nmt", "llm", "tts", "back_nmt")


@dataclass(frozen=True)
class PipelineEvent:
    """A single completed pipeline run with per-stage latency and usage."""

    request_id: str
    customer_name: str
    customer_app: str
    timestamp: datetime
    lang_detection_latency_ms: Optional[float] = None
    nmt_latency_ms: Optional[float] = None
    llm_latency_ms: Optional[float] = None
    back_nmt_latency_ms: Optional[float] = None
    tts_latency_ms: Optional[float] = None
    overall_latency_ms: Optional[float] = None
    nmt_usage: Optional[int] = None
    llm_usage: Optional[int] = None
    back_nmt_usage: Optional[int] = None
    tts_usage: Optional[int] = None
    offset: Optional[int] = None
    raw: Mapping[str, object] = field(default_factory=dict)

    def latency(self, stage: str) -> Optional[float]:
        return getattr(self, f"{stage}_latency_ms")

    def usage(self, dimension: str) -> Optional[int]:
        return getattr(self, f"{dimension}_usage")

    def uses_service(self, service: str) -> bool:
        """True when the stage ran, judged by either latency or usage being reported."""
        return self.latency(service) is not None or self.usage(service) is not None

    @property
    def key(self) -> tuple[str, str]:
        return (self.customer_name, self.customer_app)


@dataclass(frozen=True)
class StageStats:
    """Latency summary for one stage; every statistic is None without samples."""

    count: int = 0
    avg: Optional[float] = None
    p90: Optional[float] = None
    p95: Optional[float] = None
    p99: Optional[float] = None


@dataclass(frozen=True)
class UsageStats:
    count: int = 0
    avg: Optional[float] = None
    total: int = 0


@dataclass(frozen=True)
class CustomerAggregate:
    """Derived latency and usage statistics for one customer application."""

    customer_name: str
    customer_app: str
    request_count: int
    latency: Dict[str, StageStats]
    usage: Dict[str, UsageStats]


@dataclass(frozen=True)
class RequestCounts:
    total_requests: int
    by_service: Dict[str, int]


@dataclass(frozen=True)
class ServiceCounters:
    total: RequestCounts
    by_customer: Dict[str, RequestCounts]


@dataclass(frozen=True)
class DataProcessedTotals:
    totals: Dict[str, int]
    by_customer: Dict[str, Dict[str, int]]


@dataclass(frozen=True)
class Freshness:
    """How much of the event log the derived state reflects.

    ``events_ingested`` and ``events_pending`` are None when the event store
    could not be reached; the aggregates are then served as possibly stale.
    """

    as_of_offset: Optional[int]
    events_ingested: Optional[int]
    events_pending: Optional[int]
    store_available: bool = True

    @property
    def lag(self) -> Optional[int]:
        """Number of stored events not yet reflected in aggregates."""
        if self.events_ingested is None:
            return None
        applied = 0 if self.as_of_offset is None else self.as_of_offset + 1
        return max(self.events_ingested - applied, 0)


@dataclass(frozen=True)
class FeedPage:
    events: Sequence[PipelineEvent]
    next_cursor: Optional[str]
    freshness: Freshness


@dataclass(frozen=True)
class Ack:
    request_id: str
    offset: int
    aggregation_pending: bool = False
