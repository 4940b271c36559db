"""PipeMet - latency and usage aggregation for multilingual AI pipelines."""

from .aggregator import Aggregator
from .analytics import (
    apply_event,
    compute_data_processed,
    compute_request_counters,
    percentile,
    summarize,
)
from .errors import (
    AggregationError,
    NotFoundError,
    PipeMetError,
    UpstreamUnavailable,
    ValidationError,
)
from .ingestion import IngestionService
from .models import CustomerAggregate, PipelineEvent, ServiceCounters
from .normalize import normalize_event
from .service import QueryService

__all__ = [
    "Aggregator",
    "IngestionService",
    "QueryService",
    "PipelineEvent",
    "CustomerAggregate",
    "ServiceCounters",
    "normalize_event",
    "apply_event",
    "summarize",
    "percentile",
    "compute_request_counters",
    "compute_data_processed",
    "PipeMetError",
    "ValidationError",
    "AggregationError",
    "NotFoundError",
    "UpstreamUnavailable",
]

__version__ = "0.1.0"
