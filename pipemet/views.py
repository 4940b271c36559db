"""JSON shapes served to the admin dashboard."""

from typing import Dict, Iterable

from .models import (
    Ack,
    CustomerAggregate,
    DataProcessedTotals,
    FeedPage,
    Freshness,
    RequestCounts,
    ServiceCounters,
    StageStats,
)
from .normalize import event_to_dict

_STAGE_KEYS = {
    "lang_detection": "langDetection",
    "nmt": "nmt",
    "llm": "llm",
    "back_nmt": "backNmt",
    "tts": "tts",
    "overall": "overall",
}

# Flat average columns used by the latency tables and charts.
_FLAT_LATENCY_KEYS = {
    "lang_detection": "langdetectionLatency",
    "nmt": "nmtLatency",
    "llm": "llmLatency",
    "back_nmt": "backNmtLatency",
    "tts": "ttsLatency",
    "overall": "overallPipelineLatency",
}

_DATA_PROCESSED_KEYS = {
    "nmt": "NMT_chars",
    "llm": "LLM_tokens",
    "tts": "TTS_chars",
    "back_nmt": "backNMT_chars",
}


def freshness_to_dict(freshness: Freshness) -> Dict:
    return {
        "asOfOffset": freshness.as_of_offset,
        "eventsIngested": freshness.events_ingested,
        "eventsPending": freshness.events_pending,
        "lag": freshness.lag,
        "storeAvailable": freshness.store_available,
    }


def stage_stats_to_dict(stats: StageStats) -> Dict:
    return {
        "count": stats.count,
        "avg": stats.avg,
        "p90": stats.p90,
        "p95": stats.p95,
        "p99": stats.p99,
    }


def aggregate_to_dict(aggregate: CustomerAggregate) -> Dict:
    """One aggregate row; stages without samples stay null, never zero."""
    row = {
        "customerApp": aggregate.customer_app,
        "requestCount": aggregate.request_count,
        "latency": {
            _STAGE_KEYS[stage]: stage_stats_to_dict(stats)
            for stage, stats in aggregate.latency.items()
        },
        "usage": {
            _STAGE_KEYS[dimension]: {"count": stats.count, "avg": stats.avg, "total": stats.total}
            for dimension, stats in aggregate.usage.items()
        },
    }
    for stage, key in _FLAT_LATENCY_KEYS.items():
        row[key] = aggregate.latency[stage].avg
    for dimension, stats in aggregate.usage.items():
        row[f"{_STAGE_KEYS[dimension]}Usage"] = stats.avg
    return row


def customer_aggregates_to_dict(
    customer_name: str,
    aggregates: Iterable[CustomerAggregate],
    freshness: Freshness,
) -> Dict:
    return {
        "customerName": customer_name,
        "aggregates": [aggregate_to_dict(aggregate) for aggregate in aggregates],
        "freshness": freshness_to_dict(freshness),
    }


def _request_counts_to_dict(counts: RequestCounts) -> Dict:
    return {
        "totalRequests": counts.total_requests,
        "requestsByService": {
            _STAGE_KEYS[service]: count for service, count in counts.by_service.items()
        },
    }


def request_counters_to_dict(counters: ServiceCounters, freshness: Freshness) -> Dict:
    body = _request_counts_to_dict(counters.total)
    body["requestsByCustomer"] = {
        customer: _request_counts_to_dict(counts)
        for customer, counts in counters.by_customer.items()
    }
    body["freshness"] = freshness_to_dict(freshness)
    return body


def data_processed_to_dict(totals: DataProcessedTotals, freshness: Freshness) -> Dict:
    return {
        "totals": {_DATA_PROCESSED_KEYS[key]: value for key, value in totals.totals.items()},
        "byCustomer": {
            customer: {_DATA_PROCESSED_KEYS[key]: value for key, value in values.items()}
            for customer, values in totals.by_customer.items()
        },
        "freshness": freshness_to_dict(freshness),
    }


def feed_page_to_dict(page: FeedPage) -> Dict:
    return {
        "events": [event_to_dict(event) for event in page.events],
        "nextCursor": page.next_cursor,
        "freshness": freshness_to_dict(page.freshness),
    }


def ack_to_dict(ack: Ack) -> Dict:
    return {
        "requestId": ack.request_id,
        "offset": ack.offset,
        "aggregationPending": ack.aggregation_pending,
    }
