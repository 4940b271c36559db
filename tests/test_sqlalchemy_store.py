from dataclasses import replace
from datetime import timezone

import pytest
from sqlalchemy import create_engine

from pipemet.adapters import SQLAlchemyEventStore
from pipemet.aggregator import Aggregator
from pipemet.errors import NotFoundError, UpstreamUnavailable, ValidationError
from pipemet.ingestion import IngestionService
from pipemet.normalize import normalize_event
from pipemet.service import QueryService

from .conftest import make_payload


@pytest.fixture
def sql_store(tmp_path):
    return SQLAlchemyEventStore.from_url(f"sqlite:///{tmp_path / 'events.db'}", scan_batch_size=2)


def test_append_assigns_sequential_offsets(sql_store):
    first = sql_store.append(normalize_event(make_payload("r1", nmtLatency=10)))
    second = sql_store.append(normalize_event(make_payload("r1", nmtLatency=20)))

    assert (first.offset, second.offset) == (0, 1)
    assert sql_store.count() == 2


def test_round_trip_preserves_fields(sql_store):
    stored = sql_store.append(
        normalize_event(
            make_payload(
                "r1",
                langdetectionLatency="12ms",
                nmtLatency=0,
                ttsLatency="none",
                nmtUsage=40,
                llmUsage="oops",
            )
        )
    )

    loaded = sql_store.get(stored.offset)

    assert loaded.request_id == "r1"
    assert loaded.lang_detection_latency_ms == 12.0
    assert loaded.nmt_latency_ms == 0.0
    assert loaded.tts_latency_ms is None
    assert loaded.nmt_usage == 40
    assert loaded.raw == {"llm_usage": "oops"}
    assert loaded.timestamp == stored.timestamp
    assert loaded.timestamp.tzinfo is not None
    assert loaded.timestamp.utcoffset() == timezone.utc.utcoffset(None)


def test_scan_is_ordered_and_restartable(sql_store):
    for i in range(5):
        sql_store.append(normalize_event(make_payload(f"r{i}", nmtLatency=i)))

    assert [event.request_id for event in sql_store.scan()] == ["r0", "r1", "r2", "r3", "r4"]
    assert [event.request_id for event in sql_store.scan()] == ["r0", "r1", "r2", "r3", "r4"]
    assert [event.request_id for event in sql_store.scan(start_offset=3)] == ["r3", "r4"]
    assert [event.offset for event in sql_store.scan_reverse(before_offset=3)] == [2, 1, 0]


def test_get_by_customer(sql_store):
    sql_store.append(normalize_event(make_payload("a1", nmtLatency=1)))
    sql_store.append(normalize_event(make_payload("b1", customer="custB", nmtLatency=1)))
    sql_store.append(normalize_event(make_payload("a2", app="app2", nmtLatency=1)))

    assert [e.request_id for e in sql_store.get_by_customer("custA")] == ["a1", "a2"]
    assert [e.request_id for e in sql_store.get_by_customer("custA", "app2")] == ["a2"]
    assert sql_store.get_by_customer("nobody") == []


def test_pending_flags(sql_store):
    for i in range(3):
        sql_store.append(normalize_event(make_payload(f"r{i}", nmtLatency=i)))

    sql_store.mark_aggregation_pending(2)
    sql_store.mark_aggregation_pending(0)
    assert sql_store.pending_offsets() == [0, 2]

    sql_store.clear_aggregation_pending(0)
    assert sql_store.pending_offsets() == [2]


def test_attempts_and_unaggregated_state(sql_store):
    sql_store.append(normalize_event(make_payload("r1", nmtLatency="slow")))
    sql_store.mark_aggregation_pending(0)

    assert sql_store.aggregation_attempts(0) == 0
    assert sql_store.record_aggregation_attempt(0) == 1
    assert sql_store.record_aggregation_attempt(0) == 2

    sql_store.mark_unaggregated(0)
    assert sql_store.pending_offsets() == []
    assert sql_store.unaggregated_offsets() == [0]
    assert sql_store.aggregation_attempts(0) == 2

    sql_store.clear_aggregation_pending(0)
    assert sql_store.unaggregated_offsets() == []
    assert sql_store.aggregation_attempts(0) == 0

    with pytest.raises(NotFoundError):
        sql_store.record_aggregation_attempt(99)


def test_retry_bound_holds_across_restarts(tmp_path):
    url = f"sqlite:///{tmp_path / 'events.db'}"
    store = SQLAlchemyEventStore.from_url(url)
    IngestionService(store, Aggregator(seed=1), max_retries=1).submit(
        make_payload("r1", nmtLatency="garbage")
    )

    results = []
    for _ in range(3):
        reopened = SQLAlchemyEventStore.from_url(url)
        aggregator = Aggregator(seed=1)
        aggregator.recompute_all(reopened)
        results.append(IngestionService(reopened, aggregator, max_retries=1).retry_pending())

    assert results == [
        {"retried": 1, "recovered": 0, "abandoned": 0},
        {"retried": 0, "recovered": 0, "abandoned": 1},
        {"retried": 0, "recovered": 0, "abandoned": 0},
    ]
    final = SQLAlchemyEventStore.from_url(url)
    assert final.unaggregated_offsets() == [0]
    assert final.pending_offsets() == []


def test_missing_offset_is_not_found(sql_store):
    with pytest.raises(NotFoundError):
        sql_store.get(99)


def test_append_requires_identity(sql_store):
    event = normalize_event(make_payload("r1"))
    with pytest.raises(ValidationError):
        sql_store.append(replace(event, customer_app=""))


def test_restart_rebuilds_aggregates_from_database(tmp_path):
    url = f"sqlite:///{tmp_path / 'events.db'}"
    store = SQLAlchemyEventStore.from_url(url)
    ingestion = IngestionService(store, Aggregator(seed=1))
    for i, latency in enumerate((100, 200, 300)):
        ingestion.submit(make_payload(f"r{i}", nmtLatency=latency, nmtUsage=10))

    reopened = SQLAlchemyEventStore.from_url(url)
    aggregator = Aggregator(seed=2)
    aggregator.recompute_all(reopened)
    [row] = QueryService(reopened, aggregator).get_customer_aggregate("custA")

    assert row.latency["nmt"].avg == 200
    assert row.latency["nmt"].p99 == 300
    assert row.usage["nmt"].total == 30


def test_database_errors_become_upstream_unavailable(tmp_path):
    store = SQLAlchemyEventStore(create_engine(f"sqlite:///{tmp_path / 'empty.db'}"))

    with pytest.raises(UpstreamUnavailable):
        store.count()
