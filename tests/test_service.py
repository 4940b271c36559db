import pytest

from pipemet.errors import NotFoundError, UpstreamUnavailable, ValidationError
from pipemet.service import QueryService, decode_cursor, encode_cursor

from .conftest import make_payload


class UnavailableStore:
    """Store double whose backing storage is down."""

    def __getattr__(self, name):
        def fail(*args, **kwargs):
            raise UpstreamUnavailable("event store unavailable")

        return fail


def _seed(ingestion):
    ingestion.submit(make_payload("a1", nmtLatency="100ms", ttsLatency=40, nmtUsage=10, ttsUsage=5))
    ingestion.submit(make_payload("a2", nmtLatency="200ms", llmLatency=900, llmUsage=300))
    ingestion.submit(make_payload("a3", nmtLatency="300ms", backNmtLatency=70, backNmtUsage=12))
    ingestion.submit(make_payload("a4", app="app2", nmtLatency=50, nmtUsage=7))
    ingestion.submit(make_payload("b1", customer="custB", nmtLatency=80, ttsLatency="none", nmtUsage=20))


def test_customer_aggregate_one_row_per_app(ingestion, queries):
    _seed(ingestion)

    rows = queries.get_customer_aggregate("custA")

    assert [row.customer_app for row in rows] == ["app1", "app2"]
    nmt = rows[0].latency["nmt"]
    assert nmt.avg == 200
    assert nmt.p90 == nmt.p95 == nmt.p99 == 300
    assert rows[0].request_count == 3
    assert rows[1].latency["nmt"].avg == 50


def test_customer_aggregate_is_idempotent(ingestion, queries):
    _seed(ingestion)

    assert queries.get_customer_aggregate("custA") == queries.get_customer_aggregate("custA")


def test_unknown_customer_is_not_found(ingestion, queries):
    _seed(ingestion)

    with pytest.raises(NotFoundError):
        queries.get_customer_aggregate("nobody")


def test_customer_with_only_pending_events_returns_no_rows(ingestion, queries):
    ingestion.submit(make_payload("c1", customer="custC", nmtLatency="broken"))

    assert queries.get_customer_aggregate("custC") == []


def test_absent_tts_totals_zero_but_aggregate_null(ingestion, queries):
    _seed(ingestion)

    totals = queries.get_data_processed_totals()
    [row] = queries.get_customer_aggregate("custB")

    assert totals.by_customer["custB"]["tts"] == 0
    assert row.latency["tts"].avg is None
    assert row.latency["tts"].p99 is None


def test_data_processed_matches_aggregates(ingestion, queries):
    _seed(ingestion)

    totals = queries.get_data_processed_totals()

    assert totals.totals == {"nmt": 37, "llm": 300, "back_nmt": 12, "tts": 5}
    assert totals.by_customer["custA"] == {"nmt": 17, "llm": 300, "back_nmt": 12, "tts": 5}


def test_request_counters(ingestion, queries):
    _seed(ingestion)

    counters = queries.get_request_counters()

    assert counters.total.total_requests == 5
    assert counters.total.by_service == {"nmt": 5, "llm": 1, "tts": 1, "back_nmt": 1}
    assert counters.by_customer["custB"].total_requests == 1
    assert counters.by_customer["custB"].by_service["tts"] == 0


def test_global_feed_pages_newest_first(ingestion, queries):
    _seed(ingestion)

    first = queries.get_global_feed()
    second = queries.get_global_feed(cursor=first.next_cursor)
    third = queries.get_global_feed(cursor=second.next_cursor)

    assert [event.request_id for event in first.events] == ["b1", "a4"]
    assert [event.request_id for event in second.events] == ["a3", "a2"]
    assert [event.request_id for event in third.events] == ["a1"]
    assert third.next_cursor is None
    assert first.freshness.events_ingested == 5
    assert first.freshness.as_of_offset == 4
    assert first.freshness.lag == 0


def test_global_feed_exact_page_has_no_cursor(ingestion, queries):
    ingestion.submit(make_payload("a1", nmtLatency=1))
    ingestion.submit(make_payload("a2", nmtLatency=2))

    page = queries.get_global_feed(limit=2)

    assert len(page.events) == 2
    assert page.next_cursor is None


def test_global_feed_rejects_bad_limit_and_cursor(queries):
    with pytest.raises(ValidationError):
        queries.get_global_feed(limit=0)
    with pytest.raises(ValidationError):
        queries.get_global_feed(limit=11)
    with pytest.raises(ValidationError):
        queries.get_global_feed(cursor="not-a-cursor!!")


def test_cursor_round_trip():
    assert decode_cursor(encode_cursor(42)) == 42


def test_customer_feed_filters_by_app(ingestion, queries):
    _seed(ingestion)

    events = queries.get_customer_feed("custA", "app1")

    assert [event.request_id for event in events] == ["a3", "a2", "a1"]
    with pytest.raises(NotFoundError):
        queries.get_customer_feed("custA", "nope")


def test_list_customers(ingestion, queries):
    _seed(ingestion)

    assert queries.list_customers() == {"custA": ["app1", "app2"], "custB": ["app1"]}


def test_store_outage_is_signalled_not_hidden(ingestion, aggregator):
    _seed(ingestion)
    queries = QueryService(UnavailableStore(), aggregator)

    freshness = queries.freshness()
    assert freshness.store_available is False
    assert freshness.events_ingested is None
    # Aggregates are still served from derived state.
    assert queries.get_request_counters().total.total_requests == 5
    with pytest.raises(UpstreamUnavailable):
        queries.get_global_feed()
