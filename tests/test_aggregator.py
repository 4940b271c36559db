import threading

import pytest

from pipemet.aggregator import Aggregator
from pipemet.errors import AggregationError
from pipemet.normalize import normalize_event

from .conftest import make_payload


def _ingest(store, aggregator, payloads):
    for payload in payloads:
        aggregator.on_event(store.append(normalize_event(payload)))


def test_average_matches_direct_computation(store, aggregator):
    latencies = [120.0, 80.5, 310.25, 95.0, 240.0, 18.0]
    _ingest(store, aggregator, [make_payload(f"r{i}", llmLatency=value) for i, value in enumerate(latencies)])

    state = aggregator.snapshot()[("custA", "app1")]

    assert state.stages["llm"].mean.mean == pytest.approx(sum(latencies) / len(latencies))
    assert aggregator.applied_offset == len(latencies) - 1


def test_recompute_all_reproduces_averages(store, aggregator):
    _ingest(
        store,
        aggregator,
        [
            make_payload("r1", nmtLatency=100, ttsLatency=50, nmtUsage=10),
            make_payload("r2", app="app2", nmtLatency=300, llmUsage=90),
            make_payload("r3", customer="custB", llmLatency=700),
            make_payload("r4", nmtLatency=200, nmtUsage=30),
        ],
    )
    before = {
        key: (
            {stage: s.mean.mean for stage, s in state.stages.items()},
            {dim: (u.mean.mean, u.total) for dim, u in state.usage.items()},
            state.request_count,
        )
        for key, state in aggregator.snapshot().items()
    }

    # A fresh aggregator stands in for a restarted process.
    restarted = Aggregator(reservoir_capacity=1000, seed=99)
    replayed = restarted.recompute_all(store)
    after = {
        key: (
            {stage: s.mean.mean for stage, s in state.stages.items()},
            {dim: (u.mean.mean, u.total) for dim, u in state.usage.items()},
            state.request_count,
        )
        for key, state in restarted.snapshot().items()
    }

    assert replayed == 4
    assert after == before


def test_recompute_all_clears_previous_state(store, aggregator):
    _ingest(store, aggregator, [make_payload("r1", nmtLatency=100)])
    aggregator.on_event(normalize_event(make_payload("ghost", customer="ghost", nmtLatency=1)))

    aggregator.recompute_all(store)

    assert ("ghost", "app1") not in aggregator.snapshot()
    assert ("custA", "app1") in aggregator.snapshot()


def test_unparseable_fields_raise_aggregation_error(store, aggregator):
    stored = store.append(normalize_event(make_payload("r1", nmtLatency="slow")))

    with pytest.raises(AggregationError) as exc_info:
        aggregator.on_event(stored)

    assert exc_info.value.request_id == "r1"
    assert exc_info.value.offset == 0
    assert aggregator.snapshot() == {}


def test_recompute_all_flags_failing_events(store, aggregator):
    store.append(normalize_event(make_payload("r1", nmtLatency=100)))
    store.append(normalize_event(make_payload("r2", nmtLatency="slow")))

    aggregator.recompute_all(store)

    assert store.pending_offsets() == [1]
    assert aggregator.snapshot()[("custA", "app1")].request_count == 1


def test_recompute_all_leaves_unaggregated_events_alone(store, aggregator):
    store.append(normalize_event(make_payload("r1", nmtLatency="slow")))
    store.mark_unaggregated(0)

    aggregator.recompute_all(store)

    assert store.pending_offsets() == []
    assert store.unaggregated_offsets() == [0]


def test_capacity_must_be_positive():
    with pytest.raises(ValueError):
        Aggregator(reservoir_capacity=0)


def test_seeded_aggregators_are_deterministic(store):
    _ingest(store, Aggregator(), [make_payload(f"r{i}", nmtLatency=i) for i in range(200)])

    first = Aggregator(reservoir_capacity=20, seed=3)
    second = Aggregator(reservoir_capacity=20, seed=3)
    first.recompute_all(store)
    second.recompute_all(store)

    key = ("custA", "app1")
    assert first.snapshot()[key].stages["nmt"].reservoir.samples == second.snapshot()[key].stages["nmt"].reservoir.samples


def test_parallel_updates_for_distinct_keys(store):
    aggregator = Aggregator(reservoir_capacity=100, seed=1)
    events = [
        store.append(normalize_event(make_payload(f"{customer}-{i}", customer=customer, nmtLatency=i)))
        for customer in ("c1", "c2", "c3", "c4")
        for i in range(250)
    ]

    def worker(customer):
        for event in events:
            if event.customer_name == customer:
                aggregator.on_event(event)

    threads = [threading.Thread(target=worker, args=(customer,)) for customer in ("c1", "c2", "c3", "c4")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    snapshot = aggregator.snapshot()
    assert len(snapshot) == 4
    for state in snapshot.values():
        assert state.request_count == 250
        assert state.stages["nmt"].mean.mean == pytest.approx(124.5)
    assert aggregator.applied_offset == 999
