"""Pure aggregation functions: streaming means, reservoir percentiles and counters.

State transitions here never mutate their inputs. ``apply_event`` takes the
prior state of one customer application and an event and returns the next
state, so the math can be tested without a store or locks.

Percentiles are approximate: each ``(customer, app, stage)`` keeps a bounded
reservoir sample (Algorithm R) and reports nearest-rank order statistics over
it. Below capacity the reservoir holds every sample and the percentiles are
exact.
"""

from dataclasses import dataclass, field, replace
from random import Random
from typing import Dict, Iterable, Mapping, Optional, Sequence

from .models import (
    LATENCY_STAGES,
    SERVICES,
    USAGE_DIMENSIONS,
    CustomerAggregate,
    DataProcessedTotals,
    PipelineEvent,
    RequestCounts,
    ServiceCounters,
    StageStats,
    UsageStats,
)

PERCENTILE_POINTS = (90, 95, 99)


@dataclass(frozen=True)
class RunningMean:
    """Welford running mean: ``avg_n = avg_{n-1} + (x_n - avg_{n-1}) / n``."""

    count: int = 0
    mean: Optional[float] = None

    def add(self, value: float) -> "RunningMean":
        count = self.count + 1
        if self.mean is None:
            return RunningMean(count=count, mean=float(value))
        return RunningMean(count=count, mean=self.mean + (value - self.mean) / count)


@dataclass(frozen=True)
class Reservoir:
    """Fixed-capacity uniform sample of an unbounded stream."""

    capacity: int
    seen: int = 0
    samples: tuple = ()

    def add(self, value: float, rng: Random) -> "Reservoir":
        seen = self.seen + 1
        if len(self.samples) < self.capacity:
            return Reservoir(self.capacity, seen, self.samples + (value,))

        # Keep the new sample with probability capacity / seen.
        slot = rng.randrange(seen)
        if slot >= self.capacity:
            return Reservoir(self.capacity, seen, self.samples)
        samples = list(self.samples)
        samples[slot] = value
        return Reservoir(self.capacity, seen, tuple(samples))


@dataclass(frozen=True)
class StageState:
    mean: RunningMean
    reservoir: Reservoir


@dataclass(frozen=True)
class UsageState:
    mean: RunningMean = field(default_factory=RunningMean)
    total: int = 0


@dataclass(frozen=True)
class AppState:
    """Derived state for one ``(customer_name, customer_app)`` key."""

    customer_name: str
    customer_app: str
    capacity: int
    request_count: int = 0
    last_offset: Optional[int] = None
    stages: Mapping[str, StageState] = field(default_factory=dict)
    usage: Mapping[str, UsageState] = field(default_factory=dict)
    service_requests: Mapping[str, int] = field(default_factory=dict)


def empty_state(customer_name: str, customer_app: str, capacity: int) -> AppState:
    """Return the state of a key that has seen no events."""
    return AppState(
        customer_name=customer_name,
        customer_app=customer_app,
        capacity=capacity,
        stages={
            stage: StageState(mean=RunningMean(), reservoir=Reservoir(capacity))
            for stage in LATENCY_STAGES
        },
        usage={dimension: UsageState() for dimension in USAGE_DIMENSIONS},
        service_requests={service: 0 for service in SERVICES},
    )


def apply_event(state: AppState, event: PipelineEvent, rng: Random) -> AppState:
    """Fold one event into ``state`` and return the new state."""
    if event.key != (state.customer_name, state.customer_app):
        raise ValueError(
            f"event for {event.key} applied to state for "
            f"{(state.customer_name, state.customer_app)}"
        )

    stages = dict(state.stages)
    for stage in LATENCY_STAGES:
        value = event.latency(stage)
        if value is None:
            continue
        current = stages[stage]
        stages[stage] = StageState(
            mean=current.mean.add(value),
            reservoir=current.reservoir.add(value, rng),
        )

    usage = dict(state.usage)
    for dimension in USAGE_DIMENSIONS:
        value = event.usage(dimension)
        if value is None:
            continue
        current = usage[dimension]
        usage[dimension] = UsageState(mean=current.mean.add(value), total=current.total + value)

    service_requests = dict(state.service_requests)
    for service in SERVICES:
        if event.uses_service(service):
            service_requests[service] += 1

    return replace(
        state,
        request_count=state.request_count + 1,
        last_offset=event.offset if event.offset is not None else state.last_offset,
        stages=stages,
        usage=usage,
        service_requests=service_requests,
    )


def percentile(sorted_values: Sequence[float], point: int) -> Optional[float]:
    """Nearest-rank percentile: the order statistic at ``ceil(p * size) - 1``."""
    if not sorted_values:
        return None
    size = len(sorted_values)
    rank = -(-point * size // 100)
    index = min(max(rank - 1, 0), size - 1)
    return sorted_values[index]


def summarize_stage(stage: StageState) -> StageStats:
    if stage.mean.count == 0:
        return StageStats()
    ordered = sorted(stage.reservoir.samples)
    p90, p95, p99 = (percentile(ordered, point) for point in PERCENTILE_POINTS)
    return StageStats(count=stage.mean.count, avg=stage.mean.mean, p90=p90, p95=p95, p99=p99)


def summarize(state: AppState) -> CustomerAggregate:
    """Build the read-side aggregate for one customer application."""
    return CustomerAggregate(
        customer_name=state.customer_name,
        customer_app=state.customer_app,
        request_count=state.request_count,
        latency={stage: summarize_stage(state.stages[stage]) for stage in LATENCY_STAGES},
        usage={
            dimension: UsageStats(
                count=state.usage[dimension].mean.count,
                avg=state.usage[dimension].mean.mean,
                total=state.usage[dimension].total,
            )
            for dimension in USAGE_DIMENSIONS
        },
    )


def compute_request_counters(states: Iterable[AppState]) -> ServiceCounters:
    """Request counts partitioned by service, globally and per customer."""
    total_requests = 0
    total_by_service = {service: 0 for service in SERVICES}
    by_customer: Dict[str, Dict] = {}

    for state in states:
        total_requests += state.request_count
        customer = by_customer.setdefault(
            state.customer_name,
            {"total": 0, "by_service": {service: 0 for service in SERVICES}},
        )
        customer["total"] += state.request_count
        for service in SERVICES:
            count = state.service_requests.get(service, 0)
            total_by_service[service] += count
            customer["by_service"][service] += count

    return ServiceCounters(
        total=RequestCounts(total_requests=total_requests, by_service=total_by_service),
        by_customer={
            name: RequestCounts(total_requests=data["total"], by_service=data["by_service"])
            for name, data in sorted(by_customer.items())
        },
    )


def compute_data_processed(aggregates: Iterable[CustomerAggregate]) -> DataProcessedTotals:
    """Sum usage totals from aggregates so both views always agree."""
    totals = {dimension: 0 for dimension in USAGE_DIMENSIONS}
    by_customer: Dict[str, Dict[str, int]] = {}

    for aggregate in aggregates:
        customer = by_customer.setdefault(
            aggregate.customer_name, {dimension: 0 for dimension in USAGE_DIMENSIONS}
        )
        for dimension in USAGE_DIMENSIONS:
            amount = aggregate.usage[dimension].total
            totals[dimension] += amount
            customer[dimension] += amount

    return DataProcessedTotals(totals=totals, by_customer=dict(sorted(by_customer.items())))

