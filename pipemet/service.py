"""Read-side service answering dashboard queries, independent of web frameworks."""

import base64
import binascii
from itertools import islice
from typing import Dict, List, Optional

import structlog

from .aggregator import Aggregator
from .analytics import compute_data_processed, compute_request_counters, summarize
from .errors import NotFoundError, UpstreamUnavailable, ValidationError
from .models import (
    CustomerAggregate,
    DataProcessedTotals,
    FeedPage,
    Freshness,
    PipelineEvent,
    ServiceCounters,
)
from .ports import EventStore

logger = structlog.get_logger(__name__)

_CURSOR_PREFIX = "before:"


class QueryService:
    """Facade over the event store and the aggregator; never mutates either.

    Aggregates come from the aggregator's in-memory state and may trail the
    event log by whatever is still pending. ``freshness()`` reports how far
    behind they are so callers can show it.
    """

    def __init__(
        self,
        store: EventStore,
        aggregator: Aggregator,
        feed_page_size: int = 50,
        feed_max_page_size: int = 500,
    ):
        self.store = store
        self.aggregator = aggregator
        self.feed_page_size = feed_page_size
        self.feed_max_page_size = feed_max_page_size

    def get_global_feed(self, limit: Optional[int] = None, cursor: Optional[str] = None) -> FeedPage:
        """Return one page of raw events, newest first."""
        if limit is None:
            limit = self.feed_page_size
        if limit < 1 or limit > self.feed_max_page_size:
            raise ValidationError(
                f"limit must be between 1 and {self.feed_max_page_size}",
                details={"limit": limit},
            )
        before = decode_cursor(cursor) if cursor else None

        window = list(islice(self.store.scan_reverse(before), limit + 1))
        events = window[:limit]
        next_cursor = None
        if len(window) > limit and events:
            next_cursor = encode_cursor(events[-1].offset)
        return FeedPage(events=events, next_cursor=next_cursor, freshness=self.freshness())

    def get_customer_aggregate(self, customer_name: str) -> List[CustomerAggregate]:
        """Return one aggregate row per application of ``customer_name``."""
        states = self.aggregator.states_for_customer(customer_name)
        if not states:
            if not self.store.get_by_customer(customer_name):
                raise NotFoundError(
                    f"no events for customer {customer_name!r}",
                    details={"customer_name": customer_name},
                )
            # Events exist but none has been aggregated yet.
            logger.info("query.customer_pending_aggregation", customer_name=customer_name)
            return []
        return [summarize(state) for state in states]

    def get_request_counters(self) -> ServiceCounters:
        return compute_request_counters(self.aggregator.states())

    def get_data_processed_totals(self) -> DataProcessedTotals:
        return compute_data_processed(summarize(state) for state in self.aggregator.states())

    def list_customers(self) -> Dict[str, List[str]]:
        """Map each customer with aggregated events to its application names."""
        customers: Dict[str, List[str]] = {}
        for customer_name, customer_app in sorted(self.aggregator.snapshot()):
            customers.setdefault(customer_name, []).append(customer_app)
        return customers

    def get_customer_feed(
        self,
        customer_name: str,
        customer_app: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[PipelineEvent]:
        """Return one customer's raw events, newest first."""
        events = list(reversed(self.store.get_by_customer(customer_name, customer_app)))
        if not events:
            raise NotFoundError(
                f"no events for customer {customer_name!r}",
                details={"customer_name": customer_name, "customer_app": customer_app},
            )
        if limit is not None:
            events = events[:limit]
        return events

    def freshness(self) -> Freshness:
        as_of_offset = self.aggregator.applied_offset
        try:
            ingested = self.store.count()
            pending = len(self.store.pending_offsets())
        except UpstreamUnavailable as exc:
            logger.warning("query.store_unavailable", error=exc.message)
            return Freshness(
                as_of_offset=as_of_offset,
                events_ingested=None,
                events_pending=None,
                store_available=False,
            )
        return Freshness(
            as_of_offset=as_of_offset,
            events_ingested=ingested,
            events_pending=pending,
        )


def encode_cursor(offset: int) -> str:
    token = f"{_CURSOR_PREFIX}{offset}".encode("ascii")
    return base64.urlsafe_b64encode(token).decode("ascii").rstrip("=")


def decode_cursor(cursor: str) -> int:
    try:
        padded = cursor + "=" * (-len(cursor) % 4)
        decoded = base64.urlsafe_b64decode(padded.encode("ascii")).decode("ascii")
    except (binascii.Error, UnicodeError, ValueError) as exc:
        raise ValidationError("malformed cursor", details={"cursor": cursor}) from exc

    if not decoded.startswith(_CURSOR_PREFIX):
        raise ValidationError("malformed cursor", details={"cursor": cursor})
    try:
        offset = int(decoded[len(_CURSOR_PREFIX):])
    except ValueError as exc:
        raise ValidationError("malformed cursor", details={"cursor": cursor}) from exc
    if offset < 0:
        raise ValidationError("malformed cursor", details={"cursor": cursor})
    return offset
