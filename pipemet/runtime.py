"""Wiring of store, aggregator and services from settings."""

from dataclasses import dataclass
from typing import Optional

import structlog

from .adapters import InMemoryEventStore, SQLAlchemyEventStore
from .aggregator import Aggregator
from .config import Settings
from .ingestion import IngestionService
from .ports import EventStore
from .service import QueryService

logger = structlog.get_logger(__name__)


@dataclass
class Runtime:
    settings: Settings
    store: EventStore
    aggregator: Aggregator
    ingestion: IngestionService
    queries: QueryService

    def recover(self) -> int:
        """Rebuild derived state from the event log."""
        return self.aggregator.recompute_all(self.store)


def build_runtime(settings: Optional[Settings] = None, store: Optional[EventStore] = None) -> Runtime:
    settings = settings or Settings()
    if store is None:
        if settings.database_url:
            store = SQLAlchemyEventStore.from_url(settings.database_url)
        else:
            store = InMemoryEventStore()
    logger.info(
        "runtime.built",
        store=type(store).__name__,
        reservoir_capacity=settings.reservoir_capacity,
    )

    aggregator = Aggregator(
        reservoir_capacity=settings.reservoir_capacity,
        seed=settings.random_seed,
    )
    return Runtime(
        settings=settings,
        store=store,
        aggregator=aggregator,
        ingestion=IngestionService(
            store,
            aggregator,
            max_retries=settings.max_aggregation_retries,
        ),
        queries=QueryService(
            store,
            aggregator,
            feed_page_size=settings.feed_page_size,
            feed_max_page_size=settings.feed_max_page_size,
        ),
    )
