from datetime import datetime, timedelta, timezone

import pytest

from pipemet.adapters import InMemoryEventStore
from pipemet.aggregator import Aggregator
from pipemet.ingestion import IngestionService
from pipemet.service import QueryService

BASE_TIME = datetime(2026, 1, 8, 12, 0, tzinfo=timezone.utc)


def make_payload(request_id, customer="custA", app="app1", minutes=0, **fields):
    payload = {
        "requestId": request_id,
        "customerName": customer,
        "customerApp": app,
        "timestamp": (BASE_TIME + timedelta(minutes=minutes)).isoformat(),
    }
    payload.update(fields)
    return payload


@pytest.fixture
def store():
    return InMemoryEventStore()


@pytest.fixture
def aggregator():
    return Aggregator(reservoir_capacity=1000, seed=7)


@pytest.fixture
def ingestion(store, aggregator):
    return IngestionService(store, aggregator, max_retries=2)


@pytest.fixture
def queries(store, aggregator):
    return QueryService(store, aggregator, feed_page_size=2, feed_max_page_size=10)
