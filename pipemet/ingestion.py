"""Ingestion boundary between pipeline producers and the event store."""

import threading
from typing import Any, Dict, Mapping, Set, Union

import structlog

from .aggregator import Aggregator
from .errors import AggregationError, NotFoundError, UpstreamUnavailable
from .models import Ack, PipelineEvent
from .normalize import normalize_event
from .ports import EventStore

logger = structlog.get_logger(__name__)


class IngestionService:
    """Accepts completed pipeline runs and keeps aggregates current.

    The append is the durability boundary: ``submit`` acknowledges as soon
    as the store has the event, whether or not aggregation succeeded.
    Events that fail to aggregate are flagged pending and retried by
    ``retry_pending``. Failed retries are counted in the store, so the
    bound holds across restarts; after ``max_retries`` the event is marked
    unaggregated and left alone.
    """

    def __init__(self, store: EventStore, aggregator: Aggregator, max_retries: int = 3):
        self.store = store
        self.aggregator = aggregator
        self.max_retries = max_retries
        self._unflagged: Set[int] = set()
        self._lock = threading.Lock()

    def submit(self, payload: Union[Mapping[str, Any], PipelineEvent]) -> Ack:
        """Store one event and aggregate it.

        Raises:
            ValidationError: the payload could not be normalized; nothing stored.
            UpstreamUnavailable: the store could not be reached; nothing stored.
        """
        event = normalize_event(payload)
        stored = self.store.append(event)

        try:
            self.aggregator.on_event(stored)
        except AggregationError as exc:
            logger.warning("ingestion.aggregation_failed", **exc.to_dict())
            self._flag_pending(stored.offset)
            return Ack(request_id=stored.request_id, offset=stored.offset, aggregation_pending=True)

        logger.debug(
            "ingestion.accepted",
            request_id=stored.request_id,
            offset=stored.offset,
            customer_name=stored.customer_name,
            customer_app=stored.customer_app,
        )
        return Ack(request_id=stored.request_id, offset=stored.offset)

    def retry_pending(self) -> Dict[str, int]:
        """Retry aggregation of flagged events once; return sweep statistics."""
        with self._lock:
            unflagged = set(self._unflagged)
        offsets = sorted(
            (set(self.store.pending_offsets()) | unflagged) - set(self.store.unaggregated_offsets())
        )

        stats = {"retried": 0, "recovered": 0, "abandoned": 0}
        for offset in offsets:
            try:
                retries = self.store.aggregation_attempts(offset)
                event = self.store.get(offset)
            except NotFoundError:
                logger.error("aggregation.pending_event_missing", offset=offset)
                self._forget(offset)
                continue

            if retries >= self.max_retries:
                self._abandon(offset, retries)
                stats["abandoned"] += 1
                continue

            stats["retried"] += 1
            try:
                self.aggregator.on_event(event)
            except AggregationError as exc:
                attempt = self.store.record_aggregation_attempt(offset)
                logger.info("aggregation.retry_failed", attempt=attempt, **exc.to_dict())
                continue

            self._forget(offset)
            stats["recovered"] += 1
            logger.info("aggregation.recovered", offset=offset, request_id=event.request_id)

        return stats

    def run_sweeper(self, interval: float, stop_event: threading.Event) -> None:
        """Run ``retry_pending`` every ``interval`` seconds until ``stop_event`` is set."""
        while not stop_event.wait(interval):
            try:
                stats = self.retry_pending()
            except UpstreamUnavailable as exc:
                logger.warning("aggregation.sweep_skipped", error=exc.message)
                continue
            if any(stats.values()):
                logger.info("aggregation.sweep_completed", **stats)

    def start_sweeper(self, interval: float) -> threading.Event:
        """Start the sweep loop on a daemon thread; set the returned event to stop it."""
        stop_event = threading.Event()
        thread = threading.Thread(
            target=self.run_sweeper,
            args=(interval, stop_event),
            name="pipemet-aggregation-sweeper",
            daemon=True,
        )
        thread.start()
        return stop_event

    @property
    def unaggregated(self) -> Set[int]:
        return set(self.store.unaggregated_offsets())

    def _flag_pending(self, offset: int) -> None:
        try:
            self.store.mark_aggregation_pending(offset)
        except UpstreamUnavailable as exc:
            # Stored but unflagged; the sweep still picks it up from memory.
            logger.error("aggregation.flag_failed", offset=offset, error=exc.message)
            with self._lock:
                self._unflagged.add(offset)

    def _abandon(self, offset: int, retries: int) -> None:
        logger.error("aggregation.unaggregated", offset=offset, retries=retries)
        self.store.mark_unaggregated(offset)
        with self._lock:
            self._unflagged.discard(offset)

    def _forget(self, offset: int) -> None:
        self.store.clear_aggregation_pending(offset)
        with self._lock:
            self._unflagged.discard(offset)
