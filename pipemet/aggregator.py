"""Stateful shell around the pure aggregation functions."""

import threading
from random import Random
from typing import Dict, List, Optional, Tuple

import structlog

from .analytics import AppState, apply_event, empty_state
from .errors import AggregationError
from .models import PipelineEvent
from .ports import EventStore

logger = structlog.get_logger(__name__)

Key = Tuple[str, str]


class Aggregator:
    """Keeps one ``AppState`` per ``(customer_name, customer_app)``.

    Updates for one key are serialized by that key's lock; different keys
    proceed in parallel. The registry lock only guards creation of new keys.
    Readers get a snapshot of the state references, which are immutable.
    """

    def __init__(self, reservoir_capacity: int = 1000, seed: Optional[int] = None):
        if reservoir_capacity < 1:
            raise ValueError("reservoir_capacity must be at least 1")
        self.reservoir_capacity = reservoir_capacity
        self.seed = seed
        self._states: Dict[Key, AppState] = {}
        self._locks: Dict[Key, threading.Lock] = {}
        self._rngs: Dict[Key, Random] = {}
        self._registry_lock = threading.Lock()
        self._applied_offset: Optional[int] = None

    def on_event(self, event: PipelineEvent) -> AppState:
        """Fold ``event`` into its key's state.

        Raises:
            AggregationError: the event carries numeric fields that did not parse.
        """
        if event.raw:
            raise AggregationError(
                f"unparseable numeric fields: {', '.join(sorted(event.raw))}",
                request_id=event.request_id,
                offset=event.offset,
                details={"fields": dict(event.raw)},
            )

        lock, rng = self._key_resources(event.key)
        with lock:
            prior = self._states.get(event.key) or empty_state(
                event.customer_name, event.customer_app, self.reservoir_capacity
            )
            try:
                state = apply_event(prior, event, rng)
            except (TypeError, ValueError, ArithmeticError) as exc:
                raise AggregationError(
                    f"could not aggregate event: {exc}",
                    request_id=event.request_id,
                    offset=event.offset,
                ) from exc
            with self._registry_lock:
                self._states[event.key] = state
                if event.offset is not None and (
                    self._applied_offset is None or event.offset > self._applied_offset
                ):
                    self._applied_offset = event.offset
        return state

    def recompute_all(self, store: EventStore) -> int:
        """Drop all derived state and replay the store in ingestion order.

        Events that fail to aggregate during replay are flagged pending in the
        store, unless they were already given up on as unaggregated.
        Returns the number of events replayed.
        """
        self.reset()
        pending = set(store.pending_offsets())
        unaggregated = set(store.unaggregated_offsets())
        replayed = 0
        failed = 0
        for event in store.scan():
            replayed += 1
            try:
                self.on_event(event)
            except AggregationError as exc:
                failed += 1
                if event.offset not in pending and event.offset not in unaggregated:
                    store.mark_aggregation_pending(event.offset)
                    logger.warning("aggregation.replay_failed", **exc.to_dict())
            else:
                if event.offset in pending or event.offset in unaggregated:
                    store.clear_aggregation_pending(event.offset)
        logger.info("aggregation.recomputed", events=replayed, failed=failed, keys=len(self._states))
        return replayed

    def reset(self) -> None:
        with self._registry_lock:
            self._states = {}
            self._locks = {}
            self._rngs = {}
            self._applied_offset = None

    def snapshot(self) -> Dict[Key, AppState]:
        """Return a read-only copy of the per-key states."""
        with self._registry_lock:
            return dict(self._states)

    def states(self) -> List[AppState]:
        return [state for _, state in sorted(self.snapshot().items())]

    def states_for_customer(self, customer_name: str) -> List[AppState]:
        return [
            state
            for (name, _), state in sorted(self.snapshot().items())
            if name == customer_name
        ]

    @property
    def applied_offset(self) -> Optional[int]:
        return self._applied_offset

    def _key_resources(self, key: Key) -> Tuple[threading.Lock, Random]:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
                self._rngs[key] = Random(None if self.seed is None else f"{self.seed}:{key[0]}:{key[1]}")
            return lock, self._rngs[key]
