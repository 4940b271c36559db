"""In-process event log used by tests, demos and single-node deployments."""

import threading
from dataclasses import replace
from typing import Dict, Iterator, List, Optional, Sequence, Set

from ..errors import NotFoundError
from ..models import PipelineEvent
from ..ports import require_identity


class InMemoryEventStore:
    """List-backed append-only log.

    Appends are serialized by a lock. Readers take a length snapshot and
    iterate without the lock; the list only ever grows, so a snapshot stays
    valid while writers keep appending.
    """

    def __init__(self):
        self._events: List[PipelineEvent] = []
        self._pending: Set[int] = set()
        self._unaggregated: Set[int] = set()
        self._attempts: Dict[int, int] = {}
        self._lock = threading.Lock()

    def append(self, event: PipelineEvent) -> PipelineEvent:
        require_identity(event)
        with self._lock:
            stored = replace(event, offset=len(self._events))
            self._events.append(stored)
        return stored

    def get(self, offset: int) -> PipelineEvent:
        if offset < 0 or offset >= len(self._events):
            raise NotFoundError(f"no event at offset {offset}", details={"offset": offset})
        return self._events[offset]

    def scan(self, start_offset: int = 0) -> Iterator[PipelineEvent]:
        end = len(self._events)
        for offset in range(max(start_offset, 0), end):
            yield self._events[offset]

    def scan_reverse(self, before_offset: Optional[int] = None) -> Iterator[PipelineEvent]:
        end = len(self._events)
        if before_offset is not None:
            end = min(end, before_offset)
        for offset in range(end - 1, -1, -1):
            yield self._events[offset]

    def get_by_customer(
        self,
        customer_name: str,
        customer_app: Optional[str] = None,
    ) -> Sequence[PipelineEvent]:
        return [
            event
            for event in self.scan()
            if event.customer_name == customer_name
            and (customer_app is None or event.customer_app == customer_app)
        ]

    def count(self) -> int:
        return len(self._events)

    def mark_aggregation_pending(self, offset: int) -> None:
        with self._lock:
            self._pending.add(offset)
            self._unaggregated.discard(offset)

    def clear_aggregation_pending(self, offset: int) -> None:
        with self._lock:
            self._pending.discard(offset)
            self._unaggregated.discard(offset)
            self._attempts.pop(offset, None)

    def pending_offsets(self) -> Sequence[int]:
        with self._lock:
            return sorted(self._pending)

    def record_aggregation_attempt(self, offset: int) -> int:
        with self._lock:
            attempts = self._attempts.get(offset, 0) + 1
            self._attempts[offset] = attempts
            return attempts

    def aggregation_attempts(self, offset: int) -> int:
        with self._lock:
            return self._attempts.get(offset, 0)

    def mark_unaggregated(self, offset: int) -> None:
        with self._lock:
            self._pending.discard(offset)
            self._unaggregated.add(offset)

    def unaggregated_offsets(self) -> Sequence[int]:
        with self._lock:
            return sorted(self._unaggregated)
