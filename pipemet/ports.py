"""Port definitions for the append-only event log."""

from typing import Iterator, Optional, Protocol, Sequence

from .errors import ValidationError
from .models import PipelineEvent


class EventStore(Protocol):
    """Append-only log of pipeline events that adapters implement for any backend.

    Offsets are 0-based and assigned in ingestion order. Readers see a log
    that only grows; they never block appends.
    """

    def append(self, event: PipelineEvent) -> PipelineEvent:
        """Store ``event`` and return it with its ingestion offset set."""

    def get(self, offset: int) -> PipelineEvent:
        """Return the event stored at ``offset``."""

    def scan(self, start_offset: int = 0) -> Iterator[PipelineEvent]:
        """Yield events in ascending ingestion order; every call starts afresh."""

    def scan_reverse(self, before_offset: Optional[int] = None) -> Iterator[PipelineEvent]:
        """Yield events newest first, starting just below ``before_offset``."""

    def get_by_customer(
        self,
        customer_name: str,
        customer_app: Optional[str] = None,
    ) -> Sequence[PipelineEvent]:
        """Return one customer's events in ingestion order."""

    def count(self) -> int:
        """Return the number of stored events."""

    def mark_aggregation_pending(self, offset: int) -> None:
        """Flag a stored event whose aggregation failed."""

    def clear_aggregation_pending(self, offset: int) -> None:
        """Mark an event aggregated; resets its attempt count."""

    def pending_offsets(self) -> Sequence[int]:
        """Return offsets of flagged events in ascending order."""

    def record_aggregation_attempt(self, offset: int) -> int:
        """Count one more failed aggregation retry and return the new total."""

    def aggregation_attempts(self, offset: int) -> int:
        """Return how many aggregation retries have failed for ``offset``."""

    def mark_unaggregated(self, offset: int) -> None:
        """Give up on an event; it leaves the pending set for good."""

    def unaggregated_offsets(self) -> Sequence[int]:
        """Return offsets of abandoned events in ascending order."""


def require_identity(event: PipelineEvent) -> None:
    """Raise ``ValidationError`` when an event lacks an identity field."""
    missing = [
        name
        for name in ("request_id", "customer_name", "customer_app", "timestamp")
        if getattr(event, name) in (None, "")
    ]
    if missing:
        raise ValidationError(
            f"missing required fields: {', '.join(missing)}",
            details={"missing": missing},
        )
