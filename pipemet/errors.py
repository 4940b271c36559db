"""Error taxonomy shared by ingestion, aggregation and queries.

Exception Hierarchy:
    PipeMetError (base)
    ├── ValidationError - malformed or missing identity fields, bad cursors
    ├── AggregationError - a stored event could not be folded into aggregates
    ├── NotFoundError - query for a customer without events
    └── UpstreamUnavailable - event storage or pipeline backend unreachable
"""

from typing import Any, Dict, Optional


class PipeMetError(Exception):
    """Base exception for all PipeMet errors.

    Attributes:
        message: Human-readable error message.
        details: Additional error details.
        retryable: Whether the caller may retry the same operation.
    """

    def __init__(
        self,
        message: str,
        *,
        details: Optional[Dict[str, Any]] = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.retryable = retryable

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/API responses."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
            "retryable": self.retryable,
        }


class ValidationError(PipeMetError):
    """Input could not be normalized; nothing was stored."""


class AggregationError(PipeMetError):
    """A stored event could not be aggregated.

    Attributes:
        request_id: Producer id of the offending event.
        offset: Ingestion offset of the offending event, if known.
    """

    def __init__(
        self,
        message: str,
        *,
        request_id: Optional[str] = None,
        offset: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, details=details, retryable=True)
        self.request_id = request_id
        self.offset = offset

    def to_dict(self) -> Dict[str, Any]:
        base = super().to_dict()
        base.update({"request_id": self.request_id, "offset": self.offset})
        return base


class NotFoundError(PipeMetError):
    """No events exist for the requested customer."""


class UpstreamUnavailable(PipeMetError):
    """Backing storage or an upstream service could not be reached."""

    def __init__(
        self,
        message: str,
        *,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, details=details, retryable=True)
