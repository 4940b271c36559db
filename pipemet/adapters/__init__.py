"""Adapters for integrating PipeMet with storage backends."""

from .memory_store import InMemoryEventStore
from .sqlalchemy_store import SQLAlchemyEventStore

__all__ = ["InMemoryEventStore", "SQLAlchemyEventStore"]
