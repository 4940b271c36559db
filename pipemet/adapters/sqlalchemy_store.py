"""SQLAlchemy event store adapter for PipeMet."""

import json
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import timezone
from typing import Iterator, Optional, Sequence

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    create_engine,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..errors import NotFoundError, UpstreamUnavailable
from ..models import PipelineEvent
from ..normalize import parse_timestamp
from ..ports import require_identity

AGGREGATED = "aggregated"
PENDING = "pending"
UNAGGREGATED = "unaggregated"

metadata = MetaData()

pipeline_events = Table(
    "pipeline_events",
    metadata,
    Column("log_offset", Integer, primary_key=True, autoincrement=False),
    Column("request_id", String(255), nullable=False, index=True),
    Column("customer_name", String(255), nullable=False, index=True),
    Column("customer_app", String(255), nullable=False),
    Column("timestamp", DateTime(timezone=True), nullable=False),
    Column("lang_detection_latency_ms", Float),
    Column("nmt_latency_ms", Float),
    Column("llm_latency_ms", Float),
    Column("back_nmt_latency_ms", Float),
    Column("tts_latency_ms", Float),
    Column("overall_latency_ms", Float),
    Column("nmt_usage", Integer),
    Column("llm_usage", Integer),
    Column("back_nmt_usage", Integer),
    Column("tts_usage", Integer),
    Column("raw", JSON),
    Column("aggregation_state", String(16), nullable=False, default=AGGREGATED, index=True),
    Column("aggregation_attempts", Integer, nullable=False, default=0),
)

_SELECT_COLUMNS = """
    log_offset, request_id, customer_name, customer_app, timestamp,
    lang_detection_latency_ms, nmt_latency_ms, llm_latency_ms,
    back_nmt_latency_ms, tts_latency_ms, overall_latency_ms,
    nmt_usage, llm_usage, back_nmt_usage, tts_usage, raw
"""


class SQLAlchemyEventStore:
    """Persists the append-only event log in a relational table.

    Offsets are allocated as ``MAX(log_offset) + 1`` inside the insert
    transaction while holding the process-wide append lock, so a single
    writer process is assumed per database.
    """

    def __init__(self, engine: Engine, scan_batch_size: int = 500):
        self.engine = engine
        self.scan_batch_size = scan_batch_size
        self._Session = sessionmaker(
            bind=engine,
            autoflush=False,
            expire_on_commit=False,
        )
        self._append_lock = threading.Lock()

    @classmethod
    def from_url(cls, url: str, create_schema: bool = True, **kwargs) -> "SQLAlchemyEventStore":
        engine = create_engine(url, pool_pre_ping=True)
        store = cls(engine, **kwargs)
        if create_schema:
            store.create_schema()
        return store

    def create_schema(self) -> None:
        try:
            metadata.create_all(self.engine)
        except SQLAlchemyError as exc:
            raise UpstreamUnavailable("event store schema could not be created") from exc

    @contextmanager
    def session_scope(self):
        session = self._Session()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise UpstreamUnavailable(
                "event store unavailable",
                details={"error": str(exc)},
            ) from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def append(self, event: PipelineEvent) -> PipelineEvent:
        require_identity(event)
        with self._append_lock, self.session_scope() as db:
            next_offset = db.execute(
                text("SELECT COALESCE(MAX(log_offset) + 1, 0) FROM pipeline_events")
            ).scalar_one()
            stored = replace(event, offset=int(next_offset))
            db.execute(pipeline_events.insert().values(**_event_to_row(stored)))
        return stored

    def get(self, offset: int) -> PipelineEvent:
        with self.session_scope() as db:
            row = db.execute(
                text(f"SELECT {_SELECT_COLUMNS} FROM pipeline_events WHERE log_offset = :offset"),
                {"offset": offset},
            ).first()
        if row is None:
            raise NotFoundError(f"no event at offset {offset}", details={"offset": offset})
        return _row_to_event(row)

    def scan(self, start_offset: int = 0) -> Iterator[PipelineEvent]:
        # Short batched reads keep readers from holding a transaction open.
        end = self.count()
        cursor = max(start_offset, 0)
        while cursor < end:
            with self.session_scope() as db:
                rows = db.execute(
                    text(
                        f"""
                        SELECT {_SELECT_COLUMNS}
                        FROM pipeline_events
                        WHERE log_offset >= :cursor AND log_offset < :end
                        ORDER BY log_offset ASC
                        LIMIT :limit
                        """
                    ),
                    {"cursor": cursor, "end": end, "limit": self.scan_batch_size},
                ).fetchall()
            if not rows:
                return
            for row in rows:
                yield _row_to_event(row)
            cursor = rows[-1].log_offset + 1

    def scan_reverse(self, before_offset: Optional[int] = None) -> Iterator[PipelineEvent]:
        cursor = self.count() if before_offset is None else min(before_offset, self.count())
        while cursor > 0:
            with self.session_scope() as db:
                rows = db.execute(
                    text(
                        f"""
                        SELECT {_SELECT_COLUMNS}
                        FROM pipeline_events
                        WHERE log_offset < :cursor
                        ORDER BY log_offset DESC
                        LIMIT :limit
                        """
                    ),
                    {"cursor": cursor, "limit": self.scan_batch_size},
                ).fetchall()
            if not rows:
                return
            for row in rows:
                yield _row_to_event(row)
            cursor = rows[-1].log_offset

    def get_by_customer(
        self,
        customer_name: str,
        customer_app: Optional[str] = None,
    ) -> Sequence[PipelineEvent]:
        query = f"SELECT {_SELECT_COLUMNS} FROM pipeline_events WHERE customer_name = :customer_name"
        params = {"customer_name": customer_name}
        if customer_app is not None:
            query += " AND customer_app = :customer_app"
            params["customer_app"] = customer_app
        query += " ORDER BY log_offset ASC"

        with self.session_scope() as db:
            rows = db.execute(text(query), params).fetchall()
        return [_row_to_event(row) for row in rows]

    def count(self) -> int:
        with self.session_scope() as db:
            return int(db.execute(text("SELECT COUNT(*) FROM pipeline_events")).scalar_one())

    def mark_aggregation_pending(self, offset: int) -> None:
        self._set_state(offset, aggregation_state=PENDING)

    def clear_aggregation_pending(self, offset: int) -> None:
        self._set_state(offset, aggregation_state=AGGREGATED, aggregation_attempts=0)

    def pending_offsets(self) -> Sequence[int]:
        return self._offsets_in_state(PENDING)

    def record_aggregation_attempt(self, offset: int) -> int:
        with self.session_scope() as db:
            db.execute(
                pipeline_events.update()
                .where(pipeline_events.c.log_offset == offset)
                .values(aggregation_attempts=pipeline_events.c.aggregation_attempts + 1)
            )
            attempts = db.execute(
                text("SELECT aggregation_attempts FROM pipeline_events WHERE log_offset = :offset"),
                {"offset": offset},
            ).scalar()
        if attempts is None:
            raise NotFoundError(f"no event at offset {offset}", details={"offset": offset})
        return int(attempts)

    def aggregation_attempts(self, offset: int) -> int:
        with self.session_scope() as db:
            attempts = db.execute(
                text("SELECT aggregation_attempts FROM pipeline_events WHERE log_offset = :offset"),
                {"offset": offset},
            ).scalar()
        if attempts is None:
            raise NotFoundError(f"no event at offset {offset}", details={"offset": offset})
        return int(attempts)

    def mark_unaggregated(self, offset: int) -> None:
        self._set_state(offset, aggregation_state=UNAGGREGATED)

    def unaggregated_offsets(self) -> Sequence[int]:
        return self._offsets_in_state(UNAGGREGATED)

    def _offsets_in_state(self, state: str) -> Sequence[int]:
        with self.session_scope() as db:
            rows = db.execute(
                text(
                    """
                    SELECT log_offset FROM pipeline_events
                    WHERE aggregation_state = :state
                    ORDER BY log_offset ASC
                    """
                ),
                {"state": state},
            ).fetchall()
        return [int(row.log_offset) for row in rows]

    def _set_state(self, offset: int, **values) -> None:
        with self.session_scope() as db:
            db.execute(
                pipeline_events.update()
                .where(pipeline_events.c.log_offset == offset)
                .values(**values)
            )


def _event_to_row(event: PipelineEvent) -> dict:
    return {
        "log_offset": event.offset,
        "request_id": event.request_id,
        "customer_name": event.customer_name,
        "customer_app": event.customer_app,
        "timestamp": event.timestamp,
        "lang_detection_latency_ms": event.lang_detection_latency_ms,
        "nmt_latency_ms": event.nmt_latency_ms,
        "llm_latency_ms": event.llm_latency_ms,
        "back_nmt_latency_ms": event.back_nmt_latency_ms,
        "tts_latency_ms": event.tts_latency_ms,
        "overall_latency_ms": event.overall_latency_ms,
        "nmt_usage": event.nmt_usage,
        "llm_usage": event.llm_usage,
        "back_nmt_usage": event.back_nmt_usage,
        "tts_usage": event.tts_usage,
        "raw": _jsonable(event.raw),
        "aggregation_state": AGGREGATED,
        "aggregation_attempts": 0,
    }


def _row_to_event(row) -> PipelineEvent:
    timestamp = row.timestamp
    if isinstance(timestamp, str):
        timestamp = parse_timestamp(timestamp)
    elif timestamp.tzinfo is None:
        # SQLite drops the offset; values were written as UTC.
        timestamp = timestamp.replace(tzinfo=timezone.utc)

    return PipelineEvent(
        request_id=row.request_id,
        customer_name=row.customer_name,
        customer_app=row.customer_app,
        timestamp=timestamp,
        lang_detection_latency_ms=row.lang_detection_latency_ms,
        nmt_latency_ms=row.nmt_latency_ms,
        llm_latency_ms=row.llm_latency_ms,
        back_nmt_latency_ms=row.back_nmt_latency_ms,
        tts_latency_ms=row.tts_latency_ms,
        overall_latency_ms=row.overall_latency_ms,
        nmt_usage=row.nmt_usage,
        llm_usage=row.llm_usage,
        back_nmt_usage=row.back_nmt_usage,
        tts_usage=row.tts_usage,
        offset=int(row.log_offset),
        raw=_parse_raw(row.raw),
    )


def _parse_raw(raw) -> dict:
    if raw is None:
        return {}
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            return {}
    if isinstance(raw, dict):
        return raw
    return {}


def _jsonable(raw) -> dict:
    return {
        key: value if value is None or isinstance(value, (str, int, float, bool)) else repr(value)
        for key, value in raw.items()
    }
