"""FastAPI service exposing ingestion and the dashboard metric endpoints."""

from contextlib import asynccontextmanager
from typing import Any, Optional

import structlog
from fastapi import Body, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .config import Settings
from .errors import (
    AggregationError,
    NotFoundError,
    PipeMetError,
    UpstreamUnavailable,
    ValidationError,
)
from .logging_config import configure_logging
from .normalize import event_to_dict
from .pipeline_client import PipelineClient, to_event_payload
from .ports import EventStore
from .runtime import Runtime, build_runtime
from .views import (
    ack_to_dict,
    customer_aggregates_to_dict,
    data_processed_to_dict,
    feed_page_to_dict,
    request_counters_to_dict,
)

logger = structlog.get_logger(__name__)

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}

_STATUS_CODES = {
    ValidationError: 400,
    NotFoundError: 404,
    AggregationError: 500,
    UpstreamUnavailable: 503,
}


class CustomerAggregateRequest(BaseModel):
    customerName: str = Field(..., min_length=1)


class PipelineInput(BaseModel):
    text: str = Field(..., min_length=1)
    language: str = "en"


class PipelineRequest(BaseModel):
    customerName: str = Field(..., min_length=1)
    customerAppName: str = Field(..., min_length=1)
    input: PipelineInput


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[EventStore] = None,
    pipeline_client: Optional[PipelineClient] = None,
    run_sweeper: bool = True,
) -> FastAPI:
    settings = settings or Settings()
    configure_logging(settings.log_level, json=settings.log_json)
    runtime = build_runtime(settings, store=store)
    client = pipeline_client or PipelineClient(
        settings.pipeline_base_url,
        timeout=settings.pipeline_timeout_seconds,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        runtime.recover()
        stop_event = None
        if run_sweeper:
            stop_event = runtime.ingestion.start_sweeper(settings.sweep_interval_seconds)
        yield
        if stop_event is not None:
            stop_event.set()
        client.close()

    app = FastAPI(title="PipeMet", version="0.1.0", lifespan=lifespan)
    app.state.runtime = runtime

    @app.exception_handler(PipeMetError)
    async def handle_pipemet_error(request: Request, exc: PipeMetError) -> JSONResponse:
        status_code = _STATUS_CODES.get(type(exc), 500)
        if status_code >= 500:
            logger.warning("api.request_failed", path=request.url.path, **exc.to_dict())
        return JSONResponse(
            {"error": exc.message, **exc.to_dict()},
            status_code=status_code,
            headers=NO_CACHE_HEADERS,
        )

    @app.get("/health")
    def health() -> dict:
        freshness = runtime.queries.freshness()
        unaggregated = None
        if freshness.store_available:
            try:
                unaggregated = len(runtime.ingestion.unaggregated)
            except UpstreamUnavailable as exc:
                logger.warning("api.health_store_unavailable", error=exc.message)
        return {
            "status": "ok" if freshness.store_available else "degraded",
            "storeAvailable": freshness.store_available,
            "unaggregated": unaggregated,
        }

    @app.post("/events", status_code=202)
    def ingest_event(payload: Any = Body(...)) -> JSONResponse:
        ack = runtime.ingestion.submit(payload)
        return JSONResponse(ack_to_dict(ack), status_code=202)

    @app.get("/metrics/feed")
    def global_feed(
        limit: Optional[int] = Query(default=None, ge=1),
        cursor: Optional[str] = None,
    ) -> JSONResponse:
        page = runtime.queries.get_global_feed(limit=limit, cursor=cursor)
        return JSONResponse(feed_page_to_dict(page), headers=NO_CACHE_HEADERS)

    @app.post("/customer_aggregates")
    def customer_aggregates(body: CustomerAggregateRequest) -> JSONResponse:
        return _customer_aggregates(runtime, body.customerName)

    @app.get("/customers/{customer_name}/aggregates")
    def customer_aggregates_by_path(customer_name: str) -> JSONResponse:
        return _customer_aggregates(runtime, customer_name)

    @app.get("/customers")
    def customers() -> JSONResponse:
        return JSONResponse({"customers": runtime.queries.list_customers()}, headers=NO_CACHE_HEADERS)

    @app.get("/customers/{customer_name}/requests")
    def customer_requests(
        customer_name: str,
        app_name: Optional[str] = Query(default=None, alias="app"),
        limit: Optional[int] = Query(default=None, ge=1),
    ) -> JSONResponse:
        events = runtime.queries.get_customer_feed(customer_name, app_name, limit=limit)
        return JSONResponse([event_to_dict(event) for event in events], headers=NO_CACHE_HEADERS)

    @app.get("/metrics/requests")
    def requests_overview() -> JSONResponse:
        body = request_counters_to_dict(
            runtime.queries.get_request_counters(),
            runtime.queries.freshness(),
        )
        return JSONResponse(body, headers=NO_CACHE_HEADERS)

    @app.get("/metrics/data_processed")
    def data_processed() -> JSONResponse:
        body = data_processed_to_dict(
            runtime.queries.get_data_processed_totals(),
            runtime.queries.freshness(),
        )
        return JSONResponse(body, headers=NO_CACHE_HEADERS)

    @app.post("/pipeline")
    def run_pipeline(body: PipelineRequest) -> JSONResponse:
        result = client.run(
            body.customerName,
            body.customerAppName,
            body.input.text,
            language=body.input.language,
        )
        try:
            ack = runtime.ingestion.submit(
                to_event_payload(result, body.customerName, body.customerAppName)
            )
            metrics = ack_to_dict(ack)
        except (ValidationError, UpstreamUnavailable) as exc:
            # The caller still gets the pipeline output; only recording failed.
            logger.warning("pipeline.metrics_not_recorded", **exc.to_dict())
            metrics = None
        return JSONResponse({**result, "metrics": metrics})

    return app


def _customer_aggregates(runtime: Runtime, customer_name: str) -> JSONResponse:
    aggregates = runtime.queries.get_customer_aggregate(customer_name)
    body = customer_aggregates_to_dict(customer_name, aggregates, runtime.queries.freshness())
    return JSONResponse(body, headers=NO_CACHE_HEADERS)
