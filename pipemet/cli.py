"""Command line entrypoints: serve the API, bulk-ingest, sweep and report."""

import json
from pathlib import Path
from typing import Optional

import typer

from .config import Settings
from .demo import build_demo_payloads
from .errors import PipeMetError, ValidationError
from .logging_config import configure_logging
from .normalize import normalize_event
from .runtime import build_runtime
from .views import (
    customer_aggregates_to_dict,
    data_processed_to_dict,
    request_counters_to_dict,
)

app = typer.Typer(add_completion=False)


def _runtime():
    settings = Settings()
    configure_logging(settings.log_level, json=settings.log_json)
    return build_runtime(settings)


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", help="Host to bind to"),
    port: int = typer.Option(8080, help="Port to bind to"),
    demo: bool = typer.Option(False, help="Seed an in-memory log with synthetic traffic"),
):
    """Run the metrics API server."""
    import uvicorn

    from .adapters import InMemoryEventStore
    from .api import create_app

    store = None
    if demo:
        store = InMemoryEventStore()
        for payload in build_demo_payloads():
            store.append(normalize_event(payload))

    typer.echo(f"Starting PipeMet API on {host}:{port}")
    uvicorn.run(create_app(store=store), host=host, port=port, log_level="info")


@app.command()
def seed_demo(count: int = typer.Option(250, help="Number of synthetic events")):
    """Ingest synthetic pipeline traffic into the configured store."""
    runtime = _runtime()
    runtime.recover()
    pending = 0
    for payload in build_demo_payloads(count):
        if runtime.ingestion.submit(payload).aggregation_pending:
            pending += 1
    typer.echo(json.dumps({"accepted": count, "pending": pending}))


@app.command()
def ingest(path: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSON Lines file of events")):
    """Ingest pipeline events from a JSON Lines file.

    Invalid lines are reported and skipped; the rest are stored.
    """
    runtime = _runtime()
    runtime.recover()

    stats = {"accepted": 0, "pending": 0, "rejected": 0}
    with path.open(encoding="utf-8") as handle:
        for line_number, line in enumerate(handle, start=1):
            if not line.strip():
                continue
            try:
                ack = runtime.ingestion.submit(json.loads(line))
            except json.JSONDecodeError as exc:
                stats["rejected"] += 1
                typer.echo(f"line {line_number}: invalid JSON ({exc.msg})", err=True)
                continue
            except ValidationError as exc:
                stats["rejected"] += 1
                typer.echo(f"line {line_number}: {exc.message}", err=True)
                continue
            stats["accepted"] += 1
            if ack.aggregation_pending:
                stats["pending"] += 1

    typer.echo(json.dumps(stats))


@app.command()
def sweep():
    """Rebuild aggregates from the event log and retry pending events once."""
    runtime = _runtime()
    replayed = runtime.recover()
    stats = runtime.ingestion.retry_pending()
    typer.echo(json.dumps({"replayed": replayed, **stats}))


@app.command()
def report(customer: Optional[str] = typer.Option(None, help="Report aggregates for one customer")):
    """Print request counters and data-processed totals, or one customer's aggregates."""
    runtime = _runtime()
    runtime.recover()
    queries = runtime.queries
    freshness = queries.freshness()

    try:
        if customer:
            body = customer_aggregates_to_dict(customer, queries.get_customer_aggregate(customer), freshness)
        else:
            body = {
                "requests": request_counters_to_dict(queries.get_request_counters(), freshness),
                "dataProcessed": data_processed_to_dict(queries.get_data_processed_totals(), freshness),
            }
    except PipeMetError as exc:
        typer.echo(f"Error: {exc.message}", err=True)
        raise typer.Exit(1)

    typer.echo(json.dumps(body, indent=2))


if __name__ == "__main__":
    app()
