# services/metrics.py
from __future__ import annotations
import os

os.environ.setdefault("PROMETHEUS_DISABLE_CREATED_SERIES", "1")

from prometheus_client import (  # noqa: E402
    Counter, Histogram, CollectorRegistry,
    generate_latest, CONTENT_TYPE_LATEST,
)

# Use a DEDICATED registry so only our app metrics show up
APP_REGISTRY = CollectorRegistry(auto_describe=True)

# --- Generic HTTP metrics (bind to our registry) ---
REQUEST_COUNT = Counter(
    "http_requests_total", "HTTP requests total",
    ["method", "endpoint", "status"], registry=APP_REGISTRY
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds", "Request latency (seconds)",
    ["endpoint", "method"], registry=APP_REGISTRY,
)

# --- Ledger generation ---
GENERATION_RUNS = Counter(
    "ledger_generation_runs_total", "Journal entry generation runs",
    ["outcome"], registry=APP_REGISTRY
)
GENERATION_LATENCY = Histogram(
    "ledger_generation_duration_seconds", "Journal entry generation time (seconds)",
    registry=APP_REGISTRY,
)
GENERATED_ENTRIES = Counter(
    "ledger_generated_entries_total", "Journal entries written", [
        "entry_type"], registry=APP_REGISTRY
)
PERIOD_STATUS_CHANGES = Counter(
    "ledger_period_status_changes_total", "Period close/reopen events", [
        "status"], registry=APP_REGISTRY
)

# --- CSV / ingestion ---
CSV_DOWNLOADS = Counter("csv_download_total", "CSV download events", [
                        "kind"], registry=APP_REGISTRY)
PAYROLL_ROWS = Counter("payroll_rows_total", "Payroll rows ingested", [
                       "kind", "outcome"], registry=APP_REGISTRY)


def init_app(app):
    @app.get("/metrics")
    def metrics():
        data = generate_latest(APP_REGISTRY)
        return app.response_class(data, mimetype=CONTENT_TYPE_LATEST)

    # --- pre-warm labeled series so dashboards don't say "No data" ---
    for o in ("success", "failure", "blocked"):
        GENERATION_RUNS.labels(outcome=o).inc(0)
    for t in ("CAPITALIZATION", "EXPENSE", "AMORTIZATION"):
        GENERATED_ENTRIES.labels(entry_type=t).inc(0)
    for st in ("OPEN", "CLOSED"):
        PERIOD_STATUS_CHANGES.labels(status=st).inc(0)
    for k in ("period_audit", "period_journal", "audit"):
        CSV_DOWNLOADS.labels(kind=k).inc(0)
    for k in ("upload", "import"):
        for o in ("applied", "skipped"):
            PAYROLL_ROWS.labels(kind=k, outcome=o).inc(0)
