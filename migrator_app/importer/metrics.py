"""Prometheus metrics helpers for the importer."""

from __future__ import annotations

from typing import Literal

from prometheus_client import Counter, Gauge, Histogram

_rows_counter = Counter(
    "importer_rows_total",
    "Legacy rows handled by entity importers, by entity and outcome.",
    ["entity", "outcome"],
)
_circuit_breaker_counter = Counter(
    "importer_circuit_breaker_trips_total",
    "Files truncated or aborted by the batch scheduler, by reason.",
    ["reason"],
)
_attachment_counter = Counter(
    "importer_attachments_total",
    "Unstructured files handled by the attachment linker, by category and outcome.",
    ["category", "outcome"],
)
_run_counter = Counter(
    "importer_runs_total",
    "Import runs that reached a terminal status.",
    ["status"],
)
_run_duration = Histogram(
    "importer_run_duration_seconds",
    "Wall-clock duration of import runs in seconds.",
    buckets=(1, 5, 15, 60, 300, 900, 1800, 3600, 7200),
)
_memory_gauge = Gauge(
    "importer_process_memory_bytes",
    "Resident memory sampled by the batch scheduler between batches.",
)


def record_row_outcome(entity: str, outcome: Literal["created", "duplicate", "failed"]) -> None:
    """Increment the per-entity row outcome counter."""

    _rows_counter.labels(entity=entity, outcome=outcome).inc()


def record_circuit_breaker(reason: Literal["memory_limit", "large_dataset"]) -> None:
    _circuit_breaker_counter.labels(reason=reason).inc()


def record_attachment(category: str, outcome: Literal["linked", "duplicate", "missing_patient", "failed"]) -> None:
    _attachment_counter.labels(category=category, outcome=outcome).inc()


def record_memory_sample(rss_bytes: int) -> None:
    _memory_gauge.set(rss_bytes)


def record_run_completion(*, status: str, duration_seconds: float | None) -> None:
    """Capture metrics for a finished import run."""

    _run_counter.labels(status=status).inc()
    if duration_seconds is not None:
        _run_duration.observe(duration_seconds)
