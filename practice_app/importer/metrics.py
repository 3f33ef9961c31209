"""Prometheus metrics helpers for the migration engine."""

from __future__ import annotations

from typing import Literal, Mapping

from prometheus_client import Counter, Gauge, Histogram

_lawmatics_enabled_gauge = Gauge(
    "importer_lawmatics_adapter_enabled_total",
    "Whether the Lawmatics adapter is configured (1) or not (0).",
)
_lawmatics_requests = Counter(
    "importer_lawmatics_requests_total",
    "Lawmatics API requests by outcome.",
    ["outcome"],
)
_page_counter = Counter(
    "importer_migration_pages_total",
    "Migration pages processed by phase and status.",
    ["phase", "status"],
)
_page_duration = Histogram(
    "importer_migration_page_duration_seconds",
    "Duration of migration page processing in seconds.",
    ["phase"],
    buckets=(0.5, 1, 2, 5, 10, 30, 60, 120, 300),
)
_record_counter = Counter(
    "importer_migration_records_total",
    "Imported records by upsert outcome.",
    ["action"],
)
_run_transitions = Counter(
    "importer_migration_run_transitions_total",
    "Migration run status transitions by target status.",
    ["status"],
)


def record_lawmatics_adapter_status(enabled: bool) -> None:
    _lawmatics_enabled_gauge.set(1 if enabled else 0)


def record_lawmatics_request(outcome: Literal["success", "rate_limited", "api_error", "transport_error"]) -> None:
    _lawmatics_requests.labels(outcome=outcome).inc()


def record_migration_page(*, phase: str, status: Literal["success", "failure"], duration_seconds: float) -> None:
    """Capture metrics for one processed page."""

    _page_counter.labels(phase=phase, status=status).inc()
    _page_duration.labels(phase=phase).observe(duration_seconds)


def record_upsert_actions(counts: Mapping[str, int]) -> None:
    for action, count in counts.items():
        if count:
            _record_counter.labels(action=action).inc(count)


def record_run_transition(status: str) -> None:
    _run_transitions.labels(status=status).inc()
