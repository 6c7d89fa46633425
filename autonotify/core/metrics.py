from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

REQUEST_LATENCY_SECONDS = Histogram(
    "autonotify_request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=("method", "path", "status_code"),
)

ERROR_REPORTS_TOTAL = Counter(
    "autonotify_error_reports_total",
    "Error reports handed to the reporting client by outcome",
    labelnames=("severity", "unhandled", "outcome"),
)

SESSIONS_STARTED_TOTAL = Counter(
    "autonotify_sessions_started_total",
    "Error reporting sessions started",
)


def record_request_latency(*, method: str, path: str, status_code: int, duration_seconds: float) -> None:
    REQUEST_LATENCY_SECONDS.labels(method=method, path=path, status_code=str(status_code)).observe(
        duration_seconds
    )


def record_error_report(*, severity: str, unhandled: bool, outcome: str) -> None:
    ERROR_REPORTS_TOTAL.labels(
        severity=severity,
        unhandled="true" if unhandled else "false",
        outcome=outcome,
    ).inc()


def record_session_started() -> None:
    SESSIONS_STARTED_TOTAL.inc()


def metrics_payload() -> tuple[bytes, str]:
    return generate_latest(), CONTENT_TYPE_LATEST
