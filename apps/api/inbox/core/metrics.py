from __future__ import annotations

from prometheus_client import Counter, Histogram

_HTTP_REQUESTS_TOTAL = Counter(
    "inbox_http_requests_total",
    "Total HTTP requests handled by the API.",
    labelnames=("method", "path", "status_code"),
)
_HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "inbox_http_request_duration_seconds",
    "HTTP request duration in seconds.",
    labelnames=("method", "path"),
)
_HTTP_RATE_LIMITED_TOTAL = Counter(
    "inbox_http_rate_limited_total",
    "Total HTTP requests blocked by rate limiting.",
    labelnames=("method", "path"),
)
_WEBHOOK_EVENTS_TOTAL = Counter(
    "inbox_webhook_events_total",
    "Canonical webhook events by channel and admission outcome.",
    labelnames=("channel", "outcome"),
)
_OUTBOUND_JOBS_TOTAL = Counter(
    "inbox_outbound_jobs_total",
    "Outbound reply jobs by terminal or retry outcome.",
    labelnames=("outcome",),
)
_OUTBOUND_SENDS_TOTAL = Counter(
    "inbox_outbound_sends_total",
    "Provider send attempts by channel and outcome.",
    labelnames=("channel", "outcome"),
)


def observe_http_request(
    *,
    method: str,
    path: str,
    status_code: int,
    duration_ms: int,
    rate_limited: bool,
) -> None:
    safe_path = path or "unknown"
    safe_method = method or "UNKNOWN"

    _HTTP_REQUESTS_TOTAL.labels(
        method=safe_method,
        path=safe_path,
        status_code=str(status_code),
    ).inc()
    _HTTP_REQUEST_DURATION_SECONDS.labels(method=safe_method, path=safe_path).observe(
        max(0.0, duration_ms / 1000.0)
    )
    if rate_limited:
        _HTTP_RATE_LIMITED_TOTAL.labels(method=safe_method, path=safe_path).inc()


def observe_webhook_event(*, channel: str, outcome: str) -> None:
    _WEBHOOK_EVENTS_TOTAL.labels(channel=channel or "unknown", outcome=outcome).inc()


def observe_outbound_job(*, outcome: str) -> None:
    _OUTBOUND_JOBS_TOTAL.labels(outcome=outcome).inc()


def observe_outbound_send(*, channel: str, outcome: str) -> None:
    _OUTBOUND_SENDS_TOTAL.labels(channel=channel or "unknown", outcome=outcome).inc()
