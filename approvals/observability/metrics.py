# ==== PROMETHEUS METRICS ==== #

"""
Prometheus metrics for the approval workflow service.

Covers workflow transitions, optimistic-concurrency conflicts, escalation
sweeps, notification delivery and request store latency, plus the HTTP
latency histogram fed by the correlation middleware.
"""

from fastapi import APIRouter
from fastapi.responses import PlainTextResponse
from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    REGISTRY
)

from approvals.settings import get_settings


# ==== HTTP METRICS ==== #

http_request_latency_seconds = Histogram(
    "approvals_http_request_latency_seconds",
    "HTTP request latency in seconds",
    ["method", "route", "status_code"]
)


# ==== WORKFLOW METRICS ==== #

workflow_transitions_total = Counter(
    "approvals_workflow_transitions_total",
    "Committed workflow transitions by operation and resulting status",
    ["operation", "status"]
)

workflow_rejected_actions_total = Counter(
    "approvals_workflow_rejected_actions_total",
    "Actions refused by the engine by operation and error code",
    ["operation", "code"]
)

workflow_version_conflicts_total = Counter(
    "approvals_workflow_version_conflicts_total",
    "Compare-and-swap conflicts observed by operation",
    ["operation"]
)


# ==== ESCALATION METRICS ==== #

escalations_total = Counter(
    "approvals_escalations_total",
    "Steps escalated by the scheduler by target role",
    ["target_role"]
)

escalation_sweeps_total = Counter(
    "approvals_escalation_sweeps_total",
    "Escalation sweep runs by outcome",
    ["outcome"]  # completed, skipped_locked, failed
)

escalation_sweep_duration_seconds = Histogram(
    "approvals_escalation_sweep_duration_seconds",
    "Time spent in one escalation sweep in seconds"
)


# ==== NOTIFICATION METRICS ==== #

notifications_sent_total = Counter(
    "approvals_notifications_sent_total",
    "Notifications delivered by event kind",
    ["kind"]
)

notification_failures_total = Counter(
    "approvals_notification_failures_total",
    "Notification delivery failures by event kind and error type",
    ["kind", "error_type"]
)


# ==== STORE METRICS ==== #

db_connections_active = Gauge(
    "approvals_db_connections_active",
    "Number of active database sessions"
)

store_operation_duration_seconds = Histogram(
    "approvals_store_operation_duration_seconds",
    "Request store operation duration in seconds",
    ["operation"]
)

# System metrics
app_info = Gauge(
    "approvals_app_info",
    "Application information",
    ["version", "environment", "service_name"]
)


def init_metrics(app) -> None:
    """Initialize metrics collection.

    Args:
        app: FastAPI application instance
    """
    settings = get_settings()
    app_info.labels(
        version=app.version,
        environment=settings.APP_ENV,
        service_name=settings.SERVICE_NAME
    ).set(1)


# Metrics router for Prometheus scraping
metrics_router = APIRouter()


@metrics_router.get("/metrics")
def get_metrics() -> PlainTextResponse:
    """Expose Prometheus metrics for scraping.

    Returns:
        Prometheus metrics in text format
    """
    return PlainTextResponse(
        generate_latest(REGISTRY).decode("utf-8"),
        media_type="text/plain"
    )
