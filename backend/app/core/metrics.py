"""Prometheus metrics for the billing and reconciliation services.

Exposes HTTP request metrics plus counters for invoice generation, scheduler
runs and payment status reconciliation.
"""

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    Info,
    CollectorRegistry,
    generate_latest,
    CONTENT_TYPE_LATEST,
    multiprocess,
)
import os

# Create a custom registry for our metrics
REGISTRY = CollectorRegistry()

# Check if running in multiprocess mode (e.g., with gunicorn)
if "prometheus_multiproc_dir" in os.environ:
    multiprocess.MultiProcessCollector(REGISTRY)


APP_INFO = Info(
    "cryptrac_billing_app",
    "Application information",
    registry=REGISTRY,
)


# ============================================
# HTTP Request Metrics
# ============================================
HTTP_REQUESTS_TOTAL = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
    registry=REGISTRY,
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=REGISTRY,
)

HTTP_REQUESTS_IN_PROGRESS = Gauge(
    "http_requests_in_progress",
    "Number of HTTP requests currently in progress",
    ["method", "endpoint"],
    registry=REGISTRY,
)


# ============================================
# Billing Metrics
# ============================================
INVOICE_GENERATION_TOTAL = Counter(
    "invoice_generation_total",
    "Invoice generation attempts by outcome",
    ["outcome"],
    registry=REGISTRY,
)

SCHEDULER_RUN_DURATION_SECONDS = Histogram(
    "subscription_scheduler_run_duration_seconds",
    "Duration of a subscription scheduler run",
    buckets=[0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0],
    registry=REGISTRY,
)

SCHEDULER_SUBSCRIPTIONS_FAILED = Counter(
    "subscription_scheduler_failures_total",
    "Subscriptions that failed during a scheduler run",
    registry=REGISTRY,
)


# ============================================
# Payment Reconciliation Metrics
# ============================================
PAYMENT_STATUS_UPDATES_TOTAL = Counter(
    "payment_status_updates_total",
    "Payment status updates by source and result",
    ["source", "result"],
    registry=REGISTRY,
)

PROCESSOR_API_REQUESTS_TOTAL = Counter(
    "payment_processor_api_requests_total",
    "Calls to the payment processor status API",
    ["status"],
    registry=REGISTRY,
)


def get_metrics() -> bytes:
    """Generate latest metrics in Prometheus format."""
    return generate_latest(REGISTRY)


def get_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST


def set_app_info(version: str, environment: str) -> None:
    """Set application info metrics.

    Args:
        version: Application version
        environment: Deployment environment
    """
    APP_INFO.info({
        "version": version,
        "environment": environment,
    })
