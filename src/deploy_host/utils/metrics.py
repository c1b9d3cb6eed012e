"""Prometheus metrics for the deployment host."""

import structlog
from prometheus_client import Counter, Histogram, start_http_server

logger = structlog.get_logger()

JOB_COUNT = Counter(
    "deploy_host_jobs_total",
    "Deployment jobs processed",
    ["status"],
)

JOB_DURATION = Histogram(
    "deploy_host_job_duration_seconds",
    "Deployment job duration",
)

POLL_ERRORS = Counter(
    "deploy_host_poll_errors_total",
    "Queue poll failures",
    ["kind"],
)

FILES_WRITTEN = Counter(
    "deploy_host_files_written_total",
    "Files written by archive extraction",
)

FILES_DELETED = Counter(
    "deploy_host_files_deleted_total",
    "Files removed by reconciliation",
)


def start_metrics_server(port: int) -> None:
    """Expose metrics over HTTP."""
    start_http_server(port)
    logger.info("Metrics exporter started", port=port)
