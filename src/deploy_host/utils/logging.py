"""Logging configuration utilities."""

import logging
import os
import sys
from typing import Optional

import structlog
from structlog.contextvars import bind_contextvars, unbind_contextvars


SENSITIVE_KEYS = {
    "password",
    "secret",
    "token",
    "tstmp",
    "cookie",
    "authorization",
    "auth",
    "session",
}

LOG_FILE_NAME = "deploy-host.log"


def _redact_sensitive(_, __, event_dict: dict) -> dict:
    """Redact sensitive fields in the structured log."""
    for key in list(event_dict.keys()):
        if key.lower() in SENSITIVE_KEYS:
            event_dict[key] = "[REDACTED]"
    return event_dict


def resolve_log_file(log_path: str) -> str:
    """Turn a configured log path into a file path (directories get a default name)."""
    log_path = os.path.abspath(log_path)
    if os.path.isdir(log_path):
        return os.path.join(log_path, LOG_FILE_NAME)
    return log_path


def setup_logging(log_level: str = "INFO", log_format: str = "console", log_path: Optional[str] = None) -> None:
    """Configure structured logging.

    A log path that cannot be opened falls back to console output with a warning.
    """
    log_file = None
    log_error = None
    if log_path:
        try:
            log_file = open(resolve_log_file(log_path), "a", encoding="utf-8")
        except OSError as e:
            log_error = str(e)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        _redact_sensitive,
    ]

    if log_format == "json" or log_file is not None:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    if log_file is not None:
        logger_factory = structlog.WriteLoggerFactory(file=log_file)
    else:
        logger_factory = structlog.PrintLoggerFactory()

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, log_level.upper())),
        context_class=dict,
        logger_factory=logger_factory,
        cache_logger_on_first_use=True,
    )

    if log_error:
        structlog.get_logger().warning("Could not access log path", log_path=log_path, error=log_error)


def bind_job_context(deployment_id: Optional[int] = None, queue_id: Optional[str] = None) -> None:
    """Bind correlation fields for job logs using contextvars."""
    if deployment_id:
        bind_contextvars(deploymentId=deployment_id)
    if queue_id:
        bind_contextvars(queueId=queue_id)


def clear_job_context() -> None:
    unbind_contextvars("deploymentId", "queueId")
