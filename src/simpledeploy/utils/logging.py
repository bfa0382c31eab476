"""Logging for the agent.

System events go through structlog to stdout, as JSON or console output.
Each deployment name additionally gets a plain text file written through a
stdlib handler, so operators can follow one deployment's history without
the agent's own chatter. Jobs correlate both streams by job id.
"""

import logging
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

import structlog
from structlog.contextvars import bound_contextvars


SENSITIVE_KEYS = {
    "password",
    "secret",
    "token",
    "auth_token",
    "api_key",
    "apikey",
    "authorization",
    "auth",
    "x-password",
    "x-token",
}

DEPLOYMENT_LOG_FORMAT = "%(asctime)s|%(levelname)s|%(name)s|%(message)s"


def _redact_sensitive(_, __, event_dict: dict) -> dict:
    """Redact sensitive fields in the structured log."""
    for key in list(event_dict.keys()):
        if key.lower() in SENSITIVE_KEYS:
            event_dict[key] = "[REDACTED]"
    return event_dict


def setup_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structured logging."""
    level = getattr(logging, log_level.upper())

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        _redact_sensitive,
    ]

    if log_format == "json":
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


@contextmanager
def job_context(job_id: str, deployment_name: str) -> Iterator[None]:
    """Correlate every structlog event inside the block with one job."""
    with bound_contextvars(job_id=job_id, deployment_name=deployment_name):
        yield


def deployment_file_handler(log_file: Path) -> logging.Handler:
    """Open the text log of one deployment name.

    Falls back to a NullHandler when the file cannot be opened; the job
    still keeps its in-memory log.
    """
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler: logging.Handler = logging.FileHandler(log_file, encoding="utf-8")
    except OSError as exc:
        structlog.get_logger().warning(
            "Unable to open deployment log file", log_file=str(log_file), error=str(exc)
        )
        handler = logging.NullHandler()
    handler.setFormatter(logging.Formatter(DEPLOYMENT_LOG_FORMAT))
    return handler
