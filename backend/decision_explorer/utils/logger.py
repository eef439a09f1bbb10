import logging
import sys
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import structlog

from decision_explorer.core.config import get_settings

# Patient context keys that must never reach the logs verbatim
SENSITIVE_FIELDS = {
    "patient_context",
    "clinical_notes",
    "lab_values",
    "medication_codes",
    "comorbidities",
}


def redact_patient_data(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """structlog processor replacing patient-identifying values with a marker"""
    for key in SENSITIVE_FIELDS.intersection(event_dict):
        event_dict[key] = "[REDACTED]"
    return event_dict


def get_log_level() -> int:
    """Resolve the configured log level"""
    settings = get_settings()
    return getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)


def setup_logging(json_logs: Optional[bool] = None) -> None:
    """
    Configure structlog on top of the standard logging module.

    JSON lines are emitted outside debug mode so the log aggregator can
    index the key/value pairs; a human readable console renderer is used
    otherwise.
    """
    settings = get_settings()
    if json_logs is None:
        json_logs = not settings.DEBUG

    log_level = get_log_level()

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_patient_data,
        structlog.processors.StackInfoRenderer(),
    ]

    if json_logs:
        shared_processors.append(structlog.processors.format_exc_info)
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=shared_processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(log_level)

    # Quiet chatty libraries
    for noisy in ("sqlalchemy.engine", "httpx", "httpcore", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(max(log_level, logging.WARNING))


@asynccontextmanager
async def operation_timer(operation_name: str, slow_threshold_ms: float = 5000, **context):
    """
    Time an async operation and log its outcome.

    Yields a dict the caller may read ``duration_ms`` from after the block.
    """
    logger = structlog.get_logger("decision_explorer.timing")
    timing: Dict[str, float] = {}
    start_time = time.perf_counter()
    try:
        yield timing
    except Exception as e:
        timing["duration_ms"] = (time.perf_counter() - start_time) * 1000
        logger.error(
            "Operation failed",
            operation=operation_name,
            duration_ms=round(timing["duration_ms"], 2),
            error_type=type(e).__name__,
            error=str(e),
            **context
        )
        raise
    else:
        timing["duration_ms"] = (time.perf_counter() - start_time) * 1000
        log = logger.warning if timing["duration_ms"] > slow_threshold_ms else logger.debug
        log(
            "Operation completed",
            operation=operation_name,
            duration_ms=round(timing["duration_ms"], 2),
            is_slow_operation=timing["duration_ms"] > slow_threshold_ms,
            **context
        )


__all__ = ["setup_logging", "get_log_level", "redact_patient_data", "operation_timer"]
