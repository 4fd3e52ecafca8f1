"""
Logging setup for the revenue kernel.

Every module logs through ``get_logger(__name__)``, which returns a thin
wrapper taking structured fields as keyword arguments. Fields travel on the
record as ``extra_data``: the JSON file handler merges them into the log
line, the console handler prints them as ``key=value`` pairs.

Two dedicated channels sit next to the module loggers:
``revenue_kernel.audit`` for business events (queue actions, drift
corrections, exports) and ``revenue_kernel.performance`` for timings.
"""
import logging
import logging.config
import json
import sys
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from pathlib import Path

ROOT_LOGGER_NAME = "revenue_kernel"
AUDIT_CHANNEL = "audit"
PERFORMANCE_CHANNEL = "performance"

# Loggers that get the configured handlers attached directly
_MANAGED_LOGGERS = {
    ROOT_LOGGER_NAME: None,
    "uvicorn": "INFO",
    "sqlalchemy.engine": "WARNING",
}


class JSONFormatter(logging.Formatter):
    """One JSON object per line; structured fields are merged at top level."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "where": f"{record.module}.{record.funcName}:{record.lineno}",
            "pid": record.process,
            "thread": record.thread,
        }
        payload.update(getattr(record, "extra_data", None) or {})
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class KeyValueFormatter(logging.Formatter):
    """Console formatter appending structured fields as ``key=value`` pairs."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = getattr(record, "extra_data", None)
        if fields:
            line += " | " + " ".join(f"{k}={v}" for k, v in fields.items())
        return line


class StructuredLogger:
    """``logger.info("Claimed batch", site_id=..., claimed=3)``.

    Fields set to None are dropped. ``exc_info`` goes to the underlying
    logger rather than into the fields.
    """

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)

    def _emit(self, level: int, message: str, exc_info: bool = False, **fields: Any) -> None:
        if not self.logger.isEnabledFor(level):
            return
        extra_data = {k: v for k, v in fields.items() if v is not None}
        self.logger.log(level, message, exc_info=exc_info, extra={"extra_data": extra_data})

    def debug(self, message: str, **fields: Any) -> None:
        self._emit(logging.DEBUG, message, **fields)

    def info(self, message: str, **fields: Any) -> None:
        self._emit(logging.INFO, message, **fields)

    def warning(self, message: str, **fields: Any) -> None:
        self._emit(logging.WARNING, message, **fields)

    def error(self, message: str, **fields: Any) -> None:
        self._emit(logging.ERROR, message, **fields)


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    enable_console: bool = True,
    console_stream: Optional[Any] = None,
) -> None:
    """Configure the package loggers via ``dictConfig``.

    The API process logs to stdout and, with ``log_file``, to a rotating
    JSON file. The cron CLI passes ``console_stream=sys.stderr`` so stdout
    carries only its JSON summary.
    """
    handlers: Dict[str, Dict[str, Any]] = {}
    if enable_console:
        handlers["console"] = {
            "class": "logging.StreamHandler",
            "stream": console_stream or sys.stdout,
            "formatter": "console",
            "level": log_level,
        }
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "filename": log_file,
            "maxBytes": 10 * 1024 * 1024,
            "backupCount": 5,
            "formatter": "json",
            "level": log_level,
        }
    names = list(handlers)

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {"()": JSONFormatter},
            "console": {
                "()": KeyValueFormatter,
                "fmt": "%(asctime)s %(levelname)-7s %(name)s: %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": handlers,
        "loggers": {
            name: {"level": level or log_level, "handlers": list(names), "propagate": False}
            for name, level in _MANAGED_LOGGERS.items()
        },
        "root": {"level": log_level, "handlers": list(names)},
    })


def get_logger(name: str) -> StructuredLogger:
    """Structured logger placed under the ``revenue_kernel`` hierarchy."""
    if name == ROOT_LOGGER_NAME or name.startswith(ROOT_LOGGER_NAME + "."):
        return StructuredLogger(name)
    return StructuredLogger(f"{ROOT_LOGGER_NAME}.{name}")


def log_business_event(
    event_type: str,
    details: Dict[str, Any],
    site_id: Optional[str] = None,
    request_id: Optional[str] = None
) -> None:
    """Record an auditable state change on the audit channel.

    ``event_type`` is a stable snake_case name (``ocq_queue_action``,
    ``billing_dispute_export``); ``details`` become top-level fields.
    """
    get_logger(AUDIT_CHANNEL).info(
        f"Business event: {event_type}",
        event_type=event_type,
        site_id=site_id,
        request_id=request_id,
        **details
    )


def log_performance(
    operation: str,
    duration_ms: float,
    additional_data: Optional[Dict[str, Any]] = None,
    *,
    slow_ms: Optional[float] = None,
) -> None:
    """Record how long ``operation`` took on the performance channel.

    Logged at WARNING instead of INFO when ``slow_ms`` is given and exceeded.
    """
    fields: Dict[str, Any] = dict(additional_data or {})
    fields["operation"] = operation
    fields["duration_ms"] = round(float(duration_ms), 2)
    slow = slow_ms is not None and duration_ms > slow_ms
    if slow:
        fields["slow_ms"] = slow_ms

    perf = get_logger(PERFORMANCE_CHANNEL)
    emit = perf.warning if slow else perf.info
    emit(f"Timing: {operation}", **fields)
