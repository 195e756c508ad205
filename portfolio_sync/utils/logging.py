"""
Structured JSON logging for the save path.

Every line is a single JSON object. Save target fields (owner, repo,
branch) and the operation name are promoted to the top level so log
queries can filter on them; everything else passed through ``extra`` ends
up under ``context``. Credential-like fields are masked before output.
"""

import json
import logging
import sys
import traceback
from datetime import datetime, timezone
from logging import LogRecord
from typing import Any, Dict, IO, MutableMapping, Optional


# Promoted to the top level of every JSON log line
CONTEXT_FIELDS = ("owner", "repo", "branch", "operation", "request_id")

# Never written out in clear
SECRET_FIELDS = ("token", "github_token", "authorization", "password")

# Third-party loggers that log every request at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "redis", "uvicorn.access")

# State changes worth a warning rather than an info line
_WARNING_STATES = {"error", "conflict"}

_STANDARD_ATTRS = set(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}


def _mask(key: str, value: Any) -> Any:
    if key.lower() in SECRET_FIELDS and value:
        return "***"
    return value


class JSONFormatter(logging.Formatter):
    """
    Render log records as JSON.

    Output fields: ``timestamp`` (UTC, ISO 8601), ``level``, ``logger``,
    ``message``, the promoted save target fields, ``context`` for other
    extras, ``error`` when exception info is attached and ``source``.
    """

    def format(self, record: LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        entry: Dict[str, Any] = {
            "timestamp": created.isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(self._target_fields(record))

        context = self._context_fields(record)
        if context:
            entry["context"] = context
        if record.exc_info:
            entry["error"] = self._error_fields(record)

        entry["source"] = {
            "file": record.pathname,
            "line": record.lineno,
            "function": record.funcName,
        }
        return json.dumps(entry, default=str)

    @staticmethod
    def _target_fields(record: LogRecord) -> Dict[str, Any]:
        return {name: getattr(record, name) for name in CONTEXT_FIELDS if hasattr(record, name)}

    @staticmethod
    def _context_fields(record: LogRecord) -> Dict[str, Any]:
        return {
            key: _mask(key, value)
            for key, value in vars(record).items()
            if key not in _STANDARD_ATTRS and key not in CONTEXT_FIELDS
        }

    @staticmethod
    def _error_fields(record: LogRecord) -> Dict[str, Any]:
        error_type, error, tb = record.exc_info
        return {
            "type": error_type.__name__ if error_type else None,
            "message": str(error) if error else None,
            "stack_trace": "".join(traceback.format_exception(error_type, error, tb)),
        }


class ContextLoggerAdapter(logging.LoggerAdapter):
    """
    Logger adapter carrying fixed fields, e.g. the save target of a scheduler.

    Fields passed in ``extra`` at the call site win over the adapter's own.
    """

    def __init__(self, logger: logging.Logger, extra: Optional[Dict[str, Any]] = None):
        super().__init__(logger, dict(extra or {}))

    def process(self, msg: str, kwargs: MutableMapping[str, Any]) -> tuple[str, MutableMapping[str, Any]]:
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs

    def with_context(self, **context: Any) -> "ContextLoggerAdapter":
        """Return an adapter with ``context`` added to this one's fields."""
        return ContextLoggerAdapter(self.logger, {**self.extra, **context})


def setup_logging(log_level: str = "INFO", stream: Optional[IO[str]] = None) -> None:
    """
    Send all logging to one JSON handler.

    Args:
        log_level: Root level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        stream: Output stream, stdout by default
    """
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(JSONFormatter())
    handler.setLevel(log_level)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()
    root_logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str, **context: Any) -> ContextLoggerAdapter:
    """
    Get a context-aware logger for a module.

    Example:
        logger = get_logger(__name__, owner="octo", repo="portfolio")
        logger.info("Saving")  # carries owner and repo
    """
    return ContextLoggerAdapter(logging.getLogger(name), context)


def log_api_call(
    logger: logging.LoggerAdapter,
    service: str,
    endpoint: str,
    method: str,
    status_code: Optional[int] = None,
    duration_ms: Optional[float] = None,
    error: Optional[str] = None,
    rate_limit_remaining: Optional[int] = None,
) -> None:
    """
    Log one remote API call.

    Failed calls are logged at WARNING; the request gate decides separately
    whether the failure is final.

    Args:
        logger: Logger to use
        service: Remote service, e.g. 'github'
        endpoint: Operation name, e.g. 'create blob'
        method: HTTP method
        status_code: Response status, when a response arrived
        duration_ms: Round trip time
        error: Failure message
        rate_limit_remaining: Quota left after the call, when known
    """
    optional = {
        "status_code": status_code,
        "duration_ms": round(duration_ms, 2) if duration_ms is not None else None,
        "error": error,
        "rate_limit_remaining": rate_limit_remaining,
    }
    extra = {"service": service, "endpoint": endpoint, "method": method}
    extra.update({key: value for key, value in optional.items() if value is not None})

    if error:
        logger.warning(f"{service} call failed: {method} {endpoint}", extra=extra)
    else:
        logger.info(f"{service} call: {method} {endpoint}", extra=extra)


def log_save_transition(
    logger: logging.LoggerAdapter,
    previous: str,
    current: str,
    attempt: int = 0,
    reason: Optional[str] = None,
) -> None:
    """Log an autosave state change; error and conflict states log at WARNING."""
    extra: Dict[str, Any] = {"previous_state": previous, "state": current}
    if attempt:
        extra["attempt"] = attempt
    if reason:
        extra["reason"] = reason

    level = logging.WARNING if current in _WARNING_STATES else logging.INFO
    logger.log(level, f"Autosave {previous} -> {current}", extra=extra)


def log_error_with_context(
    logger: logging.LoggerAdapter,
    message: str,
    error: Exception,
    **context: Any
) -> None:
    """Log ``error`` at ERROR with its stack trace and ``context`` fields."""
    context.setdefault("error_type", type(error).__name__)
    logger.error(message, extra=context, exc_info=error)
