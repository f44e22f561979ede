"""
Structured logging for Ledgerlink.

Every module logs through ``logging.getLogger(__name__)``, which lands under
the ``ledgerlink`` package logger configured here. Set ``USE_JSON_LOGS=true``
to emit one JSON object per line; structured helpers attach their fields as
``extra_fields`` so both formats carry them.
"""
import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
USE_JSON_LOGS = os.getenv("USE_JSON_LOGS", "false").lower() == "true"

logger = logging.getLogger("ledgerlink")


class JSONFormatter(logging.Formatter):
    """One JSON document per record."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.pathname:
            payload["module"] = record.module
            payload["line"] = record.lineno
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        payload.update(getattr(record, "extra_fields", {}))
        return json.dumps(payload, default=str)


def configure_logging(level: str = LOG_LEVEL, json_logs: bool = USE_JSON_LOGS) -> logging.Logger:
    """(Re)attach the stdout handler to the package logger."""
    resolved = getattr(logging, level.upper(), logging.INFO)
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(resolved)
    if json_logs:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))
    logger.handlers.clear()
    logger.addHandler(handler)
    logger.setLevel(resolved)
    logger.propagate = False
    return logger


configure_logging()


def _emit(level: int, message: str, extra_fields: Dict[str, Any]) -> None:
    record = logger.makeRecord(logger.name, level, "", 0, message, (), None)
    record.extra_fields = extra_fields
    logger.handle(record)


def log_request(
    method: str,
    path: str,
    status_code: int,
    duration_ms: float,
    client_id: Optional[str] = None,
    **kwargs
):
    """Log one HTTP request."""
    fields = {
        "type": "http_request",
        "method": method,
        "path": path,
        "status_code": status_code,
        "duration_ms": round(duration_ms, 2),
        **kwargs,
    }
    if client_id:
        fields["client_id"] = client_id
    _emit(logging.INFO, f"{method} {path} {status_code}", fields)


_RUN_FIELDS = (
    "run_id",
    "status",
    "dry_run",
    "candidates_scanned",
    "matched",
    "needs_review",
    "skipped",
    "errors",
    "total_value_matched",
)


def log_reconciliation_run(run: Dict[str, Any]) -> None:
    """Log the outcome counts of a finished reconciliation run."""
    fields = {"type": "reconciliation_run", **{name: run.get(name) for name in _RUN_FIELDS}}
    failed = run.get("status") == "failed"
    _emit(
        logging.WARNING if failed else logging.INFO,
        f"Reconciliation run {run.get('run_id')} {run.get('status')}: "
        f"{run.get('matched')} matched, {run.get('needs_review')} for review",
        fields,
    )


def log_error(
    error_type: str,
    message: str,
    context: Optional[Dict[str, Any]] = None,
    exception: Optional[Exception] = None
):
    """Log an error with context, including the traceback when an exception is given."""
    fields = {"type": "error", "error_type": error_type, **(context or {})}
    if exception is None:
        _emit(logging.ERROR, message, fields)
        return
    logger.error(message, exc_info=exception, extra={"extra_fields": fields})
