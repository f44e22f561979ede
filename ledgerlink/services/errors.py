"""
Ledgerlink Error Handling

Specific error types with user-friendly messages and debugging context.
"""
from typing import Optional, Dict, Any, List
from fastapi import HTTPException
from enum import Enum
import functools


class ErrorCode(str, Enum):
    """Standardized error codes for client handling."""
    # Input errors (400s)
    INVALID_RECORD = "INVALID_RECORD"
    INVALID_CONFIG = "INVALID_CONFIG"
    INVALID_DATE = "INVALID_DATE"
    RUN_NOT_FOUND = "RUN_NOT_FOUND"

    # Matching outcomes
    AMBIGUOUS_MATCH = "AMBIGUOUS_MATCH"

    # Processing errors (500s)
    RECONCILIATION_FAILED = "RECONCILIATION_FAILED"
    DATABASE_ERROR = "DATABASE_ERROR"

    # Storage collaborator errors
    FETCH_FAILED = "FETCH_FAILED"
    WRITE_FAILED = "WRITE_FAILED"
    WRITE_CONFLICT = "WRITE_CONFLICT"


class LedgerlinkError(Exception):
    """Base exception with structured error info."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        detail: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        self.code = code
        self.message = message
        self.detail = detail
        self.context = context or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to API response format."""
        result = {
            "error": self.code.value,
            "message": self.message
        }
        if self.detail:
            result["detail"] = self.detail
        if self.context:
            result["context"] = self.context
        return result


class ValidationError(LedgerlinkError):
    """A raw record lacks a usable id, date or amount."""

    def __init__(self, source: str, detail: str, record_id: Optional[str] = None):
        super().__init__(
            code=ErrorCode.INVALID_RECORD,
            message=f"Invalid {source} record" + (f" '{record_id}'" if record_id else ""),
            detail=detail,
            context={"source": source, "record_id": record_id}
        )
        self.source = source
        self.record_id = record_id


class FetchError(LedgerlinkError):
    """Paging from the candidate store failed."""

    def __init__(self, source: str, detail: str, offset: int = 0):
        super().__init__(
            code=ErrorCode.FETCH_FAILED,
            message=f"Could not fetch {source} records",
            detail=detail,
            context={"source": source, "offset": offset}
        )
        self.source = source


class WriteError(LedgerlinkError):
    """Applying a reconciliation patch to one record failed."""

    def __init__(self, record_id: str, detail: str, code: ErrorCode = ErrorCode.WRITE_FAILED):
        super().__init__(
            code=code,
            message=f"Could not update record '{record_id}'",
            detail=detail,
            context={"record_id": record_id}
        )
        self.record_id = record_id


class WriteConflictError(WriteError):
    """The record changed state between fetch and write."""

    def __init__(self, record_id: str, expected: str, actual: str):
        super().__init__(
            record_id=record_id,
            detail=f"Expected state '{expected}', found '{actual}'",
            code=ErrorCode.WRITE_CONFLICT,
        )
        self.context.update({"expected": expected, "actual": actual})


class AmbiguousMatch(LedgerlinkError):
    """More than one candidate reached the threshold with no clear winner."""

    def __init__(self, target_id: str, candidate_ids: List[str], confidence: float):
        super().__init__(
            code=ErrorCode.AMBIGUOUS_MATCH,
            message=f"Ambiguous match for '{target_id}'",
            detail=f"{len(candidate_ids)} candidates tied at confidence {confidence:.2f}",
            context={"target_id": target_id, "candidate_ids": candidate_ids}
        )
        self.target_id = target_id
        self.candidate_ids = candidate_ids
        self.confidence = confidence


class ConfigError(LedgerlinkError):
    """Error in configuration."""

    def __init__(self, field: str, detail: str):
        super().__init__(
            code=ErrorCode.INVALID_CONFIG,
            message=f"Invalid configuration for '{field}'",
            detail=detail,
            context={"field": field}
        )


class DateFormatError(LedgerlinkError):
    """Error in date format."""

    def __init__(self, value: str, expected: str = "YYYY-MM-DD"):
        super().__init__(
            code=ErrorCode.INVALID_DATE,
            message=f"Invalid date format: '{value}'",
            detail=f"Expected format: {expected}",
            context={"value": value, "expected": expected}
        )


class RunNotFoundError(LedgerlinkError):
    """No run history entry for the given id."""

    def __init__(self, run_id: str):
        super().__init__(
            code=ErrorCode.RUN_NOT_FOUND,
            message=f"Run '{run_id}' not found",
            context={"run_id": run_id}
        )


class ReconciliationError(LedgerlinkError):
    """Error during reconciliation."""

    def __init__(self, stage: str, detail: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(
            code=ErrorCode.RECONCILIATION_FAILED,
            message=f"Reconciliation failed at {stage}",
            detail=detail,
            context={"stage": stage, **(context or {})}
        )


def to_http_exception(error: LedgerlinkError) -> HTTPException:
    """Convert LedgerlinkError to HTTPException."""
    # Map error codes to HTTP status codes
    status_map = {
        ErrorCode.INVALID_RECORD: 400,
        ErrorCode.INVALID_CONFIG: 400,
        ErrorCode.INVALID_DATE: 400,
        ErrorCode.RUN_NOT_FOUND: 404,
        ErrorCode.AMBIGUOUS_MATCH: 409,
        ErrorCode.WRITE_CONFLICT: 409,
        ErrorCode.RECONCILIATION_FAILED: 500,
        ErrorCode.DATABASE_ERROR: 500,
        ErrorCode.FETCH_FAILED: 502,
        ErrorCode.WRITE_FAILED: 502,
    }

    return HTTPException(
        status_code=status_map.get(error.code, 500),
        detail=error.to_dict()
    )


def handle_safely(operation: str):
    """
    Decorator to handle errors gracefully with context.

    Usage:
        @handle_safely("reconciliation")
        async def run_reconciliation(...):
            ...
    """
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except LedgerlinkError:
                raise
            except HTTPException:
                raise
            except Exception as e:
                raise ReconciliationError(
                    stage=operation,
                    detail=str(e)
                )
        return wrapper
    return decorator
