# Overview: Error taxonomy, classification into SyncError, user-facing messages, and the retry handler.

"""
Error handling for the sync layer.

Every failure that crosses the service boundary is classified into one
ErrorType. Only network-type and rate-limit errors are retryable; validation,
permission, not-found and conflict errors always propagate on the first try.
"""

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Any, Callable

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from .time_utils import to_utc_z, utcnow
from .validation import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


class ErrorType(str, Enum):
    NETWORK = "network"
    VALIDATION = "validation"
    PERMISSION = "permission"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    RATE_LIMIT = "rate_limit"
    UNKNOWN = "unknown"


class ErrorCode(str, Enum):
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT = "TIMEOUT"
    OFFLINE = "OFFLINE"

    VALIDATION_FAILED = "VALIDATION_FAILED"
    INVALID_INPUT = "INVALID_INPUT"

    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"

    NOT_FOUND = "NOT_FOUND"
    BILL_NOT_FOUND = "BILL_NOT_FOUND"
    PRODUCT_NOT_FOUND = "PRODUCT_NOT_FOUND"

    DUPLICATE_BILL_NUMBER = "DUPLICATE_BILL_NUMBER"
    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"

    TOO_MANY_REQUESTS = "TOO_MANY_REQUESTS"

    UNKNOWN_ERROR = "UNKNOWN_ERROR"


RETRYABLE_CODES = frozenset({ErrorCode.NETWORK_ERROR, ErrorCode.TIMEOUT, ErrorCode.TOO_MANY_REQUESTS})


class SyncError(Exception):
    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.UNKNOWN_ERROR,
        error_type: ErrorType = ErrorType.UNKNOWN,
        details: dict | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.error_type = error_type
        self.details = details or {}
        self.timestamp = utcnow()

    @property
    def retryable(self) -> bool:
        return self.code in RETRYABLE_CODES

    def to_dict(self) -> dict:
        return {
            "message": self.message,
            "code": self.code.value,
            "type": self.error_type.value,
            "details": self.details,
            "timestamp": to_utc_z(self.timestamp),
            "retryable": self.retryable,
        }


# Store-level codes (StoreError.code) -> (ErrorCode, ErrorType)
STORE_CODES: dict[str, tuple[ErrorCode, ErrorType]] = {
    "unavailable": (ErrorCode.NETWORK_ERROR, ErrorType.NETWORK),
    "deadline-exceeded": (ErrorCode.TIMEOUT, ErrorType.NETWORK),
    "permission-denied": (ErrorCode.FORBIDDEN, ErrorType.PERMISSION),
    "unauthenticated": (ErrorCode.UNAUTHORIZED, ErrorType.PERMISSION),
    "not-found": (ErrorCode.NOT_FOUND, ErrorType.NOT_FOUND),
    "already-exists": (ErrorCode.DUPLICATE_BILL_NUMBER, ErrorType.CONFLICT),
    "resource-exhausted": (ErrorCode.TOO_MANY_REQUESTS, ErrorType.RATE_LIMIT),
    "aborted": (ErrorCode.CONCURRENT_MODIFICATION, ErrorType.CONFLICT),
}


def classify_error(exc: BaseException) -> SyncError:
    """Map any exception onto the taxonomy. SyncError passes through unchanged."""
    if isinstance(exc, SyncError):
        return exc

    message = str(exc) or exc.__class__.__name__

    store_code = getattr(exc, "code", None)
    if isinstance(store_code, str) and store_code in STORE_CODES:
        code, error_type = STORE_CODES[store_code]
        return SyncError(message, code, error_type, {"store_code": store_code})

    if isinstance(exc, ValidationError):
        return SyncError(message, ErrorCode.VALIDATION_FAILED, ErrorType.VALIDATION, {"errors": exc.errors})
    if isinstance(exc, ConflictError):
        return SyncError(message, ErrorCode.DUPLICATE_BILL_NUMBER, ErrorType.CONFLICT)
    if isinstance(exc, NotFoundError):
        code = {
            "bill": ErrorCode.BILL_NOT_FOUND,
            "product": ErrorCode.PRODUCT_NOT_FOUND,
        }.get(exc.kind, ErrorCode.NOT_FOUND)
        return SyncError(message, code, ErrorType.NOT_FOUND)
    if isinstance(exc, PermissionError):
        return SyncError(message, ErrorCode.FORBIDDEN, ErrorType.PERMISSION)
    if isinstance(exc, TimeoutError):
        return SyncError(message, ErrorCode.TIMEOUT, ErrorType.NETWORK)
    if isinstance(exc, (ConnectionError, OperationalError)):
        return SyncError(message, ErrorCode.NETWORK_ERROR, ErrorType.NETWORK)
    if isinstance(exc, StaleDataError):
        return SyncError(message, ErrorCode.CONCURRENT_MODIFICATION, ErrorType.CONFLICT)

    return SyncError(message, ErrorCode.UNKNOWN_ERROR, ErrorType.UNKNOWN)


_MESSAGES: dict[ErrorType, dict[str, str]] = {
    ErrorType.NETWORK: {
        "title": "Connection Problem",
        "message": "Unable to reach the server. Please check your connection.",
        "action": "Retry",
    },
    ErrorType.VALIDATION: {
        "title": "Invalid Input",
        "message": "Please check the highlighted fields and try again.",
        "action": "Fix Input",
    },
    ErrorType.PERMISSION: {
        "title": "Access Denied",
        "message": "You don't have permission to perform this action.",
        "action": "Contact Admin",
    },
    ErrorType.NOT_FOUND: {
        "title": "Not Found",
        "message": "The requested item could not be found. It may have been deleted.",
        "action": "Go Back",
    },
    ErrorType.CONFLICT: {
        "title": "Conflict",
        "message": "This item was changed or already exists. Refresh and try again.",
        "action": "Refresh",
    },
    ErrorType.RATE_LIMIT: {
        "title": "Too Many Requests",
        "message": "Please wait a moment before trying again.",
        "action": "Wait",
    },
    ErrorType.UNKNOWN: {
        "title": "Unexpected Error",
        "message": "Something went wrong. Please try again.",
        "action": "Retry",
    },
}


def get_error_message(exc: BaseException) -> dict:
    error = classify_error(exc)
    info = dict(_MESSAGES[error.error_type])
    if error.code is ErrorCode.DUPLICATE_BILL_NUMBER:
        info["message"] = "A bill with this number already exists."
    elif error.code is ErrorCode.TIMEOUT:
        info["message"] = "The request timed out. Please try again."
    return info


def get_recovery_options(exc: BaseException) -> list[dict]:
    error = classify_error(exc)
    options: list[dict] = []
    if error.retryable:
        options.append({"label": "Try Again", "action": "retry", "primary": True})
    if error.error_type is ErrorType.VALIDATION:
        options.append({"label": "Edit Input", "action": "edit", "primary": True})
    if error.error_type in (ErrorType.CONFLICT, ErrorType.NOT_FOUND):
        options.append({"label": "Refresh", "action": "refresh", "primary": not options})
    options.append({"label": "Dismiss", "action": "dismiss", "primary": False})
    return options


def report_error(exc: BaseException, context: dict | None = None) -> dict:
    error = classify_error(exc)
    report = {**error.to_dict(), "context": context or {}}
    if error.error_type in (ErrorType.VALIDATION, ErrorType.NOT_FOUND):
        logger.info("Reported %s error: %s", error.error_type.value, error.message)
    else:
        logger.error("Reported %s error: %s (context=%s)", error.error_type.value, error.message, context)
    return report


class RetryHandler:
    """
    Retry with exponential backoff (base_delay * 2**attempt) for retryable errors only.

    Non-retryable errors are raised immediately as SyncError, chained to the original.
    """

    def __init__(self, max_retries: int = 3, base_delay: float = 1.0, sleep: Callable[[float], Any] = time.sleep):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.sleep = sleep

    def run(self, operation: Callable[[], Any], context: str = "operation") -> Any:
        for attempt in range(self.max_retries + 1):
            try:
                return operation()
            except Exception as exc:
                error = classify_error(exc)
                if not error.retryable or attempt >= self.max_retries:
                    if error is exc:
                        raise
                    raise error from exc
                delay = self.base_delay * (2 ** attempt)
                logger.info(
                    "%s failed with %s, retrying in %.2fs (attempt %d/%d)",
                    context, error.code.value, delay, attempt + 1, self.max_retries,
                )
                self.sleep(delay)

    __call__ = run
