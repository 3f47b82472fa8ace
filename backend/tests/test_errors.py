import pytest

from billsync.errors import (
    ErrorCode,
    ErrorType,
    RetryHandler,
    SyncError,
    classify_error,
    get_error_message,
    get_recovery_options,
    report_error,
)
from billsync.services.store import StoreError
from billsync.validation import ConflictError, NotFoundError, ValidationError


@pytest.mark.parametrize(
    "exc, code, error_type",
    [
        (StoreError("unavailable"), ErrorCode.NETWORK_ERROR, ErrorType.NETWORK),
        (StoreError("deadline-exceeded"), ErrorCode.TIMEOUT, ErrorType.NETWORK),
        (StoreError("permission-denied"), ErrorCode.FORBIDDEN, ErrorType.PERMISSION),
        (StoreError("resource-exhausted"), ErrorCode.TOO_MANY_REQUESTS, ErrorType.RATE_LIMIT),
        (StoreError("aborted"), ErrorCode.CONCURRENT_MODIFICATION, ErrorType.CONFLICT),
        (ValidationError(errors={"vendor": "Vendor is required"}), ErrorCode.VALIDATION_FAILED, ErrorType.VALIDATION),
        (ConflictError("Bill number B001 already exists"), ErrorCode.DUPLICATE_BILL_NUMBER, ErrorType.CONFLICT),
        (NotFoundError("Bill not found", kind="bill"), ErrorCode.BILL_NOT_FOUND, ErrorType.NOT_FOUND),
        (NotFoundError("Product not found", kind="product"), ErrorCode.PRODUCT_NOT_FOUND, ErrorType.NOT_FOUND),
        (TimeoutError("slow"), ErrorCode.TIMEOUT, ErrorType.NETWORK),
        (ConnectionError("down"), ErrorCode.NETWORK_ERROR, ErrorType.NETWORK),
        (RuntimeError("?"), ErrorCode.UNKNOWN_ERROR, ErrorType.UNKNOWN),
    ],
)
def test_classify_error(exc, code, error_type):
    error = classify_error(exc)
    assert error.code is code
    assert error.error_type is error_type


def test_only_network_and_rate_limit_are_retryable():
    retryable = {
        code for code in ErrorCode
        if SyncError("x", code).retryable
    }
    assert retryable == {ErrorCode.NETWORK_ERROR, ErrorCode.TIMEOUT, ErrorCode.TOO_MANY_REQUESTS}


def test_sync_error_passes_through_classification():
    error = SyncError("boom", ErrorCode.OFFLINE, ErrorType.NETWORK)
    assert classify_error(error) is error


def test_validation_details_are_kept():
    error = classify_error(ValidationError(errors={"date": "Invalid date format"}))
    assert error.to_dict()["details"] == {"errors": {"date": "Invalid date format"}}
    assert error.to_dict()["timestamp"].endswith("Z")


def test_duplicate_number_message():
    info = get_error_message(ConflictError("dup"))
    assert info["title"] == "Conflict"
    assert info["message"] == "A bill with this number already exists."


def test_recovery_options():
    network = [o["action"] for o in get_recovery_options(StoreError("unavailable"))]
    validation = [o["action"] for o in get_recovery_options(ValidationError())]
    missing = get_recovery_options(NotFoundError("gone"))

    assert network == ["retry", "dismiss"]
    assert validation == ["edit", "dismiss"]
    assert missing[0] == {"label": "Refresh", "action": "refresh", "primary": True}


def test_report_error_includes_context():
    report = report_error(StoreError("unavailable"), {"operation": "create bill"})
    assert report["code"] == "NETWORK_ERROR"
    assert report["retryable"] is True
    assert report["context"] == {"operation": "create bill"}


class _Flaky:
    def __init__(self, failures, exc_factory):
        self.failures = failures
        self.exc_factory = exc_factory
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc_factory()
        return "ok"


def test_retry_backs_off_exponentially_then_succeeds():
    sleeps = []
    handler = RetryHandler(max_retries=3, base_delay=1.0, sleep=sleeps.append)
    operation = _Flaky(2, lambda: StoreError("unavailable"))

    assert handler.run(operation) == "ok"
    assert operation.calls == 3
    assert sleeps == [1.0, 2.0]


def test_retry_gives_up_after_max_retries():
    sleeps = []
    handler = RetryHandler(max_retries=2, base_delay=0.5, sleep=sleeps.append)
    operation = _Flaky(10, lambda: StoreError("resource-exhausted"))

    with pytest.raises(SyncError) as exc:
        handler(operation)

    assert exc.value.code is ErrorCode.TOO_MANY_REQUESTS
    assert isinstance(exc.value.__cause__, StoreError)
    assert operation.calls == 3
    assert sleeps == [0.5, 1.0]


def test_validation_errors_are_never_retried():
    sleeps = []
    handler = RetryHandler(sleep=sleeps.append)
    operation = _Flaky(10, lambda: ValidationError(errors={"vendor": "Vendor is required"}))

    with pytest.raises(SyncError) as exc:
        handler.run(operation)

    assert exc.value.error_type is ErrorType.VALIDATION
    assert operation.calls == 1
    assert sleeps == []
