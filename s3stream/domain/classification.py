"""Classification of storage failures into writer outcomes.

The rules are kept free of I/O so they can be exercised without a backend.
The writer asks :func:`needs_existence_probe` whether a failed completion or
put should be double-checked with an existence probe, then feeds the probe
result into :func:`classify_failure`.
"""

from __future__ import annotations

from enum import Enum
from typing import Literal

PRECONDITION_FAILED_STATUS = 412
PRECONDITION_FAILED_CODE = "PreconditionFailed"
TOO_MANY_REQUESTS_STATUS = 429

# Throttling and timeout codes some backends send with a 4xx status.
TRANSIENT_ERROR_CODES = frozenset(
    {
        "Throttling",
        "ThrottlingException",
        "TooManyRequests",
        "TooManyRequestsException",
        "RequestTimeout",
        "RequestTimeoutException",
        "RequestLimitExceeded",
        "SlowDown",
        "InternalError",
        "ServiceUnavailable",
        "503",
    }
)

ErrorOrigin = Literal["client", "service"]


class OutcomeKind(str, Enum):
    RETRIABLE = "retriable"
    NON_RETRIABLE = "non_retriable"
    TARGET_EXISTS = "target_exists"
    CONSISTENCY_FAULT = "consistency_fault"


def origin_for_status(status_code: int | None) -> ErrorOrigin | None:
    """Derive the error origin from an HTTP status when the client did not say."""
    if status_code is None:
        return None
    if 400 <= status_code < 500:
        return "client"
    # 5xx, and 2xx bodies that carry an error element, are backend faults.
    return "service"


def is_precondition_failure(status_code: int | None, error_code: str | None) -> bool:
    if status_code == PRECONDITION_FAILED_STATUS:
        return True
    # Some backends answer 200 and embed the rejection in the body.
    return (
        status_code is not None
        and 200 <= status_code < 300
        and error_code == PRECONDITION_FAILED_CODE
    )


def is_transient_failure(status_code: int | None, error_code: str | None) -> bool:
    """Whether the backend asked the caller to back off, whatever the status class."""
    return status_code == TOO_MANY_REQUESTS_STATUS or error_code in TRANSIENT_ERROR_CODES


def needs_existence_probe(
    *, status_code: int | None, error_code: str | None, conditional_writes: bool
) -> bool:
    return conditional_writes and is_precondition_failure(status_code, error_code)


def classify_failure(
    *,
    status_code: int | None,
    error_code: str | None,
    origin: ErrorOrigin | None,
    conditional_writes: bool,
    object_exists: bool | None = None,
) -> OutcomeKind:
    """Map a storage failure to the outcome reported to the caller.

    Args:
        status_code: HTTP status of the failed response, ``None`` for
            transport failures.
        error_code: Backend error code (e.g. ``PreconditionFailed``).
        origin: ``"client"`` or ``"service"``; ``None`` derives it from the
            status, and a missing status means a transport failure.
        conditional_writes: Whether the request carried ``If-None-Match``.
        object_exists: Result of the existence probe; ``None`` when no probe
            ran or the probe failed.
    """
    if needs_existence_probe(
        status_code=status_code,
        error_code=error_code,
        conditional_writes=conditional_writes,
    ):
        if object_exists is True:
            return OutcomeKind.TARGET_EXISTS
        if object_exists is False:
            return OutcomeKind.CONSISTENCY_FAULT
        return OutcomeKind.RETRIABLE

    if is_transient_failure(status_code, error_code):
        return OutcomeKind.RETRIABLE

    resolved = origin or origin_for_status(status_code)
    if resolved == "client":
        return OutcomeKind.NON_RETRIABLE
    return OutcomeKind.RETRIABLE
