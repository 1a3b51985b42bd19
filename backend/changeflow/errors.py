"""
Error types for the changeflow engine.

Every failure the engine can meet falls in one of two classes:
- Fatal: the event can never succeed as-is (malformed object, legacy
  fields, invalid log entry, foreign tenant). Logged with the object id
  and left for the dead-letter queue.
- Retryable: infrastructure hiccups (timeouts, throttling, conflicts
  that outlived the retry budget). The message stays unacknowledged and
  the queue redelivers it.

Expected no-ops (trigger already consumed, no subscribers, meeting
already cancelled) are not errors and are never raised.

Invariants:
    - All engine errors inherit from ChangeflowError
    - ``retryable`` is a class-level fact, never decided by callers
    - Errors carry enough context (code, details) for triage

How to change safely:
    - New error types must pick a side (retryable or not)
    - Keep classify() in sync with the AWS error codes seen in production
"""

from __future__ import annotations

import asyncio
from typing import Any

from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    EndpointConnectionError,
    ReadTimeoutError,
)

RETRYABLE_AWS_CODES = frozenset(
    {
        "Throttling",
        "ThrottlingException",
        "TooManyRequestsException",
        "RequestLimitExceeded",
        "ProvisionedThroughputExceededException",
        "SlowDown",
        "ServiceUnavailable",
        "ServiceUnavailableException",
        "InternalError",
        "InternalServerError",
        "InternalFailure",
        "RequestTimeout",
        "RequestTimeoutException",
        "RequestExpired",
    }
)


class ChangeflowError(Exception):
    """Base exception for all engine errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    retryable: bool = False

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "CHANGEFLOW_ERROR"
        self.details = details or {}


class ValidationError(ChangeflowError):
    """A domain object or event failed validation.

    Raised when:
    - A required field is missing or has the wrong type
    - A status or timestamp cannot be parsed
    """

    def __init__(
        self,
        message: str,
        object_id: str | None = None,
        errors: list[str] | None = None,
        code: str = "VALIDATION_ERROR",
    ) -> None:
        super().__init__(
            message,
            code=code,
            details={"object_id": object_id, "errors": errors or []},
        )
        self.object_id = object_id
        self.errors = errors or []


class LegacyObjectError(ValidationError):
    """Object still carries the deprecated duplicate status fields."""

    def __init__(self, object_id: str | None, fields: list[str]) -> None:
        super().__init__(
            f"Object carries deprecated fields: {', '.join(fields)}",
            object_id=object_id,
            errors=[f"legacy field '{f}' is not allowed" for f in fields],
            code="LEGACY_OBJECT",
        )
        self.fields = fields


class ModificationValidationError(ValidationError):
    """A modification log entry is malformed."""

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message, errors=errors, code="INVALID_MODIFICATION")


class NotificationFormatError(ValidationError):
    """A queue message does not describe a trigger object."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="INVALID_NOTIFICATION")


class MeetingRequestError(ValidationError):
    """An object asks for a meeting but lacks the data to schedule one."""

    def __init__(self, message: str, object_id: str | None = None) -> None:
        super().__init__(message, object_id=object_id, code="INVALID_MEETING_REQUEST")


class TenantIsolationError(ChangeflowError):
    """A notification names a tenant other than the consuming worker's."""

    def __init__(self, expected: str, actual: str) -> None:
        super().__init__(
            f"Notification for tenant '{actual}' received by worker for '{expected}'",
            code="TENANT_ISOLATION",
            details={"expected": expected, "actual": actual},
        )


class UnknownTenantError(ChangeflowError):
    """No tenant mapping exists for a tenant code."""

    def __init__(self, tenant_code: str) -> None:
        super().__init__(
            f"Unknown tenant: {tenant_code}",
            code="UNKNOWN_TENANT",
            details={"tenant_code": tenant_code},
        )
        self.tenant_code = tenant_code


class TransientError(ChangeflowError):
    """Infrastructure failure expected to clear on its own."""

    retryable = True


class CallTimeoutError(TransientError):
    """An external call exceeded its time budget."""

    def __init__(self, operation: str, timeout: float) -> None:
        super().__init__(
            f"{operation} timed out after {timeout}s",
            code="TIMEOUT",
            details={"operation": operation, "timeout": timeout},
        )


class ArchiveUpdateError(TransientError):
    """The archive object could not be updated."""

    def __init__(self, object_id: str, message: str) -> None:
        super().__init__(
            f"Archive update failed for {object_id}: {message}",
            code="ARCHIVE_UPDATE_FAILED",
            details={"object_id": object_id},
        )


class ObjectSupersededError(TransientError):
    """A user transition landed while the engine was handling an older status.

    The engine's side effects were persisted but the older status was
    not marked processed; redelivery handles the new status.
    """

    def __init__(self, object_id: str, handled_status: str, current_status: str) -> None:
        super().__init__(
            f"Object {object_id} moved from {handled_status!r} to {current_status!r} during processing",
            code="OBJECT_SUPERSEDED",
            details={
                "object_id": object_id,
                "handled_status": handled_status,
                "current_status": current_status,
            },
        )


class NotificationError(TransientError):
    """The notifier failed to deliver a status notification."""

    def __init__(self, message: str, tenant_code: str | None = None) -> None:
        super().__init__(message, code="NOTIFICATION_FAILED", details={"tenant_code": tenant_code})


class MeetingError(TransientError):
    """The calendar API rejected or failed a request."""

    def __init__(self, message: str, status: int | None = None, retryable: bool = True) -> None:
        super().__init__(message, code="MEETING_FAILED", details={"status": status})
        self.status = status
        self.retryable = retryable


class SurveyError(TransientError):
    """The survey API failed to create a form."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message, code="SURVEY_FAILED", details={"status": status})


def aws_error_code(exc: ClientError) -> str:
    """Return the AWS error code carried by a botocore ClientError."""
    return exc.response.get("Error", {}).get("Code", "")


def classify(exc: BaseException) -> bool:
    """Return True if ``exc`` should be retried via redelivery.

    Unknown exception types are treated as fatal so that a programming
    error reaches the dead-letter queue instead of looping forever.
    """
    if isinstance(exc, ChangeflowError):
        return exc.retryable
    if isinstance(exc, asyncio.TimeoutError):
        return True
    if isinstance(exc, (EndpointConnectionError, ConnectionClosedError, ReadTimeoutError)):
        return True
    if isinstance(exc, ClientError):
        if aws_error_code(exc) in RETRYABLE_AWS_CODES:
            return True
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
        return status >= 500
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return True
    return False
