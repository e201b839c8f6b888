"""Error taxonomy shared by the status core."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    VALIDATION_FAILED = "validation_failed"
    PARTIAL_FAILURE = "partial_failure"
    INTERNAL = "internal"


class StatusPulseError(RuntimeError):
    """Base class for expected failures raised inside core operations."""

    kind = ErrorKind.INTERNAL


class NotFoundError(StatusPulseError):
    kind = ErrorKind.NOT_FOUND


class ValidationFailedError(StatusPulseError):
    kind = ErrorKind.VALIDATION_FAILED


__all__ = ["ErrorKind", "StatusPulseError", "NotFoundError", "ValidationFailedError"]
