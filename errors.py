"""Error taxonomy shared by the job engine, orchestrators and gateway."""
from __future__ import annotations

from typing import Optional

GENERIC_ERROR_MESSAGE = "An unknown error occurred."


class JobServiceError(Exception):
    """Base class for errors raised by the job service."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class ValidationError(JobServiceError):
    """Malformed or missing input at submission time."""

    def __init__(self, message: str, *, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field


class NotFoundError(JobServiceError):
    """Unknown or expired job id."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class GatewayError(JobServiceError):
    """The generation gateway answered with a failure."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransportError(JobServiceError):
    """Network-level failure reaching the gateway or the token provider."""


class OrchestrationError(JobServiceError):
    """Fault in a batch or pipeline driver, not in a single sub-task."""


def describe_error(exc: BaseException, *, default: str = GENERIC_ERROR_MESSAGE) -> str:
    """Return a non-empty, human-readable message for ``exc``."""

    message = str(exc or "").strip()
    return message or default


__all__ = [
    "GENERIC_ERROR_MESSAGE",
    "JobServiceError",
    "ValidationError",
    "NotFoundError",
    "GatewayError",
    "TransportError",
    "OrchestrationError",
    "describe_error",
]
