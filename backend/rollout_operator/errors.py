"""
Error taxonomy for the reconciliation engine.

TransientError and its subclasses are retried by requeueing the application;
they never mark a component as failed. SpecInvalid halts one application until
its spec changes. JobFailed is local to one component and is retried with
backoff by the update driver.
"""
from typing import Optional


class OperatorError(Exception):
    """Base class for engine errors."""


class TransientError(OperatorError):
    """A collaborator call failed due to contention or unavailability."""


class ConflictError(TransientError):
    """A status write lost an optimistic-concurrency race."""


class ApplicationNotFound(OperatorError):
    """The application resource no longer exists."""


class SpecInvalid(OperatorError):
    """The declared spec cannot be reconciled until it is changed."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.field = field

    def __str__(self) -> str:
        if self.field:
            return f"{self.field}: {self.message}"
        return self.message


class JobFailed(OperatorError):
    """A pre/post update job finished unsuccessfully."""

    def __init__(self, job_name: str, reason: str = ""):
        self.job_name = job_name
        self.reason = reason
        super().__init__(f"job {job_name} failed" + (f": {reason}" if reason else ""))
