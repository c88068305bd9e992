"""Error taxonomy shared by the store adapters, services and HTTP layer."""

from typing import Optional


class IssueTrackerError(Exception):
    """Base class for every error raised by the issue tracker."""


class ValidationError(IssueTrackerError):
    """A required report or profile field is missing or out of range.

    Always raised before the document store is touched.
    """


class NotFound(IssueTrackerError):
    """The target document does not exist (or vanished between read and use)."""


class StoreUnavailable(IssueTrackerError):
    """Transport or connectivity failure talking to the document store."""


class TransactionAborted(IssueTrackerError):
    """A transaction kept conflicting with concurrent commits until its retry budget ran out."""

    def __init__(self, message: str, attempts: int):
        super().__init__(message)
        self.attempts = attempts


class SubmissionFailed(IssueTrackerError):
    """A report could not be committed; `cause` holds the underlying store error."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


__all__ = [
    "IssueTrackerError",
    "ValidationError",
    "NotFound",
    "StoreUnavailable",
    "TransactionAborted",
    "SubmissionFailed",
]
