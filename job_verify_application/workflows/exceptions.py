from __future__ import annotations

from temporalio.exceptions import ApplicationError


class WorkflowError(ApplicationError):
    """Verification failure that tells Temporal whether another attempt can help."""

    def __init__(self, message: str, *, retryable: bool) -> None:  # noqa: D401
        super().__init__(message, non_retryable=not retryable)
        self.retryable = retryable


class RetryableWorkflowError(WorkflowError):
    def __init__(self, message: str) -> None:  # noqa: D401
        super().__init__(message, retryable=True)


class NonRetryableWorkflowError(WorkflowError):
    def __init__(self, message: str) -> None:  # noqa: D401
        super().__init__(message, retryable=False)


class DataStoreWorkflowError(RetryableWorkflowError):
    """Job data store read or write failed inside an activity."""


class InvalidBatchWorkflowError(NonRetryableWorkflowError):
    """Activity payload cannot be turned into verification candidates."""
