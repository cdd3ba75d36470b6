"""
Standardised error handling for OptiFlow.
"""

from optiflow.core.constants import ErrorCode, RETRYABLE_ERRORS


class OptiFlowError(Exception):
    """Raised when the queue, dispatcher or delivery hits a known error condition."""

    code = "ERR_UNEXPECTED"

    def __init__(self, message: str, code: str | None = None, retryable: bool | None = None):
        self.code = code or self.code
        self.message = message
        # auto-detect retryable from code if not explicitly set
        self.retryable = retryable if retryable is not None else (self.code in RETRYABLE_ERRORS)
        super().__init__(f"[{self.code}] {message}")


class ValidationError(OptiFlowError):
    """Malformed or missing payload sections, out-of-range scores."""
    code = ErrorCode.VALIDATION


class AlreadyQueued(OptiFlowError):
    """A job for this subject is already pending, processing or scheduled for retry."""
    code = ErrorCode.ALREADY_QUEUED

    def __init__(self, subject_id: int):
        self.subject_id = subject_id
        super().__init__(f"A job for subject {subject_id} is already in queue")


class InvalidStatus(OptiFlowError):
    code = ErrorCode.INVALID_STATUS

    def __init__(self, status: str):
        self.status = status
        super().__init__(f"Invalid job status: {status!r}")


class DeliveryError(OptiFlowError):
    """Outbound HTTP call failed. ``status_code`` is None for network errors."""

    def __init__(self, message: str, status_code: int | None = None,
                 code: str | None = None, retryable: bool | None = None):
        self.status_code = status_code
        super().__init__(message, code=code, retryable=retryable)


class TransientDeliveryError(DeliveryError):
    code = ErrorCode.DELIVERY_TRANSIENT


class PermanentDeliveryError(DeliveryError):
    code = ErrorCode.DELIVERY_PERMANENT


class JobTimeoutError(OptiFlowError):
    code = ErrorCode.JOB_TIMEOUT


class ExhaustedRetriesError(OptiFlowError):
    code = ErrorCode.EXHAUSTED_RETRIES

    def __init__(self, job_id: int, attempts: int, last_error: str):
        self.job_id = job_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Job {job_id} failed after {attempts} attempts: {last_error}")


def is_retryable(code: str) -> bool:
    return code in RETRYABLE_ERRORS
