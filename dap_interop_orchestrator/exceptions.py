class DapError(Exception):
    """Base error for a failed orchestration step.

    Carries enough context for an operator to diagnose the failure by hand:
    the step that failed, the HTTP status (if any), the collection job URL
    (if any) and the server's diagnostic text.
    """

    def __init__(
        self,
        message: str,
        step: str | None = None,
        status_code: int | None = None,
        job_url: str | None = None,
        detail: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.step = step
        self.status_code = status_code
        self.job_url = job_url
        self.detail = detail

    def __str__(self):
        parts = [self.message]
        if self.step is not None:
            parts.append(f"step={self.step}")
        if self.status_code is not None:
            parts.append(f"status={self.status_code}")
        if self.job_url is not None:
            parts.append(f"job_url={self.job_url}")
        if self.detail:
            parts.append(f"detail={self.detail}")
        return ", ".join(parts)


class NetworkError(DapError):
    """Transport-level failure. Retryable."""


class AuthError(DapError):
    """Missing or rejected bearer token. Never retried."""


class ProtocolRejection(DapError):
    """The aggregator rejected the request as malformed or inconsistent."""


class TaskConflict(ProtocolRejection):
    """The aggregator already holds state for the task from a prior run."""


class CollectionJobFailed(ProtocolRejection):
    """The collection job reached a terminal failure."""


class NotReadyYet(DapError):
    """The collection job is still pending."""


class CollectionTimeout(DapError):
    """The poll budget ran out before the collection job completed."""


class DecodeError(DapError):
    """The collection payload could not be decoded into an aggregate."""


class UploadError(DapError):
    """The client failed to upload a report."""


class ReportCountMismatch(DapError):
    """The collected report count is inconsistent with the uploads."""


class OrchestrationAborted(DapError):
    """The run was aborted between two steps."""


class RetryExhausted(DapError):
    """A transient error persisted through every retry attempt."""
