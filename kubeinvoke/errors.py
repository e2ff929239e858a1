"""
Invocation error taxonomy.

Every failure the dispatch path can produce is one of these kinds. Each
carries the invocation context (namespace, task, request id, job name) and
the underlying cause so the HTTP layer can render a precise response.
"""

from typing import Any, Dict, Optional


class InvocationError(Exception):
    """Base class for all invocation failures."""

    kind = "InvocationError"
    status_code = 500
    retriable = False

    def __init__(
        self,
        message: str,
        *,
        namespace: Optional[str] = None,
        task_name: Optional[str] = None,
        request_id: Optional[str] = None,
        job_name: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.namespace = namespace
        self.task_name = task_name
        self.request_id = request_id
        self.job_name = job_name
        self.cause = cause

    def context(self) -> Dict[str, Any]:
        """Invocation context, omitting unknown fields."""
        fields = {
            "namespace": self.namespace,
            "taskName": self.task_name,
            "requestId": self.request_id,
            "jobName": self.job_name,
        }
        return {key: value for key, value in fields.items() if value is not None}

    def to_dict(self) -> Dict[str, Any]:
        """Render as a JSON-serializable error body."""
        body: Dict[str, Any] = {
            "error": self.kind,
            "message": self.message,
            "status": "rejected",
            "retriable": self.retriable,
            "details": self.context(),
        }
        if self.cause is not None:
            body["cause"] = str(self.cause)
        return body


class InvalidRequest(InvocationError):
    """Malformed invocation input."""

    kind = "InvalidRequest"
    status_code = 400


class TaskNotFound(InvocationError):
    """No usable Task definition for (namespace, name)."""

    kind = "TaskNotFound"
    status_code = 404


class RegistryUnavailable(InvocationError):
    """Reading Task definitions from the control plane failed."""

    kind = "RegistryUnavailable"
    status_code = 503
    retriable = True


class ConflictError(InvocationError):
    """Derived job name is taken by a Job of different provenance."""

    kind = "ConflictError"
    status_code = 409


class SubmissionError(InvocationError):
    """The control plane rejected or failed the Job create call."""

    kind = "SubmissionError"
    status_code = 502
    retriable = True


class TimedOut(InvocationError):
    """
    A synchronous invocation exceeded its wait budget.

    The Job was submitted and keeps running; ``result`` holds the
    DispatchResult so the caller can poll it later.
    """

    kind = "TimedOut"
    status_code = 202
    retriable = False

    def __init__(self, message: str, *, result: Any = None, **kwargs):
        super().__init__(message, **kwargs)
        self.result = result

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        if self.result is not None:
            body["status"] = self.result.status.value
            body["result"] = self.result.model_dump(mode="json", by_alias=True)
        return body


__all__ = [
    "InvocationError",
    "InvalidRequest",
    "TaskNotFound",
    "RegistryUnavailable",
    "ConflictError",
    "SubmissionError",
    "TimedOut",
]
