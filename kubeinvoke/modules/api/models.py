"""
Kubeinvoke shared data models.

These models define the structure of all data passed between
components in the Kubeinvoke system. JSON renders use camelCase keys,
matching the Kubernetes resources the service reads and writes.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

# Shared resource metadata keys

APP_LABEL = "app"
APP_LABEL_VALUE = "lambda-task"
TASK_LABEL = "task"
INVOCATION_KEY_LABEL = "invocation-key"

ANNOTATION_PREFIX = "lambda.example.com"
REQUEST_ID_ANNOTATION = f"{ANNOTATION_PREFIX}/request-id"
TASK_ANNOTATION = f"{ANNOTATION_PREFIX}/task"
NAMESPACE_ANNOTATION = f"{ANNOTATION_PREFIX}/namespace"

# Enums


class JobPhase(str, Enum):
    """Phase of a Job as seen by the status tracker."""

    ACCEPTED = "accepted"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    UNKNOWN = "unknown"

    @property
    def is_terminal(self) -> bool:
        return self in (JobPhase.SUCCEEDED, JobPhase.FAILED)


class DispatchStatus(str, Enum):
    """Engine's view of an invocation at response time."""

    ACCEPTED = "accepted"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REJECTED = "rejected"
    TIMED_OUT = "timed_out"

    @classmethod
    def from_phase(cls, phase: JobPhase) -> "DispatchStatus":
        """Map a job phase onto a dispatch status."""
        if phase == JobPhase.UNKNOWN:
            return cls.ACCEPTED
        return cls(phase.value)


class CamelModel(BaseModel):
    """Base model accepting snake_case or camelCase, rendering camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Task definitions (read from the cluster)


class ResourceQuantities(CamelModel):
    """CPU / memory quantities as Kubernetes strings."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    cpu: Optional[str] = None
    memory: Optional[str] = None

    def as_dict(self) -> Dict[str, str]:
        return {key: value for key, value in (("cpu", self.cpu), ("memory", self.memory)) if value}


class TaskResources(CamelModel):
    """Container resource requirements declared by a Task."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    limits: ResourceQuantities = Field(default_factory=ResourceQuantities)
    requests: ResourceQuantities = Field(default_factory=ResourceQuantities)


class TaskDefinition(CamelModel):
    """
    A Task custom resource, flattened.

    Identity is (namespace, name). The engine never mutates it.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    namespace: str
    name: str
    image: str
    handler: str = "handler"
    image_pull_policy: str = "IfNotPresent"
    default_env: Dict[str, str] = Field(default_factory=dict)
    default_args: Dict[str, Any] = Field(default_factory=dict)
    timeout_seconds: int = Field(default=300, ge=1)
    resources: TaskResources = Field(default_factory=TaskResources)
    resource_version: Optional[str] = None

    @classmethod
    def from_resource(cls, obj: Dict[str, Any]) -> "TaskDefinition":
        """
        Build from a Task object as returned by the API server.

        Raises:
            ValueError: If the object is not a usable Task (e.g. no image)
        """
        metadata = obj.get("metadata") or {}
        spec = obj.get("spec") or {}
        if not spec.get("image"):
            raise ValueError(f"Task {metadata.get('name')!r} has no spec.image")

        default_env = {}
        for entry in spec.get("env") or []:
            if entry.get("name"):
                default_env[entry["name"]] = str(entry.get("value", ""))

        default_args = spec.get("defaultArgs") or {}
        if not isinstance(default_args, dict):
            raise ValueError(f"Task {metadata.get('name')!r} has non-object spec.defaultArgs")

        return cls(
            namespace=metadata.get("namespace", ""),
            name=metadata.get("name", ""),
            image=spec["image"],
            handler=spec.get("handler") or "handler",
            image_pull_policy=spec.get("imagePullPolicy") or "IfNotPresent",
            default_env=default_env,
            default_args=default_args,
            timeout_seconds=spec.get("timeout") or 300,
            resources=TaskResources.model_validate(spec.get("resources") or {}),
            resource_version=metadata.get("resourceVersion"),
        )

    @property
    def key(self) -> tuple:
        return (self.namespace, self.name)

    def summary(self) -> "TaskSummary":
        return TaskSummary(
            name=self.name, namespace=self.namespace, image=self.image, handler=self.handler
        )


class TaskSummary(CamelModel):
    """Task listing entry."""

    name: str
    namespace: str
    image: str
    handler: str


class TaskListResponse(CamelModel):
    """Response for task enumeration."""

    tasks: List[TaskSummary]


# Request Models (API Input)


class InvokeRequest(CamelModel):
    """HTTP body of an invoke call; task and namespace come from the path."""

    kwargs: Optional[Dict[str, Any]] = Field(
        default=None, description="Keyword arguments passed to the task handler"
    )
    request_id: Optional[str] = Field(
        default=None, description="Idempotency key; repeated ids map to one Job"
    )
    async_mode: bool = Field(default=True, description="Return without waiting for the Job")


class InvocationRequest(CamelModel):
    """A fully addressed invocation handed to the dispatch engine."""

    namespace: Optional[str] = None
    task_name: str = Field(..., min_length=1)
    kwargs: Dict[str, Any] = Field(default_factory=dict)
    request_id: Optional[str] = None
    async_mode: bool = True

    @field_validator("task_name")
    @classmethod
    def validate_task_name(cls, v):
        if not v.strip():
            raise ValueError("taskName must not be blank")
        return v.strip()

    @field_validator("kwargs", mode="before")
    @classmethod
    def validate_kwargs(cls, v):
        """Absent kwargs mean an empty object; anything but an object is rejected."""
        if v is None:
            return {}
        if not isinstance(v, dict):
            raise ValueError("kwargs must be a JSON object")
        return v

    @field_validator("namespace", "request_id")
    @classmethod
    def blank_to_none(cls, v):
        if v is None:
            return v
        v = v.strip()
        return v or None


# Response Models (API Output)


class JobStatus(CamelModel):
    """Current state of one Job."""

    namespace: str
    job_name: str
    phase: JobPhase
    start_time: Optional[datetime] = None
    completion_time: Optional[datetime] = None
    failure_reason: Optional[str] = None
    message: Optional[str] = None
    task_name: Optional[str] = None
    request_id: Optional[str] = None

    @classmethod
    def unknown(cls, namespace: str, job_name: str) -> "JobStatus":
        return cls(namespace=namespace, job_name=job_name, phase=JobPhase.UNKNOWN)

    @classmethod
    def from_job(cls, job: Dict[str, Any]) -> "JobStatus":
        """
        Derive a status record from a batch/v1 Job object.

        Logic:
        1. A true Complete / SuccessCriteriaMet condition means succeeded
        2. A true Failed / FailureTarget condition means failed
        3. Active pods or a start time mean running
        4. Otherwise the Job is accepted but not started
        """
        metadata = job.get("metadata") or {}
        annotations = metadata.get("annotations") or {}
        status = job.get("status") or {}

        phase = JobPhase.ACCEPTED
        failure_reason = None
        message = None
        for condition in status.get("conditions") or []:
            if condition.get("status") != "True":
                continue
            if condition.get("type") in ("Complete", "SuccessCriteriaMet"):
                phase = JobPhase.SUCCEEDED
                break
            if condition.get("type") in ("Failed", "FailureTarget"):
                phase = JobPhase.FAILED
                failure_reason = condition.get("reason") or "Failed"
                message = condition.get("message")
                break
        else:
            if status.get("active") or status.get("startTime"):
                phase = JobPhase.RUNNING

        return cls(
            namespace=metadata.get("namespace", ""),
            job_name=metadata.get("name", ""),
            phase=phase,
            start_time=status.get("startTime"),
            completion_time=status.get("completionTime"),
            failure_reason=failure_reason,
            message=message,
            task_name=annotations.get(TASK_ANNOTATION),
            request_id=annotations.get(REQUEST_ID_ANNOTATION),
        )


class DispatchResult(CamelModel):
    """Tracking handle returned for an invocation."""

    request_id: str
    job_name: str
    status: DispatchStatus
    namespace: str
    task_name: str
    deduplicated: bool = False
    detail: Optional[JobStatus] = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(..., description="Health status", pattern="^(healthy|unhealthy|degraded)$")
    version: str = Field(default="1.0.0", description="API version")
    watches: Optional[Dict[str, bool]] = None
