import asyncio
import logging
from typing import Any, AsyncIterator, List, Mapping, Optional, Union

from pydantic import ValidationError

from kubeinvoke.errors import ConflictError, InvalidRequest, SubmissionError, TimedOut
from kubeinvoke.modules.api.models import (
    DispatchResult,
    DispatchStatus,
    InvocationRequest,
    JobStatus,
    TaskDefinition,
    TaskSummary,
)
from kubeinvoke.modules.cluster import JOBS, ClusterError
from kubeinvoke.modules.identity import ExecutionIdentity, IdentityGenerator, invocation_key
from kubeinvoke.modules.jobs import JobBuilder
from kubeinvoke.modules.registry import TaskRegistry
from kubeinvoke.modules.status import StatusTracker

logger = logging.getLogger("kubeinvoke.dispatch")


class DispatchEngine:
    """
    Turns invocation requests into Jobs.

    Flow: validate -> resolve Task -> derive identity -> create-if-absent
    -> return (async) or wait for a terminal phase (sync).

    At most one Job exists per (namespace, task, request id): the API
    server's duplicate-name rejection is the only synchronization used.
    """

    def __init__(
        self,
        cluster,
        registry: TaskRegistry,
        identity: IdentityGenerator,
        builder: JobBuilder,
        tracker: StatusTracker,
        default_namespace: str = "default",
        sync_wait_timeout: float = 60.0,
    ):
        """
        Initialize dispatch engine.

        Args:
            cluster: ClusterClient (or compatible) used to submit Jobs
            registry: Task registry (owns the Task cache)
            identity: Execution identity generator
            builder: Job manifest builder
            tracker: Job status tracker (owns the phase cache)
            default_namespace: Namespace for requests that do not name one
            sync_wait_timeout: Max seconds a synchronous invocation waits
        """
        self.cluster = cluster
        self.registry = registry
        self.identity = identity
        self.builder = builder
        self.tracker = tracker
        self.default_namespace = default_namespace
        self.sync_wait_timeout = sync_wait_timeout

    # Read-only surface

    async def list_tasks(self, namespace: Optional[str] = None) -> List[TaskSummary]:
        """List Task summaries in a namespace (None = all namespaces)."""
        tasks = await self.registry.list(namespace)
        return [task.summary() for task in tasks]

    async def get_task(self, namespace: str, name: str) -> TaskDefinition:
        """Get one Task definition."""
        return await self.registry.resolve(namespace, name)

    async def get_status(self, namespace: str, job_name: str) -> JobStatus:
        """Get the status record of a Job."""
        return await self.tracker.status(namespace, job_name)

    async def get_invocation(self, namespace: str, task_name: str, request_id: str) -> Optional[JobStatus]:
        """
        Look up the Job created for a request id.

        Returns:
            JobStatus, or None if no Job carries that invocation
        """
        key = invocation_key(namespace, task_name, request_id)
        return await self.tracker.find_by_invocation(namespace, key)

    def watch_status(self, namespace: str, job_name: str) -> AsyncIterator[JobStatus]:
        """Phase-change stream of a Job (current status first)."""
        return self.tracker.subscribe(namespace, job_name)

    # Invocation

    def validate(self, request: Union[InvocationRequest, Mapping[str, Any]]) -> InvocationRequest:
        """
        Validate a raw or parsed request and fill in the default namespace.

        Raises:
            InvalidRequest: Blank task name, non-object kwargs, wrong types
        """
        if not isinstance(request, InvocationRequest):
            if not isinstance(request, Mapping):
                raise InvalidRequest("Invocation request must be a JSON object")
            try:
                request = InvocationRequest.model_validate(request)
            except ValidationError as e:
                first = e.errors()[0]
                field = ".".join(str(part) for part in first.get("loc", ()))
                raise InvalidRequest(
                    f"Invalid invocation request: {field}: {first.get('msg')}",
                    task_name=request.get("taskName") or request.get("task_name"),
                    cause=e,
                ) from e

        if request.namespace is None:
            request = request.model_copy(update={"namespace": self.default_namespace})
        return request

    async def invoke(self, request: Union[InvocationRequest, Mapping[str, Any]]) -> DispatchResult:
        """
        Dispatch one invocation.

        Args:
            request: InvocationRequest or its JSON-shaped mapping

        Returns:
            DispatchResult (accepted for async mode, terminal status for sync)

        Raises:
            InvalidRequest: Malformed request
            TaskNotFound: No such Task
            RegistryUnavailable: Task lookup failed
            ConflictError: Job name taken by an unrelated Job
            SubmissionError: Job create rejected or failed
            TimedOut: Sync wait exceeded; the Job keeps running
        """
        request = self.validate(request)
        namespace = request.namespace
        task = await self.registry.resolve(namespace, request.task_name)

        identity = self.identity.generate(namespace, task.name, request.request_id)
        for name in self.builder.shadowed_env(task):
            logger.warning(f"Task {namespace}/{task.name} env {name} shadows a reserved variable, dropped")
        manifest = self.builder.build(task, request.kwargs, identity)

        existing = await self._submit(identity, manifest)
        if existing is None:
            logger.info(f"Created job {namespace}/{identity.job_name} for task {task.name} (request {identity.request_id})")
            current = None
            deduplicated = False
        else:
            logger.info(f"Request {identity.request_id} already has job {namespace}/{identity.job_name}, not resubmitting")
            current = JobStatus.from_job(existing)
            deduplicated = True

        if request.async_mode:
            status = DispatchStatus.from_phase(current.phase) if current else DispatchStatus.ACCEPTED
            return self._result(identity, status, deduplicated, current)

        return await self._await_completion(identity, deduplicated)

    async def _submit(self, identity: ExecutionIdentity, manifest: dict) -> Optional[dict]:
        """
        Create the Job unless this invocation already has one.

        Returns:
            None if a Job was created, else the existing Job of this invocation
        """
        try:
            # A cancelled request must not abort an in-flight create
            outcome = await asyncio.shield(
                self.cluster.create_if_absent(JOBS, identity.namespace, manifest)
            )
        except ClusterError as e:
            raise SubmissionError(
                f"Failed to create job {identity.namespace}/{identity.job_name}",
                namespace=identity.namespace,
                task_name=identity.task_name,
                request_id=identity.request_id,
                job_name=identity.job_name,
                cause=e,
            ) from e

        if outcome.created:
            return None
        if not self.builder.matches_provenance(outcome.object, identity):
            raise ConflictError(
                f"Job {identity.namespace}/{identity.job_name} already exists for a different invocation",
                namespace=identity.namespace,
                task_name=identity.task_name,
                request_id=identity.request_id,
                job_name=identity.job_name,
            )
        return outcome.object

    async def _await_completion(self, identity: ExecutionIdentity, deduplicated: bool) -> DispatchResult:
        final = await self.tracker.wait_for_completion(
            identity.namespace, identity.job_name, timeout=self.sync_wait_timeout
        )
        if final is not None:
            status = DispatchStatus.from_phase(final.phase)
            logger.info(f"Job {identity.namespace}/{identity.job_name} finished: {status.value}")
            return self._result(identity, status, deduplicated, final)

        current = await self.tracker.status(identity.namespace, identity.job_name)
        result = self._result(identity, DispatchStatus.TIMED_OUT, deduplicated, current)
        logger.warning(
            f"Job {identity.namespace}/{identity.job_name} still {current.phase.value} "
            f"after {self.sync_wait_timeout}s; leaving it running"
        )
        raise TimedOut(
            f"Job {identity.namespace}/{identity.job_name} did not finish within {self.sync_wait_timeout}s",
            result=result,
            namespace=identity.namespace,
            task_name=identity.task_name,
            request_id=identity.request_id,
            job_name=identity.job_name,
        )

    @staticmethod
    def _result(
        identity: ExecutionIdentity,
        status: DispatchStatus,
        deduplicated: bool,
        detail: Optional[JobStatus],
    ) -> DispatchResult:
        return DispatchResult(
            request_id=identity.request_id,
            job_name=identity.job_name,
            status=status,
            namespace=identity.namespace,
            task_name=identity.task_name,
            deduplicated=deduplicated,
            detail=detail,
        )
