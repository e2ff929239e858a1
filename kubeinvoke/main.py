#!/usr/bin/env python3
"""
Kubeinvoke - Main Entry Point

This is the thin orchestration layer that:
1. Loads configuration
2. Initializes modules
3. Runs the API server and the background watches

All business logic is in the modules, following black box principles.
"""

import asyncio
import logging
import logging.config as log_config
from contextlib import aclosing, asynccontextmanager
from typing import List, Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sse_starlette.sse import EventSourceResponse

from kubeinvoke import __version__
from kubeinvoke.errors import InvalidRequest, InvocationError
from kubeinvoke.logging_config import get_logging_config

# Import modules through their black box interfaces
from kubeinvoke.modules.api import (
    DispatchResult,
    HealthResponse,
    InvokeRequest,
    JobStatus,
    TaskDefinition,
    TaskListResponse,
)
from kubeinvoke.modules.cluster import ClusterClient
from kubeinvoke.modules.config import ConfigModule, get_config
from kubeinvoke.modules.dispatch import DispatchEngine
from kubeinvoke.modules.identity import IdentityGenerator
from kubeinvoke.modules.jobs import JobBuilder
from kubeinvoke.modules.registry import TaskRegistry
from kubeinvoke.modules.status import StatusTracker

# Get configuration
config = get_config()

# Configure logging with health check suppression
log_config.dictConfig(get_logging_config(config.get("log_level")))
logger = logging.getLogger("kubeinvoke.main")

# Module instances (initialized at startup)
cluster_client: Optional[ClusterClient] = None
dispatch_engine: Optional[DispatchEngine] = None
watch_tasks: List[asyncio.Task] = []


def build_engine(cfg: ConfigModule, cluster) -> DispatchEngine:
    """
    Wire the dispatch engine and its collaborators.

    The Task cache and the phase cache live in the registry and tracker
    created here and are handed to the engine explicitly.
    """
    registry = TaskRegistry(
        cluster,
        ttl=cfg.get("task_cache_ttl"),
        watch_namespace=cfg.get("watch_namespace"),
    )
    tracker = StatusTracker(cluster, watch_namespace=cfg.get("watch_namespace"))
    identity = IdentityGenerator(
        prefix=cfg.get("job_name_prefix", ""),
        hash_length=cfg.get("job_name_hash_length"),
    )
    builder = JobBuilder(
        backoff_limit=cfg.get("job_backoff_limit"),
        ttl_seconds_after_finished=cfg.get("job_ttl_seconds_after_finished"),
    )
    return DispatchEngine(
        cluster,
        registry=registry,
        identity=identity,
        builder=builder,
        tracker=tracker,
        default_namespace=cfg.get("default_namespace"),
        sync_wait_timeout=cfg.get("sync_wait_timeout"),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application lifecycle - initialize and cleanup resources.
    """
    global cluster_client, dispatch_engine, watch_tasks

    # Startup
    logger.info("Starting Kubeinvoke API...")

    cluster_client = ClusterClient.from_config(config)
    dispatch_engine = build_engine(config, cluster_client)

    if config.get("watch_enabled"):
        watch_tasks = [
            asyncio.create_task(dispatch_engine.registry.run_watch(), name="task-watch"),
            asyncio.create_task(dispatch_engine.tracker.run_watch(), name="job-watch"),
        ]
        logger.info("Task and Job watches started")
    else:
        logger.info("Watches disabled, using TTL cache and polling")

    logger.info(
        f"Kubeinvoke API started (default namespace: {config.get('default_namespace')}, "
        f"sync wait: {config.get('sync_wait_timeout')}s)"
    )

    yield

    # Shutdown
    logger.info("Shutting down Kubeinvoke API...")

    for task in watch_tasks:
        task.cancel()
    await asyncio.gather(*watch_tasks, return_exceptions=True)
    watch_tasks = []

    if cluster_client:
        await cluster_client.close()
    logger.info("Kubeinvoke API shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="Kubeinvoke API",
    description="Kubeinvoke - Invoke Kubernetes Tasks like functions",
    version=__version__,
    lifespan=lifespan,
)


# Dependency injection helpers
async def get_engine() -> DispatchEngine:
    """Get the dispatch engine, failing fast before startup completed."""
    if not dispatch_engine:
        raise HTTPException(503, "Service not initialized")
    return dispatch_engine


# Task Endpoints


@app.get("/tasks", response_model=TaskListResponse)
async def list_tasks(
    namespace: Optional[str] = Query(None, description="Namespace to list (all when omitted)"),
    engine: DispatchEngine = Depends(get_engine),
):
    """
    List Task definitions.

    Returns:
        200: Task summaries
        503: Control plane unavailable
    """
    tasks = await engine.list_tasks(namespace)
    return TaskListResponse(tasks=tasks)


@app.get("/tasks/{namespace}/{task_name}", response_model=TaskDefinition)
async def get_task(namespace: str, task_name: str, engine: DispatchEngine = Depends(get_engine)):
    """
    Get one Task definition.

    Returns:
        200: Task definition
        404: Task not found
    """
    return await engine.get_task(namespace, task_name)


@app.post("/tasks/{namespace}/{task_name}/invoke", response_model=DispatchResult)
async def invoke_task(
    namespace: str,
    task_name: str,
    request: Optional[InvokeRequest] = None,
    engine: DispatchEngine = Depends(get_engine),
):
    """
    Invoke a Task.

    Async mode (default) returns as soon as the Job exists. Sync mode
    waits for the Job to finish, up to the configured timeout.

    Returns:
        200: Dispatch result
        202: Sync wait timed out; the Job keeps running
        400: Invalid request
        404: Task not found
        409: Job name taken by an unrelated Job
        502: Job creation rejected
    """
    request = request or InvokeRequest()
    logger.info(f"Invoking task: {task_name} in namespace: {namespace}")
    if not namespace.strip():
        raise InvalidRequest("Namespace must not be blank", task_name=task_name)
    return await engine.invoke(
        {
            "namespace": namespace,
            "taskName": task_name,
            "kwargs": request.kwargs,
            "requestId": request.request_id,
            "asyncMode": request.async_mode,
        }
    )


@app.post("/invoke/{task_name}", response_model=DispatchResult)
async def invoke_task_default_namespace(
    task_name: str,
    request: Optional[InvokeRequest] = None,
    engine: DispatchEngine = Depends(get_engine),
):
    """Invoke a Task in the default namespace."""
    return await invoke_task(engine.default_namespace, task_name, request, engine)


@app.get("/tasks/{namespace}/{task_name}/invocations/{request_id}", response_model=JobStatus)
async def get_invocation(
    namespace: str,
    task_name: str,
    request_id: str,
    engine: DispatchEngine = Depends(get_engine),
):
    """
    Get the status of the Job created for a request id.

    Returns:
        200: Job status
        404: No Job for this request id
    """
    status = await engine.get_invocation(namespace, task_name, request_id)
    if status is None:
        raise HTTPException(404, f"No invocation {request_id} for task {namespace}/{task_name}")
    return status


# Job Endpoints


@app.get("/jobs/{namespace}/{job_name}", response_model=JobStatus)
async def get_job_status(namespace: str, job_name: str, engine: DispatchEngine = Depends(get_engine)):
    """
    Get Job status.

    Returns:
        200: Job status (phase "unknown" if the Job no longer exists)
    """
    return await engine.get_status(namespace, job_name)


@app.get("/jobs/{namespace}/{job_name}/events")
async def job_events(namespace: str, job_name: str, engine: DispatchEngine = Depends(get_engine)):
    """
    SSE stream of Job phase changes.

    Sends the current status first, then one event per phase change, and
    closes after a terminal phase.
    """

    async def event_generator():
        async with aclosing(engine.watch_status(namespace, job_name)) as updates:
            async for status in updates:
                yield {
                    "event": "status",
                    "data": status.model_dump_json(by_alias=True),
                }
                if status.phase.is_terminal:
                    break

    return EventSourceResponse(event_generator())


# Health Endpoint


@app.get("/health", response_model=HealthResponse)
async def health_check():
    """
    Health check endpoint.

    Returns:
        200: Service healthy
        503: Service not initialized
    """
    if not dispatch_engine:
        return JSONResponse(
            status_code=503, content={"status": "unhealthy", "version": __version__}
        )
    return HealthResponse(
        status="healthy",
        version=__version__,
        watches={
            "tasks": dispatch_engine.registry.watching,
            "jobs": dispatch_engine.tracker.watching,
        },
    )


# Error handlers


@app.exception_handler(InvocationError)
async def invocation_error_handler(request: Request, exc: InvocationError):
    """Render invocation failures with their kind and context."""
    if exc.status_code >= 500:
        logger.error(f"{exc.kind}: {exc.message} {exc.context()} cause={exc.cause}")
    else:
        logger.warning(f"{exc.kind}: {exc.message} {exc.context()}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Handle malformed request bodies as InvalidRequest."""
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(part) for part in first.get("loc", ()))
    error = InvalidRequest(f"Invalid request: {field}: {first.get('msg', 'validation failed')}")
    logger.warning(f"Validation error on {request.url.path}: {error.message}")
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


def run() -> None:
    """Run the API server with the configured bind address and logging."""
    uvicorn.run(
        "kubeinvoke.main:app",
        host=config.get("host"),
        port=config.get("port"),
        log_level=config.get("log_level").lower(),
        reload=config.get("debug"),
        log_config=get_logging_config(config.get("log_level")),
    )


if __name__ == "__main__":
    run()
