"""
API Module - Black Box Interface

Purpose: Shared data models for HTTP and module boundaries
Interface: pydantic models and enums
Hidden: Parsing of raw Kubernetes objects into typed records

The API module only describes data - it contains no business logic.
All logic is delegated to appropriate modules.
"""

from .models import (
    DispatchResult,
    DispatchStatus,
    HealthResponse,
    InvocationRequest,
    InvokeRequest,
    JobPhase,
    JobStatus,
    TaskDefinition,
    TaskListResponse,
    TaskResources,
    TaskSummary,
)

__all__ = [
    "DispatchResult",
    "DispatchStatus",
    "HealthResponse",
    "InvocationRequest",
    "InvokeRequest",
    "JobPhase",
    "JobStatus",
    "TaskDefinition",
    "TaskListResponse",
    "TaskResources",
    "TaskSummary",
]
