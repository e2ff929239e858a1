"""
Cluster Module - Black Box Interface

Purpose: All communication with the Kubernetes control plane
Interface: get(), list(), create(), create_if_absent(), watch(), stream()
Hidden: REST paths, authentication, watch reconnection and relisting

Can be replaced with any client library that offers the same primitives.
"""

from .client import (
    JOBS,
    TASKS,
    ClusterClient,
    ClusterError,
    CreateOutcome,
    ResourceKind,
    TokenFileAuth,
    WatchEvent,
)

__all__ = [
    "ClusterClient",
    "ClusterError",
    "CreateOutcome",
    "ResourceKind",
    "TokenFileAuth",
    "WatchEvent",
    "TASKS",
    "JOBS",
]
