"""
Shared pytest fixtures for Kubeinvoke tests.

This module provides common fixtures including:
- FakeCluster: In-memory Kubernetes control plane that records every call
- Engine factory wiring the real modules against the fake cluster
- Task / Job object builders
"""

import asyncio
import copy
import os
import sys
from datetime import UTC, datetime
from typing import Dict, List, Optional, Tuple

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from kubeinvoke.modules.cluster import ClusterError, CreateOutcome, WatchEvent
from kubeinvoke.modules.dispatch import DispatchEngine
from kubeinvoke.modules.identity import IdentityGenerator
from kubeinvoke.modules.jobs import JobBuilder
from kubeinvoke.modules.registry import TaskRegistry
from kubeinvoke.modules.status import StatusTracker


# =============================================================================
# Object Builders
# =============================================================================


def task_object(namespace: str, name: str, image: str = "registry.local/tasks:1.0", **spec) -> dict:
    """Build a Task custom resource as the API server returns it."""
    body = {"image": image}
    body.update(spec)
    return {
        "apiVersion": "lambda.example.com/v1",
        "kind": "Task",
        "metadata": {"name": name, "namespace": namespace, "resourceVersion": "1"},
        "spec": body,
    }


def job_object(namespace: str, name: str, annotations: Optional[dict] = None, status: Optional[dict] = None) -> dict:
    """Build a bare Job object (e.g. a pre-existing, unrelated Job)."""
    return {
        "apiVersion": "batch/v1",
        "kind": "Job",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "labels": {},
            "annotations": annotations or {},
        },
        "spec": {},
        "status": status or {},
    }


def _now() -> str:
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


# =============================================================================
# Fake Control Plane
# =============================================================================


class FakeCluster:
    """
    In-memory stand-in for ClusterClient.

    Implements get / list / create / create_if_absent / stream with API
    server semantics (404 on missing, 409 on duplicate names) and records
    every call so tests can assert on control-plane traffic.

    Usage:
        def test_something(fake_cluster):
            fake_cluster.add_task("default", "resize")
            ...
            assert fake_cluster.call_count("create") == 1
    """

    def __init__(self, auto_start: bool = True):
        self.objects: Dict[Tuple[str, str, str], dict] = {}
        self.calls: List[Tuple[str, str, Optional[str], Optional[str]]] = []
        self.failures: Dict[str, ClusterError] = {}
        self.auto_start = auto_start
        self._watchers: List[Tuple[str, Optional[str], asyncio.Queue]] = []
        self._version = 1

    # Test helpers

    def add_task(self, namespace: str, name: str, **spec) -> dict:
        obj = task_object(namespace, name, **spec)
        self._put("tasks", obj, "ADDED")
        return obj

    def update_task(self, namespace: str, name: str, **spec) -> dict:
        obj = task_object(namespace, name, **spec)
        self._put("tasks", obj, "MODIFIED")
        return obj

    def delete_task(self, namespace: str, name: str) -> None:
        self._delete("tasks", namespace, name)

    def add_job(self, obj: dict) -> dict:
        self._put("jobs", obj, "ADDED")
        return obj

    def delete_job(self, namespace: str, name: str) -> None:
        self._delete("jobs", namespace, name)

    def job(self, namespace: str, name: str) -> Optional[dict]:
        return self.objects.get(("jobs", namespace, name))

    def jobs(self) -> List[dict]:
        return [obj for (plural, _, _), obj in self.objects.items() if plural == "jobs"]

    def finish_job(self, namespace: str, name: str, succeeded: bool = True, reason: str = "BackoffLimitExceeded") -> dict:
        """Drive a Job to a terminal condition, as the job controller would."""
        obj = copy.deepcopy(self.objects[("jobs", namespace, name)])
        status = obj.setdefault("status", {})
        status.pop("active", None)
        status.setdefault("startTime", _now())
        if succeeded:
            status["succeeded"] = 1
            status["completionTime"] = _now()
            status["conditions"] = [{"type": "Complete", "status": "True"}]
        else:
            status["failed"] = 1
            status["conditions"] = [
                {"type": "Failed", "status": "True", "reason": reason, "message": "Job has reached the specified backoff limit"}
            ]
        self._put("jobs", obj, "MODIFIED")
        return obj

    def fail_next(self, operation: str, error: ClusterError) -> None:
        """Make the next call of an operation raise error."""
        self.failures[operation] = error

    def call_count(self, operation: str, plural: Optional[str] = None) -> int:
        return sum(1 for op, kind, _, _ in self.calls if op == operation and plural in (None, kind))

    def disconnect_watchers(self) -> None:
        for _, _, queue in self._watchers:
            queue.put_nowait(WatchEvent(WatchEvent.DISCONNECTED))

    async def wait_for_jobs(self, count: int = 1, timeout: float = 2.0) -> List[dict]:
        """Wait until at least count Jobs exist."""

        async def _poll():
            while len(self.jobs()) < count:
                await asyncio.sleep(0.005)
            return self.jobs()

        return await asyncio.wait_for(_poll(), timeout)

    # ClusterClient interface

    async def get(self, kind, namespace: str, name: str) -> dict:
        self._record("get", kind.plural, namespace, name)
        obj = self.objects.get((kind.plural, namespace, name))
        if obj is None:
            raise ClusterError(f'{kind.plural} "{name}" not found', 404, "NotFound")
        return copy.deepcopy(obj)

    async def list(self, kind, namespace: Optional[str] = None, label_selector: Optional[str] = None) -> dict:
        self._record("list", kind.plural, namespace, None)
        items = [
            copy.deepcopy(obj)
            for (plural, ns, _), obj in sorted(self.objects.items())
            if plural == kind.plural and namespace in (None, ns) and self._matches(obj, label_selector)
        ]
        return {"metadata": {"resourceVersion": str(self._version)}, "items": items}

    async def create(self, kind, namespace: str, body: dict) -> dict:
        self._record("create", kind.plural, namespace, body["metadata"]["name"])
        key = (kind.plural, namespace, body["metadata"]["name"])
        if key in self.objects:
            raise ClusterError(f'{kind.plural} "{key[2]}" already exists', 409, "AlreadyExists")
        obj = copy.deepcopy(body)
        obj["metadata"]["creationTimestamp"] = _now()
        if kind.plural == "jobs":
            obj["status"] = {"active": 1, "startTime": _now()} if self.auto_start else {}
        self._put(kind.plural, obj, "ADDED")
        return copy.deepcopy(obj)

    async def create_if_absent(self, kind, namespace: str, body: dict) -> CreateOutcome:
        try:
            return CreateOutcome(created=True, object=await self.create(kind, namespace, body))
        except ClusterError as e:
            if not e.already_exists:
                raise
        return CreateOutcome(created=False, object=await self.get(kind, namespace, body["metadata"]["name"]))

    async def stream(self, kind, namespace: Optional[str] = None, label_selector: Optional[str] = None):
        self._record("stream", kind.plural, namespace, None)
        queue: asyncio.Queue = asyncio.Queue()
        watcher = (kind.plural, namespace, queue)
        self._watchers.append(watcher)
        try:
            listing = await self.list(kind, namespace, label_selector)
            yield WatchEvent(WatchEvent.RESYNC)
            for item in listing["items"]:
                yield WatchEvent("ADDED", item)
            while True:
                event = await queue.get()
                if event.object is not None and not self._matches(event.object, label_selector):
                    continue
                yield event
        finally:
            self._watchers.remove(watcher)

    # Internals

    def _record(self, operation: str, plural: str, namespace: Optional[str], name: Optional[str]) -> None:
        self.calls.append((operation, plural, namespace, name))
        error = self.failures.pop(operation, None)
        if error is not None:
            raise error

    def _put(self, plural: str, obj: dict, event_type: str) -> None:
        self._version += 1
        obj["metadata"]["resourceVersion"] = str(self._version)
        metadata = obj["metadata"]
        self.objects[(plural, metadata["namespace"], metadata["name"])] = obj
        self._emit(plural, metadata["namespace"], WatchEvent(event_type, copy.deepcopy(obj)))

    def _delete(self, plural: str, namespace: str, name: str) -> None:
        obj = self.objects.pop((plural, namespace, name))
        self._version += 1
        self._emit(plural, namespace, WatchEvent("DELETED", obj))

    def _emit(self, plural: str, namespace: str, event: WatchEvent) -> None:
        for watched, scope, queue in self._watchers:
            if watched == plural and scope in (None, namespace):
                queue.put_nowait(event)

    @staticmethod
    def _matches(obj: dict, label_selector: Optional[str]) -> bool:
        if not label_selector:
            return True
        labels = (obj.get("metadata") or {}).get("labels") or {}
        for requirement in label_selector.split(","):
            key, _, value = requirement.partition("=")
            if labels.get(key) != value:
                return False
        return True


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def fake_cluster():
    """In-memory control plane with auto-started Jobs."""
    return FakeCluster()


@pytest.fixture
def make_engine(fake_cluster):
    """
    Factory wiring the real modules against the fake cluster.

    Polling intervals are shortened so sync-mode tests finish quickly.
    """

    def _make(
        sync_wait_timeout: float = 2.0,
        default_namespace: str = "default",
        ttl: float = 30.0,
        ttl_seconds_after_finished: Optional[int] = 3600,
        clock=None,
    ) -> DispatchEngine:
        registry_kwargs = {"clock": clock} if clock else {}
        registry = TaskRegistry(fake_cluster, ttl=ttl, **registry_kwargs)
        tracker = StatusTracker(
            fake_cluster, poll_interval=0.01, max_poll_interval=0.05, recheck_interval=0.2
        )
        return DispatchEngine(
            fake_cluster,
            registry=registry,
            identity=IdentityGenerator(),
            builder=JobBuilder(ttl_seconds_after_finished=ttl_seconds_after_finished),
            tracker=tracker,
            default_namespace=default_namespace,
            sync_wait_timeout=sync_wait_timeout,
        )

    return _make


@pytest.fixture
def engine(make_engine):
    """Dispatch engine with default settings."""
    return make_engine()


async def settle(rounds: int = 10) -> None:
    """Let background watch tasks drain pending events."""
    for _ in range(rounds):
        await asyncio.sleep(0)
