import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from kubeinvoke.errors import RegistryUnavailable, TaskNotFound
from kubeinvoke.modules.api.models import TaskDefinition
from kubeinvoke.modules.cluster import TASKS, ClusterError, WatchEvent

logger = logging.getLogger("kubeinvoke.registry")


@dataclass
class _CacheEntry:
    task: TaskDefinition
    # None = maintained by the watch, never expires while it runs
    expires_at: Optional[float]


class TaskRegistry:
    """
    Read-through cache of Task definitions.

    The cache has a single writer: lookups fill it on a miss, and the
    background watch (run_watch) keeps it in sync. Nothing else mutates it.
    """

    def __init__(
        self,
        cluster,
        ttl: float = 30.0,
        watch_namespace: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize task registry.

        Args:
            cluster: ClusterClient (or compatible) used for reads and watches
            ttl: Seconds a looked-up definition stays valid
            watch_namespace: Namespace the watch covers (None = all)
            clock: Monotonic clock (tests)
        """
        self.cluster = cluster
        self.ttl = ttl
        self.watch_namespace = watch_namespace
        self._clock = clock
        self._cache: Dict[Tuple[str, str], _CacheEntry] = {}
        self._watching = False

    @property
    def watching(self) -> bool:
        """True while the watch is connected and feeding the cache."""
        return self._watching

    async def resolve(self, namespace: str, name: str) -> TaskDefinition:
        """
        Resolve a Task definition.

        Args:
            namespace: Task namespace
            name: Task name

        Returns:
            TaskDefinition

        Raises:
            TaskNotFound: No such Task, or the Task is malformed
            RegistryUnavailable: The control-plane read failed
        """
        key = (namespace, name)
        entry = self._cache.get(key)
        if entry and (entry.expires_at is None or self._clock() < entry.expires_at):
            return entry.task

        try:
            obj = await self.cluster.get(TASKS, namespace, name)
        except ClusterError as e:
            if e.not_found:
                self._cache.pop(key, None)
                raise TaskNotFound(
                    f"Task {namespace}/{name} not found",
                    namespace=namespace,
                    task_name=name,
                    cause=e,
                ) from e
            raise RegistryUnavailable(
                f"Failed to read Task {namespace}/{name}",
                namespace=namespace,
                task_name=name,
                cause=e,
            ) from e

        try:
            task = TaskDefinition.from_resource(obj)
        except ValueError as e:
            raise TaskNotFound(
                f"Task {namespace}/{name} has an invalid definition",
                namespace=namespace,
                task_name=name,
                cause=e,
            ) from e

        current = self._cache.get(key)
        if current is not None and current.expires_at is None:
            # Watch-owned entries are newer than this read
            return current.task
        self._cache[key] = _CacheEntry(task, self._clock() + self.ttl)
        return task

    async def list(self, namespace: Optional[str] = None) -> List[TaskDefinition]:
        """
        List Task definitions.

        Args:
            namespace: Namespace to list (None = all namespaces)

        Returns:
            Definitions sorted by (namespace, name); malformed Tasks are skipped

        Raises:
            RegistryUnavailable: The control-plane read failed
        """
        try:
            listing = await self.cluster.list(TASKS, namespace)
        except ClusterError as e:
            raise RegistryUnavailable(
                f"Failed to list Tasks in {namespace or 'all namespaces'}",
                namespace=namespace,
                cause=e,
            ) from e

        tasks = []
        expires_at = self._clock() + self.ttl
        for obj in listing.get("items") or []:
            try:
                task = TaskDefinition.from_resource(obj)
            except ValueError as e:
                logger.warning(f"Skipping malformed Task: {e}")
                continue
            tasks.append(task)
            self._cache.setdefault(task.key, _CacheEntry(task, expires_at))

        return sorted(tasks, key=lambda t: t.key)

    async def run_watch(self) -> None:
        """
        Keep the cache in sync with the cluster until cancelled.

        Meant to run as a background task for the life of the process.
        """
        logger.info(f"Starting Task watch ({self.watch_namespace or 'all namespaces'})")
        try:
            async for event in self.cluster.stream(TASKS, self.watch_namespace):
                self._apply(event)
        finally:
            self._watching = False
            self._cache.clear()
            logger.info("Task watch stopped")

    def _apply(self, event: WatchEvent) -> None:
        if event.type == WatchEvent.RESYNC:
            self._cache.clear()
            self._watching = True
            logger.info("Task watch synced")
            return
        if event.type == WatchEvent.DISCONNECTED:
            # Watch-maintained entries can no longer be trusted
            self._cache.clear()
            self._watching = False
            return

        metadata = (event.object or {}).get("metadata") or {}
        key = (metadata.get("namespace", ""), metadata.get("name", ""))

        if event.type == "DELETED":
            self._cache.pop(key, None)
            logger.info(f"Task {key[0]}/{key[1]} deleted")
        elif event.type in ("ADDED", "MODIFIED"):
            try:
                task = TaskDefinition.from_resource(event.object)
            except ValueError as e:
                self._cache.pop(key, None)
                logger.warning(f"Ignoring malformed Task {key[0]}/{key[1]}: {e}")
                return
            self._cache[key] = _CacheEntry(task, None)
            logger.debug(f"Task {key[0]}/{key[1]} cached at version {task.resource_version}")
