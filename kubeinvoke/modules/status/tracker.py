import asyncio
import logging
from collections import defaultdict
from contextlib import aclosing
from typing import AsyncIterator, Awaitable, Callable, Dict, Optional, Set, Tuple

from kubeinvoke.errors import RegistryUnavailable
from kubeinvoke.modules.api.models import (
    APP_LABEL,
    APP_LABEL_VALUE,
    INVOCATION_KEY_LABEL,
    JobStatus,
)
from kubeinvoke.modules.cluster import JOBS, ClusterError, WatchEvent

logger = logging.getLogger("kubeinvoke.status")

JobKey = Tuple[str, str]


class StatusTracker:
    """
    Maps job names to their current phase.

    With run_watch() active, phases come from an in-memory cache fed by a
    watch on invocation Jobs and subscribers are woken by watch events.
    Without it, every lookup is a point-in-time GET and subscribers poll
    with backoff.
    """

    def __init__(
        self,
        cluster,
        watch_namespace: Optional[str] = None,
        poll_interval: float = 0.1,
        max_poll_interval: float = 1.0,
        recheck_interval: float = 5.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize status tracker.

        Args:
            cluster: ClusterClient (or compatible)
            watch_namespace: Namespace the watch covers (None = all)
            poll_interval: First polling delay when no watch is active
            max_poll_interval: Cap for the polling backoff
            recheck_interval: Max seconds a watch subscriber waits before re-reading
            sleep: Awaitable sleep (tests)
        """
        self.cluster = cluster
        self.watch_namespace = watch_namespace
        self.poll_interval = poll_interval
        self.max_poll_interval = max_poll_interval
        self.recheck_interval = recheck_interval
        self._sleep = sleep
        self._cache: Dict[JobKey, JobStatus] = {}
        self._subscribers: Dict[JobKey, Set[asyncio.Queue]] = defaultdict(set)
        self._watching = False

    @property
    def watching(self) -> bool:
        """True while the Job watch is connected and feeding the cache."""
        return self._watching

    def _covers(self, namespace: str) -> bool:
        return self._watching and self.watch_namespace in (None, namespace)

    async def status(self, namespace: str, job_name: str) -> JobStatus:
        """
        Get the current status of a Job.

        Args:
            namespace: Job namespace
            job_name: Job name

        Returns:
            JobStatus; phase UNKNOWN if the Job does not exist (e.g. deleted)

        Raises:
            RegistryUnavailable: The control-plane read failed
        """
        if self._covers(namespace):
            cached = self._cache.get((namespace, job_name))
            if cached:
                return cached

        try:
            job = await self.cluster.get(JOBS, namespace, job_name)
        except ClusterError as e:
            if e.not_found:
                return JobStatus.unknown(namespace, job_name)
            raise RegistryUnavailable(
                f"Failed to read Job {namespace}/{job_name}",
                namespace=namespace,
                job_name=job_name,
                cause=e,
            ) from e
        return JobStatus.from_job(job)

    async def find_by_invocation(self, namespace: str, invocation_key: str) -> Optional[JobStatus]:
        """
        Find the Job created for an invocation key.

        Returns:
            JobStatus of the newest matching Job, or None

        Raises:
            RegistryUnavailable: The control-plane read failed
        """
        selector = f"{APP_LABEL}={APP_LABEL_VALUE},{INVOCATION_KEY_LABEL}={invocation_key}"
        try:
            listing = await self.cluster.list(JOBS, namespace, label_selector=selector)
        except ClusterError as e:
            raise RegistryUnavailable(
                f"Failed to list Jobs in {namespace}", namespace=namespace, cause=e
            ) from e

        items = listing.get("items") or []
        if not items:
            return None
        newest = max(items, key=lambda j: (j.get("metadata") or {}).get("creationTimestamp", ""))
        return JobStatus.from_job(newest)

    async def subscribe(self, namespace: str, job_name: str) -> AsyncIterator[JobStatus]:
        """
        Yield the Job's status now and then on every phase change.

        Infinite: callers stop iterating (or close the generator) when done.
        Survives watch reconnects by falling back to polling.
        """
        key = (namespace, job_name)
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers[key].add(queue)
        try:
            current = await self.status(namespace, job_name)
            last_phase = current.phase
            yield current

            delay = self.poll_interval
            while True:
                if self._covers(namespace):
                    delay = self.poll_interval
                    try:
                        update = await asyncio.wait_for(queue.get(), timeout=self.recheck_interval)
                    except asyncio.TimeoutError:
                        update = None
                    if update is None:
                        update = await self.status(namespace, job_name)
                else:
                    await self._sleep(delay)
                    delay = min(delay * 1.5, self.max_poll_interval)
                    update = await self.status(namespace, job_name)

                if update.phase != last_phase:
                    last_phase = update.phase
                    yield update
        finally:
            subscribers = self._subscribers.get(key)
            if subscribers is not None:
                subscribers.discard(queue)
                if not subscribers:
                    del self._subscribers[key]

    async def wait_for_completion(
        self, namespace: str, job_name: str, timeout: float
    ) -> Optional[JobStatus]:
        """
        Wait until the Job reaches a terminal phase.

        Suspends the calling task only; the wait never cancels the Job.

        Returns:
            Terminal JobStatus, or None if the timeout elapsed first
        """

        async def _wait() -> JobStatus:
            async with aclosing(self.subscribe(namespace, job_name)) as updates:
                async for update in updates:
                    if update.phase.is_terminal:
                        return update
            raise RuntimeError("status subscription ended unexpectedly")

        try:
            return await asyncio.wait_for(_wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    async def run_watch(self) -> None:
        """Keep the phase cache in sync with invocation Jobs until cancelled."""
        selector = f"{APP_LABEL}={APP_LABEL_VALUE}"
        logger.info(f"Starting Job watch ({self.watch_namespace or 'all namespaces'})")
        try:
            async for event in self.cluster.stream(JOBS, self.watch_namespace, label_selector=selector):
                self._apply(event)
        finally:
            self._watching = False
            self._cache.clear()
            self._wake_all()
            logger.info("Job watch stopped")

    def _apply(self, event: WatchEvent) -> None:
        if event.type == WatchEvent.RESYNC:
            self._cache.clear()
            self._watching = True
            logger.info("Job watch synced")
            return
        if event.type == WatchEvent.DISCONNECTED:
            self._cache.clear()
            self._watching = False
            self._wake_all()
            return

        metadata = (event.object or {}).get("metadata") or {}
        key = (metadata.get("namespace", ""), metadata.get("name", ""))

        if event.type == "DELETED":
            self._cache.pop(key, None)
            self._notify(key, JobStatus.unknown(*key))
        elif event.type in ("ADDED", "MODIFIED"):
            status = JobStatus.from_job(event.object)
            previous = self._cache.get(key)
            self._cache[key] = status
            if previous is None or previous.phase != status.phase:
                logger.debug(f"Job {key[0]}/{key[1]} is {status.phase.value}")
            self._notify(key, status)

    def _notify(self, key: JobKey, status: JobStatus) -> None:
        for queue in self._subscribers.get(key, ()):
            queue.put_nowait(status)

    def _wake_all(self) -> None:
        # None tells subscribers to re-read instead of trusting the queue
        for subscribers in self._subscribers.values():
            for queue in subscribers:
                queue.put_nowait(None)

