"""
Kubernetes control-plane client.

Speaks the API server's REST protocol directly over httpx:
- get / list / create for namespaced resources
- create_if_absent, the atomic primitive used for deduplication
- watch, a single streaming watch request
- stream, a lazy, infinite, restartable list-then-watch sequence
"""

import asyncio
import json
import logging
import os
import ssl
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Union

import httpx

logger = logging.getLogger("kubeinvoke.cluster")


@dataclass(frozen=True)
class ResourceKind:
    """Coordinates of a resource type on the API server."""

    group: str
    version: str
    plural: str
    kind: str

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}" if self.group else self.version

    def path(self, namespace: Optional[str] = None, name: Optional[str] = None) -> str:
        """
        Build the REST path for a collection or a single object.

        Args:
            namespace: Namespace scope (None = all namespaces)
            name: Object name (None = collection)
        """
        if self.group:
            path = f"/apis/{self.group}/{self.version}"
        else:
            path = f"/api/{self.version}"
        if namespace:
            path += f"/namespaces/{namespace}"
        path += f"/{self.plural}"
        if name:
            path += f"/{name}"
        return path


TASKS = ResourceKind("lambda.example.com", "v1", "tasks", "Task")
JOBS = ResourceKind("batch", "v1", "jobs", "Job")


class ClusterError(Exception):
    """
    A control-plane call failed.

    status_code is the HTTP status from the API server, or None when the
    server could not be reached at all.
    """

    def __init__(self, message: str, status_code: Optional[int] = None, reason: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.reason = reason

    @property
    def not_found(self) -> bool:
        return self.status_code == 404

    @property
    def already_exists(self) -> bool:
        return self.status_code == 409

    @property
    def gone(self) -> bool:
        return self.status_code == 410

    @classmethod
    def from_response(cls, response: httpx.Response) -> "ClusterError":
        """Build from an error response carrying a metav1.Status body (if any)."""
        reason = None
        message = response.text
        try:
            status = response.json()
            reason = status.get("reason")
            message = status.get("message") or message
        except ValueError:
            pass
        return cls(message or f"HTTP {response.status_code}", response.status_code, reason)

    def __str__(self) -> str:
        if self.status_code is None:
            return self.message
        return f"{self.status_code} {self.reason or ''}: {self.message}".replace("  ", " ")


@dataclass
class WatchEvent:
    """One event from a watch stream."""

    RESYNC = "RESYNC"
    DISCONNECTED = "DISCONNECTED"

    type: str
    object: Optional[Dict[str, Any]] = None


@dataclass
class CreateOutcome:
    """Result of create_if_absent."""

    created: bool
    object: Dict[str, Any]


class TokenFileAuth(httpx.Auth):
    """Bearer auth re-reading a projected service account token on every request."""

    def __init__(self, token_path: Union[str, Path]):
        self.token_path = Path(token_path)

    def auth_flow(self, request: httpx.Request):
        token = self.token_path.read_text().strip()
        request.headers["Authorization"] = f"Bearer {token}"
        yield request


class ClusterClient:
    """Async client for the subset of the Kubernetes API the service needs."""

    def __init__(
        self,
        base_url: str,
        auth: Optional[httpx.Auth] = None,
        verify: Union[bool, ssl.SSLContext] = True,
        timeout: float = 10.0,
        watch_timeout: int = 300,
        reconnect_delay: float = 1.0,
        max_reconnect_delay: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize cluster client.

        Args:
            base_url: API server URL
            auth: Optional httpx auth (bearer token)
            verify: TLS verification flag or SSL context
            timeout: Per-request timeout in seconds
            watch_timeout: Server-side timeout for one watch request
            reconnect_delay: Initial delay before re-establishing a stream
            max_reconnect_delay: Cap for the exponential reconnect delay
            transport: Optional httpx transport (tests)
            sleep: Awaitable sleep (tests)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.watch_timeout = watch_timeout
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_delay = max_reconnect_delay
        self._sleep = sleep
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            auth=auth,
            verify=verify,
            timeout=timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    @classmethod
    def from_config(cls, config) -> "ClusterClient":
        """
        Build from the config module.

        Uses KUBE_API_URL when set (e.g. a kubectl proxy), otherwise
        in-cluster discovery with the mounted service account.

        Raises:
            ValueError: If no API server can be located
        """
        token_path = config.get("kube_token_path")
        ca_path = config.get("kube_ca_path")
        verify: Union[bool, ssl.SSLContext] = config.get("kube_verify_ssl", True)
        auth = TokenFileAuth(token_path) if token_path and os.path.exists(token_path) else None

        base_url = config.get("kube_api_url")
        if not base_url:
            host = os.getenv("KUBERNETES_SERVICE_HOST")
            port = os.getenv("KUBERNETES_SERVICE_PORT", "443")
            if not host:
                raise ValueError(
                    "No Kubernetes API configured: set KUBE_API_URL or run inside a cluster"
                )
            if ":" in host:
                host = f"[{host}]"
            base_url = f"https://{host}:{port}"

        if verify and ca_path and os.path.exists(ca_path):
            verify = ssl.create_default_context(cafile=ca_path)

        logger.info(f"Using Kubernetes API at {base_url}")
        return cls(base_url, auth=auth, verify=verify)

    async def close(self) -> None:
        """Close the underlying connection pool."""
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise ClusterError(f"Kubernetes API unreachable: {e}") from e
        if response.is_error:
            raise ClusterError.from_response(response)
        try:
            return response.json()
        except ValueError as e:
            raise ClusterError(f"Malformed response from Kubernetes API: {e}", response.status_code) from e

    async def get(self, kind: ResourceKind, namespace: str, name: str) -> Dict[str, Any]:
        """Get one object."""
        return await self._request("GET", kind.path(namespace, name))

    async def list(
        self,
        kind: ResourceKind,
        namespace: Optional[str] = None,
        label_selector: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        List objects.

        Args:
            kind: Resource kind
            namespace: Namespace scope (None = all namespaces)
            label_selector: Optional label selector

        Returns:
            The list object (items plus metadata.resourceVersion)
        """
        params = {}
        if label_selector:
            params["labelSelector"] = label_selector
        return await self._request("GET", kind.path(namespace), params=params)

    async def create(self, kind: ResourceKind, namespace: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """Create an object; fails with 409 if the name is taken."""
        return await self._request("POST", kind.path(namespace), json=body)

    async def create_if_absent(
        self, kind: ResourceKind, namespace: str, body: Dict[str, Any]
    ) -> CreateOutcome:
        """
        Create an object unless one with the same name already exists.

        The API server rejects duplicate names atomically, so this is safe
        under concurrent callers without any lock.

        Returns:
            CreateOutcome(created=True, object=<created>) or
            CreateOutcome(created=False, object=<existing>)
        """
        name = body["metadata"]["name"]
        for _ in range(2):
            try:
                created = await self.create(kind, namespace, body)
                return CreateOutcome(created=True, object=created)
            except ClusterError as e:
                if not e.already_exists:
                    raise
            try:
                existing = await self.get(kind, namespace, name)
                return CreateOutcome(created=False, object=existing)
            except ClusterError as e:
                # Deleted between our create and get; try the create once more
                if not e.not_found:
                    raise
                logger.info(f"{kind.kind} {namespace}/{name} vanished after conflict, retrying create")
        raise ClusterError(
            f"{kind.kind} {namespace}/{name} kept conflicting and disappearing", 409, "Conflict"
        )

    async def watch(
        self,
        kind: ResourceKind,
        namespace: Optional[str] = None,
        label_selector: Optional[str] = None,
        resource_version: Optional[str] = None,
    ) -> AsyncIterator[WatchEvent]:
        """
        Issue one watch request and yield its events until the server closes it.

        Raises:
            ClusterError: On HTTP errors, in-stream ERROR events (e.g. 410 Gone)
                or transport failures
        """
        params = {
            "watch": "1",
            "allowWatchBookmarks": "true",
            "timeoutSeconds": str(self.watch_timeout),
        }
        if label_selector:
            params["labelSelector"] = label_selector
        if resource_version:
            params["resourceVersion"] = resource_version

        try:
            async with self._client.stream(
                "GET",
                kind.path(namespace),
                params=params,
                timeout=httpx.Timeout(self.timeout, read=None),
            ) as response:
                if response.is_error:
                    await response.aread()
                    raise ClusterError.from_response(response)
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    payload = json.loads(line)
                    if payload.get("type") == "ERROR":
                        status = payload.get("object") or {}
                        raise ClusterError(
                            status.get("message", "watch error"),
                            status.get("code"),
                            status.get("reason"),
                        )
                    yield WatchEvent(payload.get("type", ""), payload.get("object"))
        except httpx.HTTPError as e:
            raise ClusterError(f"Watch on {kind.plural} interrupted: {e}") from e
        except json.JSONDecodeError as e:
            raise ClusterError(f"Malformed watch event on {kind.plural}: {e}") from e

    async def stream(
        self,
        kind: ResourceKind,
        namespace: Optional[str] = None,
        label_selector: Optional[str] = None,
    ) -> AsyncIterator[WatchEvent]:
        """
        Yield a never-ending, self-healing event sequence for a resource kind.

        Logic:
        1. List current objects, yield RESYNC then one ADDED per object
        2. Watch from the list's resourceVersion, resuming after normal closes
        3. On 410 Gone, relist immediately
        4. On any other failure, yield DISCONNECTED, back off exponentially, relist
        """
        delay = self.reconnect_delay
        while True:
            try:
                listing = await self.list(kind, namespace, label_selector)
                resource_version = (listing.get("metadata") or {}).get("resourceVersion")
                yield WatchEvent(WatchEvent.RESYNC)
                for item in listing.get("items") or []:
                    yield WatchEvent("ADDED", item)
                delay = self.reconnect_delay

                while True:
                    async for event in self.watch(kind, namespace, label_selector, resource_version):
                        version = ((event.object or {}).get("metadata") or {}).get("resourceVersion")
                        if version:
                            resource_version = version
                        if event.type == "BOOKMARK":
                            continue
                        yield event
                    logger.debug(f"Watch on {kind.plural} closed by server, resuming at {resource_version}")
            except ClusterError as e:
                if e.gone:
                    logger.info(f"Watch on {kind.plural} expired, relisting")
                    continue
                logger.warning(f"Stream on {kind.plural} failed: {e}; reconnecting in {delay:.1f}s")

            yield WatchEvent(WatchEvent.DISCONNECTED)
            await self._sleep(delay)
            delay = min(delay * 2, self.max_reconnect_delay)
