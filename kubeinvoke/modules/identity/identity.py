import hashlib
import json
import re
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Optional

# Kubernetes DNS-1123 label limit; Job names also become pod label values
MAX_NAME_LENGTH = 63
INVOCATION_KEY_LENGTH = 40

_INVALID_CHARS = re.compile(r"[^a-z0-9-]+")
_DASH_RUNS = re.compile(r"-{2,}")
_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


@dataclass(frozen=True)
class ExecutionIdentity:
    """Immutable identity of one accepted invocation."""

    namespace: str
    task_name: str
    request_id: str
    job_name: str
    invocation_key: str
    caller_supplied: bool


def sanitize_name(value: str) -> str:
    """Lowercase and strip a string down to [a-z0-9-] with no leading/trailing dash."""
    value = _INVALID_CHARS.sub("-", value.lower())
    value = _DASH_RUNS.sub("-", value)
    return value.strip("-")


def invocation_key(namespace: str, task_name: str, request_id: str) -> str:
    """Label-safe digest of the (namespace, task, request id) triple."""
    payload = json.dumps([namespace, task_name, request_id], separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:INVOCATION_KEY_LENGTH]


def _base36(number: int) -> str:
    digits = []
    while True:
        number, remainder = divmod(number, 36)
        digits.append(_BASE36[remainder])
        if not number:
            return "".join(reversed(digits))


class IdentityGenerator:
    def __init__(
        self,
        prefix: str = "",
        hash_length: int = 10,
        clock: Callable[[], float] = time.time,
        token_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ):
        """
        Initialize identity generator.

        Args:
            prefix: Prefix prepended to every job name (sanitized)
            hash_length: Hex digits of the invocation key used for caller-supplied ids
            clock: Wall clock in seconds, for time-ordered suffixes
            token_factory: Source of fresh request ids
        """
        self.prefix = prefix
        self.hash_length = hash_length
        self._clock = clock
        self._token_factory = token_factory

    def generate(
        self, namespace: str, task_name: str, request_id: Optional[str] = None
    ) -> ExecutionIdentity:
        """
        Derive the execution identity for an invocation.

        Args:
            namespace: Task namespace
            task_name: Task name
            request_id: Caller-supplied idempotency key, if any

        Returns:
            ExecutionIdentity

        Logic:
        1. With a request id: job name = <base>-<digest of the triple>, so the
           same triple always yields the same name
        2. Without one: mint a fresh request id and use a time-ordered suffix
           <base36 millis>-<digest head>
        3. Truncate the base so the whole name fits in 63 characters
        """
        caller_supplied = request_id is not None
        if not caller_supplied:
            request_id = self._token_factory()

        key = invocation_key(namespace, task_name, request_id)
        if caller_supplied:
            suffix = key[: self.hash_length]
        else:
            millis = int(self._clock() * 1000)
            suffix = f"{_base36(millis)}-{key[:5]}"

        return ExecutionIdentity(
            namespace=namespace,
            task_name=task_name,
            request_id=request_id,
            job_name=self._compose(task_name, suffix),
            invocation_key=key,
            caller_supplied=caller_supplied,
        )

    def _compose(self, task_name: str, suffix: str) -> str:
        base = sanitize_name(f"{self.prefix}{task_name}") or "task"
        base = base[: MAX_NAME_LENGTH - len(suffix) - 1].rstrip("-")
        return f"{base}-{suffix}"
