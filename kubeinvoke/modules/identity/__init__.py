"""
Identity Module - Black Box Interface

Purpose: Derive unique, collision-resistant execution names
Interface: IdentityGenerator.generate()
Hidden: Hashing, sanitization, truncation to Kubernetes name rules

Same (namespace, task, request id) always gives the same job name; this is
what makes repeated invocations idempotent.
"""

from .identity import (
    MAX_NAME_LENGTH,
    ExecutionIdentity,
    IdentityGenerator,
    invocation_key,
    sanitize_name,
)

__all__ = [
    "ExecutionIdentity",
    "IdentityGenerator",
    "MAX_NAME_LENGTH",
    "invocation_key",
    "sanitize_name",
]
