"""
Dispatch Module - Black Box Interface

Purpose: Orchestrate invocations end to end
Interface: list_tasks(), get_task(), invoke(), get_status(), get_invocation()
Hidden: Validation, deduplication, submission, sync waiting

Receives every collaborator explicitly; holds no state of its own.
"""

from .engine import DispatchEngine

__all__ = ["DispatchEngine"]
