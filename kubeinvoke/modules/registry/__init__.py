"""
Registry Module - Black Box Interface

Purpose: Read Task custom resources from the cluster
Interface: resolve(), list(), run_watch()
Hidden: TTL cache, watch-driven invalidation, CRD parsing

Read-only: the registry never writes Task resources.
"""

from .registry import TaskRegistry

__all__ = ["TaskRegistry"]
