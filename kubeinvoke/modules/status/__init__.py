"""
Status Module - Black Box Interface

Purpose: Report the phase of invocation Jobs
Interface: status(), find_by_invocation(), subscribe(), wait_for_completion(), run_watch()
Hidden: Watch-fed phase cache, polling fallback, subscriber wake-ups

Jobs deleted out from under the tracker are reported as phase "unknown".
"""

from .tracker import StatusTracker

__all__ = ["StatusTracker"]
