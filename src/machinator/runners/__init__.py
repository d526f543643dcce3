"""Runners module."""

from .orchestrator import Orchestrator
from .quota_watcher import QuotaWatcher
from .scheduler import Assignment, TaskScheduler, describe_candidates, route_for
from .ticker import run_every
from .watcher import AgentWatcher, Expiry

__all__ = [
    "AgentWatcher",
    "Assignment",
    "Expiry",
    "Orchestrator",
    "QuotaWatcher",
    "TaskScheduler",
    "describe_candidates",
    "route_for",
    "run_every",
]
