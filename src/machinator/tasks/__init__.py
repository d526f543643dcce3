"""Task backlog adapter."""

from .beads import BeadsTaskSource, Task, TaskSource, TaskSourceError, TaskStatus, load_tasks, ready_tasks

__all__ = [
    "BeadsTaskSource",
    "Task",
    "TaskSource",
    "TaskSourceError",
    "TaskStatus",
    "load_tasks",
    "ready_tasks",
]
