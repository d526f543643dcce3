"""Task backlog reader for the beads issues.jsonl format."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Protocol

import structlog

logger = structlog.get_logger(__name__)

ISSUES_PATH = Path(".beads") / "issues.jsonl"
COMPLEX_MARKER = "CHALLENGE:complex"


class TaskStatus(str, Enum):
    """Backlog task status."""

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    CLOSED = "closed"


class TaskSourceError(RuntimeError):
    """Raised when the task backlog cannot be read."""


@dataclass
class Task:
    """A backlog task as seen by the orchestrator."""

    id: str
    title: str = ""
    description: str = ""
    status: str = TaskStatus.OPEN.value
    priority: int = 0
    issue_type: str = ""
    labels: list[str] = field(default_factory=list)
    blocked_by: list[str] = field(default_factory=list)
    is_complex: bool = False

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Task":
        """Build a task from one decoded issues.jsonl record."""
        task_id = record.get("id")
        if not isinstance(task_id, str) or not task_id:
            raise ValueError("task record missing 'id'")
        description = record.get("description") or ""
        return cls(
            id=task_id,
            title=record.get("title") or "",
            description=description,
            status=record.get("status") or "",
            priority=int(record.get("priority") or 0),
            issue_type=record.get("issue_type") or "",
            labels=list(record.get("labels") or []),
            blocked_by=list(record.get("blocked_by") or []),
            is_complex=COMPLEX_MARKER in description,
        )


class TaskSource(Protocol):
    """Anything that can produce the current ready-task list."""

    def ready_tasks(self) -> list[Task]: ...


def parse_tasks(lines: Iterable[str]) -> list[Task]:
    """Parse issues.jsonl lines, skipping blank and malformed entries."""
    tasks: list[Task] = []
    for lineno, line in enumerate(lines, start=1):
        if not line.strip():
            continue
        try:
            tasks.append(Task.from_record(json.loads(line)))
        except (ValueError, TypeError, AttributeError) as exc:
            logger.debug("task_line_skipped", line=lineno, error=str(exc))
    return tasks


def load_tasks(repo_dir: Path) -> list[Task]:
    """Load every task from <repo_dir>/.beads/issues.jsonl.

    Raises:
        TaskSourceError: If the file cannot be opened or read
    """
    path = Path(repo_dir) / ISSUES_PATH
    try:
        with path.open(encoding="utf-8", errors="replace") as handle:
            return parse_tasks(handle)
    except OSError as exc:
        raise TaskSourceError(f"cannot read {path}: {exc}") from exc


def ready_tasks(tasks: list[Task]) -> list[Task]:
    """Return open tasks whose blockers are all closed, in input order."""
    closed = {t.id for t in tasks if t.status == TaskStatus.CLOSED.value}
    return [
        t
        for t in tasks
        if t.status == TaskStatus.OPEN.value and all(b in closed for b in t.blocked_by)
    ]


class BeadsTaskSource:
    """Reads ready tasks from a project checkout."""

    def __init__(self, repo_dir: Path):
        self.repo_dir = Path(repo_dir)

    def all_tasks(self) -> list[Task]:
        return load_tasks(self.repo_dir)

    def ready_tasks(self) -> list[Task]:
        return ready_tasks(self.all_tasks())
