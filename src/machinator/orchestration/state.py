"""Durable agent pool state: the lifecycle state machine for agent slots.

Every mutation is applied in memory under the state lock and then flushed to
``state.json`` before the call returns. The write happens outside the state
lock (under a separate write lock) so readers are not held up by disk I/O.
Each flush carries a version number and an older version never overwrites a
newer one, so once a mutating call returns its effect is on disk.
"""

from __future__ import annotations

import json
import os
import threading
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Iterator

import structlog

logger = structlog.get_logger(__name__)


class AgentState(str, Enum):
    """Lifecycle state of an agent slot."""

    PENDING = "pending"  # waiting for a workspace
    READY = "ready"  # workspace exists, no task
    ASSIGNED = "assigned"  # working on a task


class StateError(RuntimeError):
    """Base class for agent pool state failures."""


class AgentNotFoundError(StateError):
    """Raised when an operation names an agent that does not exist."""


class InvalidTransitionError(StateError):
    """Raised when an agent is not in the state an operation requires."""


class TaskAlreadyAssignedError(InvalidTransitionError):
    """Raised when a task is already held by another assigned agent."""


class TaskBarredError(InvalidTransitionError):
    """Raised when assigning a task that is barred from scheduling."""


class StatePersistenceError(StateError):
    """Raised when state could not be written; the in-memory change still applies."""


@dataclass
class Agent:
    """A worker slot."""

    id: int
    state: AgentState = AgentState.PENDING
    pid: int | None = None
    task_id: str | None = None
    model: str | None = None
    account: str | None = None
    started_at: datetime | None = None
    last_activity: datetime | None = None
    marked_for_removal: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"id": self.id, "state": self.state.value}
        if self.pid is not None:
            data["pid"] = self.pid
        if self.task_id is not None:
            data["task_id"] = self.task_id
        if self.model is not None:
            data["model"] = self.model
        if self.account is not None:
            data["account"] = self.account
        if self.started_at is not None:
            data["started_at"] = self.started_at.isoformat()
        if self.last_activity is not None:
            data["last_activity"] = self.last_activity.isoformat()
        if self.marked_for_removal:
            data["marked_for_removal"] = True
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Agent":
        return cls(
            id=int(data["id"]),
            state=AgentState(data["state"]),
            pid=data.get("pid"),
            task_id=data.get("task_id"),
            model=data.get("model"),
            account=data.get("account"),
            started_at=_parse_time(data.get("started_at")),
            last_activity=_parse_time(data.get("last_activity")),
            marked_for_removal=bool(data.get("marked_for_removal", False)),
        )


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _now() -> datetime:
    return datetime.now(UTC)


class AgentPoolState:
    """Agent list, pause flags and barred tasks, persisted as one JSON record."""

    def __init__(self, path: Path | None = None):
        """Initialize an empty state.

        Args:
            path: Where state is persisted; None keeps it in memory only
        """
        self.path = Path(path) if path is not None else None
        self._lock = threading.RLock()
        self._write_lock = threading.Lock()
        self._agents: list[Agent] = []
        self._assignment_paused = False
        self._launches_paused = False
        self._barred: list[str] = []
        self._last_agent_id = 0
        self._version = 0
        self._written_version = 0

    # -- persistence -------------------------------------------------------

    @classmethod
    def load(cls, path: Path) -> "AgentPoolState":
        """Load state from path; a missing file yields an empty state.

        Raises:
            StateError: If the file exists but cannot be read or parsed
        """
        state = cls(path)
        try:
            raw = Path(path).read_text(encoding="utf-8")
        except FileNotFoundError:
            return state
        except OSError as exc:
            raise StateError(f"read state: {exc}") from exc

        try:
            state._apply_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as exc:
            raise StateError(f"parse state: {exc}") from exc
        return state

    def _apply_dict(self, data: dict[str, Any]) -> None:
        agents = [Agent.from_dict(item) for item in data.get("agents") or []]
        max_id = max((a.id for a in agents), default=0)
        with self._lock:
            self._agents = agents
            self._assignment_paused = bool(data.get("assignment_paused", False))
            self._launches_paused = bool(data.get("launches_paused", False))
            self._barred = list(dict.fromkeys(data.get("barred_tasks") or []))
            self._last_agent_id = max(int(data.get("last_agent_id", 0)), max_id)

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            return self._to_dict_locked()

    def _to_dict_locked(self) -> dict[str, Any]:
        return {
            "agents": [a.to_dict() for a in self._agents],
            "assignment_paused": self._assignment_paused,
            "launches_paused": self._launches_paused,
            "barred_tasks": list(self._barred),
            "last_agent_id": self._last_agent_id,
        }

    def save(self) -> None:
        """Flush the current state to disk.

        Raises:
            StatePersistenceError: If the write fails
        """
        with self._lock:
            version, payload = self._version, self._to_dict_locked()
        self._flush(version, payload, force=True)

    def _flush(self, version: int, payload: dict[str, Any], force: bool = False) -> None:
        if self.path is None:
            return
        with self._write_lock:
            if version < self._written_version:
                return
            if version == self._written_version and not force:
                return
            tmp_path = self.path.with_name(self.path.name + ".tmp")
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                tmp_path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
                os.replace(tmp_path, self.path)
            except OSError as exc:
                logger.error("state_write_failed", path=str(self.path), error=str(exc))
                raise StatePersistenceError(f"write state: {exc}") from exc
            self._written_version = max(self._written_version, version)

    @contextmanager
    def _mutating(self) -> Iterator[None]:
        with self._lock:
            yield
            self._version += 1
            version, payload = self._version, self._to_dict_locked()
        self._flush(version, payload)

    def _require(self, agent_id: int) -> Agent:
        for agent in self._agents:
            if agent.id == agent_id:
                return agent
        raise AgentNotFoundError(f"agent {agent_id} not found")

    # -- queries -----------------------------------------------------------

    @property
    def assignment_paused(self) -> bool:
        with self._lock:
            return self._assignment_paused

    @property
    def launches_paused(self) -> bool:
        with self._lock:
            return self._launches_paused

    def agents(self) -> list[Agent]:
        with self._lock:
            return [replace(a) for a in self._agents]

    def get_agent(self, agent_id: int) -> Agent | None:
        with self._lock:
            for agent in self._agents:
                if agent.id == agent_id:
                    return replace(agent)
        return None

    def _in_state(self, state: AgentState) -> list[Agent]:
        with self._lock:
            return [replace(a) for a in self._agents if a.state == state]

    def pending_agents(self) -> list[Agent]:
        return self._in_state(AgentState.PENDING)

    def ready_agents(self) -> list[Agent]:
        """Ready agents not marked for removal, in id order."""
        return [a for a in self._in_state(AgentState.READY) if not a.marked_for_removal]

    def assigned_agents(self) -> list[Agent]:
        return self._in_state(AgentState.ASSIGNED)

    def barred_tasks(self) -> list[str]:
        with self._lock:
            return list(self._barred)

    def is_task_barred(self, task_id: str) -> bool:
        with self._lock:
            return task_id in self._barred

    def is_task_assigned(self, task_id: str) -> bool:
        with self._lock:
            return self._holder_locked(task_id) is not None

    def _holder_locked(self, task_id: str) -> Agent | None:
        for agent in self._agents:
            if agent.state == AgentState.ASSIGNED and agent.task_id == task_id:
                return agent
        return None

    # -- mutations ---------------------------------------------------------

    def add_agent(self) -> Agent:
        """Grow the pool by one pending agent with the next unused id."""
        with self._mutating():
            self._last_agent_id += 1
            agent = Agent(id=self._last_agent_id)
            self._agents.append(agent)
            result = replace(agent)
        logger.info("agent_added", agent_id=result.id)
        return result

    def set_agent_ready(self, agent_id: int) -> Agent:
        """pending -> ready, once the agent's workspace exists."""
        with self._mutating():
            agent = self._require(agent_id)
            if agent.state != AgentState.PENDING:
                raise InvalidTransitionError(
                    f"agent {agent_id} is {agent.state.value}, expected pending"
                )
            agent.state = AgentState.READY
            result = replace(agent)
        return result

    def assign_task(
        self,
        agent_id: int,
        task_id: str,
        model: str | None = None,
        account: str | None = None,
        now: datetime | None = None,
    ) -> Agent:
        """ready -> assigned with task_id.

        Raises:
            InvalidTransitionError: If the agent is not ready
            TaskBarredError: If the task is barred
            TaskAlreadyAssignedError: If another agent already holds the task
        """
        now = now or _now()
        with self._mutating():
            agent = self._require(agent_id)
            if agent.state != AgentState.READY or agent.marked_for_removal:
                raise InvalidTransitionError(
                    f"agent {agent_id} is {agent.state.value}, expected ready"
                )
            if task_id in self._barred:
                raise TaskBarredError(f"task {task_id} is barred")
            holder = self._holder_locked(task_id)
            if holder is not None:
                raise TaskAlreadyAssignedError(
                    f"task {task_id} already assigned to agent {holder.id}"
                )
            agent.state = AgentState.ASSIGNED
            agent.task_id = task_id
            agent.model = model
            agent.account = account
            agent.pid = None
            agent.started_at = now
            agent.last_activity = now
            result = replace(agent)
        return result

    def complete_task(self, agent_id: int, task_id: str | None = None) -> str | None:
        """assigned -> ready; returns the released task id.

        When task_id is given the agent must still hold that task. An agent
        marked for removal is deleted instead of returning to ready.
        """
        removed = False
        with self._mutating():
            agent = self._require(agent_id)
            if agent.state != AgentState.ASSIGNED:
                raise InvalidTransitionError(
                    f"agent {agent_id} is {agent.state.value}, expected assigned"
                )
            if task_id is not None and agent.task_id != task_id:
                raise InvalidTransitionError(
                    f"agent {agent_id} holds {agent.task_id}, not {task_id}"
                )
            task_id = agent.task_id
            agent.state = AgentState.READY
            agent.task_id = None
            agent.model = None
            agent.account = None
            agent.pid = None
            agent.started_at = None
            agent.last_activity = None
            if agent.marked_for_removal:
                self._agents.remove(agent)
                removed = True
        if removed:
            logger.info("agent_removed", agent_id=agent_id, after_task=task_id)
        return task_id

    def set_agent_pid(self, agent_id: int, pid: int | None) -> None:
        with self._mutating():
            agent = self._require(agent_id)
            if agent.state != AgentState.ASSIGNED:
                raise InvalidTransitionError(
                    f"agent {agent_id} is {agent.state.value}, expected assigned"
                )
            agent.pid = pid

    def update_activity(self, agent_id: int, now: datetime | None = None) -> None:
        now = now or _now()
        with self._mutating():
            agent = self._require(agent_id)
            if agent.state != AgentState.ASSIGNED:
                raise InvalidTransitionError(
                    f"agent {agent_id} is {agent.state.value}, expected assigned"
                )
            agent.last_activity = now

    def bar_task(self, task_id: str) -> bool:
        """Exclude a task from scheduling. Returns False if it was already barred."""
        with self._mutating():
            if task_id in self._barred:
                return False
            self._barred.append(task_id)
        return True

    def unbar_task(self, task_id: str) -> bool:
        """Allow a barred task to be scheduled again. Returns False if it was not barred."""
        with self._mutating():
            if task_id not in self._barred:
                return False
            self._barred.remove(task_id)
        return True

    def set_assignment_paused(self, paused: bool) -> None:
        with self._mutating():
            self._assignment_paused = paused

    def set_launches_paused(self, paused: bool) -> None:
        with self._mutating():
            self._launches_paused = paused

    def remove_agent(self, agent_id: int) -> bool:
        """Remove an agent, or mark it for removal if it is working.

        Returns True if the agent was deleted now, False if only marked.
        """
        with self._mutating():
            agent = self._require(agent_id)
            if agent.state == AgentState.ASSIGNED:
                agent.marked_for_removal = True
                deleted = False
            else:
                self._agents.remove(agent)
                deleted = True
        logger.info("agent_removal_requested", agent_id=agent_id, deleted=deleted)
        return deleted
