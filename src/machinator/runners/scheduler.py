"""Assigner loop: matches ready agents to ready tasks under quota constraints."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Protocol

import structlog

from machinator.config.project import ProjectConfig
from machinator.logging_utils import log_key_event
from machinator.metrics import metrics
from machinator.orchestration.state import (
    AgentPoolState,
    StateError,
    StatePersistenceError,
    TaskAlreadyAssignedError,
    TaskBarredError,
)
from machinator.quota.aggregator import NoCapacityError, QuotaSnapshot
from machinator.tasks.beads import Task, TaskSource, TaskSourceError

logger = structlog.get_logger(__name__)

ROUTE_SIMPLE = "simple"
ROUTE_COMPLEX = "complex"
ROUTE_UPGRADE = "simple->complex"
ROUTE_NO_QUOTA = "no-quota"


class QuotaView(Protocol):
    @property
    def snapshot(self) -> QuotaSnapshot: ...


@dataclass
class Assignment:
    """One agent-to-task match made by a scheduler tick."""

    agent_id: int
    task_id: str
    model: str
    account: str | None = None
    upgraded: bool = False


def route_for(task: Task, simple_total: float, complex_total: float) -> str:
    """Decide which model class a task would run on given quota totals.

    Complex tasks need complex quota. Simple tasks prefer the simple model
    and fall back to the complex one.
    """
    if task.is_complex:
        return ROUTE_COMPLEX if complex_total > 0 else ROUTE_NO_QUOTA
    if simple_total > 0:
        return ROUTE_SIMPLE
    if complex_total > 0:
        return ROUTE_UPGRADE
    return ROUTE_NO_QUOTA


def describe_candidates(
    tasks: list[Task], simple_total: float, complex_total: float
) -> list[tuple[Task, str]]:
    """Pair each ready task with the route the scheduler would give it."""
    return [(task, route_for(task, simple_total, complex_total)) for task in tasks]


class TaskScheduler:
    """First-fit assignment of ready tasks to ready agents."""

    def __init__(
        self,
        state: AgentPoolState,
        quota: QuotaView,
        task_source: TaskSource,
        project: ProjectConfig,
    ):
        self.state = state
        self.quota = quota
        self.task_source = task_source
        self.project = project

    def _model_for(self, route: str) -> str:
        if route == ROUTE_SIMPLE:
            return self.project.simple_model_name
        return self.project.complex_model_name

    def _select(
        self, pool: list[Task], simple_total: float, complex_total: float
    ) -> tuple[Task, str] | None:
        for task in pool:
            if self.state.is_task_barred(task.id):
                continue
            if self.state.is_task_assigned(task.id):
                continue
            route = route_for(task, simple_total, complex_total)
            if route == ROUTE_NO_QUOTA:
                continue
            return task, route
        return None

    async def tick(self) -> list[Assignment]:
        """Run one assignment pass.

        Returns:
            The assignments made, in agent order
        """
        if self.state.assignment_paused:
            logger.debug("assignment_paused")
            return []

        agents = self.state.ready_agents()
        if not agents:
            return []

        try:
            candidates = await asyncio.to_thread(self.task_source.ready_tasks)
        except (TaskSourceError, OSError) as e:
            logger.warning("task_source_failed", error=str(e))
            return []
        if not candidates:
            return []

        snapshot = self.quota.snapshot
        simple_total = snapshot.total_for(self.project.simple_model_name)
        complex_total = snapshot.total_for(self.project.complex_model_name)

        pool = list(candidates)
        assignments: list[Assignment] = []
        for agent in agents:
            assignment = await self._assign_one(
                agent.id, pool, snapshot, simple_total, complex_total
            )
            if assignment is None:
                if not self._select(pool, simple_total, complex_total):
                    logger.debug(
                        "no_eligible_tasks",
                        waiting_agents=len(agents) - len(assignments),
                        candidates=len(pool),
                        simple_quota=simple_total,
                        complex_quota=complex_total,
                    )
                    break
                continue
            assignments.append(assignment)

        return assignments

    async def _assign_one(
        self,
        agent_id: int,
        pool: list[Task],
        snapshot: QuotaSnapshot,
        simple_total: float,
        complex_total: float,
    ) -> Assignment | None:
        while True:
            choice = self._select(pool, simple_total, complex_total)
            if choice is None:
                return None
            task, route = choice
            model = self._model_for(route)
            try:
                account = snapshot.best_account_for(model)
            except NoCapacityError:
                account = None

            try:
                await asyncio.to_thread(
                    self.state.assign_task, agent_id, task.id, model=model, account=account
                )
            except (TaskAlreadyAssignedError, TaskBarredError) as e:
                # lost a race with another writer; try the next candidate
                logger.info("task_unavailable", task_id=task.id, error=str(e))
                pool.remove(task)
                continue
            except StatePersistenceError as e:
                logger.error("assignment_not_persisted", agent_id=agent_id, task_id=task.id, error=str(e))
            except StateError as e:
                logger.warning("agent_not_assignable", agent_id=agent_id, error=str(e))
                return None

            pool.remove(task)
            metrics.inc_counter("machinator_assignments_total", labels={"model": model})
            log_key_event(
                logger,
                "task assigned",
                agent_id=agent_id,
                task_id=task.id,
                model=model,
                account=account,
                route=route,
            )
            return Assignment(
                agent_id=agent_id,
                task_id=task.id,
                model=model,
                account=account,
                upgraded=route == ROUTE_UPGRADE,
            )
