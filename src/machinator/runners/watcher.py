"""Agent watcher: expires assignments that are idle or have run too long."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Callable

import structlog

from machinator.logging_utils import log_key_event
from machinator.metrics import metrics
from machinator.orchestration.state import AgentPoolState, StateError, StatePersistenceError

logger = structlog.get_logger(__name__)

REASON_IDLE = "idle"
REASON_MAX_RUNTIME = "max_runtime"


@dataclass
class Expiry:
    agent_id: int
    task_id: str
    reason: str
    elapsed: timedelta


class AgentWatcher:
    """Bars the task of a stuck agent and returns the agent to ready.

    The task stays barred until an operator unbars it, so a task that keeps
    hanging is not handed straight to the next agent.
    A zero timeout disables that check.
    """

    def __init__(
        self,
        state: AgentPoolState,
        idle_timeout: timedelta,
        max_runtime: timedelta,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self.state = state
        self.idle_timeout = idle_timeout
        self.max_runtime = max_runtime
        self._clock = clock

    def check(self) -> list[Expiry]:
        """Find assigned agents past a timeout, without changing anything."""
        now = self._clock()
        expired: list[Expiry] = []
        for agent in self.state.assigned_agents():
            if agent.task_id is None:
                continue
            if self.max_runtime > timedelta(0) and agent.started_at is not None:
                elapsed = now - agent.started_at
                if elapsed > self.max_runtime:
                    expired.append(Expiry(agent.id, agent.task_id, REASON_MAX_RUNTIME, elapsed))
                    continue
            if self.idle_timeout > timedelta(0) and agent.last_activity is not None:
                elapsed = now - agent.last_activity
                if elapsed > self.idle_timeout:
                    expired.append(Expiry(agent.id, agent.task_id, REASON_IDLE, elapsed))
        return expired

    async def tick(self) -> list[Expiry]:
        handled: list[Expiry] = []
        for expiry in self.check():
            # bar before release so the task is never both free and unbarred
            try:
                await asyncio.to_thread(self.state.bar_task, expiry.task_id)
            except StatePersistenceError as e:
                logger.error("bar_not_persisted", task_id=expiry.task_id, error=str(e))

            try:
                await asyncio.to_thread(self.state.complete_task, expiry.agent_id, expiry.task_id)
            except StatePersistenceError as e:
                logger.error("release_not_persisted", agent_id=expiry.agent_id, error=str(e))
            except StateError as e:
                # finished or reassigned since check()
                logger.info("expiry_skipped", agent_id=expiry.agent_id, error=str(e))
                continue

            metrics.inc_counter("machinator_agent_timeouts_total", labels={"reason": expiry.reason})
            log_key_event(
                logger,
                "agent timed out",
                agent_id=expiry.agent_id,
                task_id=expiry.task_id,
                reason=expiry.reason,
                elapsed_seconds=round(expiry.elapsed.total_seconds(), 1),
            )
            handled.append(expiry)
        return handled
