"""Workspace provisioning: turns pending agents into ready ones."""

from __future__ import annotations

import asyncio
import shutil
import time
from pathlib import Path
from typing import Callable, Protocol

import structlog

from machinator.config.project import ProjectConfig, ProjectPaths
from machinator.logging_utils import log_key_event
from machinator.metrics import metrics
from machinator.orchestration.state import (
    AgentPoolState,
    StateError,
    StatePersistenceError,
)
from machinator.workspaces.git_ops import GitError

logger = structlog.get_logger(__name__)


class WorkspaceBackend(Protocol):
    async def clone_repo(self, repo_url: str, repo_dir: Path, branch: str = "main") -> Path: ...

    async def create_worktree(
        self, repo_dir: Path, worktree_path: Path, branch: str = "main"
    ) -> Path: ...


class WorkspaceProvisioner:
    """Ensures the shared checkout exists and gives each pending agent a worktree.

    Failures leave the agent pending; it is retried once the back-off has
    elapsed. There is no retry limit.
    """

    def __init__(
        self,
        state: AgentPoolState,
        git_ops: WorkspaceBackend,
        project: ProjectConfig,
        paths: ProjectPaths,
        backoff: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.state = state
        self.git_ops = git_ops
        self.project = project
        self.paths = paths
        self.backoff = backoff
        self._clock = clock
        self._retry_at: dict[int, float] = {}
        self._clone_retry_at = 0.0

    async def ensure_repo(self) -> bool:
        """Clone the project once. Returns True when the checkout is usable."""
        repo_dir = self.paths.repo_dir
        if (repo_dir / ".git").exists():
            return True
        if self._clock() < self._clone_retry_at:
            return False

        try:
            if repo_dir.exists():
                # leftover from an interrupted clone
                await asyncio.to_thread(shutil.rmtree, repo_dir)
            await self.git_ops.clone_repo(self.project.repo, repo_dir, self.project.branch)
        except (GitError, OSError) as exc:
            self._clone_retry_at = self._clock() + self.backoff
            metrics.inc_counter("machinator_provision_failures_total", labels={"stage": "clone"})
            logger.error("project_clone_failed", error=str(exc), retry_in=self.backoff)
            return False
        return True

    async def tick(self) -> list[int]:
        """Provision every pending agent that is not backing off.

        Returns:
            Ids of the agents that became ready
        """
        pending = [a for a in self.state.pending_agents() if not a.marked_for_removal]
        if not pending:
            return []
        if not await self.ensure_repo():
            return []

        provisioned: list[int] = []
        for agent in pending:
            if self._retry_at.get(agent.id, 0.0) > self._clock():
                continue

            worktree = self.paths.agent_dir(agent.id)
            try:
                await self.git_ops.create_worktree(
                    self.paths.repo_dir, worktree, self.project.branch
                )
            except (GitError, OSError) as exc:
                self._retry_at[agent.id] = self._clock() + self.backoff
                metrics.inc_counter(
                    "machinator_provision_failures_total", labels={"stage": "worktree"}
                )
                logger.error(
                    "workspace_provision_failed",
                    agent_id=agent.id,
                    error=str(exc),
                    retry_in=self.backoff,
                )
                continue

            try:
                await asyncio.to_thread(self.state.set_agent_ready, agent.id)
            except StatePersistenceError as exc:
                logger.error("agent_ready_not_persisted", agent_id=agent.id, error=str(exc))
            except StateError as exc:
                # removed or changed while the worktree was being built
                logger.warning("agent_ready_skipped", agent_id=agent.id, error=str(exc))
                continue

            self._retry_at.pop(agent.id, None)
            provisioned.append(agent.id)
            log_key_event(logger, "workspace ready", agent_id=agent.id, worktree=str(worktree))

        return provisioned
