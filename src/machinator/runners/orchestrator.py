"""Orchestrator: wires state, quota and the polling loops together."""

from __future__ import annotations

import asyncio
import signal
from typing import Any, Awaitable, Callable

import structlog

from machinator.config.project import (
    ProjectConfig,
    ProjectPaths,
    load_project_config,
    resolve_project_id,
)
from machinator.config.settings import Settings
from machinator.logging_utils import log_key_event
from machinator.metrics import metrics
from machinator.orchestration.state import AgentPoolState, StatePersistenceError
from machinator.quota.aggregator import QuotaAggregator
from machinator.quota.reporter import GeminiQuotaReporter
from machinator.runners.quota_watcher import QuotaWatcher
from machinator.runners.scheduler import TaskScheduler
from machinator.runners.ticker import run_every
from machinator.runners.watcher import AgentWatcher
from machinator.tasks.beads import BeadsTaskSource, TaskSource
from machinator.workspaces.git_ops import GitOps
from machinator.workspaces.provisioner import WorkspaceBackend, WorkspaceProvisioner

logger = structlog.get_logger(__name__)


class Orchestrator:
    """Runs quota refresh, provisioning, assignment and watching until stopped."""

    def __init__(
        self,
        settings: Settings,
        state: AgentPoolState,
        quota: QuotaAggregator,
        task_source: TaskSource,
        git_ops: WorkspaceBackend,
        project: ProjectConfig,
        paths: ProjectPaths,
    ):
        self.settings = settings
        self.state = state
        self.quota = quota
        self.project = project
        self.paths = paths
        self.quota_watcher = QuotaWatcher(
            quota, [project.simple_model_name, project.complex_model_name]
        )
        self.provisioner = WorkspaceProvisioner(
            state,
            git_ops,
            project,
            paths,
            backoff=settings.provision_backoff.total_seconds(),
        )
        self.scheduler = TaskScheduler(state, quota, task_source, project)
        self.watcher = AgentWatcher(state, settings.idle_timeout, settings.max_runtime)
        self._stop = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    @classmethod
    def from_settings(cls, settings: Settings, project_id: str | None = None) -> "Orchestrator":
        """Build an orchestrator with the real git, gemini and beads collaborators.

        Raises:
            ProjectConfigError: If the project cannot be resolved or loaded
            StateError: If existing state.json is unreadable
        """
        resolved = resolve_project_id(settings.projects_dir, project_id or settings.project)
        paths = ProjectPaths(settings.projects_dir, resolved)
        project = load_project_config(paths)
        state = AgentPoolState.load(settings.state_path)
        reporter = GeminiQuotaReporter(
            settings.quota_binary, timeout=settings.quota_timeout.total_seconds()
        )
        return cls(
            settings=settings,
            state=state,
            quota=QuotaAggregator(settings.accounts_dir, reporter),
            task_source=BeadsTaskSource(paths.repo_dir),
            git_ops=GitOps(timeout=settings.git_timeout.total_seconds()),
            project=project,
            paths=paths,
        )

    def ensure_agents(self) -> int:
        """Create the default agents on first run. Returns how many were added."""
        if self.state.agents():
            return 0
        for _ in range(self.settings.default_agent_count):
            self.state.add_agent()
        return self.settings.default_agent_count

    def _loops(self) -> list[tuple[str, float, Callable[[], Awaitable[Any]]]]:
        s = self.settings
        return [
            ("quota", s.quota_refresh_interval.total_seconds(), self.quota_watcher.tick),
            ("provisioner", s.provision_interval.total_seconds(), self.provisioner.tick),
            ("assigner", s.assigner_interval.total_seconds(), self.scheduler.tick),
            ("agent_watcher", s.agent_watch_interval.total_seconds(), self.watcher.tick),
        ]

    def start(self) -> None:
        """Start the loops on the running event loop."""
        if self._tasks:
            return
        added = self.ensure_agents()
        self._tasks = [
            asyncio.create_task(run_every(name, interval, self._stop, tick), name=name)
            for name, interval, tick in self._loops()
        ]
        log_key_event(
            logger,
            "orchestrator running",
            project=self.paths.project_id,
            agents=len(self.state.agents()),
            added=added,
            idle_timeout=str(self.settings.idle_timeout),
            max_runtime=str(self.settings.max_runtime),
        )

    def stop(self) -> None:
        """Ask every loop to finish after its current tick."""
        if not self._stop.is_set():
            logger.info("orchestrator_stop_requested")
        self._stop.set()

    async def shutdown(self) -> None:
        """Stop the loops, wait for them, then persist final state."""
        self.stop()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks = []
        await asyncio.to_thread(self._write_metrics)
        try:
            await asyncio.to_thread(self.state.save)
        except StatePersistenceError as e:
            logger.error("final_save_failed", error=str(e))
            raise
        logger.info("orchestrator_shutdown_complete")

    def _write_metrics(self) -> None:
        """Leave the final counters in Prometheus text format next to state.json."""
        path = self.settings.metrics_path
        try:
            path.write_text(metrics.render_prometheus(), encoding="utf-8")
        except OSError as e:
            logger.warning("metrics_write_failed", path=str(path), error=str(e))

    async def run(self) -> None:
        """Run until SIGINT/SIGTERM (or stop()), then shut down cleanly."""
        loop = asyncio.get_running_loop()
        handled: list[signal.Signals] = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.stop)
                handled.append(sig)
            except (NotImplementedError, RuntimeError):
                pass

        self.start()
        try:
            await self._stop.wait()
        finally:
            for sig in handled:
                loop.remove_signal_handler(sig)
            await self.shutdown()
