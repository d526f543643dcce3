"""Shared fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from machinator.config.project import ProjectConfig, ProjectPaths
from machinator.metrics import metrics
from machinator.orchestration.state import AgentPoolState
from machinator.quota.aggregator import QuotaAggregator

from fakes import FakeGitOps, FakeReporter, FakeTaskSource


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture()
def state_path(tmp_path: Path) -> Path:
    return tmp_path / "state.json"


@pytest.fixture()
def state(state_path: Path) -> AgentPoolState:
    return AgentPoolState(state_path)


@pytest.fixture()
def project() -> ProjectConfig:
    return ProjectConfig(repo="https://example.com/org/repo.git", branch="main")


@pytest.fixture()
def paths(tmp_path: Path) -> ProjectPaths:
    return ProjectPaths(tmp_path / "projects", "1")


@pytest.fixture()
def quota(tmp_path: Path) -> QuotaAggregator:
    return QuotaAggregator(tmp_path / "accounts", FakeReporter({}))


@pytest.fixture()
def task_source() -> FakeTaskSource:
    return FakeTaskSource()


@pytest.fixture()
def git_ops() -> FakeGitOps:
    return FakeGitOps()
