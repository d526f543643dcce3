"""CLI to run the orchestrator or inspect quota and task selection."""

from __future__ import annotations

import argparse
import asyncio

from machinator.config.logging import configure_logging
from machinator.config.project import (
    ProjectConfig,
    ProjectPaths,
    load_project_config,
    resolve_project_id,
    save_project_config,
)
from machinator.config.settings import ensure_config_template, load_settings
from machinator.quota.aggregator import QuotaAggregator, QuotaSnapshot
from machinator.quota.reporter import GeminiQuotaReporter
from machinator.runners.orchestrator import Orchestrator
from machinator.runners.scheduler import describe_candidates
from machinator.tasks.beads import load_tasks, ready_tasks


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Autonomous agent orchestration.")
    parser.add_argument("--project", default=None, help="Project id under MACHINATOR_DIR/projects.")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="Run the orchestrator until interrupted.")
    add = sub.add_parser("add-project", help="Register a repository as a new project.")
    add.add_argument("repo", help="Git URL of the repository.")
    add.add_argument("--branch", default="main")
    sub.add_parser("quota", help="Dump remaining quota for every account.")
    select = sub.add_parser("select-task", help="Show how ready tasks would be routed.")
    select.add_argument(
        "--no-quota-check",
        action="store_true",
        help="Assume full quota instead of querying accounts.",
    )
    return parser.parse_args()


def _aggregator(settings) -> QuotaAggregator:
    reporter = GeminiQuotaReporter(
        settings.quota_binary, timeout=settings.quota_timeout.total_seconds()
    )
    return QuotaAggregator(settings.accounts_dir, reporter)


async def _quota(settings) -> None:
    snapshot = await _aggregator(settings).refresh()
    print("Account Quotas:")
    for account in snapshot.accounts:
        print(f"{account.name}:")
        for model, remaining in sorted(account.models.items()):
            print(f"  {model}: {remaining * 100:.0f}%")


async def _select_task(settings, project_id: str | None, no_quota_check: bool) -> None:
    paths = ProjectPaths(
        settings.projects_dir, resolve_project_id(settings.projects_dir, project_id)
    )
    project = load_project_config(paths)
    models = [project.simple_model_name, project.complex_model_name]

    if no_quota_check:
        snapshot = QuotaSnapshot.full(models)
        print("(Skipping quota check, assuming full quota)")
    else:
        snapshot = await _aggregator(settings).refresh()

    tasks = load_tasks(paths.repo_dir)
    ready = ready_tasks(tasks)
    print(f"Total tasks: {len(tasks)}")
    print(f"Ready tasks: {len(ready)}")
    if not ready:
        print("No ready tasks")
        return

    print("\nQuota:")
    for model in models:
        print(f"  {model}: {snapshot.total_for(model) * 100:.0f}%")

    print("\nReady tasks (first eligible is assigned first):")
    routes = describe_candidates(
        ready, snapshot.total_for(models[0]), snapshot.total_for(models[1])
    )
    for task, route in routes:
        print(f"  {task.id} [{route}] {task.title}")


def _add_project(settings, repo: str, branch: str) -> None:
    projects_dir = settings.projects_dir
    existing = [int(p.name) for p in projects_dir.glob("*") if p.is_dir() and p.name.isdigit()]
    project_id = str(max(existing, default=0) + 1)
    paths = ProjectPaths(projects_dir, project_id)
    path = save_project_config(paths, ProjectConfig(repo=repo, branch=branch))
    print(f"Project {project_id} written to {path}")


async def _run(settings, project_id: str | None) -> None:
    orchestrator = Orchestrator.from_settings(settings, project_id)
    await orchestrator.run()


def main() -> None:
    args = _parse_args()
    settings = load_settings()
    configure_logging(
        debug=settings.debug, log_format=settings.log_format, logs_dir=settings.logs_dir
    )
    ensure_config_template(settings)

    project_id = args.project or settings.project
    if args.command == "run":
        asyncio.run(_run(settings, project_id))
    elif args.command == "add-project":
        _add_project(settings, args.repo, args.branch)
    elif args.command == "quota":
        asyncio.run(_quota(settings))
    elif args.command == "select-task":
        asyncio.run(_select_task(settings, project_id, args.no_quota_check))


if __name__ == "__main__":
    main()
