"""Per-project configuration and on-disk layout."""

from __future__ import annotations

import json
from pathlib import Path

import structlog
from pydantic import BaseModel, ValidationError, field_validator

from machinator.config.settings import load_jsonc

logger = structlog.get_logger(__name__)


class ProjectConfigError(ValueError):
    """Raised when a project cannot be resolved or its config is invalid."""


class ProjectConfig(BaseModel):
    """Settings for one managed repository."""

    repo: str
    branch: str = "main"
    simple_model_name: str = "gemini-3-flash-preview"
    complex_model_name: str = "gemini-3-pro-preview"

    @field_validator("repo")
    @classmethod
    def _repo_required(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("project config missing 'repo'")
        return value.strip()


class ProjectPaths:
    """Filesystem layout for a project under MACHINATOR_DIR/projects/<id>."""

    def __init__(self, projects_dir: Path, project_id: str):
        self.project_id = project_id
        self.root = Path(projects_dir) / project_id

    @property
    def config_path(self) -> Path:
        return self.root / "config.json"

    @property
    def repo_dir(self) -> Path:
        return self.root / "repo"

    def agent_dir(self, agent_id: int) -> Path:
        return self.root / "agents" / str(agent_id)


def load_project_config(paths: ProjectPaths) -> ProjectConfig:
    """Load and validate a project's config.json (JSONC).

    Raises:
        ProjectConfigError: If the file is missing, unparsable, or lacks 'repo'
    """
    path = paths.config_path
    if not path.exists():
        raise ProjectConfigError(f"project {paths.project_id} not found")

    try:
        data = load_jsonc(path)
    except (OSError, ValueError) as exc:
        raise ProjectConfigError(f"failed to read {path}: {exc}") from exc

    try:
        return ProjectConfig.model_validate(data)
    except ValidationError as exc:
        raise ProjectConfigError(f"invalid project config {path}: {exc}") from exc


def resolve_project_id(projects_dir: Path, requested: str | None = None) -> str:
    """Pick the project to orchestrate.

    An explicit id must exist. Without one, a lone project is auto-selected.
    """
    projects_dir = Path(projects_dir)
    try:
        available = sorted(p.name for p in projects_dir.iterdir() if p.is_dir())
    except FileNotFoundError:
        raise ProjectConfigError(f"no projects directory at {projects_dir}") from None

    if requested:
        if requested not in available:
            raise ProjectConfigError(f"project {requested} not found in {projects_dir}")
        return requested

    if not available:
        raise ProjectConfigError(f"no projects found in {projects_dir}")
    if len(available) > 1:
        raise ProjectConfigError(
            f"multiple projects found ({', '.join(available)}); specify one explicitly"
        )

    logger.info("project_auto_selected", project=available[0])
    return available[0]


def save_project_config(paths: ProjectPaths, config: ProjectConfig) -> Path:
    """Write a project config as plain JSON."""
    paths.root.mkdir(parents=True, exist_ok=True)
    paths.config_path.write_text(
        json.dumps(config.model_dump(), indent=2) + "\n", encoding="utf-8"
    )
    return paths.config_path
