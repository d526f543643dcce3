"""Configuration module."""

from .project import ProjectConfig, ProjectConfigError, ProjectPaths
from .settings import Settings, load_settings

__all__ = [
    "ProjectConfig",
    "ProjectConfigError",
    "ProjectPaths",
    "Settings",
    "load_settings",
]
