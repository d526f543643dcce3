"""Workspace management for agent slots."""

from .git_ops import GitError, GitOps, sanitize_repo_url
from .provisioner import WorkspaceProvisioner

__all__ = ["GitError", "GitOps", "WorkspaceProvisioner", "sanitize_repo_url"]
