"""Git operations for the shared checkout and per-agent worktrees."""

import asyncio
import shutil
import subprocess
from pathlib import Path
from urllib.parse import urlsplit, urlunsplit

import structlog

logger = structlog.get_logger(__name__)


class GitError(RuntimeError):
    """Raised when a git command fails."""

    def __init__(self, command: list[str], returncode: int | None, stderr: str = ""):
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        args = command[3:] if command[1:2] == ["-C"] else command[1:]
        subcommand = args[0] if args else ""
        detail = stderr.strip() or f"exit status {returncode}"
        super().__init__(f"git {subcommand}: {detail}")


def sanitize_repo_url(repo_url: str) -> str:
    """Redact credentials from repo URLs before logging."""
    parts = urlsplit(repo_url)
    if not parts.username and not parts.password:
        return repo_url

    hostname = parts.hostname or ""
    if parts.port:
        hostname = f"{hostname}:{parts.port}"

    user = parts.username or ""
    redacted = f"{user}:***@" if user else "***@"
    netloc = f"{redacted}{hostname}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


class GitOps:
    """Runs git for workspace management without blocking the event loop."""

    def __init__(self, timeout: float = 300.0):
        """Initialize git operations.

        Args:
            timeout: Upper bound in seconds for any single git command
        """
        self.timeout = timeout

    def _run(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess:
        cmd = ["git", *args]
        try:
            return subprocess.run(
                cmd,
                check=check,
                capture_output=True,
                timeout=self.timeout,
            )
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or b"").decode(errors="replace")
            raise GitError(cmd, e.returncode, stderr) from e
        except subprocess.TimeoutExpired as e:
            raise GitError(cmd, None, f"timed out after {self.timeout}s") from e
        except OSError as e:
            raise GitError(cmd, None, str(e)) from e

    async def _git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        return await asyncio.to_thread(self._run, list(args), check)

    async def clone_repo(self, repo_url: str, repo_dir: Path, branch: str = "main") -> Path:
        """Clone repo_url at branch into repo_dir.

        Raises:
            GitError: If the clone fails
        """
        repo_dir = Path(repo_dir)
        repo_dir.parent.mkdir(parents=True, exist_ok=True)

        safe_repo_url = sanitize_repo_url(repo_url)
        logger.info("cloning_repo", repo_url=safe_repo_url, repo_dir=str(repo_dir), branch=branch)

        try:
            await self._git("clone", "-b", branch, repo_url, str(repo_dir))
        except GitError as e:
            logger.error("clone_failed", repo_url=safe_repo_url, returncode=e.returncode, stderr=e.stderr)
            raise
        logger.info("repo_cloned", repo_dir=str(repo_dir))
        return repo_dir

    async def fetch(self, repo_dir: Path) -> None:
        """Fetch origin into repo_dir."""
        try:
            await self._git("-C", str(repo_dir), "fetch", "origin", "--prune")
        except GitError as e:
            logger.error("fetch_failed", repo_dir=str(repo_dir), stderr=e.stderr)
            raise

    async def remove_worktree(self, repo_dir: Path, worktree_path: Path) -> None:
        """Detach and delete a worktree; missing worktrees are not an error."""
        worktree_path = Path(worktree_path)
        if not worktree_path.exists():
            return
        await self._git(
            "-C", str(repo_dir), "worktree", "remove", "--force", str(worktree_path), check=False
        )
        if worktree_path.exists():
            await asyncio.to_thread(shutil.rmtree, worktree_path)
        logger.info("worktree_removed", worktree=str(worktree_path))

    async def create_worktree(self, repo_dir: Path, worktree_path: Path, branch: str = "main") -> Path:
        """Create a detached worktree at origin/<branch>, replacing any stale one.

        Raises:
            GitError: If fetching or adding the worktree fails
        """
        worktree_path = Path(worktree_path)
        await self.remove_worktree(repo_dir, worktree_path)
        await self._git("-C", str(repo_dir), "worktree", "prune", check=False)
        await self.fetch(repo_dir)

        worktree_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            await self._git(
                "-C",
                str(repo_dir),
                "worktree",
                "add",
                "--detach",
                str(worktree_path),
                f"origin/{branch}",
            )
        except GitError as e:
            logger.error("worktree_add_failed", worktree=str(worktree_path), stderr=e.stderr)
            raise
        logger.info("worktree_created", worktree=str(worktree_path), branch=branch)
        return worktree_path
