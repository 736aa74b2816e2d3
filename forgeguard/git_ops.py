"""
Git Operations
==============

Thin wrappers over the git CLI used for workspace checkouts and handoff
metadata. Read-only queries never raise: they return ``"unknown"`` or an empty
list when git is unavailable. Checkout creation raises ``WorkspaceError``;
removal is best effort and only logs.
"""

import logging
import re
import subprocess
from pathlib import Path
from typing import List, Optional

from forgeguard.errors import WorkspaceError

log = logging.getLogger(__name__)

GIT_TIMEOUT = 30


def _git(args: List[str], cwd: Path, timeout: int = GIT_TIMEOUT) -> subprocess.CompletedProcess:
    return subprocess.run(
        ["git", *args],
        cwd=str(cwd),
        capture_output=True,
        text=True,
        timeout=timeout,
    )


def _query(args: List[str], cwd: Path) -> Optional[str]:
    try:
        result = _git(args, cwd, timeout=10)
    except (OSError, subprocess.SubprocessError):
        return None
    if result.returncode != 0:
        return None
    return result.stdout.strip()


def current_branch(cwd: Path) -> str:
    return _query(["rev-parse", "--abbrev-ref", "HEAD"], cwd) or "unknown"


def short_commit(cwd: Path) -> str:
    return _query(["rev-parse", "--short", "HEAD"], cwd) or "unknown"


def uncommitted_files(cwd: Path) -> List[str]:
    """Paths with staged, unstaged or untracked changes."""
    output = _query(["status", "--porcelain"], cwd)
    if not output:
        return []
    files = []
    for line in output.splitlines():
        if len(line) > 3:
            path = line[3:]
            # Renames are reported as "old -> new"
            if " -> " in path:
                path = path.split(" -> ", 1)[1]
            files.append(path.strip('"'))
    return files


def recently_changed_files(cwd: Path, depth: int = 5) -> List[str]:
    """Files touched by the last ``depth`` commits."""
    output = _query(["diff", "--name-only", f"HEAD~{depth}", "HEAD"], cwd)
    if output is None:
        # Fewer than `depth` commits: fall back to the root commit range
        output = _query(["log", f"-{depth}", "--name-only", "--pretty=format:"], cwd)
    if not output:
        return []
    seen = []
    for line in output.splitlines():
        line = line.strip()
        if line and line not in seen:
            seen.append(line)
    return seen


def current_workspace_id(cwd: Path, base_dir: str = ".worktrees") -> str:
    """
    Identify which workspace a directory belongs to.

    Returns the entity id when the git dir lives under
    ``.git/worktrees/<id>`` or the path is inside ``<base_dir>/<id>``,
    otherwise ``"main"``.
    """
    cwd = Path(cwd)
    marker = Path(base_dir).name
    parts = cwd.resolve().parts
    if marker in parts:
        index = parts.index(marker)
        if index + 1 < len(parts):
            return parts[index + 1]

    git_dir = _query(["rev-parse", "--git-dir"], cwd)
    if git_dir:
        match = re.search(r"worktrees[/\\]([^/\\]+)$", git_dir)
        if match:
            return match.group(1)
    return "main"


class GitWorktrees:
    """Creates and removes isolated checkouts with ``git worktree``."""

    def __init__(self, repo_dir: Path):
        self.repo_dir = Path(repo_dir)

    def create(self, path: Path, branch: str, base_ref: str = "HEAD") -> None:
        """
        Create a worktree at ``path`` on a new branch.

        Raises:
            WorkspaceError: git refused or is unavailable
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            _git(["worktree", "add", "-b", branch, str(path), base_ref], self.repo_dir)
        except (OSError, subprocess.SubprocessError) as e:
            raise WorkspaceError(f"Failed to run git worktree add: {e}") from e
        if not path.exists():
            # Branch may already exist from an earlier, partially cleaned allocation
            try:
                result = _git(["worktree", "add", str(path), branch], self.repo_dir)
            except (OSError, subprocess.SubprocessError) as e:
                raise WorkspaceError(f"Failed to run git worktree add: {e}") from e
            if result.returncode != 0:
                raise WorkspaceError(f"Failed to create worktree: {result.stderr.strip()}")

    def remove(self, path: Path, branch: str) -> None:
        """Remove a worktree and its branch. Best-effort, logs warnings on failure."""
        for args in (
            ["worktree", "remove", "--force", str(path)],
            ["branch", "-D", branch],
            ["worktree", "prune"],
        ):
            try:
                result = _git(args, self.repo_dir)
            except (OSError, subprocess.SubprocessError) as e:
                log.warning("git %s failed: %s", " ".join(args[:2]), e)
                continue
            if result.returncode != 0:
                log.warning("git %s failed: %s", " ".join(args[:2]), result.stderr.strip())

    def exists(self, path: Path) -> bool:
        return Path(path).exists()
