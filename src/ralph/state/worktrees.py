from __future__ import annotations

import logging
import re
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

FEATURE_NAME_LIMIT = 50
TEARDOWN_STATES = {"MERGED", "CLOSED"}


class ResourceUnavailableError(RuntimeError):
    """Raised when an isolated workspace cannot be created or re-attached."""


@dataclass(slots=True)
class Workspace:
    key: str
    path: Path
    branch: str
    origin: str


def feature_name(title: str) -> str:
    slug = re.sub(r"[^a-z0-9]", "-", title.lower())
    slug = re.sub(r"-+", "-", slug)
    return slug[:FEATURE_NAME_LIMIT]


class WorkspaceManager:
    """Per-task git worktrees under ``<repo>/<worktrees_dir>/<key>``.

    A workspace outlives the task that created it so a retried task picks up
    where the last attempt stopped. It is only torn down once the pull request
    built from its branch reaches a terminal state.
    """

    def __init__(
        self,
        repo_root: Path,
        *,
        worktrees_dir: str = ".worktrees",
        remote: str = "origin",
        base_branch: str = "main",
        branch_prefix: str = "feature/",
    ) -> None:
        self.repo_root = repo_root.resolve()
        self.worktrees_root = self.repo_root / worktrees_dir
        self.remote = remote
        self.base_branch = base_branch
        self.branch_prefix = branch_prefix

    def _run_git(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
        proc = subprocess.run(
            ["git", "--no-pager", *args],
            cwd=self.repo_root,
            text=True,
            capture_output=True,
        )
        if check and proc.returncode != 0:
            raise ResourceUnavailableError(proc.stderr.strip() or proc.stdout.strip())
        return proc

    def path_for(self, key: str) -> Path:
        return self.worktrees_root / key

    def branch_for(self, key: str) -> str:
        return f"{self.branch_prefix}{key}"

    def _branch_exists(self, branch: str) -> bool:
        for ref in (f"refs/heads/{branch}", f"refs/remotes/{self.remote}/{branch}"):
            if self._run_git(["show-ref", "--verify", "--quiet", ref], check=False).returncode == 0:
                return True
        return False

    def acquire(self, key: str) -> Workspace:
        if not key:
            raise ResourceUnavailableError("Workspace key must not be empty.")
        path = self.path_for(key)
        branch = self.branch_for(key)

        fetch = self._run_git(["fetch", self.remote], check=False)
        if fetch.returncode != 0:
            logger.warning("git fetch %s failed: %s", self.remote, fetch.stderr.strip())

        if path.is_dir():
            logger.info("Reusing existing worktree: %s", path)
            return Workspace(key=key, path=path, branch=branch, origin="reused")

        self.worktrees_root.mkdir(parents=True, exist_ok=True)
        self._run_git(["worktree", "prune"], check=False)
        if self._branch_exists(branch):
            logger.info("Re-attaching branch %s at %s", branch, path)
            self._run_git(["worktree", "add", str(path), branch])
            return Workspace(key=key, path=path, branch=branch, origin="reattached")

        base = f"{self.remote}/{self.base_branch}"
        logger.info("Creating worktree %s on %s from %s", path, branch, base)
        self._run_git(["worktree", "add", str(path), "-b", branch, base])
        return Workspace(key=key, path=path, branch=branch, origin="created")

    def find_worktree_for_branch(self, branch: str) -> Path | None:
        proc = self._run_git(["worktree", "list", "--porcelain"], check=False)
        if proc.returncode != 0:
            return None
        current: Path | None = None
        for line in proc.stdout.splitlines():
            if line.startswith("worktree "):
                current = Path(line[len("worktree ") :])
            elif line == f"branch refs/heads/{branch}" and current is not None:
                return current
        return None

    def reconcile(self, branch: str, final_state: str) -> bool:
        if not branch or final_state.upper() not in TEARDOWN_STATES:
            return False
        self.teardown(branch)
        return True

    def teardown(self, branch: str) -> None:
        candidates: list[Path] = []
        tracked = self.find_worktree_for_branch(branch)
        if tracked is not None:
            candidates.append(tracked)
        suffix_dir = self.worktrees_root / branch.rsplit("/", 1)[-1]
        if suffix_dir not in candidates:
            candidates.append(suffix_dir)

        for path in candidates:
            if path.resolve() == self.repo_root:
                continue
            self._remove_worktree(path)

        deleted = self._run_git(["branch", "-D", branch], check=False)
        if deleted.returncode == 0:
            logger.info("Deleted local branch %s", branch)
        self._run_git(["worktree", "prune"], check=False)
        pulled = self._run_git(["pull", self.remote, self.base_branch], check=False)
        if pulled.returncode != 0:
            logger.warning(
                "git pull %s %s failed: %s", self.remote, self.base_branch, pulled.stderr.strip()
            )

    def _remove_worktree(self, path: Path) -> None:
        if not path.exists():
            return
        logger.info("Cleaning up worktree: %s", path)
        self._run_git(["worktree", "remove", str(path), "--force"], check=False)
        if path.exists():
            logger.info("Removing lingering worktree directory: %s", path)
            try:
                shutil.rmtree(path)
            except OSError as exc:
                logger.warning("Could not remove %s: %s", path, exc)
