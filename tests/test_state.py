import shutil
import subprocess
from pathlib import Path

import pytest

from ralph.state import (
    RalphStateError,
    ResourceUnavailableError,
    SeenSet,
    WorkspaceManager,
    feature_name,
)


def _run(cmd: list[str], cwd: Path) -> str:
    proc = subprocess.run(cmd, cwd=cwd, check=True, text=True, capture_output=True)
    return proc.stdout


def _init_git_repo(tmp_path: Path) -> Path:
    remote = tmp_path / "remote.git"
    seed = tmp_path / "seed"
    repo = tmp_path / "repo"
    _run(["git", "init", "--bare", "-b", "main", str(remote)], cwd=tmp_path)
    seed.mkdir()
    _run(["git", "init", "-b", "main"], cwd=seed)
    _run(["git", "config", "user.email", "test@example.com"], cwd=seed)
    _run(["git", "config", "user.name", "Test User"], cwd=seed)
    (seed / "seed.txt").write_text("seed\n", encoding="utf-8")
    _run(["git", "add", "seed.txt"], cwd=seed)
    _run(["git", "commit", "-m", "seed"], cwd=seed)
    _run(["git", "remote", "add", "origin", str(remote)], cwd=seed)
    _run(["git", "push", "origin", "main"], cwd=seed)
    _run(["git", "clone", str(remote), str(repo)], cwd=tmp_path)
    _run(["git", "config", "user.email", "test@example.com"], cwd=repo)
    _run(["git", "config", "user.name", "Test User"], cwd=repo)
    return repo


def _branches(repo: Path) -> list[str]:
    return _run(["git", "branch", "--format=%(refname:short)"], cwd=repo).split()


def test_seen_set_add_is_idempotent(tmp_path: Path) -> None:
    seen = SeenSet(tmp_path / "state" / ".ralph-skip")

    assert seen.members() == []
    assert seen.add(42, reason="max turns") is True
    assert seen.add("42") is False
    assert seen.add(" 7 ") is True

    assert 42 in seen
    assert "7" in seen
    assert len(seen) == 2
    assert seen.path.read_text(encoding="utf-8") == "42\n7\n"
    assert not seen.lock_file.exists()


def test_seen_set_rereads_the_file_on_every_query(tmp_path: Path) -> None:
    path = tmp_path / ".ralph-reviewed"
    seen = SeenSet(path)
    seen.add(1)

    path.write_text("1\n\n  9  \n", encoding="utf-8")

    assert seen.members() == ["1", "9"]
    assert 9 in seen


def test_seen_set_remove_rewrites_remaining_entries(tmp_path: Path) -> None:
    seen = SeenSet(tmp_path / ".ralph-skip")
    for number in (3, 4, 5):
        seen.add(number)

    assert seen.remove(4) is True
    assert seen.remove(4) is False
    assert seen.members() == ["3", "5"]


def test_seen_set_rejects_empty_identifiers(tmp_path: Path) -> None:
    with pytest.raises(RalphStateError):
        SeenSet(tmp_path / ".ralph-skip").add("  ")


def test_seen_set_lock_times_out_when_held(tmp_path: Path) -> None:
    seen = SeenSet(tmp_path / ".ralph-skip")
    seen.lock_file.write_text("999", encoding="utf-8")

    with pytest.raises(RalphStateError, match="Timed out"):
        with seen._lock(timeout_seconds=0.1):
            pass

    assert seen.members() == []


def test_feature_name_normalizes_titles() -> None:
    assert feature_name("Fix: Login fails on Safari!") == "fix-login-fails-on-safari-"
    assert feature_name("a" * 80) == "a" * 50
    assert feature_name("") == ""


def test_acquire_creates_then_reuses_a_worktree(tmp_path: Path) -> None:
    repo = _init_git_repo(tmp_path)
    manager = WorkspaceManager(repo)

    first = manager.acquire("fix-login")

    assert first.origin == "created"
    assert first.path == repo.resolve() / ".worktrees" / "fix-login"
    assert first.branch == "feature/fix-login"
    assert (first.path / "seed.txt").exists()
    assert "feature/fix-login" in _branches(repo)

    (first.path / "wip.txt").write_text("partial\n", encoding="utf-8")
    second = manager.acquire("fix-login")

    assert second.origin == "reused"
    assert (second.path / "wip.txt").read_text(encoding="utf-8") == "partial\n"


def test_acquire_reattaches_an_existing_branch(tmp_path: Path) -> None:
    repo = _init_git_repo(tmp_path)
    manager = WorkspaceManager(repo)
    workspace = manager.acquire("fix-login")
    (workspace.path / "feature.txt").write_text("feature\n", encoding="utf-8")
    _run(["git", "add", "feature.txt"], cwd=workspace.path)
    _run(["git", "commit", "-m", "feature"], cwd=workspace.path)

    shutil.rmtree(workspace.path)
    again = manager.acquire("fix-login")

    assert again.origin == "reattached"
    assert (again.path / "feature.txt").exists()
    assert manager.find_worktree_for_branch("feature/fix-login") == again.path


def test_acquire_fails_without_base_branch(tmp_path: Path) -> None:
    repo = _init_git_repo(tmp_path)
    manager = WorkspaceManager(repo, base_branch="does-not-exist")

    with pytest.raises(ResourceUnavailableError):
        manager.acquire("fix-login")

    with pytest.raises(ResourceUnavailableError):
        manager.acquire("")


def test_reconcile_tears_down_merged_branches_only(tmp_path: Path) -> None:
    repo = _init_git_repo(tmp_path)
    manager = WorkspaceManager(repo)
    workspace = manager.acquire("fix-login")

    assert manager.reconcile("feature/fix-login", "OPEN") is False
    assert workspace.path.exists()

    assert manager.reconcile("feature/fix-login", "merged") is True
    assert not workspace.path.exists()
    assert "feature/fix-login" not in _branches(repo)
    assert manager.find_worktree_for_branch("feature/fix-login") is None


def test_teardown_tolerates_missing_worktree(tmp_path: Path) -> None:
    repo = _init_git_repo(tmp_path)
    manager = WorkspaceManager(repo)

    manager.teardown("feature/never-created")

    assert _branches(repo) == ["main"]
