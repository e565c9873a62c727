import asyncio
import subprocess
from pathlib import Path

import pytest

from sprint_runner.errors import ExternalToolError
from sprint_runner.git import GitWorkspace

BRANCH = "sprint/1/issue-1"


def _git(cwd: Path, *args: str) -> str:
    completed = subprocess.run(
        ["git", *args], cwd=cwd, check=True, text=True, capture_output=True
    )
    return completed.stdout


def _init_git_repo(repo_path: Path) -> None:
    repo_path.mkdir()
    _git(repo_path, "init")
    _git(repo_path, "config", "user.email", "test@example.com")
    _git(repo_path, "config", "user.name", "Test User")
    (repo_path / "README.md").write_text("seed\n", encoding="utf-8")
    _git(repo_path, "add", "README.md")
    _git(repo_path, "commit", "-m", "seed")
    _git(repo_path, "branch", "-M", "main")


def _commit_feature(worktree: Path) -> None:
    (worktree / "src").mkdir()
    (worktree / "src" / "app.py").write_text("a = 1\nb = 2\nc = 3\n", encoding="utf-8")
    _git(worktree, "add", "src/app.py")
    _git(worktree, "commit", "-m", "feat: app")


def test_worktree_lifecycle(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _init_git_repo(repo)
    workspace = GitWorkspace(repo)
    worktree = tmp_path / "worktrees" / "issue-1"

    asyncio.run(workspace.create_worktree(worktree, BRANCH, "main"))
    assert (worktree / "README.md").exists()
    _commit_feature(worktree)

    assert asyncio.run(workspace.changed_files(BRANCH, "main")) == ["src/app.py"]
    stat = asyncio.run(workspace.diff_stat(BRANCH, "main"))
    assert stat.lines_changed == 3
    assert stat.files == ("src/app.py",)

    asyncio.run(workspace.revert_branch(BRANCH, "main", worktree))
    assert asyncio.run(workspace.changed_files(BRANCH, "main")) == []

    asyncio.run(workspace.remove_worktree(worktree))
    assert not worktree.exists()


def test_create_worktree_resets_existing_branch(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _init_git_repo(repo)
    workspace = GitWorkspace(repo)
    worktree = tmp_path / "worktrees" / "issue-1"
    asyncio.run(workspace.create_worktree(worktree, BRANCH, "main"))
    _commit_feature(worktree)
    asyncio.run(workspace.remove_worktree(worktree))

    asyncio.run(workspace.create_worktree(worktree, BRANCH, "main"))

    assert asyncio.run(workspace.changed_files(BRANCH, "main")) == []
    assert not (worktree / "src" / "app.py").exists()


def test_diff_against_unknown_branch_raises(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _init_git_repo(repo)
    workspace = GitWorkspace(repo)

    with pytest.raises(ExternalToolError) as excinfo:
        asyncio.run(workspace.changed_files("no-such-branch", "main"))

    assert excinfo.value.exit_code not in (None, 0)
    assert asyncio.run(workspace.diff_stat("no-such-branch", "main")).lines_changed == 0


def test_squash_merge_lands_branch_on_base(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _init_git_repo(repo)
    workspace = GitWorkspace(repo)
    worktree = tmp_path / "worktrees" / "issue-1"
    asyncio.run(workspace.create_worktree(worktree, BRANCH, "main"))
    _commit_feature(worktree)

    result = asyncio.run(workspace.merge_branch(BRANCH, "main", squash=True))

    assert result.merged is True
    assert (repo / "src" / "app.py").exists()
    subject = _git(repo, "log", "-1", "--format=%s").strip()
    assert subject == f"Squash merge branch '{BRANCH}' into main"


def test_merge_conflict_is_reported_and_rolled_back(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _init_git_repo(repo)
    workspace = GitWorkspace(repo)
    worktree = tmp_path / "worktrees" / "issue-1"
    asyncio.run(workspace.create_worktree(worktree, BRANCH, "main"))
    (worktree / "README.md").write_text("from the branch\n", encoding="utf-8")
    _git(worktree, "commit", "-am", "branch readme")
    (repo / "README.md").write_text("from main\n", encoding="utf-8")
    _git(repo, "commit", "-am", "main readme")

    result = asyncio.run(workspace.merge_branch(BRANCH, "main"))

    assert result.merged is False
    assert result.conflict_files == ("README.md",)
    assert _git(repo, "status", "--porcelain") == ""
    assert (repo / "README.md").read_text(encoding="utf-8") == "from main\n"
