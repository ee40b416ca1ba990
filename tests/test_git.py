from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import pytest

from iterloop.git import GitRepository, _sanitize_message
from iterloop.models import ConfigurationError

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git binary not available")


def _git(repo: Path, *args: str) -> str:
    completed = subprocess.run(
        ["git", "-C", str(repo), *args], text=True, capture_output=True, check=True
    )
    return completed.stdout


def _init_repo(tmp_path: Path) -> Path:
    repo = tmp_path / "repo"
    repo.mkdir()
    _git(repo, "init", "-q")
    _git(repo, "config", "user.email", "loop@example.com")
    _git(repo, "config", "user.name", "Loop Tester")
    _git(repo, "config", "commit.gpgsign", "false")
    (repo / "README.md").write_text("hello\n", encoding="utf-8")
    _git(repo, "add", "README.md")
    _git(repo, "commit", "-q", "-m", "initial")
    return repo


def test_sanitize_message_strips_shell_characters_and_truncates() -> None:
    assert _sanitize_message("fix `rm -rf`; echo $HOME | cat > x & \"q\" 'y'") == (
        "fix rm -rf echo HOME  cat  x  q y"
    )
    assert len(_sanitize_message("a" * 500)) == 200


def test_disabled_outside_a_checkout(tmp_path: Path) -> None:
    repo = GitRepository(tmp_path)

    assert not repo.enabled
    assert not repo.get_status().exists
    assert repo.create_commit("msg", 1).error == "Git not available"
    assert repo.get_diff().summary == "Git not available"
    assert repo.get_log() == []
    assert not repo.is_clean()


def test_file_diff_rejects_path_traversal(tmp_path: Path) -> None:
    repo = GitRepository(tmp_path / "work")
    with pytest.raises(ConfigurationError, match="path traversal"):
        repo.get_file_diff("../outside.txt")


@requires_git
def test_status_reports_changes(tmp_path: Path) -> None:
    path = _init_repo(tmp_path)
    (path / "README.md").write_text("changed\n", encoding="utf-8")
    (path / "new.txt").write_text("new\n", encoding="utf-8")

    status = GitRepository(path).get_status()

    assert status.exists
    assert len(status.commit) == 40
    assert status.branch
    assert status.modified == ("README.md",)
    assert status.untracked == ("new.txt",)
    assert status.has_changes


@requires_git
def test_create_commit_tags_message_with_iteration(tmp_path: Path) -> None:
    path = _init_repo(tmp_path)
    (path / "work.py").write_text("print('hi')\n", encoding="utf-8")
    repo = GitRepository(path)

    result = repo.create_commit("Iteration 3; rm $HOME", 3)

    assert result.success
    assert result.commit == _git(path, "rev-parse", "HEAD").strip()
    assert _git(path, "log", "-1", "--pretty=%s").strip() == "[iterloop-iter-3] Iteration 3 rm HOME"
    assert repo.is_clean()


@requires_git
def test_create_commit_without_changes_fails(tmp_path: Path) -> None:
    repo = GitRepository(_init_repo(tmp_path))

    result = repo.create_commit("nothing", 1)

    assert not result.success
    assert result.error == "No changes to commit"


@requires_git
def test_diff_summarizes_working_tree_changes(tmp_path: Path) -> None:
    path = _init_repo(tmp_path)
    (path / "README.md").write_text("one\ntwo\n", encoding="utf-8")
    repo = GitRepository(path)

    diff = repo.get_diff()

    assert diff.files == ("README.md",)
    assert diff.additions == 2
    assert diff.deletions == 1
    assert diff.summary == "1 file(s) changed, 2 insertions(+), 1 deletions(-)"
    assert "+two" in repo.get_file_diff("README.md")


@requires_git
def test_diff_reports_no_changes_on_clean_tree(tmp_path: Path) -> None:
    assert GitRepository(_init_repo(tmp_path)).get_diff().summary == "No changes"


@requires_git
def test_log_and_loop_context(tmp_path: Path) -> None:
    path = _init_repo(tmp_path)
    repo = GitRepository(path)
    (path / "a.txt").write_text("a\n", encoding="utf-8")
    repo.create_commit("Iteration 1", 1)

    log = repo.get_log(5)
    assert len(log) == 2
    assert " - [iterloop-iter-1] Iteration 1 (" in log[0]
    assert log[1].split(" - ", 1)[1].startswith("initial (")

    for invalid in (0, 101, True, "3"):
        assert repo.get_log(invalid) == []  # type: ignore[arg-type]

    context = repo.get_loop_context(5)
    assert context.startswith("Recent loop commits:")
    assert "iterloop-iter-1" in context
    assert "initial" not in context
    assert repo.get_loop_context(51).startswith("Invalid count")


@requires_git
def test_stash_saves_uncommitted_changes(tmp_path: Path) -> None:
    path = _init_repo(tmp_path)
    (path / "README.md").write_text("dirty\n", encoding="utf-8")
    repo = GitRepository(path)

    assert repo.stash("before retry")
    assert repo.is_clean()
    assert "before retry" in _git(path, "stash", "list")
