"""Version-control collaborator: repository status, commits, diffs, and log."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

from iterloop.constants import (
    COMMIT_MESSAGE_MAX_CHARS,
    COMMIT_MESSAGE_STRIP_CHARS,
    COMMIT_TAG_PREFIX,
    GIT_CONTEXT_MAX_COUNT,
    GIT_LOG_MAX_COUNT,
    TOOL_NOT_FOUND_EXIT_CODE,
)
from iterloop.models import ConfigurationError, GitCommitResult, GitDiffResult, GitStatus

logger = logging.getLogger(__name__)

_LOG_FORMAT = "--pretty=format:%h|%s|%ci"
_STRIP_TABLE = str.maketrans("", "", COMMIT_MESSAGE_STRIP_CHARS)


def _run_git(repo_root: Path, args: list[str]) -> subprocess.CompletedProcess[str]:
    command = ["git", "-C", str(repo_root), *args]
    try:
        return subprocess.run(
            command,
            text=True,
            capture_output=True,
            check=False,
        )
    except FileNotFoundError as exc:
        return subprocess.CompletedProcess(
            command, TOOL_NOT_FOUND_EXIT_CODE, "", f"git not found: {exc}"
        )
    except OSError as exc:
        return subprocess.CompletedProcess(command, 1, "", str(exc))


def _sanitize_message(message: str) -> str:
    return message.translate(_STRIP_TABLE)[:COMMIT_MESSAGE_MAX_CHARS]


def _valid_count(count: object, maximum: int) -> bool:
    return isinstance(count, int) and not isinstance(count, bool) and 1 <= count <= maximum


def _format_log_line(line: str) -> str:
    parts = line.split("|")
    if len(parts) < 3:
        return line
    commit_hash, date = parts[0], parts[-1]
    subject = "|".join(parts[1:-1])
    return f"{commit_hash} - {subject} ({date})"


def _diff_summary(file_count: int, additions: int, deletions: int) -> str:
    if file_count == 0:
        return "No changes"
    return (
        f"{file_count} file(s) changed, {additions} insertions(+), {deletions} deletions(-)"
    )


class GitRepository:
    def __init__(self, working_dir: Path) -> None:
        self.working_dir = Path(working_dir)
        self._enabled: bool | None = None

    @property
    def enabled(self) -> bool:
        """True when the working dir is a git checkout and ``git`` runs."""
        if self._enabled is None:
            self._enabled = (self.working_dir / ".git").exists() and (
                _run_git(self.working_dir, ["--version"]).returncode == 0
            )
        return self._enabled

    def _git(self, args: list[str]) -> subprocess.CompletedProcess[str]:
        return _run_git(self.working_dir, args)

    # -----------------------------------------------------------------------
    # Status and diff
    # -----------------------------------------------------------------------

    def get_status(self) -> GitStatus:
        if not self.enabled:
            return GitStatus(exists=False)
        branch = self._git(["rev-parse", "--abbrev-ref", "HEAD"])
        commit = self._git(["rev-parse", "HEAD"])
        porcelain = self._git(["status", "--porcelain"])
        if porcelain.returncode != 0:
            logger.warning("git status failed: %s", porcelain.stderr.strip())
            return GitStatus(exists=True)

        modified: list[str] = []
        added: list[str] = []
        deleted: list[str] = []
        untracked: list[str] = []
        for line in porcelain.stdout.splitlines():
            if len(line) < 4:
                continue
            code, path = line[:2], line[3:]
            if code == "??":
                untracked.append(path)
                continue
            if "M" in code:
                modified.append(path)
            if "A" in code:
                added.append(path)
            if "D" in code:
                deleted.append(path)
        return GitStatus(
            exists=True,
            branch=branch.stdout.strip() if branch.returncode == 0 else "",
            commit=commit.stdout.strip() if commit.returncode == 0 else "",
            modified=tuple(modified),
            added=tuple(added),
            deleted=tuple(deleted),
            untracked=tuple(untracked),
        )

    def is_clean(self) -> bool:
        return self.enabled and not self.get_status().has_changes

    def get_diff(self) -> GitDiffResult:
        if not self.enabled:
            return GitDiffResult(files=(), additions=0, deletions=0, summary="Git not available")
        numstat = self._git(["diff", "--numstat", "HEAD"])
        if numstat.returncode != 0:
            return GitDiffResult(files=(), additions=0, deletions=0, summary="Unable to get diff")
        files: list[str] = []
        additions = 0
        deletions = 0
        for line in numstat.stdout.splitlines():
            parts = line.split("\t", 2)
            if len(parts) != 3:
                continue
            added_text, deleted_text, path = parts
            files.append(path)
            # Binary files report "-" for both counts.
            if added_text.isdigit():
                additions += int(added_text)
            if deleted_text.isdigit():
                deletions += int(deleted_text)
        return GitDiffResult(
            files=tuple(files),
            additions=additions,
            deletions=deletions,
            summary=_diff_summary(len(files), additions, deletions),
        )

    def get_file_diff(self, file_path: str) -> str:
        root = self.working_dir.resolve()
        target = (root / file_path).resolve()
        if target != root and root not in target.parents:
            raise ConfigurationError(f"invalid file path, path traversal detected: {file_path}")
        if not self.enabled:
            return ""
        diff = self._git(["diff", "HEAD", "--", str(target.relative_to(root))])
        return diff.stdout if diff.returncode == 0 else ""

    # -----------------------------------------------------------------------
    # Commits
    # -----------------------------------------------------------------------

    def create_commit(self, message: str, iteration: int) -> GitCommitResult:
        if not self.enabled:
            return GitCommitResult(success=False, error="Git not available")
        add = self._git(["add", "-A"])
        if add.returncode != 0:
            return GitCommitResult(success=False, error=add.stderr.strip() or "git add failed")
        staged = self._git(["diff", "--cached", "--quiet"])
        if staged.returncode == 0:
            return GitCommitResult(success=False, error="No changes to commit")

        full_message = f"[{COMMIT_TAG_PREFIX}-{iteration}] {_sanitize_message(message)}"
        commit = self._git(["commit", "-m", full_message])
        if commit.returncode != 0:
            error = commit.stderr.strip() or commit.stdout.strip() or "Commit failed"
            return GitCommitResult(success=False, error=error)
        head = self._git(["rev-parse", "HEAD"])
        commit_hash = head.stdout.strip() if head.returncode == 0 else None
        logger.info("created commit %s for iteration %d", commit_hash, iteration)
        return GitCommitResult(success=True, commit=commit_hash)

    def stash(self, message: str | None = None) -> bool:
        if not self.enabled:
            return False
        args = ["stash", "push"]
        if message:
            args.extend(["-m", _sanitize_message(message)])
        return self._git(args).returncode == 0

    # -----------------------------------------------------------------------
    # History
    # -----------------------------------------------------------------------

    def get_log(self, count: int = 10) -> list[str]:
        if not self.enabled or not _valid_count(count, GIT_LOG_MAX_COUNT):
            return []
        log = self._git(["log", "-n", str(count), _LOG_FORMAT])
        if log.returncode != 0:
            return []
        return [_format_log_line(line) for line in log.stdout.splitlines() if line.strip()]

    def get_loop_context(self, count: int = 5) -> str:
        if not self.enabled:
            return "Git not available"
        if not _valid_count(count, GIT_CONTEXT_MAX_COUNT):
            return f"Invalid count: must be between 1 and {GIT_CONTEXT_MAX_COUNT}"
        log = self._git(["log", "-n", str(count), f"--grep={COMMIT_TAG_PREFIX}", _LOG_FORMAT])
        lines = [
            _format_log_line(line) for line in log.stdout.splitlines() if line.strip()
        ] if log.returncode == 0 else []
        if not lines:
            return "No loop commits found"
        return "Recent loop commits:\n" + "\n".join(f"  {line}" for line in lines)
