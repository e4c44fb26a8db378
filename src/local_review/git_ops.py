"""Git integration: working-tree diffs and change classification.

Everything here is best-effort. A missing git binary, a directory that is
not a repository, a failing command or a timeout all come back as None
("no diff available"), never as an exception to the caller.
"""

import subprocess
from collections.abc import Iterable
from pathlib import Path
from typing import NamedTuple, Protocol

from local_review.log import get_logger

DIFF_TIMEOUT_SECONDS = 8
STATUS_TIMEOUT_SECONDS = 5


class GitError(Exception):
    """Base exception for git-related errors."""

    pass


class GitNotAvailableError(GitError):
    """Raised when git is not available in the environment."""

    pass


class NotAGitRepositoryError(GitError):
    """Raised when operating outside a git repository."""

    pass


def is_git_available() -> bool:
    """
    Check if git is available in the environment.

    Returns:
        True if git command is available, False otherwise
    """
    try:
        result = subprocess.run(
            ["git", "--version"],
            capture_output=True,
            text=True,
            timeout=STATUS_TIMEOUT_SECONDS,
        )
        return result.returncode == 0
    except (subprocess.SubprocessError, FileNotFoundError, OSError):
        return False


def is_git_repository(path: Path) -> bool:
    """
    Check if the given path is within a git repository.

    Args:
        path: Directory or file path to check

    Returns:
        True if path is within a git repository, False otherwise
    """
    path = Path(path)
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--git-dir"],
            cwd=path if path.is_dir() else path.parent,
            capture_output=True,
            text=True,
            timeout=STATUS_TIMEOUT_SECONDS,
        )
        return result.returncode == 0
    except (subprocess.SubprocessError, FileNotFoundError, OSError):
        return False


class RepositoryChanges(NamedTuple):
    """Changed paths, relative to the project root, grouped by kind."""

    staged: frozenset[str] = frozenset()
    unstaged: frozenset[str] = frozenset()
    untracked: frozenset[str] = frozenset()

    def classify(self, relative_path: str) -> tuple[bool, bool]:
        """
        Returns:
            (changed, untracked) for one path
        """
        untracked = relative_path in self.untracked
        changed = untracked or relative_path in self.unstaged or relative_path in self.staged
        return changed, untracked


class ChangedFile(NamedTuple):
    """One changed file with every kind of change it has."""

    file: str
    staged: bool
    unstaged: bool
    untracked: bool


def merge_changes(changes: RepositoryChanges) -> list[ChangedFile]:
    """Fold staged, unstaged and untracked sets into one entry per file, sorted by path."""
    files = changes.staged | changes.unstaged | changes.untracked
    return [
        ChangedFile(
            file=f,
            staged=f in changes.staged,
            unstaged=f in changes.unstaged,
            untracked=f in changes.untracked,
        )
        for f in sorted(files)
    ]


class DiffProvider(Protocol):
    """Source of diffs and change status for one project root."""

    def diff_with_head(self, relative_path: str) -> str | None:
        """Unified diff of the working file against HEAD, or None."""
        ...

    def changes(self) -> RepositoryChanges | None:
        """Current staged/unstaged/untracked paths, or None if unknown."""
        ...

    def head_ref(self) -> str | None:
        """Branch name of HEAD, else its commit, else None."""
        ...


def parse_porcelain_status(output: str, prefix: str = "") -> RepositoryChanges:
    """
    Parse `git status --porcelain=v1 -z` output.

    Args:
        output: Raw NUL-separated status output
        prefix: Project root's path inside the repository (`git rev-parse
            --show-prefix`); entries outside it are dropped and it is
            stripped from the rest

    Returns:
        RepositoryChanges with project-relative paths
    """
    staged: set[str] = set()
    unstaged: set[str] = set()
    untracked: set[str] = set()

    entries = output.split("\0")
    i = 0
    while i < len(entries):
        entry = entries[i]
        i += 1
        if len(entry) < 4:
            continue

        x, y, path = entry[0], entry[1], entry[3:]
        if x in "RC":
            # Renames and copies are followed by the original path
            i += 1

        if not path.startswith(prefix):
            continue
        path = path[len(prefix):]
        if not path:
            continue

        if x == "?" and y == "?":
            untracked.add(path)
            continue
        if x == "!":
            continue
        if x != " ":
            staged.add(path)
        if y != " ":
            unstaged.add(path)

    return RepositoryChanges(frozenset(staged), frozenset(unstaged), frozenset(untracked))


class GitDiffProvider:
    """
    DiffProvider backed by the `git` command line.

    Args:
        project_root: Directory inside a git work tree
        diff_timeout: Seconds before `git diff` is abandoned
        status_timeout: Seconds before status queries are abandoned
    """

    def __init__(
        self,
        project_root: str | Path,
        diff_timeout: float = DIFF_TIMEOUT_SECONDS,
        status_timeout: float = STATUS_TIMEOUT_SECONDS,
    ) -> None:
        self.project_root = Path(project_root)
        self.diff_timeout = diff_timeout
        self.status_timeout = status_timeout
        self._prefix: str | None = None

    def _run(self, args: Iterable[str], timeout: float) -> str | None:
        command = ["git", *args]
        try:
            result = subprocess.run(
                command,
                cwd=self.project_root,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            get_logger().debug("git command timed out", command=" ".join(command), timeout=timeout)
            return None
        except (subprocess.SubprocessError, OSError) as e:
            get_logger().debug("git command failed", command=" ".join(command), error=str(e))
            return None

        if result.returncode != 0:
            get_logger().debug(
                "git command exited non-zero",
                command=" ".join(command),
                returncode=result.returncode,
                stderr=result.stderr.strip(),
            )
            return None
        return result.stdout

    def _show_prefix(self) -> str | None:
        if self._prefix is None:
            output = self._run(["rev-parse", "--show-prefix"], self.status_timeout)
            if output is None:
                return None
            self._prefix = output.strip()
        return self._prefix

    def diff_with_head(self, relative_path: str) -> str | None:
        return self._run(
            ["diff", "--no-color", "--no-ext-diff", "HEAD", "--", relative_path],
            self.diff_timeout,
        )

    def changes(self) -> RepositoryChanges | None:
        prefix = self._show_prefix()
        if prefix is None:
            return None
        output = self._run(
            ["status", "--porcelain=v1", "-z", "--untracked-files=all"],
            self.status_timeout,
        )
        if output is None:
            return None
        return parse_porcelain_status(output, prefix)

    def head_ref(self) -> str | None:
        branch = self._run(["symbolic-ref", "--short", "-q", "HEAD"], self.status_timeout)
        if branch and branch.strip():
            return branch.strip()
        commit = self._run(["rev-parse", "--verify", "-q", "HEAD"], self.status_timeout)
        if commit and commit.strip():
            return commit.strip()
        return None


def check_git_repository(project_root: Path) -> None:
    """
    Raises:
        GitNotAvailableError: If git command is not available
        NotAGitRepositoryError: If project_root is not inside a git work tree
    """
    if not is_git_available():
        raise GitNotAvailableError("Git is not available in the environment")
    if not is_git_repository(project_root):
        raise NotAGitRepositoryError(f"{project_root} is not a git repository")


def open_diff_provider(project_root: Path) -> GitDiffProvider | None:
    """GitDiffProvider for project_root, or None outside a git work tree."""
    try:
        check_git_repository(project_root)
    except GitError as e:
        get_logger().debug(f"Diff features disabled: {e}")
        return None
    return GitDiffProvider(project_root)
