"""Shared fixtures for local_review tests."""

from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path

import pytest

from local_review.git_ops import RepositoryChanges
from local_review.models import (
    Anchor,
    AnchorContext,
    AnchorGit,
    IdGenerator,
    Range,
    Thread,
    ThreadStatus,
    ThreadTarget,
)

FIXED_NOW = datetime(2026, 2, 1, 10, 0, 0, tzinfo=timezone.utc)
FIXED_NOW_ISO = "2026-02-01T10:00:00.000Z"


class SequentialIds(IdGenerator):
    """Predictable ids: t0001, t0002, ... and c0001, c0002, ..."""

    def __init__(self) -> None:
        self.threads = 0
        self.comments = 0

    def new_thread_id(self) -> str:
        self.threads += 1
        return f"t{self.threads:04d}"

    def new_comment_id(self) -> str:
        self.comments += 1
        return f"c{self.comments:04d}"


class FakeDiffProvider:
    """In-memory DiffProvider that counts how often it is asked."""

    def __init__(
        self,
        diffs: dict[str, str] | None = None,
        changes: RepositoryChanges | None = None,
        head: str | None = "main",
    ) -> None:
        self.diffs = diffs or {}
        self.repo_changes = changes
        self.head = head
        self.diff_calls = 0
        self.changes_calls = 0

    def diff_with_head(self, relative_path: str) -> str | None:
        self.diff_calls += 1
        return self.diffs.get(relative_path)

    def changes(self) -> RepositoryChanges | None:
        self.changes_calls += 1
        return self.repo_changes

    def head_ref(self) -> str | None:
        return self.head


@pytest.fixture
def clock() -> Callable[[], datetime]:
    """Clock frozen at 2026-02-01T10:00:00Z."""
    return lambda: FIXED_NOW


@pytest.fixture
def ids() -> SequentialIds:
    return SequentialIds()


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """Project root containing a small source file (src/example.ts)."""
    root = tmp_path / "project"
    (root / "src").mkdir(parents=True)
    (root / "src" / "example.ts").write_text(
        "export function add(a, b) {\n  return a + b;\n}\n", encoding="utf-8"
    )
    return root


@pytest.fixture
def make_thread() -> Callable[..., Thread]:
    """Factory for fully populated threads."""

    def _make(
        thread_id: str = "t0001",
        file: str = "src/example.ts",
        range_: Range | None = Range(start_line=1, start_character=0, end_line=1, end_character=15),
        status: ThreadStatus = ThreadStatus.OPEN,
        context: AnchorContext | None = None,
        git: AnchorGit | None = None,
        comments: list[tuple[str, str]] | None = None,
        created_at: str = FIXED_NOW_ISO,
    ) -> Thread:
        thread = Thread(
            id=thread_id,
            target=ThreadTarget(
                workspace_relative_path=file,
                range=range_,
                anchor=Anchor(context=context, git=git),
            ),
            status=status,
            created_at=created_at,
            updated_at=created_at,
        )
        for i, (author, body) in enumerate(comments or []):
            thread.add_comment(author, body, comment_id=f"{thread_id}-c{i}", timestamp=created_at)
        return thread

    return _make
