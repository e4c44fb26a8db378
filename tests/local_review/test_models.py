"""Tests for models.py data models."""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from local_review.models import (
    AnchorGit,
    Comment,
    IdGenerator,
    Range,
    Thread,
    ThreadStatus,
    ThreadTarget,
    is_safe_thread_id,
    now_iso,
)


def _range(a: int, b: int, c: int, d: int) -> Range:
    return Range(start_line=a, start_character=b, end_line=c, end_character=d)


class TestNowIso:
    """Tests for timestamp rendering."""

    def test_millisecond_precision_with_z_suffix(self) -> None:
        clock = lambda: datetime(2026, 2, 1, 10, 0, 0, 123456, tzinfo=timezone.utc)  # noqa: E731
        assert now_iso(clock) == "2026-02-01T10:00:00.123Z"

    def test_converts_to_utc(self) -> None:
        """Non-UTC clocks are normalized to UTC."""
        tz = timezone(timedelta(hours=2))
        clock = lambda: datetime(2026, 2, 1, 12, 0, 0, tzinfo=tz)  # noqa: E731
        assert now_iso(clock) == "2026-02-01T10:00:00.000Z"

    def test_default_clock(self) -> None:
        value = now_iso()
        assert value.endswith("Z")
        assert len(value) == len("2026-02-01T10:00:00.000Z")


class TestIds:
    """Tests for id generation and validation."""

    def test_ulids_are_unique(self) -> None:
        gen = IdGenerator()
        ids = {gen.new_thread_id() for _ in range(100)}
        assert len(ids) == 100
        assert all(len(i) == 26 for i in ids)

    @pytest.mark.parametrize("value", ["", "  ", ".", "..", "a/b", "a\\b", "a\0b"])
    def test_unsafe_ids(self, value: str) -> None:
        """Ids that cannot be used as file names are rejected."""
        assert not is_safe_thread_id(value)

    @pytest.mark.parametrize("value", ["01HQABCDEFGHIJKLMNOPQRSTUV", "t0001", "thread.v2"])
    def test_safe_ids(self, value: str) -> None:
        assert is_safe_thread_id(value)

    def test_thread_rejects_unsafe_id(self) -> None:
        with pytest.raises(ValidationError):
            Thread(id="../escape", target=ThreadTarget(workspace_relative_path="a.py"))


class TestRange:
    """Tests for Range."""

    def test_camel_case_aliases(self) -> None:
        r = Range.model_validate({"startLine": 1, "startCharacter": 2, "endLine": 3, "endCharacter": 4})
        assert r.start == (1, 2)
        assert r.model_dump(by_alias=True) == {
            "startLine": 1,
            "startCharacter": 2,
            "endLine": 3,
            "endCharacter": 4,
        }

    @pytest.mark.parametrize("bad", [-1, 1.5, True, "1"])
    def test_rejects_non_integers_and_negatives(self, bad: object) -> None:
        """Coordinates are strict non-negative integers."""
        with pytest.raises(ValidationError):
            Range(start_line=bad, start_character=0, end_line=0, end_character=0)

    def test_is_frozen(self) -> None:
        r = _range(0, 0, 0, 1)
        with pytest.raises(ValidationError):
            r.start_line = 3

    def test_labels(self) -> None:
        assert _range(2, 0, 2, 5).label() == "L3"
        assert _range(2, 0, 6, 1).label() == "L3-L7"

    def test_intersects(self) -> None:
        a = _range(1, 0, 3, 0)
        assert a.intersects(_range(3, 0, 4, 0))  # touching
        assert a.intersects(_range(2, 0, 2, 4))
        assert not a.intersects(_range(4, 0, 5, 0))

    def test_is_empty(self) -> None:
        assert _range(1, 2, 1, 2).is_empty
        assert not _range(1, 2, 1, 3).is_empty


class TestNormalization:
    """Bodies and patches are stored LF-only without trailing whitespace."""

    def test_comment_body(self) -> None:
        c = Comment(id="c1", author="a", body_markdown="one\r\ntwo  \n\n", created_at="x")
        assert c.body_markdown == "one\ntwo"

    def test_comment_marker_fields_are_trimmed(self) -> None:
        c = Comment(id=" c1 ", author="\tbob ", created_at=" 2026-01-01T00:00:00.000Z")
        assert (c.id, c.author, c.created_at) == ("c1", "bob", "2026-01-01T00:00:00.000Z")

    def test_blank_author_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Comment(id="c1", author="   ", created_at="x")

    def test_hunk_patch(self) -> None:
        git = AnchorGit(hunk_patch="@@ -1 +1 @@\r\n-a\r\n+b\r\n")
        assert git.hunk_patch == "@@ -1 +1 @@\n-a\n+b"

    def test_empty_git_fields_become_none(self) -> None:
        git = AnchorGit(base_ref="", hunk_header="", hunk_patch="  ")
        assert git.base_ref is None
        assert git.hunk_header is None
        assert git.hunk_patch is None
        assert git.is_empty


class TestThread:
    """Tests for Thread helpers."""

    def _thread(self) -> Thread:
        return Thread(
            id="t1",
            target=ThreadTarget(workspace_relative_path="src/a.py", range=_range(0, 0, 0, 3)),
            created_at="2026-01-01T00:00:00.000Z",
        )

    def test_updated_at_defaults_to_created_at(self) -> None:
        assert self._thread().updated_at == "2026-01-01T00:00:00.000Z"

    def test_add_comment_bumps_updated_at(self) -> None:
        thread = self._thread()
        comment = thread.add_comment("alice", "Looks good", comment_id="c1", timestamp="2026-01-02T00:00:00.000Z")

        assert thread.comments == [comment]
        assert comment.author == "alice"
        assert thread.updated_at == "2026-01-02T00:00:00.000Z"

    def test_add_comment_generates_id(self) -> None:
        thread = self._thread()
        comment = thread.add_comment("alice", "hi")
        assert len(comment.id) == 26

    def test_set_status(self) -> None:
        thread = self._thread()
        thread.set_status(ThreadStatus.RESOLVED, timestamp="2026-01-03T00:00:00.000Z")
        assert thread.status == ThreadStatus.RESOLVED
        assert thread.updated_at == "2026-01-03T00:00:00.000Z"

    def test_relocate_only_when_changed(self) -> None:
        """Relocating to the same range leaves updated_at alone."""
        thread = self._thread()
        assert not thread.relocate(_range(0, 0, 0, 3), timestamp="2026-01-04T00:00:00.000Z")
        assert thread.updated_at == "2026-01-01T00:00:00.000Z"

        assert thread.relocate(_range(1, 0, 1, 3), timestamp="2026-01-04T00:00:00.000Z")
        assert thread.range == _range(1, 0, 1, 3)
        assert thread.updated_at == "2026-01-04T00:00:00.000Z"

    def test_file_and_range_properties(self) -> None:
        thread = self._thread()
        assert thread.file == "src/a.py"
        assert thread.range == _range(0, 0, 0, 3)

    def test_empty_path_rejected(self) -> None:
        """A thread must point at a workspace-relative file."""
        with pytest.raises(ValidationError):
            ThreadTarget(workspace_relative_path="")
