"""Data models for review threads, comments, anchors, and the thread index."""

from collections.abc import Callable
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel
from ulid import new as new_ulid

SCHEMA_VERSION = 1

Clock = Callable[[], datetime]

NonNegativeInt = Annotated[int, Field(strict=True, ge=0)]


def system_clock() -> datetime:
    """Current time in UTC."""
    return datetime.now(timezone.utc)


def now_iso(clock: Clock | None = None) -> str:
    """Render the clock's current time as ISO 8601 UTC with millisecond precision.

    Example: 2026-02-01T10:00:00.000Z
    """
    now = (clock or system_clock)().astimezone(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def is_safe_thread_id(value: str) -> bool:
    """Check that a thread id can be used verbatim as a filename stem."""
    if not value or not value.strip():
        return False
    if value in (".", ".."):
        return False
    return not any(ch in value for ch in ("/", "\\", "\0"))


class IdGenerator:
    """Produces thread and comment ids (ULIDs by default)."""

    def new_thread_id(self) -> str:
        return str(new_ulid())

    def new_comment_id(self) -> str:
        return str(new_ulid())


class _WireModel(BaseModel):
    """Snake_case in Python, camelCase in the persisted JSON."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ThreadStatus(str, Enum):
    """Thread lifecycle status."""

    OPEN = "open"
    RESOLVED = "resolved"


class Range(_WireModel):
    """A 0-based range in a text document (end is exclusive by character)."""

    model_config = ConfigDict(frozen=True)

    start_line: NonNegativeInt
    start_character: NonNegativeInt
    end_line: NonNegativeInt
    end_character: NonNegativeInt

    @property
    def start(self) -> tuple[int, int]:
        return (self.start_line, self.start_character)

    @property
    def end(self) -> tuple[int, int]:
        return (self.end_line, self.end_character)

    @property
    def is_empty(self) -> bool:
        return self.start == self.end

    def intersects(self, other: "Range") -> bool:
        """True when the ranges overlap or touch."""
        return max(self.start, other.start) <= min(self.end, other.end)

    def label(self) -> str:
        """Human label: L{start} or L{start}-L{end} (1-based lines)."""
        start = self.start_line + 1
        end = self.end_line + 1
        return f"L{start}" if start == end else f"L{start}-L{end}"


class AnchorContext(_WireModel):
    """Text captured around a commented range, used for re-anchoring."""

    before: list[str] = Field(default_factory=list)
    selection: str
    after: list[str] = Field(default_factory=list)


class AnchorGit(_WireModel):
    """Optional diff provenance. Never authoritative for position."""

    base_ref: str | None = None
    hunk_header: str | None = None
    hunk_patch: str | None = None

    @field_validator("base_ref", "hunk_header")
    @classmethod
    def empty_as_missing(cls, v: str | None) -> str | None:
        return v or None

    @field_validator("hunk_patch")
    @classmethod
    def normalize_patch(cls, v: str | None) -> str | None:
        """Patches are stored LF-only without trailing whitespace."""
        if v is None:
            return None
        return v.replace("\r\n", "\n").rstrip() or None

    @property
    def is_empty(self) -> bool:
        return not (self.base_ref or self.hunk_header or self.hunk_patch)


class Anchor(_WireModel):
    """Location anchor: line range kind plus optional context and git metadata."""

    kind: Literal["lineRange"] = "lineRange"
    context: AnchorContext | None = None
    git: AnchorGit | None = None


class ThreadTarget(_WireModel):
    """The file (and optional range) a thread is attached to."""

    workspace_relative_path: str = Field(..., min_length=1)
    range: Range | None = None
    anchor: Anchor = Field(default_factory=Anchor)


class Comment(_WireModel):
    """A single comment within a thread."""

    id: str = Field(..., min_length=1)
    author: str = Field(..., min_length=1)
    body_markdown: str = ""
    created_at: str

    @field_validator("id", "author", "created_at", mode="before")
    @classmethod
    def strip_marker_attributes(cls, v: object) -> object:
        """These land in the comment marker, which is read back trimmed."""
        return v.strip() if isinstance(v, str) else v

    @field_validator("body_markdown")
    @classmethod
    def normalize_body(cls, v: str) -> str:
        """Bodies are stored LF-only without trailing whitespace."""
        return v.replace("\r\n", "\n").rstrip()


class Thread(_WireModel):
    """A comment conversation anchored to a location in one file."""

    schema_version: Literal[1] = SCHEMA_VERSION
    id: str
    target: ThreadTarget
    status: ThreadStatus = ThreadStatus.OPEN
    comments: list[Comment] = Field(default_factory=list)
    created_at: str = Field(default_factory=now_iso)
    updated_at: str = ""

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        """Thread ids double as filenames, so they must be filename-safe."""
        if not is_safe_thread_id(v):
            raise ValueError(f"Thread id is not filename-safe: {v!r}")
        return v

    @model_validator(mode="after")
    def default_updated_at(self) -> "Thread":
        if not self.updated_at:
            self.updated_at = self.created_at
        return self

    @property
    def file(self) -> str:
        return self.target.workspace_relative_path

    @property
    def range(self) -> Range | None:
        return self.target.range

    def add_comment(
        self,
        author: str,
        body: str,
        *,
        comment_id: str | None = None,
        timestamp: str | None = None,
    ) -> Comment:
        """Append a comment to the conversation and bump updated_at.

        Args:
            author: Name of the comment author
            body: Markdown body (trailing whitespace is dropped)
            comment_id: Optional id (a ULID is generated if None)
            timestamp: Optional override timestamp (current UTC time if None)

        Returns:
            The newly created Comment
        """
        created_at = timestamp or now_iso()
        comment = Comment(
            id=comment_id or IdGenerator().new_comment_id(),
            author=author,
            body_markdown=body,
            created_at=created_at,
        )
        self.comments.append(comment)
        self.updated_at = created_at
        return comment

    def set_status(self, status: ThreadStatus, timestamp: str | None = None) -> None:
        """Resolve or reopen the thread."""
        self.status = ThreadStatus(status)
        self.updated_at = timestamp or now_iso()

    def relocate(self, new_range: Range, timestamp: str | None = None) -> bool:
        """Move the thread to new_range.

        Returns:
            True if the range changed (updated_at is bumped), False otherwise
        """
        if self.target.range == new_range:
            return False
        self.target.range = new_range
        self.updated_at = timestamp or now_iso()
        return True


class IndexEntry(_WireModel):
    """Denormalized projection of a Thread used for fast listing."""

    id: str
    file: str
    range: Range | None = None
    status: ThreadStatus = ThreadStatus.OPEN
    updated_at: str = ""


class ThreadIndex(_WireModel):
    """Root structure of index.json."""

    schema_version: Literal[1] = SCHEMA_VERSION
    threads: list[IndexEntry] = Field(default_factory=list)
