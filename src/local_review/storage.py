"""Review store: thread files, index.json and AGENTS.md under one storage root.

Layout (relative to the project root):

    <storage>/AGENTS.md
    <storage>/index.json
    <storage>/threads/<thread-id>.md

Older stores are migrated on initialization:
- `.vscode/.code-review` is renamed to the configured storage root
- `<storage>/comments/<id>.json` (oldest JSON shape) becomes Markdown
- `<storage>/threads/<id>.json` (whole-thread JSON) becomes Markdown

Writes are serialized through a per-store WriteQueue. Reads go straight to
disk and only ever see complete files, since every write is atomic.
"""

import json
import shutil
from collections.abc import Callable
from pathlib import Path
from typing import Any

from local_review.atomic_write import atomic_write_text
from local_review.codec import decode_comment, decode_thread_json, parse_thread, serialize_thread
from local_review.index import build_index, decode_index, encode_index
from local_review.log import get_logger
from local_review.models import (
    Clock,
    Range,
    Thread,
    ThreadIndex,
    ThreadStatus,
    ThreadTarget,
    is_safe_thread_id,
    now_iso,
)
from local_review.paths import (
    DEFAULT_STORAGE_PATH,
    LEGACY_STORAGE_PATH,
    normalize_relative_path,
    normalize_storage_path,
)
from local_review.write_queue import WriteQueue

THREADS_DIR = "threads"
LEGACY_COMMENTS_DIR = "comments"
INDEX_FILE = "index.json"
AGENTS_FILE = "AGENTS.md"
THREAD_EXTENSION = ".md"
LEGACY_THREAD_EXTENSION = ".json"

AGENTS_GUIDE = """\
# Local Code Review: Comment Store

This directory is owned by the **local-review** tool.

Note: The storage directory is configurable via `--storage-path` (or the
`LOCAL_REVIEW_STORAGE_PATH` environment variable).

## Files

- `threads/*.md`: one file per thread (Markdown, round-trippable).
- `index.json`: lightweight index for listing threads quickly.

## Thread file format (`threads/<threadId>.md`)

- The file starts with a `<local-code-review-thread>...</local-code-review-thread>` JSON block (thread metadata).
- Comments are stored as repeating `<local-code-review-comment .../>` markers followed by Markdown bodies.
- Optional patch snapshot is stored after a `<local-code-review-patch .../>` marker as a fenced ```diff block.

## How LLMs should interact

- To **reply**: append a new `<local-code-review-comment .../>` marker with a new id + timestamp, then write the Markdown body below it.
- To **resolve** / **reopen**: update `status` in the top `<local-code-review-thread>` JSON block, and bump `updatedAt`.
- To **delete a thread**: delete `threads/<threadId>.md` and remove it from `index.json`.

## Guardrails

- Do not modify source code files unless explicitly requested by the user.
- Prefer small, local edits; avoid renaming thread IDs.
"""

PROJECT_ROOT_MARKERS = (".git", DEFAULT_STORAGE_PATH)


def find_project_root(start_path: Path | None = None) -> Path:
    """
    Find the project root by walking up to a `.git` or `.code-review` entry.

    Args:
        start_path: Starting directory for search (defaults to current working directory)

    Returns:
        Absolute path to project root

    Raises:
        ValueError: If no marker is found in any parent directory
    """
    if start_path is None:
        start_path = Path.cwd()

    current = start_path.resolve()

    for parent in [current] + list(current.parents):
        if any((parent / marker).exists() for marker in PROJECT_ROOT_MARKERS):
            return parent

    raise ValueError(
        f"No .git or {DEFAULT_STORAGE_PATH} directory found in {start_path} or any parent directory.\n"
        "Pass --root to choose the project root explicitly."
    )


def _try_read_text(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return None


def _try_delete(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        get_logger().debug(f"Could not delete {path}", error=str(e))


def _with_safe_target(thread: Thread) -> Thread | None:
    """Threads pointing outside the project (absolute, `..`, drive letters) are dropped."""
    if normalize_relative_path(thread.file) is None:
        get_logger().debug(f"Dropping thread {thread.id}: unsafe path {thread.file!r}")
        return None
    return thread


def _legacy_position(value: Any) -> tuple[int, int]:
    if not isinstance(value, dict):
        return 0, 0
    line = value.get("line", 0)
    character = value.get("character", 0)
    return line, character


def decode_legacy_comment_json(data: Any, clock: Clock | None = None) -> Thread | None:
    """
    Convert the oldest on-disk shape (`comments/<id>.json`) into a Thread.

    That shape stored `file`, a nested `{start: {line, character}, end: {...}}`
    range, a `state` instead of `status`, and comments inline.
    """
    if not isinstance(data, dict) or data.get("schemaVersion") != 1 or not isinstance(data.get("id"), str):
        return None

    range_ = None
    raw_range = data.get("range")
    if isinstance(raw_range, dict) and raw_range:
        start_line, start_character = _legacy_position(raw_range.get("start"))
        end_line, end_character = _legacy_position(raw_range.get("end"))
        range_ = Range(
            start_line=start_line,
            start_character=start_character,
            end_line=end_line,
            end_character=end_character,
        )

    now = now_iso(clock)
    created_at = data["createdAt"] if isinstance(data.get("createdAt"), str) else now
    updated_at = data["updatedAt"] if isinstance(data.get("updatedAt"), str) else now

    thread = Thread(
        id=data["id"],
        target=ThreadTarget(workspace_relative_path=str(data.get("file") or ""), range=range_),
        status=ThreadStatus.RESOLVED if data.get("state") == "resolved" else ThreadStatus.OPEN,
        created_at=created_at,
        updated_at=updated_at,
    )
    raw_comments = data.get("comments")
    if isinstance(raw_comments, list):
        for i, raw in enumerate(raw_comments):
            comment = decode_comment(raw, f"{thread.id}:{i}", now)
            if comment is not None:
                thread.comments.append(comment)
    return thread


class ReviewStore:
    """
    Thread storage for one project root.

    Args:
        project_root: Directory the stored thread paths are relative to
        storage_path: Storage root relative to project_root (unsafe or
            empty values fall back to `.code-review`)
        clock: Clock for timestamps filled in during migration
    """

    def __init__(
        self,
        project_root: str | Path,
        storage_path: str | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.project_root = Path(project_root)
        self.storage_path = normalize_storage_path(storage_path)
        self.clock = clock

        self.root = self.project_root.joinpath(*self.storage_path.split("/"))
        self.legacy_root = self.project_root.joinpath(*LEGACY_STORAGE_PATH.split("/"))
        self.threads_dir = self.root / THREADS_DIR
        self.legacy_comments_dir = self.root / LEGACY_COMMENTS_DIR
        self.index_path = self.root / INDEX_FILE
        self.agents_path = self.root / AGENTS_FILE

        self._queue = WriteQueue(name=f"review-store:{self.storage_path}")
        self._legacy_root_migrated = False
        self._initialized = False

    def __enter__(self) -> "ReviewStore":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"ReviewStore({str(self.project_root)!r}, storage_path={self.storage_path!r})"

    def close(self) -> None:
        """Finish pending writes and stop the write worker."""
        self._queue.close()

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def thread_path(self, thread_id: str) -> Path:
        """
        Markdown file for a thread.

        Raises:
            ValueError: If the id cannot be used as a filename
        """
        if not is_safe_thread_id(thread_id):
            raise ValueError(f"Unsafe thread id: {thread_id!r}")
        return self.threads_dir / f"{thread_id}{THREAD_EXTENSION}"

    def _legacy_thread_path(self, thread_id: str) -> Path:
        return self.threads_dir / f"{thread_id}{LEGACY_THREAD_EXTENSION}"

    def owns_path(self, path: Path) -> bool:
        """True when `path` lies under this store's storage root."""
        try:
            Path(path).resolve().relative_to(self.root.resolve())
        except ValueError:
            return False
        return True

    # ------------------------------------------------------------------
    # Initialization and migrations
    # ------------------------------------------------------------------

    def ensure_initialized(self) -> None:
        """
        Create the store layout and run the legacy migrations.

        Safe to call repeatedly: every step is idempotent and a failing
        migration is logged and skipped without blocking the others.
        """
        self._queue.run(self._initialize)

    def _ensure_initialized_once(self) -> None:
        if not self._initialized:
            self._initialize()

    def _initialize(self) -> None:
        self._run_migration(self._migrate_legacy_root)
        self.threads_dir.mkdir(parents=True, exist_ok=True)
        if not self.agents_path.exists():
            atomic_write_text(AGENTS_GUIDE, self.agents_path)
        if _try_read_text(self.index_path) is None:
            self._rebuild_index_now()
        self._initialized = True

        for step in (self._migrate_legacy_comments_dir, self._migrate_legacy_thread_json):
            self._run_migration(step)

    def _run_migration(self, step: Callable[[], None]) -> None:
        try:
            step()
        except OSError as e:
            get_logger().warning(f"Migration {step.__name__} failed for {self.root}: {e}")

    def _migrate_legacy_root(self) -> None:
        """Rename `.vscode/.code-review` to the configured root (once per store)."""
        if self._legacy_root_migrated:
            return
        self._legacy_root_migrated = True

        if self.root.resolve() == self.legacy_root.resolve():
            return
        if not self.legacy_root.is_dir() or self.root.exists():
            return

        self.root.parent.mkdir(parents=True, exist_ok=True)
        self.legacy_root.rename(self.root)
        get_logger().info(f"Moved legacy review store {self.legacy_root} -> {self.root}")

    def _migrate_legacy_comments_dir(self) -> None:
        """Convert `comments/<id>.json` into thread files, then drop the folder."""
        if not self.legacy_comments_dir.is_dir():
            return
        legacy_files = sorted(
            p for p in self.legacy_comments_dir.iterdir()
            if p.is_file() and p.suffix == LEGACY_THREAD_EXTENSION
        )
        if not legacy_files:
            return

        # Files already in threads/ mean this migration ran before
        if any(p.is_file() for p in self.threads_dir.iterdir()):
            return

        migrated = 0
        for legacy_file in legacy_files:
            raw = _try_read_text(legacy_file)
            if raw is None:
                continue
            try:
                thread = decode_legacy_comment_json(json.loads(raw), self.clock)
            except ValueError as e:
                # JSONDecodeError and pydantic's ValidationError are both ValueErrors
                get_logger().debug(f"Skipping legacy thread {legacy_file.name}", error=str(e))
                continue
            if thread is None:
                continue
            atomic_write_text(serialize_thread(thread), self.thread_path(thread.id))
            migrated += 1

        self._rebuild_index_now()
        shutil.rmtree(self.legacy_comments_dir, ignore_errors=True)
        get_logger().info(f"Migrated {migrated} legacy thread(s) from {self.legacy_comments_dir}")

    def _migrate_legacy_thread_json(self) -> None:
        """Rewrite `threads/<id>.json` files as Markdown."""
        if not self.threads_dir.is_dir():
            return
        legacy_files = sorted(
            p for p in self.threads_dir.iterdir()
            if p.is_file() and p.suffix == LEGACY_THREAD_EXTENSION
        )
        for legacy_file in legacy_files:
            raw = _try_read_text(legacy_file)
            if raw is None:
                continue
            try:
                thread = decode_thread_json(json.loads(raw), self.clock)
            except json.JSONDecodeError:
                continue
            if thread is None:
                continue
            # An existing Markdown file wins over its JSON twin
            existing = _try_read_text(self.thread_path(thread.id))
            if not existing or parse_thread(existing, self.clock) is None:
                self._write_thread_now(thread)
            # The embedded id may differ from the filename stem
            _try_delete(legacy_file)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list_thread_ids(self) -> list[str]:
        """Ids of all `.md` and legacy `.json` thread files, sorted."""
        try:
            entries = list(self.threads_dir.iterdir())
        except OSError:
            return []

        ids = {
            entry.stem
            for entry in entries
            if entry.suffix in (THREAD_EXTENSION, LEGACY_THREAD_EXTENSION) and entry.is_file()
        }
        return sorted(ids)

    def read_thread(self, thread_id: str) -> Thread | None:
        """
        Load one thread.

        The Markdown file wins; the legacy JSON file is consulted only when
        no Markdown file exists or it does not parse.

        Returns:
            Thread, or None if missing or unparseable
        """
        if not is_safe_thread_id(thread_id):
            return None

        text = _try_read_text(self.thread_path(thread_id))
        if text:
            thread = parse_thread(text, self.clock)
            if thread is not None and thread.id == thread_id:
                return _with_safe_target(thread)
            if thread is not None:
                get_logger().warning(
                    f"Thread file {thread_id}{THREAD_EXTENSION} declares id {thread.id!r}; ignoring it"
                )
            else:
                get_logger().debug(f"Unparseable thread file {thread_id}{THREAD_EXTENSION}")

        raw = _try_read_text(self._legacy_thread_path(thread_id))
        if not raw:
            return None
        try:
            thread = decode_thread_json(json.loads(raw), self.clock)
        except json.JSONDecodeError:
            return None
        if thread is None or thread.id != thread_id:
            return None
        return _with_safe_target(thread)

    def read_threads(self) -> list[Thread]:
        """All parseable threads, in id order."""
        threads = []
        for thread_id in self.list_thread_ids():
            thread = self.read_thread(thread_id)
            if thread is not None:
                threads.append(thread)
        return threads

    def read_index(self) -> ThreadIndex:
        return decode_index(_try_read_text(self.index_path))

    # ------------------------------------------------------------------
    # Writes (serialized on the write queue)
    # ------------------------------------------------------------------

    def write_thread(self, thread: Thread) -> None:
        """
        Persist a thread and refresh the index.

        A snapshot of the thread is taken at call time, so the caller may keep
        mutating its copy while the write waits in the queue.
        """
        snapshot = thread.model_copy(deep=True)
        self._queue.run(lambda: self._write_thread_now(snapshot))

    def delete_thread(self, thread_id: str) -> None:
        """Remove a thread (Markdown and legacy JSON) and refresh the index."""
        path = self.thread_path(thread_id)

        def task() -> None:
            self._ensure_initialized_once()
            _try_delete(path)
            _try_delete(self._legacy_thread_path(thread_id))
            self._rebuild_index_now()

        self._queue.run(task)

    def clear_all_comments(self) -> None:
        """Delete every thread, the legacy comments folder, and reset the index."""

        def task() -> None:
            self._ensure_initialized_once()
            shutil.rmtree(self.legacy_comments_dir, ignore_errors=True)
            shutil.rmtree(self.threads_dir, ignore_errors=True)
            self.threads_dir.mkdir(parents=True, exist_ok=True)
            atomic_write_text(encode_index(ThreadIndex()), self.index_path)

        self._queue.run(task)

    def rebuild_index(self) -> ThreadIndex:
        """Recompute index.json from the thread files."""
        return self._queue.run(self._rebuild_index_now)

    def _write_thread_now(self, thread: Thread) -> None:
        self._ensure_initialized_once()
        atomic_write_text(serialize_thread(thread), self.thread_path(thread.id))
        _try_delete(self._legacy_thread_path(thread.id))
        self._rebuild_index_now()

    def _rebuild_index_now(self) -> ThreadIndex:
        index = build_index(self.read_threads())
        atomic_write_text(encode_index(index), self.index_path)
        return index
