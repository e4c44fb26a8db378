"""Review coordinator: owns the stores and the live set of threads.

One ReviewManager drives everything a front end (the CLI, an editor
integration) needs: loading stores, creating and replying to threads,
relocating them after edits, working out which lines may be commented on,
and applying ```suggestion blocks. There are no module-level registries;
all state hangs off the manager instance.
"""

import threading
import time
from collections.abc import Callable
from concurrent.futures import Future
from pathlib import Path
from typing import NamedTuple

from local_review import anchors
from local_review.atomic_write import atomic_write_text
from local_review.config import ReviewSettings
from local_review.diff import find_hunk_containing_line, parse_changed_line_ranges, parse_hunks
from local_review.git_ops import ChangedFile, DiffProvider, merge_changes, open_diff_provider
from local_review.log import get_logger
from local_review.models import (
    Anchor,
    AnchorGit,
    Clock,
    Comment,
    IdGenerator,
    Range,
    Thread,
    ThreadStatus,
    ThreadTarget,
    now_iso,
    system_clock,
)
from local_review.paths import normalize_relative_path, resolve_workspace_path, to_workspace_relative
from local_review.storage import ReviewStore
from local_review.suggestions import find_suggestion_blocks, replace_range_in_text
from local_review.write_queue import WriteQueueClosed

RELOAD_DEBOUNCE_SECONDS = 0.15
COMMENTING_RANGES_TTL_SECONDS = 0.75
DEFAULT_AUTHOR = "You"


class ThreadNotFound(KeyError):  # noqa: N818
    """Raised when a thread id is not loaded in any store."""

    pass


class CommentRangeError(ValueError):
    """Raised when a comment targets lines that may not be commented on."""

    pass


class UnsafePathError(ValueError):
    """Raised when a path is outside every project root or cannot be stored safely."""

    pass


class SuggestionError(ValueError):
    """Raised when a thread has no applicable ```suggestion block."""

    pass


class ThreadInfo(NamedTuple):
    """A loaded thread and the store it belongs to."""

    store: ReviewStore
    thread: Thread


class CommentingRanges(NamedTuple):
    """Where comments may be placed in one document."""

    enable_file_comments: bool
    ranges: list[Range]


class _CachedRanges(NamedTuple):
    computed_at: float
    version: int
    ranges: CommentingRanges


def _read_source(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        get_logger().debug(f"Could not read {path}", error=str(e))
        return None


def _line_range(lines: list[str], start_line: int, end_line: int) -> Range:
    return Range(
        start_line=start_line,
        start_character=0,
        end_line=end_line,
        end_character=len(lines[end_line]),
    )


class ReviewManager:
    """
    Coordinates review stores for one or more project roots.

    Args:
        settings: Storage path and restrict-to-changes flag
        clock: Source of timestamps (defaults to the system UTC clock)
        id_generator: Source of thread and comment ids
        diff_provider_factory: Builds the DiffProvider for a project root;
            returns None when no repository is available
        reload_debounce: Seconds to coalesce external edits before a reload
        ranges_ttl: Seconds a commenting-ranges result stays cached
        monotonic: Time source for the cache TTL
    """

    def __init__(
        self,
        settings: ReviewSettings | None = None,
        *,
        clock: Clock | None = None,
        id_generator: IdGenerator | None = None,
        diff_provider_factory: Callable[[Path], DiffProvider | None] = open_diff_provider,
        reload_debounce: float = RELOAD_DEBOUNCE_SECONDS,
        ranges_ttl: float = COMMENTING_RANGES_TTL_SECONDS,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or ReviewSettings()
        self.clock = clock or system_clock
        self.ids = id_generator or IdGenerator()
        self.diff_provider_factory = diff_provider_factory
        self.reload_debounce = reload_debounce
        self.ranges_ttl = ranges_ttl
        self._monotonic = monotonic

        self._lock = threading.RLock()
        self._stores: list[ReviewStore] = []
        self._diff_providers: dict[Path, DiffProvider | None] = {}
        self._threads: dict[str, ThreadInfo] = {}
        self._listeners: list[Callable[[ReviewStore], None]] = []

        self._reload_timers: dict[Path, threading.Timer] = {}
        self._clearing = False

        self._ranges_generation = 0
        self._ranges_cache: dict[str, _CachedRanges] = {}
        self._ranges_in_flight: dict[tuple[int, str, int], Future] = {}

    def __enter__(self) -> "ReviewManager":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        """Cancel pending reloads and close every store."""
        with self._lock:
            timers = list(self._reload_timers.values())
            self._reload_timers.clear()
            stores = list(self._stores)
        for timer in timers:
            timer.cancel()
        for store in stores:
            store.close()

    # ------------------------------------------------------------------
    # Stores
    # ------------------------------------------------------------------

    @property
    def stores(self) -> list[ReviewStore]:
        with self._lock:
            return list(self._stores)

    def add_root(self, project_root: str | Path, diff_provider: DiffProvider | None = None) -> ReviewStore:
        """
        Open (and initialize) the store for a project root.

        Args:
            project_root: Project directory
            diff_provider: Explicit provider; when None the factory is used

        Returns:
            The store for that root
        """
        root = Path(project_root).resolve()
        with self._lock:
            for store in self._stores:
                if store.project_root == root:
                    return store

        store = ReviewStore(root, self.settings.storage_path, clock=self.clock)
        store.ensure_initialized()
        provider = diff_provider if diff_provider is not None else self.diff_provider_factory(root)

        with self._lock:
            self._stores.append(store)
            self._diff_providers[root] = provider
        get_logger().debug("Opened review store", root=str(store.root))
        return store

    def diff_provider_for(self, store: ReviewStore) -> DiffProvider | None:
        with self._lock:
            return self._diff_providers.get(store.project_root)

    def locate(self, file: str | Path) -> tuple[ReviewStore, str] | None:
        """
        Find the store owning a file and the file's project-relative path.

        Relative paths are taken relative to the first project root. When
        roots are nested, the innermost one wins.
        """
        stores = self.stores
        if not stores:
            return None

        path = Path(file)
        if not path.is_absolute():
            path = stores[0].project_root / path

        best: tuple[ReviewStore, str] | None = None
        for store in stores:
            relative = to_workspace_relative(store.project_root, path)
            if relative is None or normalize_relative_path(relative) is None:
                continue
            if best is None or len(store.project_root.parts) > len(best[0].project_root.parts):
                best = (store, relative)
        return best

    def _require_location(self, file: str | Path) -> tuple[ReviewStore, str]:
        located = self.locate(file)
        if located is None:
            raise UnsafePathError(f"{file} is not inside a review project root")
        return located

    def add_listener(self, listener: Callable[[ReviewStore], None]) -> None:
        """Register a callback invoked after a store has been reloaded."""
        with self._lock:
            self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        """Load (and relocate) every thread of every store."""
        for store in self.stores:
            self.reload_store(store)

    def reload_store(self, store: ReviewStore) -> None:
        """
        Re-read a store from disk.

        Threads whose files disappeared are dropped. Threads whose files no
        longer parse keep their last known good state in memory.
        """
        store.ensure_initialized()
        on_disk = set(store.list_thread_ids())

        with self._lock:
            for thread_id, info in list(self._threads.items()):
                if info.store is store and thread_id not in on_disk:
                    del self._threads[thread_id]

        for thread_id in sorted(on_disk):
            thread = store.read_thread(thread_id)
            if thread is None:
                continue
            try:
                thread = self.relocate_thread(store, thread)
            except (OSError, WriteQueueClosed) as e:
                # Keep the relocated range in memory
                get_logger().warning(f"Could not save relocated thread {thread_id}: {e}")
            self._upsert(store, thread)

        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener(store)

    def schedule_reload(self, store: ReviewStore) -> None:
        """Debounced reload: bursts of calls within the window collapse into one."""
        with self._lock:
            if self._clearing:
                return
            key = store.project_root
            existing = self._reload_timers.get(key)
            if existing is not None:
                existing.cancel()
            timer = threading.Timer(self.reload_debounce, self._reload_from_timer, args=(store, key))
            timer.daemon = True
            self._reload_timers[key] = timer
            timer.start()

    def _reload_from_timer(self, store: ReviewStore, key: Path) -> None:
        with self._lock:
            if self._reload_timers.get(key) is threading.current_thread():
                del self._reload_timers[key]
        try:
            self.reload_store(store)
        except OSError as e:
            get_logger().warning(f"Reload of {store.root} failed: {e}")

    def relocate_thread(self, store: ReviewStore, thread: Thread) -> Thread:
        """
        Re-anchor a thread against the current file content.

        The thread is persisted only when its range actually moved.
        """
        if not anchors.can_relocate(thread):
            return thread
        path = resolve_workspace_path(store.project_root, thread.file)
        if path is None:
            return thread
        text = _read_source(path)
        if text is None:
            return thread

        if anchors.relocate_thread(thread, text, self.clock):
            get_logger().debug("Relocated thread", id=thread.id, range=thread.range.label())
            store.write_thread(thread)
        return thread

    def relocate_all(self) -> list[Thread]:
        """Relocate every loaded thread; returns the ones that moved."""
        moved = []
        for info in self._infos():
            before = info.thread.range
            thread = self.relocate_thread(info.store, info.thread)
            if thread.range != before:
                moved.append(thread)
        return moved

    def _upsert(self, store: ReviewStore, thread: Thread) -> None:
        if normalize_relative_path(thread.file) is None:
            get_logger().debug(f"Ignoring thread {thread.id}: unsafe path {thread.file!r}")
            return
        with self._lock:
            self._threads[thread.id] = ThreadInfo(store, thread)

    def _infos(self) -> list[ThreadInfo]:
        with self._lock:
            return list(self._threads.values())

    def _info(self, thread_id: str) -> ThreadInfo:
        with self._lock:
            info = self._threads.get(thread_id)
        if info is None:
            raise ThreadNotFound(thread_id)
        return info

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_threads(self, status: ThreadStatus | None = None) -> list[Thread]:
        """Loaded threads ordered by file, start line, then id."""
        threads = [info.thread for info in self._infos()]
        if status is not None:
            threads = [t for t in threads if t.status == status]
        return sorted(
            threads,
            key=lambda t: (t.file, t.range.start_line if t.range else -1, t.id),
        )

    def get_thread(self, thread_id: str) -> Thread:
        """
        Raises:
            ThreadNotFound: If no loaded thread has this id
        """
        return self._info(thread_id).thread

    def store_for_thread(self, thread_id: str) -> ReviewStore:
        return self._info(thread_id).store

    def _fresh_thread(self, info: ThreadInfo) -> Thread:
        # Agents may have edited the file since it was loaded
        return info.store.read_thread(info.thread.id) or info.thread.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add_comment(
        self,
        file: str | Path,
        range_: Range | None = None,
        line: int | None = None,
        body: str | None = None,
        author: str = DEFAULT_AUTHOR,
    ) -> Thread:
        """
        Start a new thread on a file.

        Args:
            file: Absolute path, or a path relative to the first project root
            range_: Range to comment on (0-based); takes precedence over line
            line: 0-based line to comment on (clamped to the document)
            body: Optional first comment
            author: Author of the first comment

        Returns:
            The persisted thread

        Raises:
            UnsafePathError: If the file is outside every project root
            CommentRangeError: If restricted to changes and the range does
                not touch a changed line
            OSError: If the file cannot be read
        """
        store, relative = self._require_location(file)
        path = resolve_workspace_path(store.project_root, relative)
        if path is None:
            raise UnsafePathError(f"Unsafe path: {relative}")

        text = path.read_text(encoding="utf-8")
        lines = anchors.split_lines(text)

        raw_range = range_
        if raw_range is None and line is not None:
            safe_line = min(max(0, int(line)), len(lines) - 1)
            raw_range = Range(start_line=safe_line, start_character=0, end_line=safe_line, end_character=0)
        target_range = anchors.normalize_range_for_comment(lines, raw_range) if raw_range else None

        only_changes = self.settings.only_comment_on_changes
        if target_range is not None and only_changes:
            commenting = self.commenting_ranges(path, text)
            if not any(r.intersects(target_range) for r in commenting.ranges):
                raise CommentRangeError(
                    f"{relative}:{target_range.label()} is not within a changed hunk "
                    "(disable --only-changes to comment anywhere)"
                )

        now = now_iso(self.clock)
        context = anchors.build_anchor_context(lines, target_range) if target_range else None
        thread = Thread(
            id=self.ids.new_thread_id(),
            target=ThreadTarget(
                workspace_relative_path=relative,
                range=target_range,
                anchor=Anchor(context=context),
            ),
            created_at=now,
            updated_at=now,
        )

        if target_range is not None and only_changes:
            thread.target.anchor.git = self._git_provenance(store, relative, target_range)

        if body is not None and body.strip():
            thread.add_comment(
                author.strip() or DEFAULT_AUTHOR, body, comment_id=self.ids.new_comment_id(), timestamp=now
            )

        store.write_thread(thread)
        self._upsert(store, thread)
        get_logger().debug("Created thread", id=thread.id, file=relative)
        return thread

    def _git_provenance(self, store: ReviewStore, relative: str, target_range: Range) -> AnchorGit | None:
        provider = self.diff_provider_for(store)
        if provider is None:
            return None
        changes = provider.changes()
        if changes is None:
            return None
        changed, untracked = changes.classify(relative)
        if not changed:
            return None

        base_ref = provider.head_ref()
        hunk = None
        if not untracked:
            hunks = parse_hunks(provider.diff_with_head(relative) or "")
            hunk = find_hunk_containing_line(hunks, target_range.start_line)
        if not base_ref and hunk is None:
            return None
        return AnchorGit(
            base_ref=base_ref,
            hunk_header=hunk.header if hunk else None,
            hunk_patch=hunk.patch if hunk else None,
        )

    def reply(self, thread_id: str, body: str, author: str = DEFAULT_AUTHOR) -> Comment | None:
        """
        Append a comment to a thread.

        Returns:
            The new comment, or None when the body is blank
        """
        info = self._info(thread_id)
        text = body.rstrip()
        if not text.strip():
            return None

        thread = self._fresh_thread(info)
        comment = thread.add_comment(
            author.strip() or DEFAULT_AUTHOR,
            text,
            comment_id=self.ids.new_comment_id(),
            timestamp=now_iso(self.clock),
        )
        info.store.write_thread(thread)
        self._upsert(info.store, thread)
        return comment

    def _set_status(self, thread_id: str, status: ThreadStatus) -> Thread:
        info = self._info(thread_id)
        thread = self._fresh_thread(info)
        thread.set_status(status, timestamp=now_iso(self.clock))
        info.store.write_thread(thread)
        self._upsert(info.store, thread)
        return thread

    def resolve(self, thread_id: str) -> Thread:
        return self._set_status(thread_id, ThreadStatus.RESOLVED)

    def reopen(self, thread_id: str) -> Thread:
        return self._set_status(thread_id, ThreadStatus.OPEN)

    def delete_thread(self, thread_id: str) -> None:
        info = self._info(thread_id)
        info.store.delete_thread(thread_id)
        with self._lock:
            self._threads.pop(thread_id, None)

    def cancel_empty_thread(self, thread_id: str) -> bool:
        """Delete a thread that never received a comment; returns True if deleted."""
        info = self._info(thread_id)
        if info.thread.comments:
            return False
        self.delete_thread(thread_id)
        return True

    def clear_all_comments(self) -> None:
        """Delete every thread in every store; reloads are suppressed meanwhile."""
        with self._lock:
            self._clearing = True
            timers = list(self._reload_timers.values())
            self._reload_timers.clear()
            self._threads.clear()
            stores = list(self._stores)
        try:
            for timer in timers:
                timer.cancel()
            for store in stores:
                store.clear_all_comments()
        finally:
            with self._lock:
                self._clearing = False

    def apply_suggestion(self, thread_id: str) -> str:
        """
        Replace the thread's range in its file with the first ```suggestion
        block of the latest comment.

        Returns:
            The replacement text that was written

        Raises:
            SuggestionError: If there is no range, no comment or no block
            UnsafePathError: If the thread's path is unsafe
            OSError: If the file cannot be read or written
        """
        info = self._info(thread_id)
        thread = self._fresh_thread(info)
        if thread.range is None:
            raise SuggestionError("No range associated with this thread.")
        if not thread.comments:
            raise SuggestionError("No comments in this thread.")

        blocks = find_suggestion_blocks(thread.comments[-1].body_markdown)
        if not blocks:
            raise SuggestionError("No ```suggestion``` block found in the latest comment.")

        path = resolve_workspace_path(info.store.project_root, thread.file)
        if path is None:
            raise UnsafePathError(f"Unsafe thread path: {thread.file}")

        text = path.read_text(encoding="utf-8")
        lines = anchors.split_lines(text)
        target = anchors.clamp_range(lines, thread.range)
        line_starts = anchors.build_line_starts(text)
        start = anchors.position_to_offset(line_starts, anchors.Position(target.start_line, target.start_character))
        end = anchors.position_to_offset(line_starts, anchors.Position(target.end_line, target.end_character))

        replacement = blocks[0].replacement_text
        atomic_write_text(replace_range_in_text(text, start, end, replacement), path, ensure_newline=False)
        self.invalidate_diff_state()
        return replacement

    # ------------------------------------------------------------------
    # Diff-derived state
    # ------------------------------------------------------------------

    def invalidate_diff_state(self) -> None:
        """Drop cached and in-flight commenting ranges (repository state changed)."""
        with self._lock:
            self._ranges_generation += 1
            self._ranges_cache.clear()
            self._ranges_in_flight.clear()

    def commenting_ranges(self, file: str | Path, text: str | None = None, version: int = 0) -> CommentingRanges:
        """
        Ranges of a document that may receive comments.

        Without restrict-to-changes the whole document is commentable.
        Otherwise: nothing for unchanged files, everything for untracked
        files, and the added-line ranges (falling back to hunk spans, then the
        whole document) for modified files.

        Args:
            file: Path of the document
            text: Current content (read from disk when None)
            version: Document version; part of the cache key

        Returns:
            CommentingRanges
        """
        located = self.locate(file)
        if located is None:
            return CommentingRanges(enable_file_comments=False, ranges=[])
        store, relative = located

        if text is None:
            path = resolve_workspace_path(store.project_root, relative)
            text = (_read_source(path) if path is not None else None) or ""
        lines = anchors.split_lines(text)

        if not self.settings.only_comment_on_changes:
            return CommentingRanges(enable_file_comments=True, ranges=[anchors.full_document_range(lines)])

        cache_key = f"{store.project_root}::{relative}"
        with self._lock:
            generation = self._ranges_generation
            cached = self._ranges_cache.get(cache_key)
            if (
                cached is not None
                and cached.version == version
                and self._monotonic() - cached.computed_at < self.ranges_ttl
            ):
                return cached.ranges

            flight_key = (generation, cache_key, version)
            future = self._ranges_in_flight.get(flight_key)
            if future is not None:
                owner = False
            else:
                owner = True
                future = Future()
                self._ranges_in_flight[flight_key] = future

        if not owner:
            return future.result()

        try:
            result = self._compute_commenting_ranges(store, relative, lines)
        except Exception as e:
            future.set_exception(e)
            raise
        finally:
            with self._lock:
                if self._ranges_in_flight.get(flight_key) is future:
                    del self._ranges_in_flight[flight_key]

        with self._lock:
            if generation == self._ranges_generation:
                self._ranges_cache[cache_key] = _CachedRanges(self._monotonic(), version, result)
        future.set_result(result)
        return result

    def _compute_commenting_ranges(self, store: ReviewStore, relative: str, lines: list[str]) -> CommentingRanges:
        full = CommentingRanges(enable_file_comments=True, ranges=[anchors.full_document_range(lines)])

        provider = self.diff_provider_for(store)
        if provider is None:
            return full
        changes = provider.changes()
        if changes is None:
            return full

        changed, untracked = changes.classify(relative)
        if not changed:
            return CommentingRanges(enable_file_comments=True, ranges=[])
        if untracked:
            return full

        diff_text = provider.diff_with_head(relative) or ""
        last = len(lines) - 1

        changed_ranges = []
        for r in parse_changed_line_ranges(diff_text):
            start = max(0, r.start - 1)
            end = min(last, r.end - 1)
            if end < start:
                continue
            candidate = _line_range(lines, start, end)
            if not candidate.is_empty:
                changed_ranges.append(candidate)
        if changed_ranges:
            return CommentingRanges(enable_file_comments=True, ranges=changed_ranges)

        # Delete-only hunks have no added lines; fall back to hunk spans
        hunk_ranges = []
        for hunk in parse_hunks(diff_text):
            if hunk.new_lines <= 0:
                continue
            start = min(last, max(0, hunk.new_start - 1))
            end = min(last, start + hunk.new_lines - 1)
            hunk_ranges.append(_line_range(lines, start, end))
        return CommentingRanges(enable_file_comments=True, ranges=hunk_ranges or full.ranges)

    def list_changed_files(self) -> list[ChangedFile]:
        """Changed files across every store, merged per file and sorted by path."""
        files: list[ChangedFile] = []
        for store in self.stores:
            provider = self.diff_provider_for(store)
            if provider is None:
                continue
            changes = provider.changes()
            if changes is None:
                continue
            files.extend(merge_changes(changes))
        return sorted(files, key=lambda f: f.file)
