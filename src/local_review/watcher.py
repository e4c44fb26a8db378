"""Watch review stores (and repositories) for changes made outside this process.

Agents and humans edit thread files directly. These handlers feed such
edits into the coordinator's debounced reload, and feed repository changes
(commits, staging, checkouts) into its diff-state invalidation.
"""

from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from local_review.log import get_logger
from local_review.manager import ReviewManager
from local_review.storage import ReviewStore

STORE_FILE_SUFFIXES = (".md", ".json")
REPOSITORY_STATE_FILES = ("HEAD", "index", "ORIG_HEAD", "FETCH_HEAD", "MERGE_HEAD")


def _event_paths(event: FileSystemEvent) -> list[Path]:
    paths = []
    for raw in (event.src_path, getattr(event, "dest_path", "")):
        if not raw:
            continue
        # src_path can be str or bytes
        text = raw if isinstance(raw, str) else raw.decode("utf-8")
        paths.append(Path(text))
    return paths


class StoreChangeHandler(FileSystemEventHandler):
    """Schedules a store reload when a thread, index or legacy JSON file changes."""

    def __init__(self, manager: ReviewManager, store: ReviewStore) -> None:
        self.manager = manager
        self.store = store

    def _should_trigger_reload(self, event: FileSystemEvent) -> bool:
        if event.is_directory:
            return False
        for path in _event_paths(event):
            # Temp files from atomic writes are followed by a move event
            if path.name.startswith(".tmp_"):
                continue
            if path.suffix in STORE_FILE_SUFFIXES:
                return True
        return False

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type not in ("created", "modified", "deleted", "moved"):
            return
        if self._should_trigger_reload(event):
            get_logger().debug("Store change detected", path=str(event.src_path))
            self.manager.schedule_reload(self.store)


class RepositoryChangeHandler(FileSystemEventHandler):
    """Invalidates cached commenting ranges when git's HEAD or index moves."""

    def __init__(self, manager: ReviewManager) -> None:
        self.manager = manager

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        if any(path.name in REPOSITORY_STATE_FILES for path in _event_paths(event)):
            self.manager.invalidate_diff_state()


def watch_store(manager: ReviewManager, store: ReviewStore, observer: Observer | None = None) -> Observer:
    """
    Start watching a store's root (and its repository's .git directory).

    Args:
        manager: Coordinator that reloads the store
        store: Store to watch; it must already be initialized
        observer: Existing observer to schedule on (a new one is created
            and started otherwise)

    Returns:
        The observer; call stop() and join() to shut it down
    """
    if observer is None:
        observer = Observer()
        observer.start()

    observer.schedule(StoreChangeHandler(manager, store), str(store.root), recursive=True)

    git_dir = store.project_root / ".git"
    if git_dir.is_dir():
        observer.schedule(RepositoryChangeHandler(manager), str(git_dir), recursive=False)
    return observer
