"""CLI entry point for local code review threads."""

import json
import os
import signal
import sys
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import click

from local_review import __version__
from local_review.anchors import split_lines
from local_review.codec import format_range_label
from local_review.config import ONLY_CHANGES_ENVVAR, STORAGE_PATH_ENVVAR, ReviewSettings
from local_review.git_ops import GitError, check_git_repository
from local_review.log import get_logger, init_logger
from local_review.manager import (
    CommentRangeError,
    ReviewManager,
    SuggestionError,
    ThreadNotFound,
    UnsafePathError,
)
from local_review.models import Range, Thread, ThreadStatus
from local_review.storage import find_project_root
from local_review.watcher import watch_store


class CliState:
    """Options shared by every command."""

    def __init__(self, root: Path | None, settings: ReviewSettings) -> None:
        self.root = root
        self.settings = settings
        self._manager: ReviewManager | None = None

    def project_root(self) -> Path:
        if self.root is not None:
            return self.root.resolve()
        try:
            return find_project_root()
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(2)

    def manager(self, load: bool = True) -> ReviewManager:
        """Coordinator for the project root, with every thread loaded."""
        if self._manager is None:
            manager = ReviewManager(self.settings)
            manager.add_root(self.project_root())
            if load:
                manager.initialize()
            self._manager = manager
        return self._manager

    def close(self) -> None:
        if self._manager is not None:
            self._manager.close()


@contextmanager
def _command_errors() -> Iterator[None]:
    """Map coordinator errors to exit codes: 1 for user errors, 2 for environment errors."""
    try:
        yield
    except ThreadNotFound as e:
        click.echo(f"Error: Thread not found: {e.args[0]}", err=True)
        sys.exit(1)
    except (CommentRangeError, UnsafePathError, SuggestionError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    except OSError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(2)
    except (click.Abort, click.ClickException):
        raise
    except Exception as e:
        get_logger().exception("Unexpected error", e)
        sys.exit(2)


def _use_color() -> bool:
    return os.environ.get("NO_COLOR") is None


def _format_status(status: ThreadStatus) -> str:
    if not _use_color():
        return status.value
    return click.style(status.value, fg="green" if status == ThreadStatus.OPEN else "blue")


def _thread_summary(thread: Thread) -> dict[str, Any]:
    return {
        "id": thread.id,
        "file": thread.file,
        "range": thread.range.model_dump(by_alias=True) if thread.range else None,
        "status": thread.status.value,
        "comments": len(thread.comments),
        "updatedAt": thread.updated_at,
    }


def _parse_line_span(value: str) -> tuple[int, int]:
    parts = value.split(":")
    if len(parts) != 2:
        click.echo(
            f"Error: Invalid line range format: {value}\n"
            "Expected format: START:END (e.g., 10:15)",
            err=True,
        )
        sys.exit(1)
    try:
        start, end = int(parts[0]), int(parts[1])
    except ValueError:
        click.echo(
            f"Error: Invalid line range: {value}\n"
            "Line numbers must be integers (e.g., -L 10:15)",
            err=True,
        )
        sys.exit(1)
    if start < 1 or end < start:
        click.echo(f"Error: Invalid line range: {value} (need 1 <= START <= END)", err=True)
        sys.exit(1)
    return start, end


@click.group()
@click.version_option(version=__version__, prog_name="local-review")
@click.option(
    "--root",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=None,
    help="Project root (default: nearest directory with .git or .code-review)",
)
@click.option(
    "--storage-path",
    envvar=STORAGE_PATH_ENVVAR,
    default=None,
    help="Store directory relative to the project root (default: .code-review)",
)
@click.option(
    "--only-changes/--anywhere",
    "only_changes",
    envvar=ONLY_CHANGES_ENVVAR,
    default=False,
    help="Only allow comments on lines changed against HEAD",
)
@click.option("-v", "--verbose", is_flag=True, help="Print debug output to stderr")
@click.pass_context
def cli(ctx: click.Context, root: Path | None, storage_path: str | None, only_changes: bool, verbose: bool):
    """Threaded review comments stored as Markdown next to your code."""
    init_logger(verbose=verbose)
    settings = ReviewSettings(
        storage_path=storage_path or "",
        only_comment_on_changes=only_changes,
    )
    state = CliState(root, settings)
    ctx.obj = state
    ctx.call_on_close(state.close)


pass_state = click.make_pass_decorator(CliState)


@cli.command()
@pass_state
def init(state: CliState):
    """
    Create the review store (and migrate older layouts).

    Examples:

        local-review init

        local-review --storage-path reviews init
    """
    with _command_errors():
        manager = state.manager(load=False)
        store = manager.stores[0]
        click.echo(f"Initialized review store at {store.root}")


@cli.command(name="list")
@click.option(
    "--status",
    type=click.Choice(["open", "resolved"], case_sensitive=False),
    help="Filter by thread status",
)
@click.option("--json", "json_output", is_flag=True, help="Output as JSON instead of human-readable text")
@pass_state
def list_threads(state: CliState, status: str | None, json_output: bool):
    """
    List review threads.

    Examples:

        local-review list

        local-review list --status=open --json
    """
    with _command_errors():
        manager = state.manager()
        threads = manager.list_threads(ThreadStatus(status.lower()) if status else None)

        if json_output:
            click.echo(json.dumps([_thread_summary(t) for t in threads], indent=2, ensure_ascii=False))
            return

        if not threads:
            click.echo("No matching threads found.")
            return

        for thread in threads:
            click.echo(
                f"{thread.id} [{_format_status(thread.status)}] "
                f"{thread.file}:{format_range_label(thread.range)} "
                f"({len(thread.comments)} comments)"
            )


@cli.command()
@click.argument("thread_id")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON instead of human-readable text")
@pass_state
def show(state: CliState, thread_id: str, json_output: bool):
    """
    Display a thread with all its comments.

    Examples:

        local-review show 01HQABCDEFGHIJKLMNOPQRSTUV

        local-review show --json 01HQABCDEFGHIJKLMNOPQRSTUV
    """
    with _command_errors():
        thread = state.manager().get_thread(thread_id)

        if json_output:
            click.echo(json.dumps(thread.model_dump(mode="json", by_alias=True), indent=2, ensure_ascii=False))
            return

        click.echo(f"Thread {thread.id} [{_format_status(thread.status)}]")
        click.echo(f"  File: {thread.file}:{format_range_label(thread.range)}")
        context = thread.target.anchor.context
        if context is not None:
            click.echo("  Selection:")
            for line in context.selection.split("\n"):
                click.echo(f"    {line}")
        git = thread.target.anchor.git
        if git is not None and git.hunk_header:
            click.echo(f"  Hunk: {git.hunk_header}")
        click.echo("")

        if not thread.comments:
            click.echo("(no comments)")
        for comment in thread.comments:
            click.echo(f"--- {comment.author} at {comment.created_at}")
            click.echo(comment.body_markdown)
            click.echo("")


@cli.command()
@click.argument("file_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("-L", "--lines", "line_span", metavar="START:END", help="1-based line range (e.g., -L 10:15)")
@click.option("--line", "line_number", type=int, metavar="N", help="Single 1-based line")
@click.option("-a", "--author", default="You", help="Author name (defaults to 'You')")
@click.argument("body", required=False)
@pass_state
def add(
    state: CliState,
    file_path: Path,
    line_span: str | None,
    line_number: int | None,
    author: str,
    body: str | None,
):
    """
    Start a new thread on a file (whole file when no lines are given).

    Examples:

        local-review add src/app.py -L 12:14 "Extract this into a helper"

        local-review add src/app.py --line 40 --author alice "Why not a set?"
    """
    if line_span is not None and line_number is not None:
        click.echo("Error: Cannot specify both -L and --line (mutually exclusive)", err=True)
        sys.exit(1)

    with _command_errors():
        manager = state.manager()
        file_path = file_path.resolve()

        range_ = None
        if line_span is not None:
            start, end = _parse_line_span(line_span)
            lines = split_lines(file_path.read_text(encoding="utf-8"))
            if start > len(lines):
                click.echo(f"Error: Line {start} is past the end of the file ({len(lines)} lines)", err=True)
                sys.exit(1)
            end = min(end, len(lines))
            range_ = Range(
                start_line=start - 1,
                start_character=0,
                end_line=end - 1,
                end_character=len(lines[end - 1]),
            )

        line = None
        if line_number is not None:
            if line_number < 1:
                click.echo(f"Error: Invalid line: {line_number}", err=True)
                sys.exit(1)
            line = line_number - 1

        thread = manager.add_comment(file_path, range_=range_, line=line, body=body, author=author)

        click.echo(f"Created thread {thread.id}")
        click.echo(f"  File: {thread.file}:{format_range_label(thread.range)}")
        click.echo(f"  Path: {manager.stores[0].thread_path(thread.id)}")


@cli.command()
@click.argument("thread_id")
@click.argument("body")
@click.option("-a", "--author", default="You", help="Author name (defaults to 'You')")
@pass_state
def reply(state: CliState, thread_id: str, body: str, author: str):
    """
    Reply to a thread.

    Examples:

        local-review reply 01HQABCDEFGHIJKLMNOPQRSTUV "Done, thanks"
    """
    with _command_errors():
        comment = state.manager().reply(thread_id, body, author=author)
        if comment is None:
            click.echo("Error: Reply body is empty", err=True)
            sys.exit(1)
        click.echo(f"Added comment {comment.id} to thread {thread_id}")


@cli.command()
@click.argument("thread_id")
@pass_state
def resolve(state: CliState, thread_id: str):
    """Mark a thread as resolved."""
    with _command_errors():
        state.manager().resolve(thread_id)
        click.echo(f"Thread {thread_id} resolved")


@cli.command()
@click.argument("thread_id")
@pass_state
def reopen(state: CliState, thread_id: str):
    """Reopen a resolved thread."""
    with _command_errors():
        state.manager().reopen(thread_id)
        click.echo(f"Thread {thread_id} reopened")


@cli.command()
@click.argument("thread_id")
@click.option("--force", is_flag=True, help="Skip confirmation prompt")
@pass_state
def delete(state: CliState, thread_id: str, force: bool):
    """
    Delete a thread permanently.

    Examples:

        local-review delete 01HQABCDEFGHIJKLMNOPQRSTUV --force
    """
    with _command_errors():
        manager = state.manager()
        manager.get_thread(thread_id)

        if not force and not click.confirm(f"Delete thread {thread_id}? This cannot be undone."):
            click.echo("Delete cancelled")
            return

        manager.delete_thread(thread_id)
        click.echo(f"Thread {thread_id} deleted")


@cli.command()
@click.option("--force", is_flag=True, help="Skip confirmation prompt")
@pass_state
def clear(state: CliState, force: bool):
    """Delete every thread in the store."""
    with _command_errors():
        manager = state.manager()
        if not force and not click.confirm("Clear all review comments in this project?"):
            click.echo("Clear cancelled")
            return
        manager.clear_all_comments()
        click.echo("All review comments cleared")


@cli.command()
@pass_state
def relocate(state: CliState):
    """
    Re-anchor every thread against the current file contents.

    Loading already relocates threads; this reports which ones moved.
    """
    with _command_errors():
        manager = state.manager(load=False)
        before = {t.id: t.range for t in manager.stores[0].read_threads()}
        manager.initialize()

        moved = [t for t in manager.list_threads() if before.get(t.id) != t.range]
        for thread in moved:
            click.echo(
                f"{thread.id} {thread.file}: "
                f"{format_range_label(before.get(thread.id))} -> {format_range_label(thread.range)}"
            )
        click.echo(f"{len(moved)} thread(s) relocated")


@cli.command()
@pass_state
def reindex(state: CliState):
    """Rebuild index.json from the thread files."""
    with _command_errors():
        store = state.manager(load=False).stores[0]
        index = store.rebuild_index()
        click.echo(f"Indexed {len(index.threads)} thread(s)")


@cli.command()
@click.argument("file_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--json", "json_output", is_flag=True, help="Output as JSON instead of human-readable text")
@pass_state
def ranges(state: CliState, file_path: Path, json_output: bool):
    """Show which lines of a file may receive comments."""
    with _command_errors():
        result = state.manager(load=False).commenting_ranges(file_path.resolve())

        if json_output:
            click.echo(
                json.dumps(
                    {
                        "enableFileComments": result.enable_file_comments,
                        "ranges": [r.model_dump(by_alias=True) for r in result.ranges],
                    },
                    indent=2,
                )
            )
            return

        if not result.ranges:
            click.echo("No commentable lines (file is unchanged).")
        for r in result.ranges:
            click.echo(format_range_label(r))


@cli.command()
@click.option("--json", "json_output", is_flag=True, help="Output as JSON instead of human-readable text")
@pass_state
def changed(state: CliState, json_output: bool):
    """List changed files (staged, unstaged, untracked)."""
    with _command_errors():
        try:
            check_git_repository(state.project_root())
        except GitError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(2)

        files = state.manager(load=False).list_changed_files()

        if json_output:
            click.echo(json.dumps([f._asdict() for f in files], indent=2))
            return

        if not files:
            click.echo("No changed files.")
        for f in files:
            kinds = [k for k in ("staged", "unstaged", "untracked") if getattr(f, k)]
            click.echo(f"{f.file} ({', '.join(kinds)})")


@cli.command(name="apply-suggestion")
@click.argument("thread_id")
@pass_state
def apply_suggestion(state: CliState, thread_id: str):
    """
    Apply the first ```suggestion block of a thread's latest comment.

    The block's text replaces the thread's range in the file.
    """
    with _command_errors():
        state.manager().apply_suggestion(thread_id)
        click.echo(f"Applied suggestion from thread {thread_id}")


@cli.command()
@pass_state
def watch(state: CliState):
    """
    Watch the store and reload when thread files change on disk.

    Runs until interrupted (Ctrl+C).
    """
    with _command_errors():
        manager = state.manager()
        store = manager.stores[0]
        stop = threading.Event()

        def on_reload(reloaded: Any) -> None:
            click.echo(f"Reloaded {len(manager.list_threads())} thread(s) from {reloaded.root}")

        manager.add_listener(on_reload)
        observer = watch_store(manager, store)

        def signal_handler(sig: int, frame: Any) -> None:
            stop.set()

        signal.signal(signal.SIGTERM, signal_handler)
        signal.signal(signal.SIGINT, signal_handler)

        click.echo(f"Watching {store.root} for changes...")
        try:
            while not stop.wait(1):
                pass
        except KeyboardInterrupt:
            pass
        finally:
            observer.stop()
            observer.join()
            click.echo("Watcher stopped")


if __name__ == "__main__":
    cli()
