"""Anchor relocation: re-finding a thread's range after the file was edited.

Threads store the selected text plus a couple of lines of context on each
side. When the file changes, every occurrence of the selection is scored by
how much of that context still surrounds it and by how far it sits from the
thread's last known (or diff-reported) line. The best occurrence wins.

Strategy:
1. Find up to MAX_OCCURRENCES occurrences of the selection (overlapping)
2. Score = 10 * context_matches - distance_from_approximate_line
3. Highest score wins; ties go to the nearer occurrence, then the earlier one
"""

from bisect import bisect_right
from typing import NamedTuple

from local_review.diff import parse_hunk_header_new_start
from local_review.models import AnchorContext, Clock, Range, Thread, now_iso

MAX_OCCURRENCES = 50
CONTEXT_MATCH_WEIGHT = 10

DEFAULT_CONTEXT_BEFORE = 2
DEFAULT_CONTEXT_AFTER = 2


class Position(NamedTuple):
    """0-based (line, character) position."""

    line: int
    character: int


def _normalize_newlines(text: str) -> str:
    return text.replace("\r\n", "\n")


def build_line_starts(text: str) -> list[int]:
    """Offsets at which each line of `text` begins (always starts with 0)."""
    starts = [0]
    index = text.find("\n")
    while index != -1:
        starts.append(index + 1)
        index = text.find("\n", index + 1)
    return starts


def offset_to_position(line_starts: list[int], offset: int) -> Position:
    """Convert a string offset to a position by binary search over line starts."""
    line = max(0, bisect_right(line_starts, offset) - 1)
    return Position(line, max(0, offset - line_starts[line]))


def position_to_offset(line_starts: list[int], position: Position) -> int:
    """Inverse of offset_to_position for positions inside the text."""
    line = min(position.line, len(line_starts) - 1)
    return line_starts[line] + position.character


def approximate_line(range_: Range | None, hunk_header: str | None) -> int | None:
    """
    Best guess at where the selection should be, as a 0-based line.

    The diff hunk's new-side start wins when present since it reflects the
    file as it was when the comment was made; otherwise the stored range.
    """
    new_start = parse_hunk_header_new_start(hunk_header)
    if new_start is not None:
        return max(0, new_start - 1)
    if range_ is not None:
        return range_.start_line
    return None


def find_occurrences(text: str, needle: str, limit: int = MAX_OCCURRENCES) -> list[int]:
    """Offsets of `needle` in `text`, overlapping matches included."""
    occurrences: list[int] = []
    index = text.find(needle)
    while index != -1 and len(occurrences) < limit:
        occurrences.append(index)
        index = text.find(needle, index + 1)
    return occurrences


def _count_context_matches(
    lines: list[str], context: AnchorContext, start_line: int, end_line: int
) -> int:
    matches = 0

    # Preceding lines, nearest first
    for i, expected in enumerate(reversed(context.before)):
        actual = start_line - 1 - i
        if actual < 0 or lines[actual] != expected:
            break
        matches += 1

    for i, expected in enumerate(context.after):
        actual = end_line + 1 + i
        if actual >= len(lines) or lines[actual] != expected:
            break
        matches += 1

    return matches


def find_anchored_range(
    text: str,
    context: AnchorContext,
    fallback_range: Range | None,
    hunk_header: str | None = None,
) -> Range | None:
    """
    Locate the stored selection in the current file text.

    Args:
        text: Current file content (CRLF is normalized to LF)
        context: Stored before/selection/after context
        fallback_range: Range the thread currently points at
        hunk_header: Stored `@@ -a,b +c,d @@` header, if any

    Returns:
        Range covering the best occurrence, or None if the selection is
        blank or no longer present in the file
    """
    selection = _normalize_newlines(context.selection)
    if not selection.strip():
        return None

    text = _normalize_newlines(text)
    occurrences = find_occurrences(text, selection)
    if not occurrences:
        return None

    approx = approximate_line(fallback_range, hunk_header)
    lines = text.split("\n")
    line_starts = build_line_starts(text)
    selection_line_count = selection.count("\n") + 1

    best_offset = occurrences[0]
    best_score = float("-inf")
    best_distance = float("inf")

    for offset in occurrences:
        start_line = offset_to_position(line_starts, offset).line
        end_line = start_line + selection_line_count - 1

        matches = _count_context_matches(lines, context, start_line, end_line)
        distance = abs(start_line - approx) if approx is not None else 0
        score = matches * CONTEXT_MATCH_WEIGHT - distance

        if score > best_score or (score == best_score and distance < best_distance):
            best_score = score
            best_distance = distance
            best_offset = offset

    start = offset_to_position(line_starts, best_offset)
    end = offset_to_position(line_starts, best_offset + len(selection))
    return Range(
        start_line=start.line,
        start_character=start.character,
        end_line=end.line,
        end_character=end.character,
    )


def can_relocate(thread: Thread) -> bool:
    """A thread is relocatable when it has a range and a non-blank selection."""
    context = thread.target.anchor.context
    return thread.range is not None and context is not None and bool(context.selection.strip())


def relocate_thread(thread: Thread, file_text: str, clock: Clock | None = None) -> bool:
    """
    Move a thread to where its selection now lives in `file_text`.

    The thread is mutated only when the computed range differs from the
    stored one, so relocating against unchanged content leaves both range
    and updated_at untouched.

    Returns:
        True if the thread's range (and updated_at) changed
    """
    if not can_relocate(thread):
        return False

    context = thread.target.anchor.context
    git = thread.target.anchor.git
    new_range = find_anchored_range(
        file_text,
        context,
        thread.range,
        git.hunk_header if git is not None else None,
    )
    if new_range is None or new_range == thread.range:
        return False
    return thread.relocate(new_range, timestamp=now_iso(clock))


def split_lines(text: str) -> list[str]:
    """Document lines with CRLF normalized; a trailing newline adds an empty last line."""
    return _normalize_newlines(text).split("\n")


def full_document_range(lines: list[str]) -> Range:
    """Range spanning the whole document."""
    last = max(0, len(lines) - 1)
    return Range(
        start_line=0,
        start_character=0,
        end_line=last,
        end_character=len(lines[last]) if lines else 0,
    )


def clamp_range(lines: list[str], range_: Range) -> Range:
    """Clamp a range to the document so it can be used for text extraction."""
    last = max(0, len(lines) - 1)

    def clamp(line: int, character: int) -> Position:
        line = min(line, last)
        width = len(lines[line]) if lines else 0
        return Position(line, min(character, width))

    start = clamp(range_.start_line, range_.start_character)
    end = clamp(range_.end_line, range_.end_character)
    if end < start:
        end = start
    return Range(
        start_line=start.line,
        start_character=start.character,
        end_line=end.line,
        end_character=end.character,
    )


def normalize_range_for_comment(lines: list[str], range_: Range) -> Range:
    """Widen an empty (cursor) range to cover its whole line."""
    range_ = clamp_range(lines, range_)
    if not range_.is_empty:
        return range_
    line = range_.start_line
    return Range(
        start_line=line,
        start_character=0,
        end_line=line,
        end_character=len(lines[line]) if lines else 0,
    )


def text_in_range(lines: list[str], range_: Range) -> str:
    """Exact text covered by `range_` (lines joined with LF)."""
    if range_.start_line == range_.end_line:
        return lines[range_.start_line][range_.start_character:range_.end_character]
    parts = [lines[range_.start_line][range_.start_character:]]
    parts.extend(lines[range_.start_line + 1:range_.end_line])
    parts.append(lines[range_.end_line][:range_.end_character])
    return "\n".join(parts)


def build_anchor_context(
    lines: list[str],
    range_: Range,
    before: int = DEFAULT_CONTEXT_BEFORE,
    after: int = DEFAULT_CONTEXT_AFTER,
) -> AnchorContext:
    """
    Capture the context stored with a new thread.

    Args:
        lines: Document lines (see split_lines)
        range_: Commented range, already clamped to the document
        before: Number of lines to keep above the range
        after: Number of lines to keep below the range

    Returns:
        AnchorContext whose selection is exactly the text covered by the range
    """
    start = range_.start_line
    end = range_.end_line
    return AnchorContext(
        before=lines[max(0, start - before):start],
        selection=text_in_range(lines, range_),
        after=lines[end + 1:min(len(lines), end + 1 + after)],
    )
