"""Unified diff parsing: hunks and changed-line ranges in the new file."""

import re
from typing import NamedTuple

HUNK_RE = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@(.*)$")
_HUNK_HEADER_NEW_START_RE = re.compile(r"@@ -\d+(?:,\d+)? \+(\d+)(?:,(\d+))? @@")
_LINE_SPLIT_RE = re.compile(r"\r?\n")


class DiffHunk(NamedTuple):
    """One `@@ ... @@` section of a unified diff."""

    header: str
    old_start: int
    old_lines: int
    new_start: int
    new_lines: int
    patch: str  # header line plus the hunk's body lines


class DiffLineRange(NamedTuple):
    """A run of added lines in the new file (1-based, inclusive)."""

    start: int
    end: int


def _is_file_header(line: str) -> bool:
    return line.startswith(("diff ", "index ", "---", "+++"))


def parse_hunks(diff_text: str) -> list[DiffHunk]:
    """
    Split unified diff text into hunks.

    File-header lines (`diff `, `index `, `---`, `+++`) end the current hunk;
    lines before the first hunk header are ignored. Omitted line counts
    default to 1.

    Args:
        diff_text: Unified diff output (e.g. `git diff HEAD -- path`)

    Returns:
        Hunks in order of appearance
    """
    hunks: list[DiffHunk] = []
    current: tuple[str, int, int, int, int] | None = None
    patch_lines: list[str] = []

    def flush() -> None:
        nonlocal current
        if current is None:
            return
        hunks.append(DiffHunk(*current, patch="\n".join(patch_lines).rstrip()))
        current = None

    for line in _LINE_SPLIT_RE.split(diff_text):
        match = HUNK_RE.match(line)
        if match:
            flush()
            current = (
                line,
                int(match.group(1)),
                int(match.group(2) or "1"),
                int(match.group(3)),
                int(match.group(4) or "1"),
            )
            patch_lines = [line]
            continue

        if current is None:
            continue

        if _is_file_header(line):
            flush()
            continue

        patch_lines.append(line)

    flush()
    return hunks


def parse_changed_line_ranges(diff_text: str) -> list[DiffLineRange]:
    """
    Contiguous line ranges in the *new* file that hold added or modified lines.

    Deleted lines produce no range and context lines are gaps, so only runs
    of `+` lines are reported.

    Args:
        diff_text: Unified diff output

    Returns:
        1-based inclusive ranges in order of appearance
    """
    ranges: list[DiffLineRange] = []
    current: DiffLineRange | None = None
    in_hunk = False
    new_line = 0

    def flush() -> None:
        nonlocal current
        if current is not None:
            ranges.append(current)
            current = None

    for line in _LINE_SPLIT_RE.split(diff_text):
        match = HUNK_RE.match(line)
        if match:
            flush()
            in_hunk = True
            new_line = int(match.group(3))
            continue

        if not in_hunk:
            continue

        if line.startswith("+") and not line.startswith("+++"):
            if current is not None and new_line == current.end + 1:
                current = current._replace(end=new_line)
            else:
                flush()
                current = DiffLineRange(new_line, new_line)
            new_line += 1
        elif line.startswith("-") and not line.startswith("---"):
            flush()
        elif line.startswith(" "):
            flush()
            new_line += 1
        elif line.startswith("\\"):
            # "\ No newline at end of file"
            continue
        elif _is_file_header(line):
            flush()
            in_hunk = False
            new_line = 0

    flush()
    return ranges


def find_hunk_containing_line(hunks: list[DiffHunk], line0: int) -> DiffHunk | None:
    """Hunk whose new-file span contains the 0-based line `line0`."""
    line1 = line0 + 1
    for hunk in hunks:
        if hunk.new_start <= line1 < hunk.new_start + hunk.new_lines:
            return hunk
    return None


def parse_hunk_header_new_start(header: str | None) -> int | None:
    """New-file start line (1-based) from a `@@ -a,b +c,d @@` header."""
    if not header:
        return None
    match = _HUNK_HEADER_NEW_START_RE.search(header)
    if match is None:
        return None
    return int(match.group(1))
