"""Thread file codec: Markdown with an embedded JSON metadata block.

A thread file looks like this:

    <local-code-review-thread>
    { ...thread metadata as JSON (no comments, no hunkPatch)... }
    </local-code-review-thread>

    # src/app.py:L12-L14 · open

    ## Context            (optional: Before / Selection / After fences)
    ## Git                (optional: baseRef / hunkHeader)
    ## Patch              (optional: marker + ```diff fence)

    ## Comments

    <local-code-review-comment id="..." author="..." createdAt="..."/>

    Markdown body...

The parser tolerates hand and agent edits. Anything structurally invalid
yields None instead of an exception so one broken file never takes down a
whole store. A line starting with the comment marker always opens a new
comment; bodies cannot contain such a line.
"""

import json
import re
from typing import Any

from pydantic import ValidationError

from local_review.models import (
    SCHEMA_VERSION,
    Anchor,
    AnchorContext,
    AnchorGit,
    Clock,
    Comment,
    Range,
    Thread,
    ThreadStatus,
    ThreadTarget,
    now_iso,
)

THREAD_META_TAG = "local-code-review-thread"
COMMENT_TAG = "local-code-review-comment"
PATCH_TAG = "local-code-review-patch"

META_OPEN = f"<{THREAD_META_TAG}>"
META_CLOSE = f"</{THREAD_META_TAG}>"
COMMENT_PREFIX = f"<{COMMENT_TAG}"
PATCH_PREFIX = f"<{PATCH_TAG}"

_ID_ATTR_RE = re.compile(r'\bid="([^"]*)"')
_AUTHOR_ATTR_RE = re.compile(r'\bauthor="([^"]*)"')
_CREATED_AT_ATTR_RE = re.compile(r'\bcreatedAt="([^"]*)"')


class MalformedInput(Exception):
    """Raised by field decoders; the thread decoders turn it into None."""


# ============================================================================
# Field decoders
# ============================================================================


def _string(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def _non_empty_string(value: Any) -> str | None:
    text = _string(value)
    return text if text and text.strip() else None


def _string_list(value: Any) -> list[str] | None:
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        return None
    return list(value)


def _non_negative_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if not isinstance(value, int) or value < 0:
        return None
    return value


def _is_schema_version(value: Any) -> bool:
    return not isinstance(value, bool) and isinstance(value, (int, float)) and value == SCHEMA_VERSION


def decode_range(value: Any) -> Range | None:
    """
    Decode a persisted range.

    Returns:
        Range, or None for an absent/null range (a whole-file thread)

    Raises:
        MalformedInput: If the range is present but not all four fields are
            non-negative integers
    """
    if value is None:
        return None
    if not isinstance(value, dict):
        raise MalformedInput("range must be an object or null")
    fields = {
        key: _non_negative_int(value.get(key))
        for key in ("startLine", "startCharacter", "endLine", "endCharacter")
    }
    if any(v is None for v in fields.values()):
        raise MalformedInput(f"range has missing or invalid fields: {value!r}")
    return Range.model_validate(fields)


def _decode_context(value: Any) -> AnchorContext | None:
    if not isinstance(value, dict):
        return None
    before = _string_list(value.get("before"))
    selection = _string(value.get("selection"))
    after = _string_list(value.get("after"))
    if before is None or selection is None or after is None:
        return None
    return AnchorContext(before=before, selection=selection, after=after)


def _decode_anchor(value: Any) -> Anchor:
    if not isinstance(value, dict) or value.get("kind") != "lineRange":
        return Anchor()

    git = None
    raw_git = value.get("git")
    if isinstance(raw_git, dict):
        git = AnchorGit(
            base_ref=_string(raw_git.get("baseRef")),
            hunk_header=_string(raw_git.get("hunkHeader")),
            hunk_patch=_string(raw_git.get("hunkPatch")),
        )
        if git.is_empty:
            git = None

    return Anchor(context=_decode_context(value.get("context")), git=git)


def _decode_status(value: Any, legacy_state: Any) -> ThreadStatus:
    if value in ("open", "resolved"):
        return ThreadStatus(value)
    if legacy_state == "resolved":
        return ThreadStatus.RESOLVED
    return ThreadStatus.OPEN


def _decode_meta(value: Any, clock: Clock | None) -> Thread:
    if not isinstance(value, dict) or not _is_schema_version(value.get("schemaVersion")):
        raise MalformedInput("missing or unsupported schemaVersion")

    thread_id = _non_empty_string(value.get("id"))
    if thread_id is None:
        raise MalformedInput("missing thread id")

    target = value.get("target")
    if not isinstance(target, dict):
        raise MalformedInput("missing target")
    path = _non_empty_string(target.get("workspaceRelativePath"))
    if path is None:
        raise MalformedInput("missing target.workspaceRelativePath")

    created_at = _string(value.get("createdAt")) or now_iso(clock)
    updated_at = _string(value.get("updatedAt")) or created_at

    return Thread(
        id=thread_id,
        target=ThreadTarget(
            workspace_relative_path=path,
            range=decode_range(target.get("range")),
            anchor=_decode_anchor(target.get("anchor")),
        ),
        status=_decode_status(value.get("status"), value.get("state")),
        created_at=created_at,
        updated_at=updated_at,
    )


def decode_comment(value: Any, fallback_id: str, fallback_created_at: str) -> Comment | None:
    """Decode one inline JSON comment, defaulting missing fields."""
    if not isinstance(value, dict):
        return None
    return Comment(
        id=_non_empty_string(value.get("id")) or fallback_id,
        author=_non_empty_string(value.get("author")) or "unknown",
        body_markdown=_string(value.get("bodyMarkdown")) or _string(value.get("body")) or "",
        created_at=_string(value.get("createdAt")) or fallback_created_at,
    )


def decode_thread_metadata(value: Any, clock: Clock | None = None) -> Thread | None:
    """
    Validate a parsed metadata object into a Thread without comments.

    Unknown fields are ignored. Status falls back to the legacy `state`
    field, missing timestamps default to the clock's "now".

    Args:
        value: Result of json.loads on the metadata block
        clock: Clock used for missing timestamps

    Returns:
        Thread (with an empty comments list), or None if invalid
    """
    try:
        return _decode_meta(value, clock)
    except (MalformedInput, ValidationError):
        return None


def decode_thread_json(value: Any, clock: Clock | None = None) -> Thread | None:
    """
    Validate a whole-thread JSON object (legacy `threads/<id>.json` format).

    Comments are stored inline; non-object entries are skipped.
    """
    thread = decode_thread_metadata(value, clock)
    if thread is None:
        return None

    raw_comments = value.get("comments") if isinstance(value, dict) else None
    if not isinstance(raw_comments, list):
        return thread

    now = now_iso(clock)
    try:
        for i, raw in enumerate(raw_comments):
            comment = decode_comment(raw, f"{thread.id}:{i}", now)
            if comment is not None:
                thread.comments.append(comment)
    except ValidationError:
        return None
    return thread


# ============================================================================
# Serialization
# ============================================================================


def escape_xml_attr(value: str) -> str:
    return (
        value.replace("&", "&amp;")
        .replace('"', "&quot;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
    )


def unescape_xml_attr(value: str) -> str:
    return (
        value.replace("&quot;", '"')
        .replace("&lt;", "<")
        .replace("&gt;", ">")
        .replace("&amp;", "&")
    )


def format_range_label(range_: Range | None) -> str:
    """`File` for whole-file threads, otherwise `L3` or `L3-L7`."""
    return "File" if range_ is None else range_.label()


def thread_metadata(thread: Thread) -> dict[str, Any]:
    """
    JSON-ready metadata for the thread file header.

    Comments are excluded (they live in the Comments section) and so is
    `anchor.git.hunkPatch` (it lives in the Patch section). The git object
    is dropped entirely unless it carries a baseRef or hunkHeader.
    """
    target = thread.target
    anchor = target.anchor.model_dump(
        by_alias=True, exclude_none=True, exclude={"git": {"hunk_patch"}}
    )
    git = target.anchor.git
    if git is None or not (git.base_ref or git.hunk_header):
        anchor.pop("git", None)

    return {
        "schemaVersion": thread.schema_version,
        "id": thread.id,
        "target": {
            "workspaceRelativePath": target.workspace_relative_path,
            "range": target.range.model_dump(by_alias=True) if target.range else None,
            "anchor": anchor,
        },
        "status": thread.status.value,
        "createdAt": thread.created_at,
        "updatedAt": thread.updated_at,
    }


def _split_lines(text: str) -> list[str]:
    return text.replace("\r\n", "\n").split("\n")


def serialize_thread(thread: Thread) -> str:
    """
    Render a thread as Markdown.

    The output is deterministic: serialize(parse(serialize(t))) == serialize(t).
    """
    lines: list[str] = [
        META_OPEN,
        json.dumps(thread_metadata(thread), indent=2, ensure_ascii=False),
        META_CLOSE,
        "",
        f"# {thread.file}:{format_range_label(thread.range)} · {thread.status.value}",
    ]

    context = thread.target.anchor.context
    if context is not None:
        lines += ["", "## Context"]
        lines += ["", "### Before", "```text", *context.before, "```"]
        lines += ["", "### Selection", "```text", *_split_lines(context.selection), "```"]
        lines += ["", "### After", "```text", *context.after, "```"]

    git = thread.target.anchor.git
    if git is not None and (git.base_ref or git.hunk_header):
        lines += ["", "## Git"]
        if git.base_ref:
            lines.append(f"- baseRef: {git.base_ref}")
        if git.hunk_header:
            lines.append(f"- hunkHeader: {git.hunk_header}")

    patch = (git.hunk_patch or "").rstrip() if git is not None else ""
    if patch:
        lines += ["", "## Patch", f'{PATCH_PREFIX} lang="diff"/>', "", "```diff"]
        lines += _split_lines(patch)
        lines.append("```")

    lines += ["", "## Comments"]
    for comment in thread.comments:
        lines.append("")
        lines.append(
            f'{COMMENT_PREFIX} id="{escape_xml_attr(comment.id)}" '
            f'author="{escape_xml_attr(comment.author)}" '
            f'createdAt="{escape_xml_attr(comment.created_at)}"/>'
        )
        lines.append("")
        body = comment.body_markdown.rstrip()
        if body:
            lines += _split_lines(body)

    return "\n".join(lines) + "\n"


# ============================================================================
# Parsing
# ============================================================================


def _extract_patch(lines: list[str], start: int) -> str | None:
    """Body of the first ```diff/```patch fence after the first patch marker."""
    for k in range(start, len(lines)):
        if not lines[k].strip().startswith(PATCH_PREFIX):
            continue

        m = k + 1
        while m < len(lines):
            fence = lines[m].rstrip()
            m += 1
            if not fence.startswith("```") or fence[3:].strip() not in ("diff", "patch"):
                continue
            patch_lines: list[str] = []
            while m < len(lines) and lines[m].rstrip() != "```":
                patch_lines.append(lines[m])
                m += 1
            return "\n".join(patch_lines).rstrip() or None
        return None
    return None


def _attr(pattern: re.Pattern[str], marker: str) -> str:
    match = pattern.search(marker)
    return unescape_xml_attr(match.group(1)).strip() if match else ""


def _parse_comments(lines: list[str], start: int, thread: Thread) -> list[Comment]:
    comments: list[Comment] = []
    fallback_created_at = thread.updated_at or thread.created_at
    j = start
    while j < len(lines):
        marker = lines[j].strip()
        if not marker.startswith(COMMENT_PREFIX):
            j += 1
            continue

        ordinal = len(comments)
        comment_id = _attr(_ID_ATTR_RE, marker) or f"{thread.id}:{ordinal}"
        author = _attr(_AUTHOR_ATTR_RE, marker) or "unknown"
        created_at = _attr(_CREATED_AT_ATTR_RE, marker) or fallback_created_at

        j += 1
        if j < len(lines) and lines[j] == "":
            j += 1

        body_lines: list[str] = []
        while j < len(lines) and not lines[j].strip().startswith(COMMENT_PREFIX):
            body_lines.append(lines[j])
            j += 1

        comments.append(
            Comment(
                id=comment_id,
                author=author,
                body_markdown="\n".join(body_lines).rstrip(),
                created_at=created_at,
            )
        )
    return comments


def parse_thread(text: str, clock: Clock | None = None) -> Thread | None:
    """
    Parse a thread Markdown file.

    Args:
        text: File contents
        clock: Clock used to default missing timestamps

    Returns:
        Thread, or None when the metadata block is missing, unterminated,
        not valid JSON, or fails validation
    """
    lines = _split_lines(text)

    i = 0
    while i < len(lines) and lines[i].strip() != META_OPEN:
        i += 1
    if i >= len(lines):
        return None

    i += 1
    meta_lines: list[str] = []
    while i < len(lines) and lines[i].strip() != META_CLOSE:
        meta_lines.append(lines[i])
        i += 1
    if i >= len(lines):
        return None
    i += 1

    try:
        meta = json.loads("\n".join(meta_lines).strip())
    except json.JSONDecodeError:
        return None

    thread = decode_thread_metadata(meta, clock)
    if thread is None:
        return None

    patch = _extract_patch(lines, i)
    if patch:
        git = thread.target.anchor.git or AnchorGit()
        thread.target.anchor.git = git.model_copy(update={"hunk_patch": patch})

    try:
        thread.comments = _parse_comments(lines, i, thread)
    except ValidationError:
        return None
    return thread
