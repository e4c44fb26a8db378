"""index.json: a rebuildable listing of threads for fast enumeration.

The index is a cache. Thread files are the source of truth, so the index
is always recomputed from them and never patched in place.
"""

import json
from collections.abc import Iterable
from typing import Any

from local_review.codec import MalformedInput, decode_range
from local_review.models import SCHEMA_VERSION, IndexEntry, Range, Thread, ThreadIndex, ThreadStatus


def index_entry(thread: Thread) -> IndexEntry:
    """Project a thread onto its index entry."""
    return IndexEntry(
        id=thread.id,
        file=thread.file,
        range=thread.range,
        status=thread.status,
        updated_at=thread.updated_at,
    )


def build_index(threads: Iterable[Thread]) -> ThreadIndex:
    """Build an index sorted by (file, id)."""
    entries = sorted((index_entry(t) for t in threads), key=lambda e: (e.file, e.id))
    return ThreadIndex(threads=entries)


def encode_index(index: ThreadIndex) -> str:
    """Serialize the index as pretty-printed JSON with a trailing newline."""
    data = index.model_dump(mode="json", by_alias=True)
    return json.dumps(data, indent=2, ensure_ascii=False) + "\n"


def _coerce_status(entry: dict[str, Any]) -> ThreadStatus:
    status = entry.get("status")
    if isinstance(status, str):
        return ThreadStatus.RESOLVED if status == "resolved" else ThreadStatus.OPEN
    if entry.get("state") == "resolved":
        return ThreadStatus.RESOLVED
    return ThreadStatus.OPEN


def _coerce_range(value: Any) -> Range | None:
    try:
        return decode_range(value)
    except MalformedInput:
        return None


def _coerce_entry(raw: Any) -> IndexEntry | None:
    if not isinstance(raw, dict):
        return None
    entry_id = raw.get("id")
    file = raw.get("file")
    entry_id = "" if entry_id is None else str(entry_id)
    file = "" if file is None else str(file)
    if not entry_id or not file:
        return None

    updated_at = raw.get("updatedAt")
    return IndexEntry(
        id=entry_id,
        file=file,
        range=_coerce_range(raw.get("range")),
        status=_coerce_status(raw),
        updated_at="" if updated_at is None else str(updated_at),
    )


def decode_index(raw: str | None) -> ThreadIndex:
    """
    Parse index.json content.

    Invalid JSON, a wrong schema version, or a non-list `threads` field yields
    an empty index rather than an error. Entries without an id or file are
    dropped; status falls back through the legacy `state` field.

    Args:
        raw: File contents, or None if the file is missing

    Returns:
        ThreadIndex (possibly empty)
    """
    if not raw:
        return ThreadIndex()
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return ThreadIndex()

    if not isinstance(data, dict) or data.get("schemaVersion") != SCHEMA_VERSION:
        return ThreadIndex()
    if isinstance(data.get("schemaVersion"), bool):
        return ThreadIndex()
    threads = data.get("threads")
    if not isinstance(threads, list):
        return ThreadIndex()

    entries = [entry for entry in (_coerce_entry(t) for t in threads) if entry is not None]
    return ThreadIndex(threads=entries)
