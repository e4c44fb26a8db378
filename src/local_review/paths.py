"""Path validation for the storage root and thread target paths.

Everything here is pure string logic: no filesystem access, so a path that
escapes the project root is rejected before it is ever joined onto one.
"""

import posixpath
import re
from pathlib import Path

DEFAULT_STORAGE_PATH = ".code-review"
LEGACY_STORAGE_PATH = ".vscode/.code-review"

_DRIVE_LETTER_RE = re.compile(r"^[A-Za-z]:/")


def normalize_relative_path(raw: object) -> str | None:
    """
    Normalize a project-relative path, rejecting anything that could escape the root.

    Rules, applied in order:
    1. Empty or containing a NUL byte -> rejected
    2. Backslashes become forward slashes
    3. Leading "/" (or "//") or a drive-letter prefix -> rejected
    4. Lexical normalization of "." and ".." segments, leading "./" and
       trailing slashes stripped
    5. Result empty, ".", "..", or starting with "../" -> rejected

    Args:
        raw: Candidate path (non-strings are rejected)

    Returns:
        Normalized POSIX relative path, or None if rejected
    """
    if not isinstance(raw, str):
        return None
    value = raw.strip()
    if not value or "\0" in value:
        return None

    value = value.replace("\\", "/")
    if value.startswith("/") or _DRIVE_LETTER_RE.match(value):
        return None

    normalized = posixpath.normpath(value)
    normalized = re.sub(r"^(?:\./+)+", "", normalized).rstrip("/")
    if not normalized or normalized in (".", "..") or normalized.startswith("../"):
        return None
    return normalized


def normalize_storage_path(raw: object) -> str:
    """Normalize the configured storage root, falling back to DEFAULT_STORAGE_PATH."""
    return normalize_relative_path(raw) or DEFAULT_STORAGE_PATH


def resolve_workspace_path(project_root: Path, relative: str) -> Path | None:
    """Join a thread's relative path onto the project root, or None if unsafe."""
    normalized = normalize_relative_path(relative)
    if normalized is None:
        return None
    return Path(project_root).joinpath(*normalized.split("/"))


def to_workspace_relative(project_root: Path, path: Path) -> str | None:
    """
    POSIX path of `path` relative to `project_root`.

    Returns:
        Relative path string, or None when path lies outside the root
    """
    root = Path(project_root).resolve()
    candidate = Path(path)
    if not candidate.is_absolute():
        candidate = root / candidate
    try:
        relative = candidate.resolve().relative_to(root)
    except ValueError:
        return None
    rel = relative.as_posix()
    return None if rel in ("", ".") else rel
