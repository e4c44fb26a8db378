"""Atomic file writes so a reader never sees a half-written thread or index.

Every store write goes through here: content lands in a temp file
next to the target, then replaces the target in a single rename.
"""

import os
import tempfile
from pathlib import Path


def _replace_atomically(content: str, target_path: Path, suffix: str) -> None:
    dir_path = target_path.parent
    dir_path.mkdir(parents=True, exist_ok=True)

    # Temp file must live in the same directory for the rename to be atomic
    fd, temp_path = tempfile.mkstemp(dir=dir_path, prefix=".tmp_", suffix=suffix)

    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as f:
            f.write(content)

        # rw-r--r--
        os.chmod(temp_path, 0o644)

        os.replace(temp_path, target_path)

    except Exception:
        try:
            os.unlink(temp_path)
        except OSError:
            pass  # already renamed or never created
        raise


def atomic_write_text(content: str, target_path: str | Path, ensure_newline: bool = True) -> None:
    """Write text content to target_path atomically.

    Thread files and AGENTS.md are written through here.

    Args:
        content: Text content to write
        target_path: Destination file path
        ensure_newline: Add a trailing newline when missing

    Raises:
        OSError: If write or rename fails
    """
    target_path = Path(target_path)
    if ensure_newline and not content.endswith("\n"):
        content += "\n"
    _replace_atomically(content, target_path, target_path.suffix)

