"""Threaded code review comments stored as hand-editable Markdown.

This package contains:
- Thread, Comment and anchor models (models)
- The Markdown thread codec and index cache (codec, index)
- Content-based re-anchoring after edits (anchors)
- The on-disk review store and its coordinator (storage, manager)
"""

__version__ = "0.1.0"

from .manager import ReviewManager
from .models import Comment, Range, Thread, ThreadStatus
from .storage import ReviewStore

__all__ = ["ReviewManager", "ReviewStore", "Thread", "Comment", "Range", "ThreadStatus", "__version__"]
