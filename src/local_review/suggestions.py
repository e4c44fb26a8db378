"""```suggestion blocks: replacement text proposed inside a comment body."""

import re
from typing import NamedTuple

SUGGESTION_FENCE_RE = re.compile(r"```suggestion\r?\n([\s\S]*?)\r?\n```")


class SuggestionBlock(NamedTuple):
    full_match: str
    replacement_text: str


def find_suggestion_blocks(markdown: str) -> list[SuggestionBlock]:
    """All ```suggestion fenced blocks in a Markdown body, in order."""
    return [
        SuggestionBlock(full_match=m.group(0), replacement_text=m.group(1) or "")
        for m in SUGGESTION_FENCE_RE.finditer(markdown)
    ]


def replace_range_in_text(text: str, start: int, end: int, replacement: str) -> str:
    """Splice `replacement` over text[start:end]."""
    return text[:start] + replacement + text[end:]
