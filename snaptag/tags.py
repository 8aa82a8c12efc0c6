"""
Tag parsing.

Raw tag input arrives as one comma-separated string from a form field.
Records only ever store the canonical form produced here.
"""

from collections.abc import Iterable
from typing import Optional

TAG_SEPARATOR = ","


def normalize_tag(token: str) -> str:
    """Canonical form of a single tag token (surrounding whitespace removed)."""
    return token.strip()


def normalize_tags(tokens: Iterable[str]) -> list[str]:
    """
    Trim, drop empties and de-duplicate an already-split tag sequence.

    De-duplication is case-sensitive and keeps the first occurrence, so
    display order follows the user's input.
    """
    seen: dict[str, None] = {}
    for token in tokens:
        tag = normalize_tag(token)
        if tag and tag not in seen:
            seen[tag] = None
    return list(seen)


def parse_tags(raw: Optional[str]) -> list[str]:
    """
    Parse comma-separated tag input into an ordered set of tags.

    Never raises: None, empty, or separator-only input gives [].

    >>> parse_tags("a, b ,a,, c")
    ['a', 'b', 'c']
    """
    if not raw:
        return []
    return normalize_tags(raw.split(TAG_SEPARATOR))
