"""
Text helpers shared by embedding, full-text scoring and context assembly.
"""

from __future__ import annotations

import re

SENTENCE_ENDINGS = ".!?。！？\n"
ELLIPSIS = "..."


def normalize_text(text: str) -> str:
    """Normalize whitespace while keeping paragraph-ish separation.

    Args:
        text: Raw text.

    Returns:
        Normalized text.
    """

    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = re.sub(r"[ \t\f\v]+", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def cut_at_sentence(text: str, max_chars: int, suffix: str = ELLIPSIS) -> str | None:
    """Cut `text` at the last sentence boundary that fits in `max_chars`.

    The suffix is counted against the budget. Boundaries in the first 20% of
    the window are ignored so the result keeps a useful amount of text.

    Returns:
        The shortened text, `text` itself if it already fits, or None when no
        usable sentence boundary exists.
    """

    if len(text) <= max_chars:
        return text

    limit = max_chars - len(suffix)
    if limit <= 0:
        return None

    floor = int(limit * 0.2)
    for i in range(limit - 1, floor, -1):
        if text[i] in SENTENCE_ENDINGS:
            cut = text[: i + 1].rstrip()
            if cut:
                return cut + suffix
    return None


def truncate_text(text: str, max_chars: int, suffix: str = ELLIPSIS) -> str:
    """Shorten `text` to at most `max_chars`, preferring a sentence boundary.

    Falls back to a hard cut when no boundary is available.
    """

    if len(text) <= max_chars:
        return text

    cut = cut_at_sentence(text, max_chars, suffix)
    if cut is not None:
        return cut

    if max_chars <= len(suffix):
        return text[:max_chars]
    return text[: max_chars - len(suffix)].rstrip() + suffix
