"""Keyword extraction for change requests."""

from __future__ import annotations

import re

STOP_WORDS: frozenset[str] = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with", "by", "from",
})

_NON_WORD_RE = re.compile(r"[^\w\s]")

MIN_KEYWORD_LENGTH = 3


def extract_keywords(text: str) -> set[str]:
    """Return the significant lower-cased tokens of *text*.

    Non-word characters become whitespace; tokens shorter than
    ``MIN_KEYWORD_LENGTH`` or in :data:`STOP_WORDS` are dropped.
    """
    cleaned = _NON_WORD_RE.sub(" ", (text or "").lower())
    return {
        token
        for token in cleaned.split()
        if len(token) >= MIN_KEYWORD_LENGTH and token not in STOP_WORDS
    }
