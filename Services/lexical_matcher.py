# ensemble/Services/lexical_matcher.py
from __future__ import annotations

import re
from typing import List

# Tokens must be longer than this to count as keywords.
MIN_KEYWORD_LEN = 5

_SPLIT_RE = re.compile(r"\W+")


def _mention_pattern(name: str) -> "re.Pattern[str]":
    # Look-arounds instead of \b so names starting/ending with punctuation
    # ("Dr. Who", "R2-D2!") still behave as whole words.
    return re.compile(rf"(?<!\w){re.escape(name)}(?!\w)", re.IGNORECASE)


def has_mention(text: str, name: str) -> bool:
    """
    True iff `name` appears in `text` as a whole word, case-insensitive.
    "Swordsman" does not mention "Sword".
    """
    name = (name or "").strip()
    if not name or not text:
        return False
    return _mention_pattern(name).search(text) is not None


def significant_tokens(text: str) -> List[str]:
    """Split on non-word runs, keep tokens longer than MIN_KEYWORD_LEN."""
    return [t for t in _SPLIT_RE.split(text or "") if len(t) > MIN_KEYWORD_LEN]


def has_keyword_overlap(text: str, profile_text: str) -> bool:
    """True if any significant token of `text` occurs (as a substring) in `profile_text`."""
    if not profile_text:
        return False
    profile = profile_text.lower()
    return any(tok.lower() in profile for tok in significant_tokens(text))
