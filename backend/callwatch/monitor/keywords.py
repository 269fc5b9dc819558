"""
Trigger keyword matching for final transcripts.

Matching is a plain case-insensitive substring test, so "helper"
matches "help". Results follow the order of the configured keyword set.
"""

from typing import Iterable, List


def match_keywords(text: str, keywords: Iterable[str]) -> List[str]:
    """Return every keyword contained in text, in keyword-set order."""
    if not text:
        return []

    haystack = text.lower()
    matched: List[str] = []
    seen = set()
    for keyword in keywords:
        needle = keyword.lower()
        if not needle or needle in seen:
            continue
        if needle in haystack:
            matched.append(keyword)
            seen.add(needle)
    return matched
