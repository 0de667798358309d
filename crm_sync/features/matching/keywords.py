"""
Keyword extraction and string similarity helpers for email matching.

Pure functions, no state.
"""

import re
from collections.abc import Iterable

from rapidfuzz.distance import Levenshtein

STOP_WORDS = frozenset(
    {
        # Articles and prepositions
        "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
        "of", "with", "by", "from", "as", "is", "was", "are", "be", "been",
        # Auxiliary verbs
        "have", "has", "do", "does", "did", "will", "would", "could", "should",
        "can", "may", "might", "must",
        # Pronouns and question words
        "if", "this", "that", "these", "those", "i", "you", "he", "she", "it",
        "we", "they", "what", "which", "who", "where", "when", "why", "how",
        # Filler words
        "just", "also", "more", "most", "up", "down", "out", "over", "under",
        "etc", "your", "my", "our", "their",
    }
)

MIN_KEYWORD_LENGTH = 3
DEFAULT_SIMILARITY_THRESHOLD = 70

_NON_WORD = re.compile(r"[^\w\s]")
_DOMAIN_PATTERN = re.compile(r"([a-zA-Z0-9-]+\.[a-zA-Z]{2,})")


def round_half_up(value: float) -> int:
    """Round .5 away from zero for non-negative scores."""
    return int(value + 0.5)


def extract_keywords(text: str | None) -> list[str]:
    """
    Extract meaningful lowercase keywords from free text.

    Punctuation becomes whitespace, tokens shorter than three characters and
    stop words are dropped, and duplicates are removed keeping first-seen order.
    """
    if not text:
        return []

    cleaned = _NON_WORD.sub(" ", text.lower())
    keywords: list[str] = []
    seen: set[str] = set()
    for word in cleaned.split():
        if len(word) < MIN_KEYWORD_LENGTH or word in STOP_WORDS or word in seen:
            continue
        seen.add(word)
        keywords.append(word)
    return keywords


def similarity(a: str, b: str, score_cutoff: int = 0) -> int:
    """
    Case-insensitive similarity score 0..100 from normalized edit distance.

    Identical strings (including two empty strings) score 100. Scores below
    `score_cutoff` are reported as 0.
    """
    s1 = a.lower()
    s2 = b.lower()
    if s1 == s2:
        return 100

    max_len = max(len(s1), len(s2))
    # The distance is at least the length difference, which bounds the score
    if score_cutoff and round_half_up(100 * min(len(s1), len(s2)) / max_len) < score_cutoff:
        return 0

    distance = Levenshtein.distance(s1, s2)
    score = round_half_up(100 * (max_len - distance) / max_len)
    return score if score >= score_cutoff else 0


def find_matches(
    keywords: Iterable[str],
    text: str | None,
    threshold: int = DEFAULT_SIMILARITY_THRESHOLD,
) -> list[str]:
    """
    Return the keywords that hit the text.

    A keyword hits on a case-insensitive substring match. Otherwise the
    keyword is compared against the whole text with `similarity`, which only
    rewards keywords shaped like the entire text; that coarse fallback is
    intentional and kept.
    """
    haystack = (text or "").lower()
    matches = []
    for keyword in keywords:
        if keyword in haystack or similarity(keyword, haystack, score_cutoff=threshold) >= threshold:
            matches.append(keyword)
    return matches


def extract_domain(text: str | None) -> str | None:
    """First `word.tld` looking substring in text, lowercased."""
    if not text:
        return None
    match = _DOMAIN_PATTERN.search(text)
    return match.group(1).lower() if match else None
