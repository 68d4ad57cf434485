"""Text normalization shared by discovery and embeddings."""

import re

STOPWORDS = frozenset(
    {
        "a", "an", "and", "are", "as", "at", "be", "but", "by", "for", "from",
        "in", "into", "is", "it", "its", "of", "on", "or", "that", "the",
        "this", "to", "was", "were", "will", "with",
    }
)

_CAMEL_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def tokenize(text: str, keep_stopwords: bool = False) -> list[str]:
    """Lowercase, split on non-alphanumerics and camelCase, drop noise tokens."""
    if not text:
        return []
    spaced = _CAMEL_BOUNDARY.sub(r"\1 \2", text).lower()
    tokens = [t for t in _NON_ALNUM.split(spaced) if len(t) > 1]
    if keep_stopwords:
        return tokens
    return [t for t in tokens if t not in STOPWORDS]


def levenshtein(a: str, b: str) -> int:
    """Edit distance between two strings."""
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    if len(a) < len(b):
        a, b = b, a

    previous = list(range(len(b) + 1))
    for i, ch_a in enumerate(a, start=1):
        current = [i]
        for j, ch_b in enumerate(b, start=1):
            current.append(
                min(
                    previous[j] + 1,
                    current[j - 1] + 1,
                    previous[j - 1] + (ch_a != ch_b),
                )
            )
        previous = current
    return previous[-1]


def similarity(a: str, b: str) -> float:
    """Normalized inverse edit distance in [0, 1]."""
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return 1.0 - levenshtein(a, b) / longest
