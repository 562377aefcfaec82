"""
Name similarity scoring
Compares site names with candidate names from OpenStreetMap and Wikidata.
"""

import re
from typing import List, Set

EXACT_SCORE = 1.0
CONTAINS_SCORE = 0.8

# Words that say what kind of place it is rather than which place
GENERIC_WORDS = frozenset({
    "park", "parks", "garden", "gardens", "green", "common", "space", "open",
    "playing", "field", "fields", "recreation", "ground", "wood", "heath",
})

# Used by the import duplicate check
COMMON_WORDS = frozenset({
    "park", "gardens", "garden", "green", "space", "open", "playing",
    "field", "fields", "recreation", "ground",
})

_LEADING_THE = re.compile(r"^the\s+")
_APOSTROPHES = re.compile(r"['‘’`]")
_NOISE = re.compile(r"[^\w\s&-]")
_WHITESPACE = re.compile(r"\s+")


def normalize_name(name: str) -> str:
    """
    Canonical form used before any comparison.

    Lowercases, drops a leading "the", apostrophes and punctuation, and
    collapses whitespace. "The Regent's Park" becomes "regents park".
    """
    if not name:
        return ""
    text = name.lower().strip()
    text = text.replace("&amp;", "&")
    text = _LEADING_THE.sub("", text)
    text = _APOSTROPHES.sub("", text)
    text = _NOISE.sub(" ", text)
    text = _WHITESPACE.sub(" ", text)
    return text.strip()


def _strip_generic(normalized: str) -> str:
    return " ".join(w for w in normalized.split() if w not in GENERIC_WORDS)


def _jaccard(a: Set, b: Set) -> float:
    if not a and not b:
        return 1.0
    union = a | b
    if not union:
        return 0.0
    return len(a & b) / len(union)


def char_jaccard(a: str, b: str) -> float:
    """Jaccard index over the sets of non-space characters."""
    return _jaccard(set(a.replace(" ", "")), set(b.replace(" ", "")))


def token_jaccard(a: str, b: str) -> float:
    """Jaccard index over whitespace tokens."""
    return _jaccard(set(a.split()), set(b.split()))


def name_score(name1: str, name2: str, method: str = "chars", ignore_generic: bool = False) -> float:
    """
    Similarity of two names in [0, 1].

    Identical normalized names score 1.0 and containment scores 0.8. Anything
    else falls back to a Jaccard index over characters or tokens.

    Args:
        name1, name2: Names to compare
        method: "chars" for character-set Jaccard, "tokens" for word Jaccard
        ignore_generic: Drop words such as "park" and "gardens" first

    Returns:
        Similarity score
    """
    if method not in ("chars", "tokens"):
        raise ValueError(f"unknown name scoring method {method!r}")

    n1 = normalize_name(name1)
    n2 = normalize_name(name2)
    if ignore_generic:
        # Keep the generic words if nothing else is left ("The Park")
        n1 = _strip_generic(n1) or n1
        n2 = _strip_generic(n2) or n2

    if n1 == n2:
        return EXACT_SCORE
    if not n1 or not n2:
        return 0.0
    if n1 in n2 or n2 in n1:
        return CONTAINS_SCORE

    if method == "tokens":
        return token_jaccard(n1, n2)
    return char_jaccard(n1, n2)


def significant_words(name: str) -> List[str]:
    return [w for w in normalize_name(name).split() if w not in COMMON_WORDS]


def are_similar_names(name1: str, name2: str) -> bool:
    """
    Loose yes/no similarity used when deciding whether an imported candidate
    duplicates an existing site.

    True when the names are equal or one contains the other, when every word
    of a short name (two or three words) appears in the other, when their
    word sets overlap by more than 70%, or when they share at least two
    significant words covering the shorter name.
    """
    n1 = normalize_name(name1).replace("*", "")
    n2 = normalize_name(name2).replace("*", "")
    if not n1 or not n2:
        return False
    if n1 == n2 or n1 in n2 or n2 in n1:
        return True

    words1 = n1.split()
    words2 = n2.split()

    if len(words1) <= 3 or len(words2) <= 3:
        shorter, longer = (words1, words2) if len(words1) < len(words2) else (words2, words1)
        all_present = all(any(w in other or other in w for other in longer) for w in shorter)
        if all_present and len(shorter) >= 2:
            return True

    if token_jaccard(n1, n2) > 0.7:
        return True

    sig1 = [w for w in words1 if w not in COMMON_WORDS]
    sig2 = [w for w in words2 if w not in COMMON_WORDS]
    if sig1 and sig2:
        shared = [w for w in sig1 if w in sig2]
        if len(shared) >= 2 and len(shared) >= min(len(sig1), len(sig2)):
            return True

    return False
