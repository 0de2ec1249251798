"""
Text normalization for merchant descriptors and descriptions

Bank feeds decorate merchant names with processor prefixes, store numbers and
corporate suffixes:
- "SQ *BLUE BOTTLE COFFEE"     → "blue bottle coffee"
- "STARBUCKS #1234 SEATTLE WA" → "starbucks seattle wa"
- "Café Déjà Vu LLC"           → "cafe deja vu"
"""
import re
from functools import lru_cache
from typing import FrozenSet, List

from unidecode import unidecode

# Payment processor prefixes that precede a "*" (Square, Toast, PayPal, POS/CCD)
_PROCESSOR_PREFIX = re.compile(r"^\s*(?:sq|square|tst|paypal|pos|ccd)\s*\*\s*")
_STORE_NUMBER = re.compile(r"#\s*\d+")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")

CORPORATE_SUFFIXES: FrozenSet[str] = frozenset({"inc", "llc", "ltd", "corp", "co"})

STOP_WORDS: FrozenSet[str] = frozenset({
    "the", "and", "for", "with", "from", "into", "onto", "this", "that",
    "are", "was", "were", "has", "have", "had", "not", "but", "all", "any",
    "our", "your", "their", "its", "you", "they", "who", "what", "which",
    "payment", "purchase", "transaction", "debit", "credit", "card", "pos",
    "online", "store", "shop", "inc", "llc", "ltd", "corp", "com", "www",
})

MIN_KEYWORD_LENGTH = 3


@lru_cache(maxsize=4096)
def normalize(text: str, strip_noise: bool = True) -> str:
    """
    Normalize text for matching.

    Args:
        text: Raw merchant descriptor or description
        strip_noise: Drop processor prefixes, store numbers and corporate suffixes

    Returns:
        Lower-case ASCII tokens separated by single spaces ("" for empty input)
    """
    if not text:
        return ""

    value = unidecode(text).lower()
    if strip_noise:
        value = _PROCESSOR_PREFIX.sub("", value)
        value = _STORE_NUMBER.sub(" ", value)
    value = _NON_ALNUM.sub(" ", value)

    tokens = [t for t in value.split() if not (t.isdigit() and len(t) >= 4)]
    if strip_noise:
        tokens = [t for t in tokens if t not in CORPORATE_SUFFIXES]
    return " ".join(tokens)


def tokens(text: str) -> List[str]:
    return normalize(text).split()


def trigrams(value: str) -> FrozenSet[str]:
    """Character trigrams of an already-normalized string, padded with two spaces"""
    if not value:
        return frozenset()
    padded = f"  {value}  "
    return frozenset(padded[i:i + 3] for i in range(len(padded) - 2))


def extract_keywords(text: str, limit: int = 5) -> List[str]:
    """Distinct informative tokens in order of appearance"""
    keywords: List[str] = []
    for token in tokens(text):
        if len(token) < MIN_KEYWORD_LENGTH or token.isdigit() or token in STOP_WORDS:
            continue
        if token not in keywords:
            keywords.append(token)
        if len(keywords) >= limit:
            break
    return keywords
