"""
Typed text extraction for fuzzy matching candidates

The matcher never inspects candidate shapes; callers pick the extractor that
fits what they are matching against.
"""
from typing import Any, Mapping, Optional, Protocol

from packages.domain.categorization.schemas import Pattern


class TextExtractor(Protocol):
    def extract(self, candidate: Any) -> Optional[str]:
        ...


class StringExtractor:
    """Candidates are plain strings"""

    def extract(self, candidate: str) -> Optional[str]:
        return candidate


class PatternValueExtractor:
    """Candidates are Patterns; match on pattern_value"""

    def extract(self, candidate: Pattern) -> Optional[str]:
        return candidate.pattern_value


class ExpenseFieldExtractor:
    """Candidates are expense snapshots; match on one text field"""

    def __init__(self, field: str = "merchant_text"):
        self.field = field

    def extract(self, candidate: Any) -> Optional[str]:
        return getattr(candidate, self.field)


class MappingExtractor:
    """Candidates are dict-like records"""

    def __init__(self, key: str):
        self.key = key

    def extract(self, candidate: Mapping[str, Any]) -> Optional[str]:
        value = candidate.get(self.key)
        return None if value is None else str(value)
