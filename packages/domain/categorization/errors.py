"""
Categorization error hierarchy

"No match" is a normal CategorizationResult, never one of these.
"""
from typing import Any


class CategorizationError(Exception):
    """Base error; context carries structured fields for logging"""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def __str__(self) -> str:
        if not self.context:
            return self.message
        details = ", ".join(f"{key}={value!r}" for key, value in self.context.items())
        return f"{self.message} ({details})"


class ValidationError(CategorizationError):
    """Malformed pattern value, weight, range or correction"""


class PreconditionError(CategorizationError):
    """Operation called without a required input"""


class DependencyUnavailable(CategorizationError):
    """Pattern store (source of truth) unreachable"""


class MatchTimeout(CategorizationError):
    """Bounded evaluation (regex) exceeded its time budget"""


class ConflictError(CategorizationError):
    """Concurrent update of the same pattern could not be reconciled"""
