"""
Pattern value validation at the storage boundary
"""
import re
import unicodedata
from decimal import Decimal

import regex

from packages.domain.categorization.errors import ValidationError
from packages.domain.categorization.pattern_rules import (
    DAY_BUCKETS,
    TIME_BUCKETS,
    parse_amount_range,
    parse_time_range,
)
from packages.domain.categorization.schemas import Pattern, PatternType
from packages.domain.categorization.text_normalizer import STOP_WORDS, normalize

MIN_TEXT_LENGTH = 2
MAX_TEXT_LENGTH = 255
MAX_REGEX_LENGTH = 100
MAX_AMOUNT_SPAN = Decimal("10000")

_UNBOUNDED = re.compile(r"[+*]|\{\d*,\}")


def has_nested_quantifier(expression: str) -> bool:
    """
    True when an unbounded quantifier applies to a group whose body already
    repeats without bound: (a+)+, (a*)*, ([a-z]+)*, ((a+)b){2,} ...

    Each open group tracks whether its body (including inner groups) holds an
    unbounded quantifier. Escapes and character classes are skipped whole.
    """
    repeats = [False]
    i = 0
    while i < len(expression):
        ch = expression[i]
        if ch == "\\":
            i += 2
            continue
        if ch == "[":
            i = _class_end(expression, i)
            continue
        if ch == "(":
            repeats.append(False)
            i += 1
            continue
        if ch == ")":
            body_repeats = repeats.pop() if len(repeats) > 1 else False
            i += 1
            quantifier = _UNBOUNDED.match(expression, i)
            if quantifier and body_repeats:
                return True
            repeats[-1] = repeats[-1] or body_repeats or bool(quantifier)
            if quantifier:
                i = quantifier.end()
            continue
        quantifier = _UNBOUNDED.match(expression, i)
        if quantifier:
            repeats[-1] = True
            i = quantifier.end()
            continue
        i += 1
    return False


def _class_end(expression: str, start: int) -> int:
    """Index just past the character class opening at start"""
    i = start + 1
    if expression.startswith("^", i):
        i += 1
    if expression.startswith("]", i):
        i += 1
    while i < len(expression) and expression[i] != "]":
        i += 2 if expression[i] == "\\" else 1
    return i + 1


def validate_pattern_value(pattern_type: PatternType, value: str) -> str:
    """
    Validate a pattern value for its type.

    Returns:
        The value as it should be stored (text types are normalized)

    Raises:
        ValidationError: value is malformed for the type
    """
    if value is None:
        raise ValidationError("pattern value is required", pattern_type=pattern_type.value)

    if pattern_type.is_textual:
        return _validate_text(pattern_type, value)
    if pattern_type is PatternType.AMOUNT_RANGE:
        return _validate_amount_range(value)
    if pattern_type is PatternType.TIME:
        return _validate_time(value)
    return validate_regex(value)


def validate_pattern(pattern: Pattern) -> Pattern:
    """Validate and normalize a pattern before it is stored"""
    stored_value = validate_pattern_value(pattern.pattern_type, pattern.pattern_value)
    if stored_value == pattern.pattern_value:
        return pattern
    return pattern.evolve(pattern_value=stored_value)


def validate_regex(value: str) -> str:
    if len(value) > MAX_REGEX_LENGTH:
        raise ValidationError("regex is too long", length=len(value), limit=MAX_REGEX_LENGTH)
    if has_nested_quantifier(value):
        raise ValidationError("regex has nested quantifiers (catastrophic backtracking)", value=value)
    try:
        regex.compile(value)
    except regex.error as e:
        raise ValidationError("regex does not compile", value=value, error=str(e)) from e
    return value


def _validate_text(pattern_type: PatternType, value: str) -> str:
    stripped = value.strip()
    if not MIN_TEXT_LENGTH <= len(stripped) <= MAX_TEXT_LENGTH:
        raise ValidationError(
            f"{pattern_type.value} pattern must be {MIN_TEXT_LENGTH}-{MAX_TEXT_LENGTH} characters",
            length=len(stripped),
        )
    if any(unicodedata.category(ch) == "Cc" for ch in stripped):
        raise ValidationError(f"{pattern_type.value} pattern contains control characters")

    normalized = normalize(stripped, strip_noise=False)
    if len(normalized) < MIN_TEXT_LENGTH:
        raise ValidationError(f"{pattern_type.value} pattern has no matchable text", value=value)
    if normalized in STOP_WORDS:
        raise ValidationError(f"{pattern_type.value} pattern is a low-information word", value=value)
    return normalized


def _validate_amount_range(value: str) -> str:
    low, high = parse_amount_range(value)
    if low >= high:
        raise ValidationError("amount range minimum must be below maximum", value=value)
    if high - low > MAX_AMOUNT_SPAN:
        raise ValidationError("amount range is too wide", value=value, max_span=str(MAX_AMOUNT_SPAN))
    return f"{low}-{high}"


def _validate_time(value: str) -> str:
    name = value.strip().lower()
    if name in TIME_BUCKETS or name in DAY_BUCKETS:
        return name
    start, end = parse_time_range(name)
    return f"{start // 60:02d}:{start % 60:02d}-{end // 60:02d}:{end % 60:02d}"
