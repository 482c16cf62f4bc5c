from __future__ import annotations

import logging
import re
from functools import lru_cache
from typing import Any, Iterable, List, Mapping, Optional, Pattern

from detection.rule_model import FieldConstraint, FieldMapSelection, KeywordSelection, Selection

logger = logging.getLogger(__name__)

SUPPORTED_MODIFIERS = ("contains",)

_unsupported_seen: set = set()


def _coerce_str(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, str):
        return value
    return str(value)


def has_wildcards(pattern: str) -> bool:
    return "*" in pattern or "?" in pattern


def wildcard_to_regex(pattern: str) -> str:
    """Translate a `*` / `?` wildcard pattern into an anchored regex body."""
    parts: List[str] = []
    for char in pattern:
        if char == "*":
            parts.append(".*")
        elif char == "?":
            parts.append(".")
        else:
            parts.append(re.escape(char))
    return "^" + "".join(parts) + "$"


@lru_cache(maxsize=4096)
def _compile_wildcard(pattern: str, case_sensitive: bool) -> Pattern:
    flags = re.DOTALL if case_sensitive else re.DOTALL | re.IGNORECASE
    return re.compile(wildcard_to_regex(pattern), flags)


def wildcard_match(value: str, pattern: str, case_sensitive: bool = False) -> bool:
    if not has_wildcards(pattern):
        if case_sensitive:
            return value == pattern
        return value.lower() == pattern.lower()
    return _compile_wildcard(pattern, case_sensitive).match(value) is not None


def match_value(value: Any, candidate: Any, case_sensitive: bool = False, modifier: Optional[str] = None) -> bool:
    """
    Test one record value against one candidate from a selection.

    List-valued record fields match when any element matches. A `None`
    candidate never matches.
    """
    if value is None or candidate is None:
        return False

    if isinstance(value, (list, tuple)):
        return any(match_value(item, candidate, case_sensitive, modifier) for item in value)

    value_str = _coerce_str(value)
    pattern = _coerce_str(candidate)

    if modifier:
        if modifier == "contains":
            if case_sensitive:
                return pattern in value_str
            return pattern.lower() in value_str.lower()
        if modifier not in _unsupported_seen:
            _unsupported_seen.add(modifier)
            logger.debug(f"Unsupported field modifier {modifier!r}; constraint will not match")
        return False

    return wildcard_match(value_str, pattern, case_sensitive)


def match_constraint(record: Mapping[str, Any], constraint: FieldConstraint, case_sensitive: bool = False) -> bool:
    if constraint.field not in record:
        return False
    value = record[constraint.field]
    return any(match_value(value, candidate, case_sensitive, constraint.modifier) for candidate in constraint.values)


def iter_text_values(record: Mapping[str, Any]) -> Iterable[str]:
    for value in record.values():
        if isinstance(value, str):
            yield value


def match_keywords(record: Mapping[str, Any], keywords: Iterable[str], case_sensitive: bool = False) -> bool:
    texts = list(iter_text_values(record))
    if not texts:
        return False
    if not case_sensitive:
        texts = [text.lower() for text in texts]
    for keyword in keywords:
        if not keyword:
            continue
        needle = keyword if case_sensitive else keyword.lower()
        if any(needle in text for text in texts):
            return True
    return False


def match_selection(record: Mapping[str, Any], selection: Selection, case_sensitive: bool = False) -> bool:
    """
    Evaluate a single selection block against a flattened record.

    Keyword selections are an OR over every string field of the record.
    Field-map selections are an AND across fields; an empty map matches nothing.
    """
    if isinstance(selection, KeywordSelection):
        return match_keywords(record, selection.keywords, case_sensitive)

    if isinstance(selection, FieldMapSelection):
        if not selection.constraints:
            return False
        return all(match_constraint(record, constraint, case_sensitive) for constraint in selection.constraints)

    raise TypeError(f"Unsupported selection type: {type(selection).__name__}")
