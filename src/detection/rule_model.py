"""
In-memory model of a Sigma rule document.

Selections are resolved into a small tagged union when the document is
parsed, so matching never has to re-inspect the raw YAML shapes:

    KeywordSelection   - list of keywords searched in every text field
    FieldMapSelection  - field -> scalar | list-of-scalars constraints
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml

LEVELS = ("informational", "low", "medium", "high", "critical")
STATUSES = ("experimental", "test", "stable", "deprecated", "unsupported")

DEFAULT_LEVEL = "medium"
DEFAULT_STATUS = "stable"

# Keys inside `detection` that are never selections.
RESERVED_DETECTION_KEYS = ("condition", "timeframe")


@dataclass(frozen=True)
class LogSource:
    product: Optional[str] = None
    service: Optional[str] = None
    category: Optional[str] = None
    definition: Optional[str] = None

    def is_empty(self) -> bool:
        return not (self.product or self.service or self.category)

    def to_dict(self) -> Dict[str, str]:
        data = {}
        for key in ("product", "service", "category", "definition"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data


@dataclass(frozen=True)
class KeywordSelection:
    keywords: Tuple[str, ...]

    def to_raw(self) -> List[str]:
        return list(self.keywords)


@dataclass(frozen=True)
class FieldConstraint:
    field: str
    values: Tuple[Any, ...]
    modifier: Optional[str] = None
    is_list: bool = False

    @property
    def key(self) -> str:
        return f"{self.field}|{self.modifier}" if self.modifier else self.field

    def to_raw(self) -> Any:
        if self.is_list:
            return list(self.values)
        return self.values[0] if self.values else None


@dataclass(frozen=True)
class FieldMapSelection:
    constraints: Tuple[FieldConstraint, ...]

    def to_raw(self) -> Dict[str, Any]:
        return {constraint.key: constraint.to_raw() for constraint in self.constraints}


Selection = Union[KeywordSelection, FieldMapSelection]


@dataclass(frozen=True)
class Detection:
    condition: str
    selections: Dict[str, Selection] = field(default_factory=dict)
    timeframe: Optional[str] = None

    def selection_names(self) -> List[str]:
        return list(self.selections.keys())

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {name: selection.to_raw() for name, selection in self.selections.items()}
        if self.timeframe is not None:
            data["timeframe"] = self.timeframe
        data["condition"] = self.condition
        return data


@dataclass(frozen=True)
class RuleDocument:
    title: str
    id: str
    logsource: LogSource
    detection: Detection
    level: str = DEFAULT_LEVEL
    status: str = DEFAULT_STATUS
    tags: Tuple[str, ...] = ()
    author: Optional[str] = None
    description: Optional[str] = None
    date: Optional[str] = None
    references: Tuple[str, ...] = ()
    falsepositives: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        """Normalized form, in the key order Sigma authors usually write."""
        data: Dict[str, Any] = {"title": self.title, "id": self.id, "status": self.status}
        if self.description is not None:
            data["description"] = self.description
        if self.author is not None:
            data["author"] = self.author
        if self.date is not None:
            data["date"] = self.date
        if self.references:
            data["references"] = list(self.references)
        if self.tags:
            data["tags"] = list(self.tags)
        data["logsource"] = self.logsource.to_dict()
        data["detection"] = self.detection.to_dict()
        if self.falsepositives:
            data["falsepositives"] = list(self.falsepositives)
        data["level"] = self.level
        return data

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_dict(), sort_keys=False, allow_unicode=True, default_flow_style=False)
