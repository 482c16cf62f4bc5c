from __future__ import annotations

import datetime
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import yaml

from detection.condition import EvaluationContext, Identifier, Quantifier, iter_nodes, parse_condition, select_names
from detection.field_matcher import SUPPORTED_MODIFIERS, _coerce_str
from detection.rule_model import (
    DEFAULT_LEVEL,
    DEFAULT_STATUS,
    LEVELS,
    RESERVED_DETECTION_KEYS,
    STATUSES,
    Detection,
    FieldConstraint,
    FieldMapSelection,
    KeywordSelection,
    LogSource,
    RuleDocument,
    Selection,
)
from utils.errors import ConditionSyntaxError, RuleValidationError

logger = logging.getLogger(__name__)


@dataclass
class ParseResult:
    rule: Optional[RuleDocument]
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.rule is not None and not self.errors


def load_yaml(raw_text: str) -> Dict[str, Any]:
    """Parse rule text, failing closed with a single descriptive error."""
    try:
        doc = yaml.safe_load(raw_text)
    except yaml.YAMLError as e:
        raise RuleValidationError([f"YAML parsing failed: {e}"]) from e
    if not isinstance(doc, dict):
        raise RuleValidationError(["YAML parsing failed: Invalid YAML: expected object"])
    return doc


def _is_scalar(value: Any) -> bool:
    return value is None or isinstance(value, (str, int, float, bool, datetime.date))


def _validate_selection(name: str, body: Any) -> List[str]:
    errors: List[str] = []
    if body is None or _is_scalar(body):
        return errors

    if isinstance(body, list):
        for item in body:
            if not _is_scalar(item):
                errors.append(f'Unsupported selection shape in "{name}": keyword lists may only contain scalars')
                break
        return errors

    if isinstance(body, dict):
        for key, value in body.items():
            if isinstance(value, list):
                if not all(_is_scalar(item) for item in value):
                    errors.append(f'Unsupported value for "{name}.{key}": lists may only contain scalars')
            elif not _is_scalar(value):
                errors.append(f'Unsupported value for "{name}.{key}": expected a scalar or a list of scalars')
        return errors

    errors.append(f'Unsupported selection shape in "{name}"')
    return errors


def validate(raw: Dict[str, Any]) -> List[str]:
    errors: List[str] = []

    title = raw.get("title")
    if not isinstance(title, str) or not title.strip():
        errors.append('Missing or invalid "title" field')

    if not isinstance(raw.get("logsource"), dict):
        errors.append('Missing or invalid "logsource" field')

    detection = raw.get("detection")
    if not isinstance(detection, dict):
        errors.append('Missing or invalid "detection" field')
    else:
        condition = detection.get("condition")
        if isinstance(condition, list):
            condition = [c for c in condition if isinstance(c, str) and c.strip()]
        elif isinstance(condition, str):
            condition = condition.strip()
        if not condition:
            errors.append('Missing "detection.condition" field')

        for name, body in detection.items():
            if name in RESERVED_DETECTION_KEYS:
                continue
            errors.extend(_validate_selection(str(name), body))

    level = raw.get("level")
    if level and level not in LEVELS:
        errors.append(f'Invalid "level": {level}. Must be one of: {", ".join(LEVELS)}')

    status = raw.get("status")
    if status and status not in STATUSES:
        errors.append(f'Invalid "status": {status}. Must be one of: {", ".join(STATUSES)}')

    return errors


def _str_list(value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list):
        value = [value]
    return tuple(_coerce_str(item) for item in value if item is not None and _coerce_str(item) != "")


def _scalar(value: Any) -> Any:
    # YAML turns bare dates into date objects; rules compare them as text.
    if isinstance(value, datetime.date):
        return value.isoformat()
    return value


def _build_selection(body: Any) -> Selection:
    if body is None:
        return FieldMapSelection(constraints=())

    if isinstance(body, list):
        return KeywordSelection(keywords=tuple(_coerce_str(_scalar(item)) for item in body if item is not None))

    if isinstance(body, dict):
        constraints: List[FieldConstraint] = []
        for raw_key, value in body.items():
            parts = str(raw_key).split("|")
            field_name = parts[0].strip()
            modifier = "|".join(p.strip().lower() for p in parts[1:] if p.strip()) or None
            if isinstance(value, list):
                values = tuple(_scalar(item) for item in value)
                constraints.append(FieldConstraint(field_name, values, modifier, is_list=True))
            else:
                constraints.append(FieldConstraint(field_name, (_scalar(value),), modifier))
        return FieldMapSelection(constraints=tuple(constraints))

    return KeywordSelection(keywords=(_coerce_str(_scalar(body)),))


def _join_condition(condition: Any) -> str:
    if isinstance(condition, list):
        parts = [c.strip() for c in condition if isinstance(c, str) and c.strip()]
        if len(parts) == 1:
            return parts[0]
        return " or ".join(f"({part})" for part in parts)
    return _coerce_str(condition).strip()


def _logsource(raw: Dict[str, Any]) -> LogSource:
    def opt(key: str) -> Optional[str]:
        value = raw.get(key)
        if value is None:
            return None
        return _coerce_str(value)

    return LogSource(product=opt("product"), service=opt("service"), category=opt("category"), definition=opt("definition"))


def from_dict(raw: Dict[str, Any]) -> RuleDocument:
    """
    Build a normalized RuleDocument from an already validated mapping.

    Missing `id`, `level` and `status` get their defaults here, and every
    selection is resolved into its typed form once.
    """
    detection_raw = raw["detection"]
    selections: Dict[str, Selection] = {}
    for name, body in detection_raw.items():
        if name in RESERVED_DETECTION_KEYS:
            continue
        selections[str(name)] = _build_selection(body)

    timeframe = detection_raw.get("timeframe")
    detection = Detection(
        condition=_join_condition(detection_raw.get("condition")),
        selections=selections,
        timeframe=_coerce_str(timeframe) if timeframe is not None else None,
    )

    rule_id = _coerce_str(raw.get("id")).strip() or str(uuid.uuid4())
    date = raw.get("date")

    return RuleDocument(
        title=raw["title"].strip(),
        id=rule_id,
        logsource=_logsource(raw.get("logsource") or {}),
        detection=detection,
        level=raw.get("level") or DEFAULT_LEVEL,
        status=raw.get("status") or DEFAULT_STATUS,
        tags=_str_list(raw.get("tags")),
        author=_coerce_str(raw["author"]) if raw.get("author") is not None else None,
        description=_coerce_str(raw["description"]) if raw.get("description") is not None else None,
        date=_coerce_str(_scalar(date)) if date is not None else None,
        references=_str_list(raw.get("references")),
        falsepositives=_str_list(raw.get("falsepositives")),
    )


def lint(rule: RuleDocument) -> List[str]:
    """Problems that do not block import but will keep the rule from matching."""
    warnings: List[str] = []

    for name, selection in rule.detection.selections.items():
        if not isinstance(selection, FieldMapSelection):
            continue
        for constraint in selection.constraints:
            if constraint.modifier and constraint.modifier not in SUPPORTED_MODIFIERS:
                warnings.append(
                    f'Unsupported modifier "{constraint.modifier}" on "{name}.{constraint.field}"; the constraint never matches'
                )

    try:
        tree = parse_condition(rule.detection.condition)
    except ConditionSyntaxError as e:
        warnings.append(f"Invalid condition {rule.detection.condition!r}: {e}")
        return warnings

    ctx = EvaluationContext(rule.detection.selection_names(), lambda name: False)
    for node in iter_nodes(tree):
        if isinstance(node, Quantifier):
            if not select_names(node.pattern, ctx.names):
                warnings.append(f'Pattern "{node.pattern}" in condition matches no selection')
        elif isinstance(node, Identifier) and ctx.lookup(node.name) is None:
            warnings.append(f'Condition references unknown selection "{node.name}"')

    return warnings


def parse(raw_text: str) -> ParseResult:
    """
    Parse, validate and normalize one rule document.

    Returns either a rule with no errors or no rule with every error found.
    """
    try:
        raw = load_yaml(raw_text)
    except RuleValidationError as e:
        return ParseResult(rule=None, errors=e.errors)

    errors = validate(raw)
    if errors:
        return ParseResult(rule=None, errors=errors)

    rule = from_dict(raw)
    warnings = lint(rule)
    for warning in warnings:
        logger.debug(f"Rule {rule.id} ({rule.title!r}): {warning}")
    return ParseResult(rule=rule, warnings=warnings)


def parse_or_raise(raw_text: str) -> RuleDocument:
    result = parse(raw_text)
    if result.rule is None:
        raise RuleValidationError(result.errors)
    return result.rule
