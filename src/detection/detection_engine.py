from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from detection.condition import Node, evaluate_detection, parse_condition
from detection.field_matcher import _coerce_str, wildcard_match
from detection.mitre_mapper import MitreMapper
from detection.rule_model import LogSource, RuleDocument
from utils.errors import ConditionSyntaxError, EvaluationError

logger = logging.getLogger(__name__)

UNKNOWN = "unknown"

_ENTRY_FIELDS = ("time", "service", "level", "message", "metadata", "trace_id", "project_id", "id")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_time(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return _utcnow()


@dataclass
class LogEntry:
    time: datetime
    service: str
    level: str
    message: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    trace_id: Optional[str] = None
    project_id: Optional[str] = None
    id: Optional[str] = None
    # Any other top-level keys the ingestion side attached (e.g. product).
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LogEntry":
        metadata = data.get("metadata")
        return cls(
            time=_parse_time(data.get("time")),
            service=_coerce_str(data.get("service")),
            level=_coerce_str(data.get("level")),
            message=_coerce_str(data.get("message")),
            metadata=dict(metadata) if isinstance(metadata, dict) else {},
            trace_id=data.get("trace_id"),
            project_id=data.get("project_id"),
            id=data.get("id"),
            extra={k: v for k, v in data.items() if k not in _ENTRY_FIELDS},
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = dict(self.extra)
        data.update(
            {
                "time": self.time.isoformat(),
                "service": self.service,
                "level": self.level,
                "message": self.message,
                "metadata": self.metadata,
            }
        )
        for key in ("trace_id", "project_id", "id"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data


@dataclass(frozen=True)
class MatchedRule:
    rule_id: str
    rule_title: str
    rule_level: str
    rule_tags: Tuple[str, ...]
    matched_at: datetime
    mitre_techniques: Tuple[str, ...] = ()
    mitre_tactics: Tuple[str, ...] = ()


@dataclass
class DetectionResult:
    matched: bool = False
    matches: List[MatchedRule] = field(default_factory=list)


@dataclass(frozen=True)
class CompiledRule:
    rule: RuleDocument
    condition: Node
    mitre_techniques: Tuple[str, ...] = ()
    mitre_tactics: Tuple[str, ...] = ()


def _flat_value(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def _flatten_into(obj: Dict[str, Any], prefix: str, out: Dict[str, Any]) -> None:
    for key, value in obj.items():
        path = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, dict):
            _flatten_into(value, path, out)
        else:
            out[path] = _flat_value(value)


def flatten_log(entry: LogEntry) -> Dict[str, Any]:
    """
    Build the flat field map rules are matched against.

    Top-level scalars come first, then every metadata leaf as
    `metadata.<path>`, then each leaf again under its bare `<path>` unless
    that key is already taken. The entry itself is never modified.
    """
    flat: Dict[str, Any] = {}
    for key, value in entry.extra.items():
        if not isinstance(value, (dict, list)):
            flat[key] = _flat_value(value)

    flat["time"] = _flat_value(entry.time)
    flat["service"] = entry.service
    flat["level"] = entry.level
    flat["message"] = entry.message
    for key in ("trace_id", "project_id", "id"):
        value = getattr(entry, key)
        if value is not None:
            flat[key] = value

    if entry.metadata:
        nested: Dict[str, Any] = {}
        _flatten_into(entry.metadata, "", nested)
        for path, value in nested.items():
            flat[f"metadata.{path}"] = value
        for path, value in nested.items():
            if path not in flat:
                flat[path] = value

    return flat


def _dimension_matches(pattern: Optional[str], value: str) -> bool:
    if not pattern:
        return True
    value = value.lower()
    if value == UNKNOWN:
        # Unclassified logs are evaluated by every rule.
        return True
    return wildcard_match(value, pattern.lower())


def match_logsource(logsource: Optional[LogSource], entry: LogEntry) -> bool:
    if logsource is None or logsource.is_empty():
        return True

    service = _coerce_str(entry.service)
    product = _coerce_str(entry.metadata.get("product") or entry.extra.get("product"))
    category = _coerce_str(entry.metadata.get("category") or entry.extra.get("category") or entry.service)

    return (
        _dimension_matches(logsource.service, service)
        and _dimension_matches(logsource.product, product)
        and _dimension_matches(logsource.category, category)
    )


class DetectionEngine:
    """
    Evaluates logs against an organization's active Sigma rules.

    `rule_source` is anything with `list_active_detection_rules(org, project)`
    returning RuleDocuments; compiled rule sets are cached per scope for
    `rule_cache_ttl` seconds (0 disables the cache).
    """

    def __init__(
        self,
        rule_source: Any,
        case_sensitive: bool = False,
        rule_cache_ttl: float = 30,
        tag_mapper: Optional[MitreMapper] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.rule_source = rule_source
        self.case_sensitive = case_sensitive
        self.rule_cache_ttl = rule_cache_ttl
        self.tag_mapper = tag_mapper or MitreMapper()
        self._clock = clock
        self._cache: Dict[Tuple[str, Optional[str]], Tuple[float, List[CompiledRule]]] = {}
        self._lock = threading.Lock()

        self.logs_evaluated = 0
        self.rules_matched = 0
        self.evaluation_errors = 0

    def _compile(self, rule: RuleDocument) -> Optional[CompiledRule]:
        try:
            condition = parse_condition(rule.detection.condition)
        except ConditionSyntaxError as e:
            logger.warning(f"Skipping rule {rule.id} ({rule.title!r}): invalid condition {rule.detection.condition!r}: {e}")
            return None

        return CompiledRule(
            rule=rule,
            condition=condition,
            mitre_techniques=tuple(self.tag_mapper.extract_techniques(rule.tags)),
            mitre_tactics=tuple(self.tag_mapper.extract_tactics(rule.tags)),
        )

    def load_rules(self, organization_id: str, project_id: Optional[str] = None) -> List[CompiledRule]:
        key = (organization_id, project_id)
        now = self._clock()
        if self.rule_cache_ttl > 0:
            with self._lock:
                cached = self._cache.get(key)
                if cached and now - cached[0] < self.rule_cache_ttl:
                    return cached[1]

        documents = self.rule_source.list_active_detection_rules(organization_id, project_id)
        compiled: List[CompiledRule] = []
        for document in documents:
            rule = self._compile(document)
            if rule is not None:
                compiled.append(rule)

        logger.debug(f"Loaded {len(compiled)}/{len(documents)} detection rules for org {organization_id} (project: {project_id})")

        if self.rule_cache_ttl > 0:
            with self._lock:
                self._cache[key] = (now, compiled)
        return compiled

    def invalidate_cache(self, organization_id: Optional[str] = None) -> None:
        with self._lock:
            if organization_id is None:
                self._cache.clear()
                return
            for key in [k for k in self._cache if k[0] == organization_id]:
                del self._cache[key]

    def _rule_matches(self, compiled: CompiledRule, entry: LogEntry, flat: Dict[str, Any]) -> bool:
        try:
            if not match_logsource(compiled.rule.logsource, entry):
                return False
            return evaluate_detection(compiled.rule.detection, flat, self.case_sensitive, condition=compiled.condition)
        except Exception as e:
            raise EvaluationError(compiled.rule.id, str(e)) from e

    def _evaluate(self, rules: Sequence[CompiledRule], entry: LogEntry) -> DetectionResult:
        result = DetectionResult()
        self.logs_evaluated += 1
        if not rules:
            return result

        flat = flatten_log(entry)
        for compiled in rules:
            try:
                matched = self._rule_matches(compiled, entry, flat)
            except EvaluationError as e:
                self.evaluation_errors += 1
                logger.error(f"Error evaluating rule {compiled.rule.title!r}: {e}", exc_info=True)
                continue

            if matched:
                rule = compiled.rule
                result.matches.append(
                    MatchedRule(
                        rule_id=rule.id,
                        rule_title=rule.title,
                        rule_level=rule.level,
                        rule_tags=rule.tags,
                        matched_at=_utcnow(),
                        mitre_techniques=compiled.mitre_techniques,
                        mitre_tactics=compiled.mitre_tactics,
                    )
                )

        result.matched = bool(result.matches)
        self.rules_matched += len(result.matches)
        return result

    def evaluate_log(
        self, entry: Union[LogEntry, Dict[str, Any]], organization_id: str, project_id: Optional[str] = None
    ) -> DetectionResult:
        if not isinstance(entry, LogEntry):
            entry = LogEntry.from_dict(entry)
        rules = self.load_rules(organization_id, project_id)
        return self._evaluate(rules, entry)

    def evaluate_batch(
        self, entries: Iterable[Union[LogEntry, Dict[str, Any]]], organization_id: str, project_id: Optional[str] = None
    ) -> List[DetectionResult]:
        """Evaluate many logs against one rule load; results keep input order."""
        rules = self.load_rules(organization_id, project_id)
        results: List[DetectionResult] = []
        for entry in entries:
            if not isinstance(entry, LogEntry):
                entry = LogEntry.from_dict(entry)
            results.append(self._evaluate(rules, entry))
        return results

    def get_stats(self) -> Dict[str, Any]:
        return {
            "logs_evaluated": self.logs_evaluated,
            "rules_matched": self.rules_matched,
            "evaluation_errors": self.evaluation_errors,
            "cached_scopes": len(self._cache),
        }
