from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from detection.rule_model import RuleDocument

logger = logging.getLogger(__name__)

# Categories whose logs arrive under many service names; never filter them by service.
GENERIC_CATEGORIES = ("webserver", "proxy", "firewall", "dns", "antivirus")

# Content-based rules look at every severity the platform ingests.
ALL_LOG_LEVELS = ("debug", "info", "warn", "error", "critical")

# level -> (threshold, time window in minutes)
SEVERITY_THRESHOLDS: Dict[str, Tuple[int, int]] = {
    "critical": (1, 60),
    "high": (3, 300),
    "medium": (5, 600),
    "low": (10, 1800),
    "informational": (20, 3600),
}


@dataclass
class AlertRuleDraft:
    name: str
    levels: List[str]
    threshold: int
    time_window: int
    service: Optional[str] = None
    enabled: bool = True
    email_recipients: List[str] = field(default_factory=list)
    webhook_url: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ConversionResult:
    success: bool
    alert_rule: Optional[AlertRuleDraft] = None
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    notes: str = ""


class SigmaConverter:
    """Derives a threshold alert rule and human readable notes from a Sigma rule."""

    def extract_service(self, rule: RuleDocument) -> Optional[str]:
        logsource = rule.logsource
        if logsource.category in GENERIC_CATEGORIES:
            return None
        return logsource.service or logsource.product

    def severity_threshold(self, level: str) -> Tuple[int, int]:
        return SEVERITY_THRESHOLDS.get(level, SEVERITY_THRESHOLDS["medium"])

    def extract_detection_keywords(self, rule: RuleDocument) -> List[str]:
        keywords: List[str] = []

        def extract(obj: Any) -> None:
            if isinstance(obj, str):
                keywords.append(obj)
            elif isinstance(obj, list):
                for item in obj:
                    extract(item)
            elif isinstance(obj, dict):
                for value in obj.values():
                    extract(value)

        for selection in rule.detection.selections.values():
            extract(selection.to_raw())

        return list(dict.fromkeys(keywords))

    def advanced_features(self, rule: RuleDocument) -> List[str]:
        features: List[str] = []
        condition = rule.detection.condition.lower()
        if any(token in condition for token in ("and", "or", "not", "1 of", "all of")):
            features.append("complex conditions (AND/OR/NOT)")

        detection_text = json.dumps(rule.detection.to_dict(), default=str)
        if "|contains" in detection_text or "|endswith" in detection_text:
            features.append("field modifiers (contains, endswith, etc.)")
        if "*" in detection_text or "?" in detection_text:
            features.append("wildcards (* and ?)")
        if "|re" in detection_text:
            features.append("regex patterns")
        return features

    def build_notes(self, rule: RuleDocument, warnings: Sequence[str], features: Sequence[str]) -> str:
        notes = [f'Converted Sigma rule "{rule.title}" (level: {rule.level}).']
        notes.append(
            "The detection engine evaluates this rule against every incoming log "
            "and sends email and webhook notifications when it matches."
        )
        if features:
            notes.append(f"Advanced features detected: {', '.join(features)}")
        if warnings:
            notes.append("Notes:\n" + "\n".join(f"- {w}" for w in warnings))
        return "\n".join(notes)

    def convert(self, rule: RuleDocument, email_recipients: Sequence[str] = (), webhook_url: Optional[str] = None) -> ConversionResult:
        warnings: List[str] = []
        try:
            service = self.extract_service(rule)
            if not service:
                warnings.append("No service found in logsource. Alert will apply to all services.")

            threshold, time_window = self.severity_threshold(rule.level)
            features = self.advanced_features(rule)

            draft = AlertRuleDraft(
                name=rule.title,
                service=service,
                levels=list(ALL_LOG_LEVELS),
                threshold=threshold,
                time_window=time_window,
                email_recipients=list(email_recipients),
                webhook_url=webhook_url,
                metadata={
                    "sigma_id": rule.id,
                    "sigma_title": rule.title,
                    "sigma_level": rule.level,
                    "sigma_status": rule.status,
                    "sigma_author": rule.author,
                    "sigma_description": rule.description,
                    "sigma_tags": list(rule.tags),
                    "sigma_references": list(rule.references),
                    "detection_keywords": self.extract_detection_keywords(rule),
                    "logsource": rule.logsource.to_dict(),
                },
            )
        except (TypeError, ValueError, KeyError) as e:
            logger.error(f"Conversion of rule {rule.id} failed: {e}", exc_info=True)
            return ConversionResult(success=False, warnings=warnings, errors=[f"Conversion failed: {e}"], notes="Conversion failed")

        return ConversionResult(
            success=True,
            alert_rule=draft,
            warnings=warnings,
            notes=self.build_notes(rule, warnings, features),
        )
