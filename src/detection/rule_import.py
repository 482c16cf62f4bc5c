import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence

from detection.converter import SigmaConverter
from detection.mitre_mapper import MitreMapper
from detection.rule_model import RuleDocument
from detection.rule_parser import parse

logger = logging.getLogger(__name__)


@dataclass
class ImportResult:
    rule: Optional[RuleDocument] = None
    record_id: Optional[str] = None
    alert_rule_id: Optional[str] = None
    conversion_status: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.record_id is not None and not self.errors


class RuleImportService:
    """Parses a Sigma document and stores it as an active detection rule."""

    def __init__(self, store: Any, converter: Optional[SigmaConverter] = None, tag_mapper: Optional[MitreMapper] = None):
        self.store = store
        self.converter = converter or SigmaConverter()
        self.tag_mapper = tag_mapper or MitreMapper()

    def import_rule(
        self,
        raw_text: str,
        organization_id: str,
        project_id: Optional[str] = None,
        email_recipients: Sequence[str] = (),
        webhook_url: Optional[str] = None,
        create_alert_rule: bool = False,
    ) -> ImportResult:
        parsed = parse(raw_text)
        if parsed.rule is None:
            logger.warning(f"Rejected Sigma rule for org {organization_id}: {parsed.errors}")
            return ImportResult(errors=parsed.errors)

        rule = parsed.rule
        conversion = self.converter.convert(rule, email_recipients, webhook_url)
        warnings = list(parsed.warnings) + list(conversion.warnings)

        # A rule with lint warnings is stored but may never match as written.
        status = "partial" if parsed.warnings else "success"

        alert_rule_id = None
        if create_alert_rule:
            if conversion.alert_rule is None:
                return ImportResult(rule=rule, warnings=warnings, errors=conversion.errors)
            draft = conversion.alert_rule
            alert_rule = self.store.create_alert_rule(
                organization_id=organization_id,
                project_id=project_id,
                name=draft.name,
                levels=draft.levels,
                threshold=draft.threshold,
                time_window=draft.time_window,
                service=draft.service,
                enabled=draft.enabled,
                email_recipients=draft.email_recipients,
                webhook_url=draft.webhook_url,
                metadata=draft.metadata,
            )
            alert_rule_id = alert_rule.id

        record_id = self.store.save_detection_rule(
            rule,
            organization_id=organization_id,
            project_id=project_id,
            email_recipients=email_recipients,
            webhook_url=webhook_url,
            conversion_status=status,
            conversion_notes=conversion.notes,
            alert_rule_id=alert_rule_id,
            mitre_tactics=self.tag_mapper.extract_tactics(rule.tags),
            mitre_techniques=self.tag_mapper.extract_techniques(rule.tags),
        )

        logger.info(f"Imported Sigma rule {rule.title!r} ({rule.id}) for org {organization_id} as {status}")
        return ImportResult(
            rule=rule,
            record_id=record_id,
            alert_rule_id=alert_rule_id,
            conversion_status=status,
            warnings=warnings,
        )
