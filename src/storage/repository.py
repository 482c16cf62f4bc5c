from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import func, or_
from sqlalchemy.orm import sessionmaker

from alerts.models import AlertRule, HistoryEntry
from detection.detection_engine import LogEntry
from detection.rule_model import RuleDocument
from detection.rule_parser import from_dict, validate
from storage.models import AlertHistoryRecord, AlertRuleRecord, DetectionRuleRecord, LogRecord, Project

logger = logging.getLogger(__name__)

ACTIVE_CONVERSION_STATUSES = ("success", "partial")


def _ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class StoredDetectionRule:
    """Persisted detection rule with its notification settings."""

    id: str
    sigma_id: Optional[str]
    organization_id: str
    project_id: Optional[str]
    title: str
    level: Optional[str]
    email_recipients: List[str] = field(default_factory=list)
    webhook_url: Optional[str] = None

    @property
    def has_notification_targets(self) -> bool:
        return bool(self.email_recipients) or bool(self.webhook_url)


def _to_alert_rule(row: AlertRuleRecord) -> AlertRule:
    return AlertRule(
        id=row.id,
        organization_id=row.organization_id,
        project_id=row.project_id,
        name=row.name,
        enabled=bool(row.enabled),
        service=row.service,
        levels=list(row.levels or []),
        threshold=row.threshold,
        time_window=row.time_window,
        email_recipients=list(row.email_recipients or []),
        webhook_url=row.webhook_url,
        metadata=dict(row.metadata_json or {}),
    )


def _to_rule_document(row: DetectionRuleRecord) -> Optional[RuleDocument]:
    raw: Dict[str, Any] = {
        "title": row.title,
        "id": row.sigma_id or row.id,
        "logsource": row.logsource or {},
        "detection": row.detection,
        "level": row.level,
        "status": row.status,
        "tags": row.tags or [],
        "references": row.references or [],
        "falsepositives": row.falsepositives or [],
        "author": row.author,
        "description": row.description,
        "date": row.date,
    }
    errors = validate(raw)
    if errors:
        logger.warning(f"Stored detection rule {row.id} is invalid and will be ignored: {errors}")
        return None
    return from_dict(raw)


class SqlStore:
    """
    Relational boundary used by the detection engine, the threshold
    evaluator and the notification worker. Each call runs in its own session.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    # -- projects -----------------------------------------------------------

    def create_project(self, organization_id: str, name: str) -> str:
        db = self.session_factory()
        try:
            project = Project(organization_id=organization_id, name=name)
            db.add(project)
            db.commit()
            return project.id
        finally:
            db.close()

    def project_ids_for_organization(self, organization_id: str) -> List[str]:
        db = self.session_factory()
        try:
            rows = db.query(Project.id).filter(Project.organization_id == organization_id).all()
            return [row[0] for row in rows]
        finally:
            db.close()

    # -- logs ---------------------------------------------------------------

    def insert_logs(self, entries: Iterable[LogEntry], project_id: Optional[str] = None) -> int:
        db = self.session_factory()
        try:
            count = 0
            for entry in entries:
                record = LogRecord(
                    time=_ensure_utc(entry.time),
                    project_id=entry.project_id or project_id,
                    service=entry.service or "unknown",
                    level=entry.level,
                    message=entry.message,
                    metadata_json=entry.metadata or None,
                    trace_id=entry.trace_id,
                )
                if entry.id:
                    record.id = entry.id
                db.add(record)
                count += 1
            db.commit()
            return count
        finally:
            db.close()

    def count_logs(
        self,
        since: datetime,
        levels: Sequence[str],
        service: Optional[str],
        project_ids: Sequence[str],
        until: Optional[datetime] = None,
    ) -> int:
        """
        Count logs in (`since`, `until`] in the given projects.

        When `service` is set, logs whose service is "unknown" are counted too.
        """
        if not levels or not project_ids:
            return 0

        db = self.session_factory()
        try:
            query = db.query(func.count(LogRecord.id)).filter(
                LogRecord.time > _ensure_utc(since),
                LogRecord.level.in_(list(levels)),
                LogRecord.project_id.in_(list(project_ids)),
            )
            if until is not None:
                query = query.filter(LogRecord.time <= _ensure_utc(until))
            if service:
                query = query.filter(or_(LogRecord.service == service, LogRecord.service == "unknown"))
            return int(query.scalar() or 0)
        finally:
            db.close()

    # -- alert rules and history -------------------------------------------

    def create_alert_rule(
        self,
        organization_id: str,
        name: str,
        levels: Sequence[str],
        threshold: int,
        time_window: int,
        project_id: Optional[str] = None,
        service: Optional[str] = None,
        enabled: bool = True,
        email_recipients: Sequence[str] = (),
        webhook_url: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AlertRule:
        db = self.session_factory()
        try:
            row = AlertRuleRecord(
                organization_id=organization_id,
                project_id=project_id,
                name=name,
                enabled=enabled,
                service=service,
                levels=list(levels),
                threshold=threshold,
                time_window=time_window,
                email_recipients=list(email_recipients),
                webhook_url=webhook_url,
                metadata_json=metadata,
            )
            db.add(row)
            db.commit()
            return _to_alert_rule(row)
        finally:
            db.close()

    def list_enabled_alert_rules(
        self, organization_id: Optional[str] = None, project_id: Optional[str] = None
    ) -> List[AlertRule]:
        db = self.session_factory()
        try:
            query = db.query(AlertRuleRecord).filter(AlertRuleRecord.enabled.is_(True))
            if organization_id:
                query = query.filter(AlertRuleRecord.organization_id == organization_id)
            if project_id:
                query = query.filter(
                    or_(AlertRuleRecord.project_id == project_id, AlertRuleRecord.project_id.is_(None))
                )
            return [_to_alert_rule(row) for row in query.order_by(AlertRuleRecord.created_at).all()]
        finally:
            db.close()

    def insert_history(self, rule_id: str, log_count: int, triggered_at: datetime) -> str:
        db = self.session_factory()
        try:
            row = AlertHistoryRecord(rule_id=rule_id, log_count=log_count, triggered_at=_ensure_utc(triggered_at))
            db.add(row)
            db.commit()
            return row.id
        finally:
            db.close()

    def last_history_for(self, rule_id: str) -> Optional[datetime]:
        db = self.session_factory()
        try:
            row = (
                db.query(AlertHistoryRecord.triggered_at)
                .filter(AlertHistoryRecord.rule_id == rule_id)
                .order_by(AlertHistoryRecord.triggered_at.desc())
                .first()
            )
            return _ensure_utc(row[0]) if row else None
        finally:
            db.close()

    def history_for_rule(self, rule_id: str) -> List[HistoryEntry]:
        db = self.session_factory()
        try:
            rows = (
                db.query(AlertHistoryRecord)
                .filter(AlertHistoryRecord.rule_id == rule_id)
                .order_by(AlertHistoryRecord.triggered_at.desc())
                .all()
            )
            return [
                HistoryEntry(
                    id=row.id,
                    rule_id=row.rule_id,
                    triggered_at=_ensure_utc(row.triggered_at),
                    log_count=row.log_count,
                    notified=bool(row.notified),
                    error=row.error,
                )
                for row in rows
            ]
        finally:
            db.close()

    def mark_notified(self, history_id: str, error: Optional[str] = None) -> bool:
        db = self.session_factory()
        try:
            row = db.query(AlertHistoryRecord).filter(AlertHistoryRecord.id == history_id).first()
            if not row:
                logger.warning(f"Alert history {history_id} not found, cannot record notification result")
                return False
            row.notified = error is None
            row.error = error
            db.commit()
            return True
        finally:
            db.close()

    # -- detection rules ----------------------------------------------------

    def save_detection_rule(
        self,
        rule: RuleDocument,
        organization_id: str,
        project_id: Optional[str] = None,
        email_recipients: Sequence[str] = (),
        webhook_url: Optional[str] = None,
        conversion_status: str = "success",
        conversion_notes: Optional[str] = None,
        alert_rule_id: Optional[str] = None,
        mitre_tactics: Sequence[str] = (),
        mitre_techniques: Sequence[str] = (),
    ) -> str:
        db = self.session_factory()
        try:
            row = DetectionRuleRecord(
                organization_id=organization_id,
                project_id=project_id,
                sigma_id=rule.id,
                title=rule.title,
                description=rule.description,
                author=rule.author,
                date=rule.date,
                level=rule.level,
                status=rule.status,
                logsource=rule.logsource.to_dict(),
                detection=rule.detection.to_dict(),
                tags=list(rule.tags),
                references=list(rule.references),
                falsepositives=list(rule.falsepositives),
                mitre_tactics=list(mitre_tactics),
                mitre_techniques=list(mitre_techniques),
                alert_rule_id=alert_rule_id,
                conversion_status=conversion_status,
                conversion_notes=conversion_notes,
                email_recipients=list(email_recipients),
                webhook_url=webhook_url,
            )
            db.add(row)
            db.commit()
            return row.id
        finally:
            db.close()

    def list_active_detection_rules(self, organization_id: str, project_id: Optional[str] = None) -> List[RuleDocument]:
        db = self.session_factory()
        try:
            query = db.query(DetectionRuleRecord).filter(
                DetectionRuleRecord.organization_id == organization_id,
                DetectionRuleRecord.conversion_status.in_(ACTIVE_CONVERSION_STATUSES),
            )
            if project_id:
                query = query.filter(
                    or_(DetectionRuleRecord.project_id == project_id, DetectionRuleRecord.project_id.is_(None))
                )
            rows = query.order_by(DetectionRuleRecord.created_at).all()
        finally:
            db.close()

        documents = []
        for row in rows:
            document = _to_rule_document(row)
            if document is not None:
                documents.append(document)
        return documents

    def get_detection_rule(self, organization_id: str, rule_id: str) -> Optional[StoredDetectionRule]:
        """Look a rule up by its Sigma id, falling back to the row id."""
        db = self.session_factory()
        try:
            row = (
                db.query(DetectionRuleRecord)
                .filter(
                    DetectionRuleRecord.organization_id == organization_id,
                    or_(DetectionRuleRecord.sigma_id == rule_id, DetectionRuleRecord.id == rule_id),
                )
                .first()
            )
            if not row:
                return None
            return StoredDetectionRule(
                id=row.id,
                sigma_id=row.sigma_id,
                organization_id=row.organization_id,
                project_id=row.project_id,
                title=row.title,
                level=row.level,
                email_recipients=list(row.email_recipients or []),
                webhook_url=row.webhook_url,
            )
        finally:
            db.close()
