import uuid

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.sql import func

from storage.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class Project(Base):
    __tablename__ = "projects"

    id = Column(String(36), primary_key=True, default=_uuid)
    organization_id = Column(String(36), index=True, nullable=False)
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class LogRecord(Base):
    __tablename__ = "logs"

    id = Column(String(36), primary_key=True, default=_uuid)
    time = Column(DateTime(timezone=True), index=True, nullable=False)
    project_id = Column(String(36), ForeignKey("projects.id", ondelete="CASCADE"), index=True)
    service = Column(String(100), index=True, nullable=False)
    level = Column(String(20), index=True, nullable=False)
    message = Column(Text, nullable=False)
    # "metadata" is reserved on declarative classes.
    metadata_json = Column("metadata", JSON)
    trace_id = Column(String(64))
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class AlertRuleRecord(Base):
    __tablename__ = "alert_rules"

    id = Column(String(36), primary_key=True, default=_uuid)
    organization_id = Column(String(36), index=True, nullable=False)
    project_id = Column(String(36), ForeignKey("projects.id", ondelete="CASCADE"), index=True)
    name = Column(String(255), nullable=False)
    enabled = Column(Boolean, nullable=False, default=True, index=True)
    service = Column(String(100))
    levels = Column("level", JSON, nullable=False)
    threshold = Column(Integer, nullable=False)
    time_window = Column(Integer, nullable=False)  # minutes
    email_recipients = Column(JSON, nullable=False, default=list)
    webhook_url = Column(Text)
    metadata_json = Column("metadata", JSON)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class AlertHistoryRecord(Base):
    __tablename__ = "alert_history"

    id = Column(String(36), primary_key=True, default=_uuid)
    rule_id = Column(String(36), ForeignKey("alert_rules.id", ondelete="CASCADE"), index=True, nullable=False)
    triggered_at = Column(DateTime(timezone=True), index=True, nullable=False)
    log_count = Column(Integer, nullable=False)
    notified = Column(Boolean, nullable=False, default=False)
    error = Column(Text)


class DetectionRuleRecord(Base):
    __tablename__ = "detection_rules"

    id = Column(String(36), primary_key=True, default=_uuid)
    organization_id = Column(String(36), index=True, nullable=False)
    project_id = Column(String(36), ForeignKey("projects.id", ondelete="CASCADE"), index=True)

    sigma_id = Column(String(255), index=True)
    title = Column(Text, nullable=False)
    description = Column(Text)
    author = Column(Text)
    date = Column(String(32))
    level = Column(String(20), index=True)
    status = Column(String(20), index=True)
    logsource = Column(JSON)
    detection = Column(JSON)
    tags = Column(JSON, default=list)
    references = Column(JSON, default=list)
    falsepositives = Column(JSON, default=list)
    mitre_tactics = Column(JSON, default=list)
    mitre_techniques = Column(JSON, default=list)

    alert_rule_id = Column(String(36), ForeignKey("alert_rules.id", ondelete="SET NULL"))
    conversion_status = Column(String(20))  # success, partial, failed
    conversion_notes = Column(Text)

    email_recipients = Column(JSON, nullable=False, default=list)
    webhook_url = Column(Text)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
