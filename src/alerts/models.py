from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple


@dataclass
class AlertRule:
    id: str
    organization_id: str
    name: str
    levels: List[str]
    threshold: int
    time_window: int  # minutes
    project_id: Optional[str] = None
    service: Optional[str] = None
    enabled: bool = True
    email_recipients: List[str] = field(default_factory=list)
    webhook_url: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def has_notification_targets(self) -> bool:
        return bool(self.email_recipients) or bool(self.webhook_url)


@dataclass(frozen=True)
class Firing:
    """One threshold breach; backed by exactly one alert_history row."""

    history_id: str
    rule_id: str
    rule_name: str
    organization_id: str
    project_id: Optional[str]
    log_count: int
    threshold: int
    time_window: int
    email_recipients: Tuple[str, ...]
    webhook_url: Optional[str]
    triggered_at: datetime


@dataclass(frozen=True)
class HistoryEntry:
    id: str
    rule_id: str
    triggered_at: datetime
    log_count: int
    notified: bool
    error: Optional[str] = None
