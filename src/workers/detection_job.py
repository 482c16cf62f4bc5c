import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from detection.detection_engine import DetectionEngine, LogEntry, MatchedRule
from utils.errors import DispatchError
from workers.notification_queue import NotificationJob, QueuedJob, RedisJobQueue, consume

logger = logging.getLogger(__name__)


@dataclass
class DetectionJob:
    organization_id: str
    logs: List[Dict[str, Any]] = field(default_factory=list)
    project_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DetectionJob":
        return cls(
            organization_id=str(data["organization_id"]),
            logs=list(data.get("logs") or []),
            project_id=data.get("project_id"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"organization_id": self.organization_id, "project_id": self.project_id, "logs": self.logs}


def submit_detection(queue: RedisJobQueue, logs: List[LogEntry], organization_id: str, project_id: Optional[str] = None) -> str:
    job = DetectionJob(organization_id=organization_id, project_id=project_id, logs=[entry.to_dict() for entry in logs])
    return queue.enqueue(job.to_dict())


class DetectionJobProcessor:
    """
    Evaluates queued log batches and turns rule matches into notifications.

    Matches are grouped per rule; a rule with email or webhook targets gets
    one notification per batch, a rule without targets is detection-only.
    """

    def __init__(self, engine: DetectionEngine, store: Any, notification_queue: RedisJobQueue):
        self.engine = engine
        self.store = store
        self.notification_queue = notification_queue

    def _notify(self, job: DetectionJob, rule_id: str, matches: List[MatchedRule], source_id: Optional[str]) -> Optional[NotificationJob]:
        first = matches[0]
        stored = self.store.get_detection_rule(job.organization_id, rule_id)
        if stored is None:
            logger.warning(f"Detection rule not found: {rule_id}")
            return None

        logger.info(f"Detection rule matched: {first.rule_title} ({len(matches)} matches, level: {first.rule_level})")

        if not stored.has_notification_targets:
            logger.info(f"Detection rule {first.rule_title!r} matched but has no notification settings (detection-only mode)")
            return None

        notification = NotificationJob(
            # Keyed on the queued batch so a redelivered batch is deduplicated downstream.
            job_id=f"sigma:{source_id}:{stored.id}" if source_id else str(uuid.uuid4()),
            history_id=None,
            rule_id=stored.id,
            rule_name=f"[Sigma] {first.rule_title}",
            organization_id=job.organization_id,
            project_id=job.project_id,
            log_count=len(matches),
            threshold=1,
            time_window=1,
            email_recipients=list(stored.email_recipients),
            webhook_url=stored.webhook_url,
        )
        self.notification_queue.enqueue(notification.to_dict(), job_id=notification.job_id)
        logger.info(f"Queued notification for: {first.rule_title}")
        return notification

    def process(self, job: DetectionJob, source_id: Optional[str] = None) -> List[NotificationJob]:
        logger.info(f"Processing {len(job.logs)} logs for org {job.organization_id}")
        results = self.engine.evaluate_batch(job.logs, job.organization_id, job.project_id)

        matches_by_rule: Dict[str, List[MatchedRule]] = {}
        for result in results:
            for match in result.matches:
                matches_by_rule.setdefault(match.rule_id, []).append(match)

        if not matches_by_rule:
            logger.debug("No detection matches found")
            return []

        total = sum(len(matches) for matches in matches_by_rule.values())
        logger.info(f"Found {total} matches across {len(job.logs)} logs")

        queued: List[NotificationJob] = []
        for rule_id, matches in matches_by_rule.items():
            try:
                notification = self._notify(job, rule_id, matches, source_id)
            except DispatchError as e:
                logger.error(f"Failed to queue notification for {matches[0].rule_title!r}: {e}")
                continue
            except Exception as e:
                logger.error(f"Error processing detection rule {rule_id}: {e}", exc_info=True)
                continue
            if notification:
                queued.append(notification)

        return queued

    def handle(self, queued: QueuedJob) -> None:
        self.process(DetectionJob.from_dict(queued.data), source_id=queued.id)

    def run_forever(self, queue: RedisJobQueue, stop_event: Optional[threading.Event] = None, block_timeout: float = 5) -> None:
        consume(queue, self.handle, stop_event or threading.Event(), block_timeout)
