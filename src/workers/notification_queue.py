"""
Redis-list job queues.

A job is RPUSHed onto `<name>`, moved atomically onto `<name>:processing`
when a worker reserves it, and removed from there on ack. Anything left on
the processing list belongs to a worker that died mid-job and is pushed back
by `requeue_stale()` when the next worker starts, so delivery is
at-least-once and consumers must tolerate duplicates.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from redis.exceptions import RedisError

from alerts.models import Firing
from utils.errors import DispatchError

logger = logging.getLogger(__name__)


@dataclass
class NotificationJob:
    job_id: str
    rule_id: str
    rule_name: str
    organization_id: str
    log_count: int
    threshold: int
    time_window: int
    history_id: Optional[str] = None
    project_id: Optional[str] = None
    email_recipients: List[str] = field(default_factory=list)
    webhook_url: Optional[str] = None

    @classmethod
    def from_firing(cls, firing: Firing) -> "NotificationJob":
        return cls(
            # One job per history row, so a re-enqueued firing keeps its key.
            job_id=f"alert:{firing.history_id}",
            history_id=firing.history_id,
            rule_id=firing.rule_id,
            rule_name=firing.rule_name,
            organization_id=firing.organization_id,
            project_id=firing.project_id,
            log_count=firing.log_count,
            threshold=firing.threshold,
            time_window=firing.time_window,
            email_recipients=list(firing.email_recipients),
            webhook_url=firing.webhook_url,
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NotificationJob":
        return cls(
            job_id=str(data.get("job_id") or uuid.uuid4()),
            history_id=data.get("history_id"),
            rule_id=str(data["rule_id"]),
            rule_name=str(data["rule_name"]),
            organization_id=str(data.get("organization_id") or ""),
            project_id=data.get("project_id"),
            log_count=int(data.get("log_count", 0)),
            threshold=int(data.get("threshold", 0)),
            time_window=int(data.get("time_window", 0)),
            email_recipients=list(data.get("email_recipients") or []),
            webhook_url=data.get("webhook_url"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "history_id": self.history_id,
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "organization_id": self.organization_id,
            "project_id": self.project_id,
            "log_count": self.log_count,
            "threshold": self.threshold,
            "time_window": self.time_window,
            "email_recipients": list(self.email_recipients),
            "webhook_url": self.webhook_url,
        }


@dataclass
class QueuedJob:
    id: str
    data: Dict[str, Any]
    attempts: int
    raw: str


class RedisJobQueue:
    def __init__(self, client: Any, name: str, max_attempts: int = 3):
        self.client = client
        self.name = name
        self.processing_name = f"{name}:processing"
        self.max_attempts = max_attempts

    @staticmethod
    def _encode(job_id: str, data: Dict[str, Any], attempts: int) -> str:
        return json.dumps({"id": job_id, "attempts": attempts, "data": data}, default=str)

    def enqueue(self, data: Dict[str, Any], job_id: Optional[str] = None, attempts: int = 0) -> str:
        job_id = job_id or data.get("job_id") or str(uuid.uuid4())
        try:
            self.client.rpush(self.name, self._encode(job_id, data, attempts))
        except RedisError as e:
            raise DispatchError(f"Failed to enqueue job on {self.name}: {e}", job_id=job_id) from e
        logger.debug(f"Enqueued job {job_id} on {self.name}")
        return job_id

    def reserve(self, timeout: float = 5) -> Optional[QueuedJob]:
        raw = self.client.blmove(self.name, self.processing_name, timeout, "LEFT", "RIGHT")
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        try:
            envelope = json.loads(raw)
            return QueuedJob(id=envelope["id"], data=envelope["data"], attempts=int(envelope.get("attempts", 0)), raw=raw)
        except (ValueError, KeyError, TypeError) as e:
            logger.error(f"Dropping malformed job from {self.name}: {e}")
            self.client.lrem(self.processing_name, 1, raw)
            return None

    def ack(self, job: QueuedJob) -> None:
        self.client.lrem(self.processing_name, 1, job.raw)

    def retry(self, job: QueuedJob) -> bool:
        """Re-enqueue a failed job; returns False once it has used all attempts."""
        self.ack(job)
        attempts = job.attempts + 1
        if attempts >= self.max_attempts:
            logger.error(f"Job {job.id} on {self.name} failed {attempts} times, giving up")
            return False
        self.client.rpush(self.name, self._encode(job.id, job.data, attempts))
        logger.info(f"Job {job.id} on {self.name} requeued (attempt {attempts + 1}/{self.max_attempts})")
        return True

    def requeue_stale(self) -> int:
        moved = 0
        while self.client.lmove(self.processing_name, self.name, "LEFT", "RIGHT") is not None:
            moved += 1
        if moved:
            logger.warning(f"Requeued {moved} unacknowledged job(s) on {self.name}")
        return moved

    def size(self) -> int:
        return int(self.client.llen(self.name))


def consume(queue: RedisJobQueue, handler: Callable[[QueuedJob], None], stop_event: threading.Event, block_timeout: float = 5) -> None:
    """Reserve and handle jobs until `stop_event` is set. Failed jobs are retried."""
    queue.requeue_stale()
    logger.info(f"Consuming {queue.name}")

    while not stop_event.is_set():
        try:
            job = queue.reserve(timeout=block_timeout)
        except RedisError as e:
            logger.error(f"Error reserving job from {queue.name}: {e}")
            stop_event.wait(block_timeout)
            continue

        if job is None:
            continue

        try:
            handler(job)
        except Exception as e:
            logger.error(f"Job {job.id} on {queue.name} failed: {e}", exc_info=True)
            queue.retry(job)
            continue

        queue.ack(job)

    logger.info(f"Stopped consuming {queue.name}")
