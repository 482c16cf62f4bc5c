import logging
import smtplib
import threading
import time
from datetime import datetime, timezone
from email.message import EmailMessage
from typing import Any, Dict, List, Optional

import requests

from utils.deduplication import AlertDeduplicator
from utils.errors import DispatchError
from workers.notification_queue import NotificationJob, QueuedJob, RedisJobQueue, consume

logger = logging.getLogger(__name__)


class NotificationWorker:
    """
    Delivers notification jobs by email and webhook and records the outcome
    on the alert history row.

    Jobs arrive at least once; a job whose key was already delivered is
    skipped so redelivery never sends twice.
    """

    def __init__(self, store: Any, deduplicator: Optional[AlertDeduplicator] = None,
                 smtp_config: Optional[Dict[str, Any]] = None, webhook_timeout: float = 10,
                 max_retries: int = 3, retry_delay: float = 1):
        self.store = store
        self.deduplicator = deduplicator
        self.smtp_config = smtp_config or {}
        self.webhook_timeout = webhook_timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay

        smtp_status = "configured" if self.smtp_config.get('host') else "not configured"
        logger.info(f"Notification worker initialized (SMTP: {smtp_status}, webhook retries: {self.max_retries})")

    def _render_text(self, job: NotificationJob, triggered_at: datetime) -> str:
        return (
            f"Alert Triggered: {job.rule_name}\n\n"
            f"Alert Details:\n"
            f"- Log Count: {job.log_count}\n"
            f"- Threshold: {job.threshold}\n"
            f"- Time Window: {job.time_window} minutes\n"
            f"- Triggered At: {triggered_at.isoformat()}\n\n"
            f"{job.log_count} logs were recorded in the last {job.time_window} minutes, "
            f"reaching the threshold of {job.threshold}.\n"
        )

    def _send_email(self, job: NotificationJob) -> None:
        host = self.smtp_config.get('host')
        if not host:
            raise DispatchError("Email transporter not configured", job_id=job.job_id)

        message = EmailMessage()
        message['Subject'] = f"Alert: {job.rule_name}"
        message['From'] = self.smtp_config.get('from') or self.smtp_config.get('user') or 'alerts@localhost'
        message['To'] = ', '.join(job.email_recipients)
        message.set_content(self._render_text(job, datetime.now(timezone.utc)))

        port = int(self.smtp_config.get('port', 587))
        with smtplib.SMTP(host, port, timeout=self.webhook_timeout) as smtp:
            if self.smtp_config.get('use_tls', True):
                smtp.starttls()
            if self.smtp_config.get('user'):
                smtp.login(self.smtp_config['user'], self.smtp_config.get('password') or '')
            smtp.send_message(message)

        logger.info(f"Email sent to: {', '.join(job.email_recipients)}")

    def _send_with_retry(self, url: str, payload: Dict[str, Any], rule_name: str) -> None:
        """
        Send webhook with exponential backoff retry.

        Client errors (4xx) are not retried.

        Raises:
            DispatchError: when every attempt failed
        """
        retry_delay = self.retry_delay
        last_error = "no attempts made"

        for attempt in range(self.max_retries):
            try:
                logger.debug(f"Sending webhook (attempt {attempt + 1}/{self.max_retries}): {rule_name}")

                response = requests.post(
                    url,
                    json=payload,
                    headers={'Content-Type': 'application/json'},
                    timeout=self.webhook_timeout
                )

                if 200 <= response.status_code < 300:
                    logger.info(f"Webhook sent successfully: {rule_name}")
                    return

                last_error = f"HTTP {response.status_code} {response.reason or ''}".strip()
                logger.warning(f"Webhook failed with status {response.status_code}: {response.text}")

                # Don't retry on 4xx errors (client errors)
                if 400 <= response.status_code < 500:
                    logger.error(f"Client error, not retrying: {rule_name}")
                    break

            except requests.exceptions.Timeout:
                last_error = "timeout"
                logger.warning(f"Webhook timeout (attempt {attempt + 1}/{self.max_retries}): {rule_name}")
            except requests.exceptions.ConnectionError:
                last_error = "connection error"
                logger.warning(f"Connection error (attempt {attempt + 1}/{self.max_retries}): {rule_name}")
            except requests.exceptions.RequestException as e:
                last_error = str(e)
                logger.error(f"Unexpected error sending webhook: {e}")

            # Retry with exponential backoff
            if attempt < self.max_retries - 1:
                logger.info(f"Retrying in {retry_delay} seconds...")
                time.sleep(retry_delay)
                retry_delay *= 2

        raise DispatchError(f"Webhook request failed: {last_error}")

    def process(self, job: NotificationJob) -> Optional[str]:
        """
        Deliver one job. Returns the combined channel error, or None on success.
        """
        if self.deduplicator and self.deduplicator.already_delivered(job.job_id):
            logger.info(f"Skipping already delivered notification: {job.rule_name} ({job.job_id})")
            return None

        logger.info(f"Processing alert notification: {job.rule_name}")
        errors: List[str] = []

        if job.email_recipients:
            try:
                self._send_email(job)
            except (DispatchError, smtplib.SMTPException, OSError) as e:
                errors.append(f"Email failed: {e}")
                logger.error(f"Email failed for {job.rule_name}: {e}")
        else:
            logger.debug(f"No email recipients configured for: {job.rule_name}")

        if job.webhook_url:
            payload = {
                'alert_name': job.rule_name,
                'log_count': job.log_count,
                'threshold': job.threshold,
                'time_window': job.time_window,
                'timestamp': datetime.now(timezone.utc).isoformat(),
            }
            try:
                self._send_with_retry(job.webhook_url, payload, job.rule_name)
            except DispatchError as e:
                errors.append(f"Webhook failed: {e}")
        else:
            logger.debug(f"No webhook configured for: {job.rule_name}")

        error = '; '.join(errors) if errors else None

        if job.history_id:
            self.store.mark_notified(job.history_id, error)

        if error is None and self.deduplicator:
            self.deduplicator.record_delivery(job.job_id)

        logger.info(f"Alert notification processed: {job.rule_name}" + (f" (errors: {error})" if error else ""))
        return error

    def handle(self, queued: QueuedJob) -> None:
        self.process(NotificationJob.from_dict(queued.data))

    def run_forever(self, queue: RedisJobQueue, stop_event: Optional[threading.Event] = None, block_timeout: float = 5) -> None:
        consume(queue, self.handle, stop_event or threading.Event(), block_timeout)
