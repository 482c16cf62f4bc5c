from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Optional

from redis.exceptions import LockError

from alerts.models import AlertRule, Firing

logger = logging.getLogger(__name__)

LOCK_PREFIX = "logward:alert-rule-lock"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def redis_rule_lock_factory(client: Any, timeout: int = 120, prefix: str = LOCK_PREFIX) -> Callable[[str], Any]:
    """Per-rule Redis locks, so two scheduler processes never check one rule at once."""

    def factory(rule_id: str) -> Any:
        return client.lock(f"{prefix}:{rule_id}", timeout=timeout)

    return factory


class AlertThresholdEvaluator:
    """
    Counts qualifying logs for each alert rule and records a firing when the
    threshold is reached.

    Counting starts at the later of the last firing and the window start, so
    logs that already contributed to a firing are never counted again even
    when the rolling window still covers them.
    """

    def __init__(self, store: Any, clock: Callable[[], datetime] = utcnow, lock_factory: Optional[Callable[[str], Any]] = None):
        self.store = store
        self.clock = clock
        self.lock_factory = lock_factory

    def _count_from(self, rule: AlertRule, now: datetime) -> datetime:
        window_start = now - timedelta(minutes=rule.time_window)
        last_trigger = self.store.last_history_for(rule.id)
        if last_trigger is None:
            return window_start
        return max(last_trigger, window_start)

    def _scope(self, rule: AlertRule) -> List[str]:
        if rule.project_id:
            return [rule.project_id]
        # Organization-wide rules only ever see their own organization's projects.
        return self.store.project_ids_for_organization(rule.organization_id)

    def _check(self, rule: AlertRule) -> Optional[Firing]:
        project_ids = self._scope(rule)
        if not project_ids:
            logger.debug(f"Organization {rule.organization_id} has no projects, skipping rule {rule.name!r}")
            return None

        now = self.clock()
        since = self._count_from(rule, now)
        # Logs stamped after `now` belong to the next check, which counts from `now`.
        count = self.store.count_logs(
            since=since, levels=rule.levels, service=rule.service, project_ids=project_ids, until=now
        )

        if count < rule.threshold:
            logger.debug(f"Rule {rule.name!r}: {count}/{rule.threshold} logs since {since.isoformat()}")
            return None

        history_id = self.store.insert_history(rule.id, count, now)
        logger.info(f"Alert rule {rule.name!r} fired: {count} logs (threshold {rule.threshold}, window {rule.time_window}m)")

        return Firing(
            history_id=history_id,
            rule_id=rule.id,
            rule_name=rule.name,
            organization_id=rule.organization_id,
            project_id=rule.project_id,
            log_count=count,
            threshold=rule.threshold,
            time_window=rule.time_window,
            email_recipients=tuple(rule.email_recipients),
            webhook_url=rule.webhook_url,
            triggered_at=now,
        )

    def check_rule(self, rule: AlertRule) -> Optional[Firing]:
        if self.lock_factory is None:
            return self._check(rule)

        lock = self.lock_factory(rule.id)
        if not lock.acquire(blocking=False):
            logger.info(f"Rule {rule.name!r} is being checked by another instance, skipping")
            return None
        try:
            return self._check(rule)
        finally:
            try:
                lock.release()
            except LockError as e:
                logger.warning(f"Lock for rule {rule.name!r} expired before release: {e}")

    def check_all_rules(self) -> List[Firing]:
        firings: List[Firing] = []
        rules = self.store.list_enabled_alert_rules()
        for rule in rules:
            try:
                firing = self.check_rule(rule)
            except Exception as e:
                logger.error(f"Error checking alert rule {rule.name!r} ({rule.id}): {e}", exc_info=True)
                continue
            if firing:
                firings.append(firing)

        logger.debug(f"Checked {len(rules)} alert rules, {len(firings)} fired")
        return firings
