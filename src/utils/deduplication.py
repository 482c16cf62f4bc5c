import hashlib
import logging
import time
from typing import Any, Dict, Optional

from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

KEY_PREFIX = "notification_delivered:"


class AlertDeduplicator:
    """
    Delivery ledger for notification jobs.

    A job key recorded here is reported as delivered for `window_seconds`,
    so a job redelivered by the queue does not notify twice. Entries live in
    Redis when a client is supplied (shared by every worker process) and in
    a process-local dict otherwise; a failing Redis call degrades to the
    local dict for that call.
    """

    def __init__(self, window_seconds: int = 3600, use_redis: bool = False, redis_client: Optional[Any] = None):
        self.window_seconds = window_seconds
        self.redis_client = redis_client if use_redis else None
        self.use_redis = self.redis_client is not None
        if use_redis and not self.use_redis:
            logger.warning("Redis delivery ledger requested without a client, using memory")

        # {digest: delivered_at}
        self.delivered: Dict[str, int] = {}

        logger.info(f"Delivery ledger ready (window: {window_seconds}s, backend: {self.backend})")

    @property
    def backend(self) -> str:
        return "redis" if self.use_redis else "memory"

    def _digest(self, key: str) -> str:
        return hashlib.sha256(key.encode()).hexdigest()[:16]

    def already_delivered(self, key: str) -> bool:
        digest = self._digest(key)
        if self.use_redis:
            try:
                return bool(self.redis_client.exists(KEY_PREFIX + digest))
            except RedisError as e:
                logger.error(f"Delivery ledger lookup failed in Redis, using memory: {e}")

        now = int(time.time())
        self._expire(now)
        delivered_at = self.delivered.get(digest)
        return delivered_at is not None and now - delivered_at < self.window_seconds

    def record_delivery(self, key: str) -> None:
        digest = self._digest(key)
        now = int(time.time())
        if self.use_redis:
            try:
                self.redis_client.set(KEY_PREFIX + digest, now, nx=True, ex=self.window_seconds)
                return
            except RedisError as e:
                logger.error(f"Delivery ledger write failed in Redis, using memory: {e}")

        self.delivered[digest] = now

    def _expire(self, now: int) -> None:
        stale = [digest for digest, at in self.delivered.items() if now - at >= self.window_seconds]
        for digest in stale:
            del self.delivered[digest]
        if stale:
            logger.debug(f"Expired {len(stale)} delivery ledger entries")

    def get_stats(self) -> Dict[str, Any]:
        count: Optional[int] = None
        if self.use_redis:
            try:
                count = sum(1 for _ in self.redis_client.scan_iter(match=KEY_PREFIX + "*"))
            except RedisError:
                logger.debug("Could not count Redis delivery ledger entries")
        if count is None:
            return {'backend': 'memory', 'delivered_jobs': len(self.delivered), 'window_seconds': self.window_seconds}
        return {'backend': 'redis', 'delivered_jobs': count, 'window_seconds': self.window_seconds}
