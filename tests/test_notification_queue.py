import sys
import os
import json
import threading
import unittest
from unittest.mock import MagicMock
# Add src to path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '../src')))

from redis.exceptions import ConnectionError as RedisConnectionError

from utils.errors import DispatchError
from workers.notification_queue import NotificationJob, RedisJobQueue, consume


class FakeRedisLists:
    """Just enough of the Redis list commands for the queue."""

    def __init__(self):
        self.lists = {}

    def _list(self, name):
        return self.lists.setdefault(name, [])

    def rpush(self, name, value):
        self._list(name).append(value)
        return len(self._list(name))

    def lmove(self, source, destination, src='LEFT', dest='RIGHT'):
        items = self._list(source)
        if not items:
            return None
        value = items.pop(0)
        self._list(destination).append(value)
        return value

    def blmove(self, source, destination, timeout, src='LEFT', dest='RIGHT'):
        return self.lmove(source, destination, src, dest)

    def lrem(self, name, count, value):
        items = self._list(name)
        if value in items:
            items.remove(value)
            return 1
        return 0

    def llen(self, name):
        return len(self._list(name))


class TestRedisJobQueue(unittest.TestCase):
    def setUp(self):
        self.redis = FakeRedisLists()
        self.queue = RedisJobQueue(self.redis, 'jobs', max_attempts=3)

    def test_enqueue_reserve_ack(self):
        job_id = self.queue.enqueue({'rule_id': 'r1'}, job_id='alert:h-1')
        self.assertEqual(job_id, 'alert:h-1')
        self.assertEqual(self.queue.size(), 1)

        job = self.queue.reserve(timeout=1)
        self.assertEqual(job.id, 'alert:h-1')
        self.assertEqual(job.data, {'rule_id': 'r1'})
        self.assertEqual(job.attempts, 0)
        self.assertEqual(self.queue.size(), 0)
        self.assertEqual(self.redis.llen('jobs:processing'), 1)

        self.queue.ack(job)
        self.assertEqual(self.redis.llen('jobs:processing'), 0)

    def test_reserve_empty_queue(self):
        self.assertIsNone(self.queue.reserve(timeout=1))

    def test_retry_until_max_attempts(self):
        self.queue.enqueue({'n': 1})
        for expected in (True, True, False):
            job = self.queue.reserve(timeout=1)
            self.assertEqual(self.queue.retry(job), expected)

        self.assertEqual(self.queue.size(), 0)
        self.assertEqual(self.redis.llen('jobs:processing'), 0)

    def test_requeue_stale_jobs(self):
        self.queue.enqueue({'n': 1})
        self.queue.enqueue({'n': 2})
        self.queue.reserve(timeout=1)
        self.queue.reserve(timeout=1)

        self.assertEqual(self.queue.requeue_stale(), 2)
        self.assertEqual(self.queue.size(), 2)
        self.assertEqual(self.queue.reserve(timeout=1).data, {'n': 1})

    def test_malformed_job_is_dropped(self):
        self.redis.rpush('jobs', 'not json')
        self.assertIsNone(self.queue.reserve(timeout=1))
        self.assertEqual(self.redis.llen('jobs:processing'), 0)

    def test_bytes_payload_is_decoded(self):
        client = MagicMock()
        client.blmove.return_value = json.dumps({'id': 'j1', 'attempts': 1, 'data': {}}).encode('utf-8')
        job = RedisJobQueue(client, 'jobs').reserve(timeout=1)
        self.assertEqual(job.id, 'j1')
        self.assertEqual(job.attempts, 1)
        client.blmove.assert_called_once_with('jobs', 'jobs:processing', 1, 'LEFT', 'RIGHT')

    def test_enqueue_failure_raises_dispatch_error(self):
        client = MagicMock()
        client.rpush.side_effect = RedisConnectionError('refused')
        with self.assertRaises(DispatchError) as ctx:
            RedisJobQueue(client, 'jobs').enqueue({}, job_id='j1')
        self.assertEqual(ctx.exception.job_id, 'j1')


class TestConsume(unittest.TestCase):
    def test_handles_and_retries(self):
        redis = FakeRedisLists()
        queue = RedisJobQueue(redis, 'jobs', max_attempts=2)
        queue.enqueue({'ok': True})
        queue.enqueue({'ok': False})
        stop_event = threading.Event()
        seen = []

        def handler(job):
            seen.append(job.data['ok'])
            if not job.data['ok']:
                raise RuntimeError('delivery failed')

        original_reserve = queue.reserve

        def reserve(timeout=5):
            job = original_reserve(timeout)
            if job is None:
                stop_event.set()
            return job

        queue.reserve = reserve
        consume(queue, handler, stop_event, block_timeout=0)

        # The failing job was tried max_attempts times, then dropped.
        self.assertEqual(seen, [True, False, False])
        self.assertEqual(queue.size(), 0)
        self.assertEqual(redis.llen('jobs:processing'), 0)


class TestNotificationJob(unittest.TestCase):
    def test_from_dict_fills_defaults(self):
        job = NotificationJob.from_dict({'rule_id': 'r1', 'rule_name': 'Spike', 'log_count': '4'})
        self.assertEqual(job.log_count, 4)
        self.assertEqual(job.email_recipients, [])
        self.assertIsNone(job.history_id)
        self.assertTrue(job.job_id)


if __name__ == '__main__':
    unittest.main()
