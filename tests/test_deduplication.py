import sys
import os
import unittest
from unittest.mock import MagicMock, patch
# Add src to path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '../src')))

import redis

from utils.deduplication import AlertDeduplicator


class TestAlertDeduplicator(unittest.TestCase):
    def test_memory_backend_within_window(self):
        dedup = AlertDeduplicator(window_seconds=60)

        with patch('utils.deduplication.time.time', return_value=1000):
            self.assertFalse(dedup.already_delivered('alert:h-1'))
            dedup.record_delivery('alert:h-1')
            self.assertTrue(dedup.already_delivered('alert:h-1'))
            self.assertFalse(dedup.already_delivered('alert:h-2'))

        with patch('utils.deduplication.time.time', return_value=1060):
            self.assertFalse(dedup.already_delivered('alert:h-1'))

        self.assertEqual(dedup.get_stats(), {'backend': 'memory', 'delivered_jobs': 0, 'window_seconds': 60})

    def test_redis_backend(self):
        client = MagicMock()
        client.exists.return_value = 0
        dedup = AlertDeduplicator(window_seconds=300, use_redis=True, redis_client=client)

        self.assertFalse(dedup.already_delivered('alert:h-1'))
        dedup.record_delivery('alert:h-1')

        key = client.set.call_args.args[0]
        self.assertTrue(key.startswith('notification_delivered:'))
        self.assertEqual(client.set.call_args.kwargs, {'nx': True, 'ex': 300})
        client.exists.assert_called_once_with(key)

    def test_redis_error_falls_back_to_memory(self):
        client = MagicMock()
        client.exists.side_effect = redis.ConnectionError('down')
        client.set.side_effect = redis.ConnectionError('down')
        dedup = AlertDeduplicator(use_redis=True, redis_client=client)

        dedup.record_delivery('alert:h-1')
        self.assertTrue(dedup.already_delivered('alert:h-1'))

    def test_redis_requested_without_client_uses_memory(self):
        dedup = AlertDeduplicator(use_redis=True)

        self.assertFalse(dedup.use_redis)
        dedup.record_delivery('alert:h-1')
        self.assertTrue(dedup.already_delivered('alert:h-1'))
        self.assertEqual(dedup.get_stats()['backend'], 'memory')

    def test_client_ignored_when_redis_disabled(self):
        client = MagicMock()
        dedup = AlertDeduplicator(use_redis=False, redis_client=client)

        dedup.record_delivery('alert:h-1')
        self.assertTrue(dedup.already_delivered('alert:h-1'))
        client.set.assert_not_called()
        client.exists.assert_not_called()

    def test_redis_stats_count_ledger_keys(self):
        client = MagicMock()
        client.scan_iter.return_value = iter(['notification_delivered:a', 'notification_delivered:b'])
        dedup = AlertDeduplicator(window_seconds=300, use_redis=True, redis_client=client)

        self.assertEqual(dedup.get_stats(), {'backend': 'redis', 'delivered_jobs': 2, 'window_seconds': 300})
        client.scan_iter.assert_called_once_with(match='notification_delivered:*')


if __name__ == '__main__':
    unittest.main()
