import argparse
import logging
import os
import signal
import sys
import threading
from typing import Any, Dict, Optional

import redis

from alerts.scheduler import AlertScheduler
from alerts.threshold_evaluator import AlertThresholdEvaluator, redis_rule_lock_factory
from detection.detection_engine import DetectionEngine
from detection.rule_import import RuleImportService
from storage.database import build_engine, create_session_factory, init_db
from storage.repository import SqlStore
from utils.config import load_config
from utils.deduplication import AlertDeduplicator
from utils.errors import ConfigError
from workers.detection_job import DetectionJobProcessor
from workers.notification_queue import RedisJobQueue
from workers.notification_worker import NotificationWorker


def setup_logging(config: Dict[str, Any]):
    """Configure logging based on config."""
    log_config = config.get('logging', {})
    log_level = getattr(logging, str(log_config.get('level') or 'INFO').upper(), logging.INFO)
    log_file = log_config.get('file')

    handlers = [logging.StreamHandler(sys.stdout)]

    if log_file:
        # Create log directory if needed
        log_dir = os.path.dirname(log_file)
        if log_dir and not os.path.exists(log_dir):
            os.makedirs(log_dir, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers
    )

    # Set specific loggers to avoid spam
    logging.getLogger('urllib3').setLevel(logging.WARNING)
    logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)


def build_store(config: Dict[str, Any]) -> SqlStore:
    engine = build_engine(config['database']['url'])
    init_db(engine)
    return SqlStore(create_session_factory(engine))


def build_redis(config: Dict[str, Any]) -> redis.Redis:
    redis_config = config['redis']
    return redis.Redis(
        host=redis_config.get('host', 'localhost'),
        port=redis_config.get('port', 6379),
        db=redis_config.get('db', 0),
        password=redis_config.get('password'),
        decode_responses=True
    )


def build_queue(client: redis.Redis, config: Dict[str, Any], name_key: str) -> RedisJobQueue:
    queues = config['queues']
    return RedisJobQueue(client, queues[name_key], max_attempts=queues.get('max_attempts', 3))


def _wait_for_shutdown(stop_event: threading.Event):
    def handle_signal(signum, frame):
        logging.getLogger(__name__).info("Received shutdown signal")
        stop_event.set()

    signal.signal(signal.SIGTERM, handle_signal)
    try:
        while not stop_event.wait(1):
            pass
    except KeyboardInterrupt:
        logging.getLogger(__name__).info("Received shutdown signal")
        stop_event.set()


def run_scheduler(config: Dict[str, Any]) -> int:
    logger = logging.getLogger(__name__)
    store = build_store(config)
    client = build_redis(config)

    lock_factory = None
    alerting = config['alerting']
    if alerting.get('distributed_lock'):
        lock_factory = redis_rule_lock_factory(client, timeout=alerting.get('lock_timeout', 120))
        logger.info("Per-rule distributed lock enabled")
    else:
        logger.info("Distributed lock disabled: run a single scheduler instance")

    evaluator = AlertThresholdEvaluator(store, lock_factory=lock_factory)
    scheduler = AlertScheduler(
        evaluator,
        build_queue(client, config, 'notifications'),
        interval_seconds=config['scheduler'].get('interval_seconds', 60),
    )

    stop_event = threading.Event()
    scheduler.start(run_immediately=config['scheduler'].get('run_on_start', True))
    _wait_for_shutdown(stop_event)
    scheduler.stop()
    logger.info(f"Scheduler stopped (ticks run: {scheduler.ticks_run}, skipped: {scheduler.ticks_skipped})")
    return 0


def run_worker(config: Dict[str, Any]) -> int:
    logger = logging.getLogger(__name__)
    store = build_store(config)
    client = build_redis(config)
    notifications_config = config['notifications']
    block_timeout = config['queues'].get('block_timeout', 5)

    deduplicator = AlertDeduplicator(
        window_seconds=notifications_config.get('dedup_window', 3600),
        use_redis=notifications_config.get('use_redis', True),
        redis_client=client,
    )
    notification_worker = NotificationWorker(
        store,
        deduplicator,
        smtp_config=notifications_config.get('smtp'),
        webhook_timeout=notifications_config.get('webhook_timeout', 10),
        max_retries=notifications_config.get('max_retries', 3),
        retry_delay=notifications_config.get('retry_delay', 1),
    )

    detection_config = config['detection']
    engine = DetectionEngine(
        store,
        case_sensitive=detection_config.get('case_sensitive', False),
        rule_cache_ttl=detection_config.get('rule_cache_ttl', 30),
    )
    notification_queue = build_queue(client, config, 'notifications')
    detection_processor = DetectionJobProcessor(engine, store, notification_queue)

    stop_event = threading.Event()
    threads = [
        threading.Thread(
            target=notification_worker.run_forever,
            args=(notification_queue, stop_event, block_timeout),
            name="NotificationWorker",
            daemon=True,
        ),
        threading.Thread(
            target=detection_processor.run_forever,
            args=(build_queue(client, config, 'detection'), stop_event, block_timeout),
            name="DetectionWorker",
            daemon=True,
        ),
    ]
    for thread in threads:
        thread.start()

    logger.info("Workers started")
    _wait_for_shutdown(stop_event)
    for thread in threads:
        thread.join(timeout=block_timeout + 5)
    logger.info(f"Workers stopped (detection stats: {engine.get_stats()})")
    return 0


def run_import(config: Dict[str, Any], args: argparse.Namespace) -> int:
    store = build_store(config)
    with open(args.file, 'r', encoding='utf-8') as f:
        raw_text = f.read()

    result = RuleImportService(store).import_rule(
        raw_text,
        organization_id=args.org,
        project_id=args.project,
        email_recipients=args.email or [],
        webhook_url=args.webhook,
        create_alert_rule=args.create_alert_rule,
    )

    for warning in result.warnings:
        print(f"Warning: {warning}")
    if result.errors:
        for error in result.errors:
            print(f"Error: {error}")
        return 1

    print(f"Imported {result.rule.title!r} as {result.record_id} ({result.conversion_status})")
    if result.alert_rule_id:
        print(f"Alert rule created: {result.alert_rule_id}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='LogWard Sigma detection and alerting service')
    parser.add_argument('--config', '-c', default=os.environ.get('CONFIG_PATH', 'config/config.yaml'),
                        help='Path to the YAML config file')
    subparsers = parser.add_subparsers(dest='command', required=True)

    subparsers.add_parser('scheduler', help='Run the alert threshold scheduler')
    subparsers.add_parser('worker', help='Run the notification and detection workers')

    import_parser = subparsers.add_parser('import-rule', help='Import a Sigma rule file')
    import_parser.add_argument('file', help='Path to the Sigma YAML file')
    import_parser.add_argument('--org', required=True, help='Organization id')
    import_parser.add_argument('--project', default=None, help='Project id (default: organization-wide)')
    import_parser.add_argument('--email', action='append', help='Notification recipient (repeatable)')
    import_parser.add_argument('--webhook', default=None, help='Notification webhook URL')
    import_parser.add_argument('--create-alert-rule', action='store_true',
                               help='Also create a threshold alert rule from the Sigma level')
    return parser


def main(argv: Optional[list] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"Error: {e}")
        return 1

    setup_logging(config)
    logger = logging.getLogger(__name__)

    if args.command == 'import-rule':
        return run_import(config, args)

    logger.info("=" * 60)
    logger.info(f"Starting LogWard Sigma service ({args.command})")
    logger.info("=" * 60)

    try:
        if args.command == 'scheduler':
            return run_scheduler(config)
        return run_worker(config)
    except Exception as e:
        logger.error(f"Error initializing components: {e}", exc_info=True)
        return 1


if __name__ == '__main__':
    sys.exit(main())
