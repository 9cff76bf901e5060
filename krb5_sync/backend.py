"""
Queue backend for krb5-sync.

Replays changes that were queued while Active Directory was unavailable or
while queue-only mode was on.  Records are processed oldest first; once a
change for a principal fails, later changes for that principal stay queued
so that they are never applied out of order.
"""

import sys
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from krb5_sync.ad_client import ADClient
from krb5_sync.config import SyncConfig, load_config
from krb5_sync.errors import AuthError, ConfigError, NotFoundError, RemoteError, SyncError
from krb5_sync.logging_setup import setup_logging
from krb5_sync.queue import ChangeRecord, SyncQueue

logger = logging.getLogger(__name__)


def replay_record(client: ADClient, record: ChangeRecord) -> None:
    """Apply one queued change through a connected client."""
    if record.operation == 'password':
        client.set_password(record.principal, record.password)
    else:
        client.set_enabled(record.principal, record.enabled)


class QueueProcessor:
    """
    Drains the queue against Active Directory.

    Args:
        config: Synchronization configuration
        client_factory: Callable building an Active Directory client
        queue: Queue to drain, defaults to the one in config.queue_dir
    """

    def __init__(self, config: SyncConfig,
                 client_factory: Callable[[SyncConfig], ADClient] = ADClient,
                 queue: Optional[SyncQueue] = None):
        self.config = config
        self.client_factory = client_factory
        self.queue = queue or SyncQueue(config.queue_dir)
        self.stats = {
            'processed': 0,
            'not_found': 0,
            'failed': 0,
            'deferred': 0,
        }

    def process(self) -> int:
        """
        Replay every queued record.

        Returns:
            Exit code (0 when the queue was drained, 1 otherwise)
        """
        records = self.queue.pending()
        if not records:
            logger.debug("Queue is empty")
            return 0

        blocked = set()
        try:
            with self.client_factory(self.config) as client:
                for record in records:
                    if record.principal in blocked:
                        self.stats['deferred'] += 1
                        continue
                    try:
                        replay_record(client, record)
                    except NotFoundError as e:
                        logger.warning(f"Dropping {record.describe()}: {e}")
                        self.stats['not_found'] += 1
                    except RemoteError as e:
                        logger.error(f"Failed to replay {record.describe()}: {e}")
                        self.stats['failed'] += 1
                        blocked.add(record.principal)
                        continue
                    else:
                        self.stats['processed'] += 1
                        logger.info(f"Replayed {record.describe()}")
                    self.queue.remove(record)
        except (AuthError, RemoteError) as e:
            logger.error(f"Cannot connect to Active Directory: {e}")
            return 1

        logger.info(f"Queue processed: {self.stats['processed']} replayed, "
                    f"{self.stats['not_found']} dropped, {self.stats['failed']} failed, "
                    f"{self.stats['deferred']} deferred")
        return 1 if self.stats['failed'] else 0

    def purge(self, days: int) -> int:
        """
        Remove records older than a number of days.

        Returns:
            Number of records removed
        """
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        removed = 0
        for record in self.queue.pending():
            if record.created < cutoff:
                self.queue.remove(record)
                logger.info(f"Purged {record.describe()}")
                removed += 1
        return removed

    def list_pending(self) -> List[str]:
        """Describe queued records, without passwords."""
        return [record.describe() for record in self.queue.pending()]

    def health_check(self) -> Dict[str, Any]:
        """
        Check that Active Directory is reachable with the configured credentials.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }

        try:
            health_status['checks']['queue'] = {
                'status': 'pass',
                'message': f"{len(self.queue.pending())} record(s) queued in {self.config.queue_dir}"
            }
        except SyncError as e:
            health_status['checks']['queue'] = {'status': 'fail', 'message': str(e)}
            health_status['status'] = 'unhealthy'

        if not self.config.ad_configured:
            health_status['checks']['ad'] = {
                'status': 'skip',
                'message': 'Active Directory synchronization not configured'
            }
            return health_status

        try:
            with self.client_factory(self.config):
                pass
            health_status['checks']['ad'] = {
                'status': 'pass',
                'message': f"Bound to {self.config.ad_admin_server}"
            }
        except SyncError as e:
            health_status['checks']['ad'] = {
                'status': 'fail',
                'message': f"Active Directory connection failed: {e}"
            }
            health_status['status'] = 'unhealthy'

        return health_status


def main(argv: Optional[List[str]] = None):
    """Main entry point for the queue backend."""
    import argparse
    import json

    parser = argparse.ArgumentParser(description='Process the krb5-sync queue')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    subparsers = parser.add_subparsers(dest='command', required=True)
    subparsers.add_parser('list', help='List queued changes')
    subparsers.add_parser('process', help='Replay queued changes against Active Directory')
    purge_parser = subparsers.add_parser('purge', help='Remove old queued changes')
    purge_parser.add_argument('--days', type=int, default=30,
                              help='Remove changes queued more than this many days ago')
    subparsers.add_parser('health-check', help='Check queue and Active Directory access')

    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(2)

    logging_config = dict(config.logging_config or {})
    logging_config.setdefault('console_output', True)
    setup_logging(logging_config, syslog=config.syslog)

    processor = QueueProcessor(config)

    try:
        if args.command == 'list':
            for line in processor.list_pending():
                print(line)
            sys.exit(0)

        elif args.command == 'process':
            if not config.ad_configured:
                print("Active Directory synchronization is not configured", file=sys.stderr)
                sys.exit(2)
            sys.exit(processor.process())

        elif args.command == 'purge':
            removed = processor.purge(args.days)
            print(f"Removed {removed} queued change(s)")
            sys.exit(0)

        else:
            health_status = processor.health_check()
            print(json.dumps(health_status, indent=2))
            sys.exit(0 if health_status['status'] == 'healthy' else 1)

    except SyncError as e:
        logger.error(f"Queue processing failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
