#!/usr/bin/env python3
"""
Unit tests for the queue backend.
"""

import os
import sys
import shutil
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock, patch

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from krb5_sync.backend import QueueProcessor, main, replay_record
from krb5_sync.config import SyncConfig
from krb5_sync.errors import AuthError, ConfigError, NotFoundError, RemoteError
from krb5_sync.queue import SyncQueue


def clock_at(moment):
    return lambda: moment


class RecordingClient:
    """Client double recording the calls it receives."""

    def __init__(self, failures=None, connect_error=None):
        self.calls = []
        self.failures = failures or {}
        self.connect_error = connect_error

    def __call__(self, config):
        return self

    def __enter__(self):
        if self.connect_error is not None:
            raise self.connect_error
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        return False

    def _record(self, principal, call):
        self.calls.append((principal, call))
        error = self.failures.get(principal)
        if error is not None:
            raise error

    def set_password(self, principal, password):
        self._record(principal, ('password', password))

    def set_enabled(self, principal, enabled):
        self._record(principal, ('enabled', enabled))


class TestQueueProcessor(unittest.TestCase):
    """Test cases for QueueProcessor."""

    def setUp(self):
        self.queue_dir = tempfile.mkdtemp(prefix='krb5_sync_backend_')
        self.addCleanup(shutil.rmtree, self.queue_dir, True)
        self.config = SyncConfig(
            ad_admin_server='dc1.win.example.com',
            ad_base_instance='admin',
            ad_keytab='/etc/krb5kdc/ad-keytab',
            ad_ldap_base='OU=Accounts,DC=win,DC=example,DC=com',
            ad_principal='service/krb5-sync',
            queue_dir=self.queue_dir,
        )
        self.start = datetime(2026, 10, 17, 9, 0, 0, tzinfo=timezone.utc)

    def write(self, minutes, principal, operation, password=None):
        queue = SyncQueue(self.queue_dir, clock=clock_at(self.start + timedelta(minutes=minutes)))
        return queue.write(principal, operation, password)

    def processor(self, client):
        return QueueProcessor(self.config, client_factory=client)

    def test_empty_queue(self):
        client = RecordingClient()
        self.assertEqual(self.processor(client).process(), 0)
        self.assertEqual(client.calls, [])

    def test_replays_in_order(self):
        self.write(2, 'alice/admin', 'enable')
        self.write(0, 'alice/admin', 'disable')
        self.write(1, 'alice/admin', 'password', 'NewPass1')
        client = RecordingClient()
        processor = self.processor(client)

        self.assertEqual(processor.process(), 0)
        self.assertEqual(client.calls, [
            ('alice/admin', ('enabled', False)),
            ('alice/admin', ('password', 'NewPass1')),
            ('alice/admin', ('enabled', True)),
        ])
        self.assertEqual(processor.queue.pending(), [])
        self.assertEqual(processor.stats['processed'], 3)

    def test_failure_blocks_later_changes_for_principal(self):
        self.write(0, 'alice/admin', 'password', 'NewPass1')
        self.write(1, 'bob/admin', 'disable')
        self.write(2, 'alice/admin', 'disable')
        client = RecordingClient(failures={'alice/admin': RemoteError('busy')})
        processor = self.processor(client)

        self.assertEqual(processor.process(), 1)
        self.assertEqual([principal for principal, _ in client.calls], ['alice/admin', 'bob/admin'])

        remaining = processor.queue.pending()
        self.assertEqual([(r.principal, r.operation) for r in remaining],
                         [('alice/admin', 'password'), ('alice/admin', 'disable')])
        self.assertEqual(processor.stats['failed'], 1)
        self.assertEqual(processor.stats['deferred'], 1)

    def test_not_found_record_is_dropped(self):
        self.write(0, 'carol/admin', 'enable')
        client = RecordingClient(failures={'carol/admin': NotFoundError('no such user')})
        processor = self.processor(client)

        self.assertEqual(processor.process(), 0)
        self.assertEqual(processor.queue.pending(), [])
        self.assertEqual(processor.stats['not_found'], 1)

    def test_connect_failure_keeps_queue(self):
        self.write(0, 'alice/admin', 'enable')
        processor = self.processor(RecordingClient(connect_error=AuthError('invalidCredentials')))

        self.assertEqual(processor.process(), 1)
        self.assertEqual(len(processor.queue.pending()), 1)

    def test_purge(self):
        old = SyncQueue(self.queue_dir, clock=clock_at(datetime.now(timezone.utc) - timedelta(days=40)))
        old.write('alice/admin', 'enable')
        SyncQueue(self.queue_dir).write('bob/admin', 'disable')
        processor = self.processor(RecordingClient())

        self.assertEqual(processor.purge(30), 1)
        self.assertEqual([r.principal for r in processor.queue.pending()], ['bob/admin'])

    def test_list_pending_hides_passwords(self):
        self.write(0, 'alice/admin', 'password', 'NewPass1')
        lines = self.processor(RecordingClient()).list_pending()

        self.assertEqual(lines, ['alice/admin password 20261017T090000Z'])
        self.assertNotIn('NewPass1', lines[0])

    def test_health_check(self):
        health = self.processor(RecordingClient()).health_check()
        self.assertEqual(health['status'], 'healthy')
        self.assertEqual(health['checks']['ad']['status'], 'pass')

        health = self.processor(RecordingClient(connect_error=RemoteError('refused'))).health_check()
        self.assertEqual(health['status'], 'unhealthy')
        self.assertIn('refused', health['checks']['ad']['message'])

    def test_health_check_not_configured(self):
        processor = QueueProcessor(SyncConfig(queue_dir=self.queue_dir), client_factory=RecordingClient())
        health = processor.health_check()
        self.assertEqual(health['status'], 'healthy')
        self.assertEqual(health['checks']['ad']['status'], 'skip')

    def test_replay_record(self):
        record = self.write(0, 'alice/admin', 'disable')
        client = Mock()
        replay_record(client, record)
        client.set_enabled.assert_called_once_with('alice/admin', False)


class TestMain(unittest.TestCase):
    """Test cases for the command line entry point."""

    def setUp(self):
        self.config = SyncConfig(
            ad_admin_server='dc1.win.example.com',
            ad_base_instance='admin',
            ad_keytab='/etc/krb5kdc/ad-keytab',
            ad_ldap_base='OU=Accounts,DC=win,DC=example,DC=com',
            ad_principal='service/krb5-sync',
            syslog=False,
        )

    @patch('krb5_sync.backend.setup_logging')
    @patch('krb5_sync.backend.load_config')
    def test_config_error(self, mock_load_config, mock_setup_logging):
        mock_load_config.side_effect = ConfigError('bad')
        with self.assertRaises(SystemExit) as context:
            main(['process'])
        self.assertEqual(context.exception.code, 2)
        mock_setup_logging.assert_not_called()

    @patch('krb5_sync.backend.QueueProcessor')
    @patch('krb5_sync.backend.setup_logging')
    @patch('krb5_sync.backend.load_config')
    def test_process(self, mock_load_config, mock_setup_logging, mock_processor_class):
        mock_load_config.return_value = self.config
        mock_processor_class.return_value.process.return_value = 1

        with self.assertRaises(SystemExit) as context:
            main(['-c', '/etc/krb5-sync.yaml', 'process'])

        self.assertEqual(context.exception.code, 1)
        mock_load_config.assert_called_once_with('/etc/krb5-sync.yaml')

    @patch('krb5_sync.backend.QueueProcessor')
    @patch('krb5_sync.backend.setup_logging')
    @patch('krb5_sync.backend.load_config')
    def test_process_not_configured(self, mock_load_config, mock_setup_logging, mock_processor_class):
        mock_load_config.return_value = SyncConfig(syslog=False)

        with self.assertRaises(SystemExit) as context:
            main(['process'])

        self.assertEqual(context.exception.code, 2)
        mock_processor_class.return_value.process.assert_not_called()

    @patch('builtins.print')
    @patch('krb5_sync.backend.QueueProcessor')
    @patch('krb5_sync.backend.setup_logging')
    @patch('krb5_sync.backend.load_config')
    def test_purge(self, mock_load_config, mock_setup_logging, mock_processor_class, mock_print):
        mock_load_config.return_value = self.config
        mock_processor_class.return_value.purge.return_value = 3

        with self.assertRaises(SystemExit) as context:
            main(['purge', '--days', '7'])

        self.assertEqual(context.exception.code, 0)
        mock_processor_class.return_value.purge.assert_called_once_with(7)
        mock_print.assert_called_with('Removed 3 queued change(s)')


if __name__ == '__main__':
    unittest.main()
