#!/usr/bin/env python3
"""
Unit tests for the error taxonomy.
"""

import os
import sys
import unittest

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from krb5_sync.errors import (
    ErrorKind, SyncError, DirectoryError, ConfigError, KerberosLookupError,
    QueueWriteError, AuthError, RemoteError, NotFoundError, format_error,
)


class TestFormatError(unittest.TestCase):
    """Test cases for format_error."""

    def test_builds_matching_class(self):
        expected = {
            ErrorKind.CONFIG: ConfigError,
            ErrorKind.KERBEROS_LOOKUP: KerberosLookupError,
            ErrorKind.QUEUE_WRITE: QueueWriteError,
            ErrorKind.AUTH: AuthError,
            ErrorKind.REMOTE: RemoteError,
            ErrorKind.NOT_FOUND: NotFoundError,
        }
        for kind, cls in expected.items():
            error = format_error(kind, "failed")
            self.assertIs(type(error), cls)
            self.assertIs(error.kind, kind)

    def test_interpolates_arguments(self):
        error = format_error(ErrorKind.REMOTE, "%s for %s failed: %d", 'Search', 'alice', 51)
        self.assertEqual(str(error), 'Search for alice failed: 51')

    def test_template_without_arguments_is_literal(self):
        self.assertEqual(str(format_error(ErrorKind.CONFIG, "100% broken")), '100% broken')

    def test_hierarchy(self):
        for cls in (AuthError, RemoteError, NotFoundError):
            self.assertTrue(issubclass(cls, DirectoryError))
        for cls in (ConfigError, KerberosLookupError, QueueWriteError):
            self.assertFalse(issubclass(cls, DirectoryError))
            self.assertTrue(issubclass(cls, SyncError))


if __name__ == '__main__':
    unittest.main()
