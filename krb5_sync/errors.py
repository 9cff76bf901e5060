"""
Error taxonomy for krb5-sync.

Every failure the engine can see is one of the SyncError subclasses below.
Configuration, Kerberos lookup and queue write errors are surfaced to the
host; the directory errors are absorbed by deferring the change to the queue.
"""

from enum import Enum


class ErrorKind(Enum):
    """Kinds of synchronization failure."""
    CONFIG = 'config'
    KERBEROS_LOOKUP = 'kerberos_lookup'
    QUEUE_WRITE = 'queue_write'
    AUTH = 'auth'
    REMOTE = 'remote'
    NOT_FOUND = 'not_found'


class SyncError(Exception):
    """Base exception for synchronization errors."""
    kind = None


class ConfigError(SyncError):
    """Raised when settings are missing or malformed."""
    kind = ErrorKind.CONFIG


class KerberosLookupError(SyncError):
    """Raised when the Kerberos database cannot answer a principal lookup."""
    kind = ErrorKind.KERBEROS_LOOKUP


class QueueWriteError(SyncError):
    """Raised when a change cannot be recorded in the queue directory."""
    kind = ErrorKind.QUEUE_WRITE


class DirectoryError(SyncError):
    """Base exception for Active Directory update failures."""
    pass


class AuthError(DirectoryError):
    """Raised when the service bind to Active Directory fails."""
    kind = ErrorKind.AUTH


class RemoteError(DirectoryError):
    """Raised when a directory request is rejected or the connection fails."""
    kind = ErrorKind.REMOTE


class NotFoundError(DirectoryError):
    """Raised when the Active Directory entry for a principal does not exist."""
    kind = ErrorKind.NOT_FOUND


_ERROR_CLASSES = {cls.kind: cls for cls in (
    ConfigError, KerberosLookupError, QueueWriteError,
    AuthError, RemoteError, NotFoundError,
)}


def format_error(kind: ErrorKind, template: str, *args) -> SyncError:
    """
    Build the exception matching an error kind.

    Args:
        kind: Kind of failure
        template: printf-style message template
        *args: Values interpolated into the template

    Returns:
        SyncError subclass instance, ready to be raised
    """
    message = template % args if args else template
    return _ERROR_CLASSES[kind](message)
