"""
Durable queue of deferred Active Directory changes.

Each pending change is one file in a flat directory, named

    <principal>-ad-<operation>-<YYYYMMDDTHHMMSSZ>-<NN>

where "/" in the principal is written as "." and NN is a two-digit
discriminator.  The file holds one field per line: the principal, the
domain ("ad"), the operation and, for password changes, the password.

Records are written to a private temporary file under .incoming and then
published with an exclusive hard link, so readers never see a partial
record and concurrent writers never overwrite each other.
"""

import os
import re
import logging
import tempfile
from datetime import datetime, timezone
from typing import List, NamedTuple, Optional

from krb5_sync.errors import QueueWriteError
from krb5_sync.principal import Principal

logger = logging.getLogger(__name__)

DOMAIN = 'ad'
OPERATIONS = ('password', 'enable', 'disable')
TIMESTAMP_FORMAT = '%Y%m%dT%H%M%SZ'
INCOMING_DIR = '.incoming'
MAX_DISCRIMINATOR = 100

_NAME_RE = re.compile(
    r'^(?P<user>.+)-(?P<domain>[a-z]+)-(?P<operation>[a-z]+)-'
    r'(?P<timestamp>\d{8}T\d{6}Z)-(?P<seq>\d{2})$'
)


class ChangeRecord(NamedTuple):
    """A queued change for one principal."""
    principal: str
    operation: str
    password: Optional[str]
    created: datetime
    path: Optional[str] = None

    @property
    def enabled(self) -> Optional[bool]:
        """The requested status for enable/disable records."""
        if self.operation == 'password':
            return None
        return self.operation == 'enable'

    def describe(self) -> str:
        """Human readable form without the password."""
        return f"{self.principal} {self.operation} {self.created.strftime(TIMESTAMP_FORMAT)}"


def file_user(principal: str) -> str:
    """The file name form of a principal."""
    return principal.replace('/', '.')


def _principal_string(principal) -> str:
    if isinstance(principal, Principal):
        return principal.unparse(with_realm=False)
    return principal


def _sort_key(name: str):
    match = _NAME_RE.match(name)
    return (match.group('timestamp'), match.group('seq'))


class SyncQueue:
    """
    Directory-backed queue of deferred changes.

    Args:
        queue_dir: Directory holding the queue files
        clock: Callable returning the current UTC datetime (for testing)
    """

    def __init__(self, queue_dir: str, clock=None):
        self.queue_dir = queue_dir
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def write(self, principal, operation: str, password: Optional[str] = None) -> ChangeRecord:
        """
        Durably record a change.

        Args:
            principal: Target principal (Principal or string, realm is dropped)
            operation: password, enable or disable
            password: New password, only for password changes

        Returns:
            The record as written

        Raises:
            QueueWriteError: If the record cannot be written
        """
        if operation not in OPERATIONS:
            raise ValueError(f"Unknown queue operation: {operation}")
        if (operation == 'password') != (password is not None):
            raise ValueError("Password payload is required for, and only for, password changes")

        user = _principal_string(principal)
        created = self.clock().replace(microsecond=0)
        timestamp = created.strftime(TIMESTAMP_FORMAT)

        lines = [user, DOMAIN, operation]
        if password is not None:
            lines.append(password)
        content = ''.join(f"{line}\n" for line in lines)

        temp_path = self._write_temp(content)
        try:
            path = self._publish(temp_path, file_user(user), operation, timestamp)
        finally:
            try:
                os.unlink(temp_path)
            except OSError as e:
                logger.warning(f"Cannot remove temporary queue file {temp_path}: {e}")

        logger.info(f"Queued {operation} change for {user} as {os.path.basename(path)}")
        return ChangeRecord(user, operation, password, created, path)

    def _write_temp(self, content: str) -> str:
        incoming = os.path.join(self.queue_dir, INCOMING_DIR)
        if not os.path.isdir(self.queue_dir):
            raise QueueWriteError(f"Queue directory {self.queue_dir} does not exist")
        try:
            os.makedirs(incoming, mode=0o700, exist_ok=True)
            fd, temp_path = tempfile.mkstemp(dir=incoming, prefix='record-')
        except OSError as e:
            raise QueueWriteError(f"Cannot create queue file in {self.queue_dir}: {e}") from e

        try:
            os.fchmod(fd, 0o600)
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            try:
                os.unlink(temp_path)
            except OSError:
                logger.warning(f"Cannot remove temporary queue file {temp_path}")
            raise QueueWriteError(f"Cannot write queue file {temp_path}: {e}") from e
        return temp_path

    def _publish(self, temp_path: str, user: str, operation: str, timestamp: str) -> str:
        """
        Link the temporary file under the next free discriminator.

        Discriminators are shared by every record of the user in the same
        second, whatever the operation, so (timestamp, discriminator) orders
        one principal's records as they were written.
        """
        stem = f"{user}-{DOMAIN}-{operation}-{timestamp}"
        try:
            used = [int(match.group('seq')) for match in map(_NAME_RE.match, os.listdir(self.queue_dir))
                    if match and match.group('user') == user and match.group('timestamp') == timestamp]
        except OSError as e:
            raise QueueWriteError(f"Cannot list queue directory {self.queue_dir}: {e}") from e

        for seq in range(max(used) + 1 if used else 0, MAX_DISCRIMINATOR):
            path = os.path.join(self.queue_dir, f"{stem}-{seq:02d}")
            try:
                os.link(temp_path, path)
            except FileExistsError:
                continue
            except OSError as e:
                raise QueueWriteError(f"Cannot publish queue file {path}: {e}") from e
            self._sync_directory()
            return path

        raise QueueWriteError(f"Too many queued changes named {stem} in {self.queue_dir}")

    def _sync_directory(self):
        try:
            fd = os.open(self.queue_dir, os.O_RDONLY)
        except OSError:
            return
        try:
            os.fsync(fd)
        except OSError as e:
            logger.debug(f"Cannot sync queue directory: {e}")
        finally:
            os.close(fd)

    def _names(self) -> List[str]:
        try:
            names = os.listdir(self.queue_dir)
        except FileNotFoundError:
            return []
        except OSError as e:
            raise QueueWriteError(f"Cannot list queue directory {self.queue_dir}: {e}") from e
        return sorted(sorted(name for name in names if _NAME_RE.match(name)), key=_sort_key)

    def read_record(self, path: str) -> ChangeRecord:
        """
        Parse a queue file.

        Raises:
            FileNotFoundError: If the file was removed meanwhile
            ValueError: If the file is not a valid queue record
        """
        match = _NAME_RE.match(os.path.basename(path))
        if not match:
            raise ValueError(f"Not a queue file name: {path}")

        with open(path, 'r', encoding='utf-8') as f:
            lines = f.read().split('\n')

        if len(lines) < 4 or lines[1] != DOMAIN or lines[2] not in OPERATIONS:
            raise ValueError(f"Malformed queue file: {path}")
        principal, _, operation = lines[:3]
        password = None
        if operation == 'password':
            if len(lines) < 5:
                raise ValueError(f"Queue file {path} has no password")
            password = lines[3]
        if file_user(principal) != match.group('user') or operation != match.group('operation'):
            raise ValueError(f"Queue file {path} does not match its name")

        created = datetime.strptime(match.group('timestamp'), TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
        return ChangeRecord(principal, operation, password, created, path)

    def _read_names(self, names: List[str]) -> List[ChangeRecord]:
        records = []
        for name in names:
            path = os.path.join(self.queue_dir, name)
            try:
                records.append(self.read_record(path))
            except FileNotFoundError:
                continue
            except (OSError, ValueError) as e:
                logger.warning(f"Skipping unreadable queue file {name}: {e}")
        return records

    def pending(self) -> List[ChangeRecord]:
        """All queued records, oldest first."""
        return self._read_names(self._names())

    def _names_for(self, principal) -> List[str]:
        user = file_user(_principal_string(principal))
        matches = ((name, _NAME_RE.match(name)) for name in self._names())
        return [name for name, match in matches
                if match.group('user') == user and match.group('domain') == DOMAIN]

    def pending_for(self, principal) -> List[ChangeRecord]:
        """Queued records for one principal, oldest first."""
        return self._read_names(self._names_for(principal))

    def has_conflict(self, principal, operation: str) -> bool:
        """
        Check whether a change for this principal is already queued.

        Any queued record for the principal conflicts, whatever its
        operation, since applying the new change directly would reorder it
        ahead of the queued one.
        """
        pending = self._names_for(principal)
        if pending:
            logger.info(f"Queuing {operation} change for {_principal_string(principal)}: "
                        f"{len(pending)} earlier change(s) still queued")
            return True
        return False

    def remove(self, record: ChangeRecord) -> None:
        """Delete a processed record."""
        try:
            os.unlink(record.path)
        except FileNotFoundError:
            logger.debug(f"Queue file {record.path} already removed")
