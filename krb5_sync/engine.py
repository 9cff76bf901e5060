"""
Synchronization engine for krb5-sync.

The engine decides, for each password or status change made in the
Kerberos database, whether the change applies to Active Directory, and
then either applies it immediately or records it in the queue.  Changes
are queued when queue-only mode is on, when an earlier change for the same
principal is still queued, or when Active Directory cannot be updated.
"""

import logging
from enum import Enum
from typing import Callable, Optional

from krb5_sync.ad_client import ADClient
from krb5_sync.config import SyncConfig, NOT_FOUND_QUEUE
from krb5_sync.errors import AuthError, NotFoundError, RemoteError
from krb5_sync.kdb import resolve_target
from krb5_sync.principal import Principal, as_principal
from krb5_sync.queue import SyncQueue

logger = logging.getLogger(__name__)


class SyncOutcome(Enum):
    """What happened to a change."""
    SKIPPED = 'skipped'
    QUEUED = 'queued'
    APPLIED = 'applied'


class SyncEngine:
    """
    Propagates Kerberos password and status changes to Active Directory.

    Args:
        config: Configuration snapshot for this plugin session
        lookup: Kerberos principal lookup capability
        client_factory: Callable building an Active Directory client from
            the configuration; the client is used as a context manager
        queue: Queue for deferred changes, defaults to one in config.queue_dir
    """

    def __init__(self, config: SyncConfig, lookup,
                 client_factory: Callable[[SyncConfig], ADClient] = ADClient,
                 queue: Optional[SyncQueue] = None):
        self.config = config
        self.lookup = lookup
        self.client_factory = client_factory
        self.queue = queue or SyncQueue(config.queue_dir)

    def chpass(self, principal, password: Optional[str]) -> SyncOutcome:
        """
        Handle a password change.

        Args:
            principal: Principal whose password changed
            password: The new password, or None for a key randomization

        Raises:
            KerberosLookupError, QueueWriteError
        """
        principal = as_principal(principal)
        if password is None:
            logger.debug(f"Ignoring key randomization for {principal}")
            return SyncOutcome.SKIPPED
        return self._sync(
            principal, 'password', password,
            lambda client, target: client.set_password(target, password)
        )

    def status(self, principal, enabled: bool) -> SyncOutcome:
        """
        Handle an account status change.

        Args:
            principal: Principal whose status changed
            enabled: Whether the principal may now get tickets

        Raises:
            KerberosLookupError, QueueWriteError
        """
        principal = as_principal(principal)
        operation = 'enable' if enabled else 'disable'
        return self._sync(
            principal, operation, None,
            lambda client, target: client.set_enabled(target, enabled)
        )

    def _sync(self, principal: Principal, operation: str, password: Optional[str], apply) -> SyncOutcome:
        if not self.config.ad_configured:
            return SyncOutcome.SKIPPED

        target = resolve_target(self.config, self.lookup, principal)
        if target is None:
            return SyncOutcome.SKIPPED

        if self.config.ad_queue_only:
            logger.debug(f"Queue-only mode, deferring {operation} change for {target}")
            return self._queue(target, operation, password)

        if self.queue.has_conflict(target, operation):
            return self._queue(target, operation, password)

        try:
            with self.client_factory(self.config) as client:
                apply(client, target)
        except NotFoundError as e:
            if self.config.ad_not_found == NOT_FOUND_QUEUE:
                logger.warning(f"{e}; queuing {operation} change for {target}")
                return self._queue(target, operation, password)
            logger.info(f"{e}; nothing to update")
            return SyncOutcome.SKIPPED
        except (AuthError, RemoteError) as e:
            logger.warning(f"{operation} change for {target} failed, queuing: {e}")
            return self._queue(target, operation, password)

        logger.info(f"Applied {operation} change for {target} to Active Directory")
        return SyncOutcome.APPLIED

    def _queue(self, target: Principal, operation: str, password: Optional[str]) -> SyncOutcome:
        self.queue.write(target, operation, password)
        return SyncOutcome.QUEUED
