"""
Entry points for the host that manages the Kerberos database.

initialize() builds a SyncEngine handle that is passed to every later call;
there is no module-level state.  Kadm5Hook adapts the kadm5 hook calling
convention (stages, modify masks, error codes) to the engine.
"""

import logging
from typing import Optional

from krb5_sync.config import load_config
from krb5_sync.engine import SyncEngine, SyncOutcome
from krb5_sync.errors import ErrorKind, SyncError
from krb5_sync.kdb import KadminLookup
from krb5_sync.logging_setup import setup_logging, reset_logging
from krb5_sync.principal import as_principal

logger = logging.getLogger(__name__)

# kadm5 hook stages
STAGE_PRECOMMIT = 0
STAGE_POSTCOMMIT = 1

# kadm5 modify mask bit for principal attributes
KADM5_ATTRIBUTES = 0x000010

# Principal attribute flag that disables ticket issuance
KRB5_KDB_DISALLOW_ALL_TIX = 0x00000040

# Codes returned to the host
ERROR_CODES = {
    ErrorKind.CONFIG: 2,
    ErrorKind.KERBEROS_LOOKUP: 3,
    ErrorKind.QUEUE_WRITE: 4,
    ErrorKind.AUTH: 5,
    ErrorKind.REMOTE: 5,
    ErrorKind.NOT_FOUND: 6,
}


def initialize(config_path: Optional[str] = None, lookup=None) -> SyncEngine:
    """
    Load configuration and create the engine handle for a plugin session.

    Args:
        config_path: Path to the configuration file
        lookup: Kerberos principal lookup capability, defaults to kadmin.local

    Raises:
        ConfigError: If the configuration is invalid
    """
    config = load_config(config_path)
    setup_logging(config.logging_config, syslog=config.syslog)

    if config.ad_configured:
        logger.debug(f"Synchronizing instances {', '.join(config.instance_list)} "
                     f"to {config.ad_admin_server}, queue in {config.queue_dir}")
    else:
        logger.debug("Active Directory synchronization not configured")

    return SyncEngine(config, lookup or KadminLookup())


def shutdown(handle: SyncEngine) -> None:
    """End the plugin session."""
    logger.debug("Shutting down krb5-sync")
    reset_logging()


def handle_password_change(handle: SyncEngine, principal, password: Optional[str]) -> SyncOutcome:
    """Propagate a password change."""
    return handle.chpass(as_principal(principal), password)


def handle_status_change(handle: SyncEngine, principal, enabled: bool) -> SyncOutcome:
    """Propagate an account enabled/disabled change."""
    return handle.status(as_principal(principal), enabled)


class Kadm5Hook:
    """
    Adapter for the kadm5 hook interface.

    Methods return 0 on success or a nonzero error code, leaving the
    descriptive message in error_message for the host to report.
    """

    def __init__(self, config_path: Optional[str] = None, lookup=None):
        self.config_path = config_path
        self.lookup = lookup
        self.handle = None
        self.error_message = None

    def init(self) -> int:
        return self._call(lambda: setattr(self, 'handle', initialize(self.config_path, self.lookup)))

    def fini(self) -> None:
        if self.handle is not None:
            shutdown(self.handle)
            self.handle = None

    def chpass(self, stage: int, principal, keepold: bool = False, password: Optional[str] = None) -> int:
        """Propagate a password change before it is committed."""
        if stage != STAGE_PRECOMMIT or self.handle is None:
            return 0
        return self._call(lambda: handle_password_change(self.handle, principal, password))

    def modify(self, stage: int, principal, mask: int, attributes: int) -> int:
        """Propagate an attribute change after it is committed."""
        if stage != STAGE_POSTCOMMIT or self.handle is None or not mask & KADM5_ATTRIBUTES:
            return 0
        enabled = not attributes & KRB5_KDB_DISALLOW_ALL_TIX
        return self._call(lambda: handle_status_change(self.handle, principal, enabled))

    def _call(self, operation) -> int:
        self.error_message = None
        try:
            operation()
        except SyncError as e:
            self.error_message = str(e)
            logger.error(f"krb5-sync failed: {e}")
            return ERROR_CODES.get(e.kind, 1)
        except ValueError as e:
            self.error_message = str(e)
            logger.error(f"krb5-sync failed: {e}")
            return 1
        return 0
