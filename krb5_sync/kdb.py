"""
Kerberos database lookups.

Decides whether a principal has a companion principal in the KDC database,
and therefore an Active Directory counterpart that must be kept in sync.
The database lookup itself is a capability supplied by the host; the
default implementation asks kadmin.local.
"""

import logging
import subprocess
from enum import Enum
from typing import List, Optional

from krb5_sync.config import SyncConfig
from krb5_sync.errors import ErrorKind, KerberosLookupError, format_error
from krb5_sync.principal import Principal

logger = logging.getLogger(__name__)


class LookupResult(Enum):
    FOUND = 'found'
    NOT_FOUND = 'not_found'
    ERROR = 'error'


class PrincipalLookup:
    """
    Interface for looking up a principal in the Kerberos database.

    Hosts may pass any object with a compatible lookup() method, or a plain
    callable taking the principal name.
    """

    def lookup(self, name: str) -> LookupResult:
        raise NotImplementedError


def quote_argument(value: str) -> str:
    """Quote a kadmin request argument, doubling embedded quotes."""
    return '"' + value.replace('"', '""') + '"'


class KadminLookup(PrincipalLookup):
    """Principal lookup through the kadmin.local command."""

    # kadmin.local message for KADM5_UNK_PRINC
    NOT_FOUND_MESSAGE = 'Principal does not exist'

    def __init__(self, command: Optional[List[str]] = None, timeout: int = 30):
        self.command = command or ['kadmin.local']
        self.timeout = timeout

    def lookup(self, name: str) -> LookupResult:
        try:
            result = subprocess.run(
                self.command + ['-q', f'getprinc {quote_argument(name)}'],
                capture_output=True,
                text=True,
                timeout=self.timeout
            )
        except (OSError, subprocess.SubprocessError) as e:
            logger.error(f"Cannot run {self.command[0]} to look up {name}: {e}")
            return LookupResult.ERROR

        if self.NOT_FOUND_MESSAGE in result.stderr:
            return LookupResult.NOT_FOUND
        if result.returncode == 0 and 'Principal:' in result.stdout:
            return LookupResult.FOUND

        logger.error(f"Unexpected kadmin.local output looking up {name}: {result.stderr.strip()}")
        return LookupResult.ERROR


def _call_lookup(lookup, name: str) -> LookupResult:
    if hasattr(lookup, 'lookup'):
        return lookup.lookup(name)
    return lookup(name)


def instance_exists(lookup, principal: Principal, instance: str) -> bool:
    """
    Check whether principal/instance exists in the Kerberos database.

    Only one-component principals have companions; a principal that already
    carries an instance is never looked up and yields False.

    Raises:
        KerberosLookupError: If the database cannot answer
    """
    if principal.has_instance:
        return False

    companion = principal.with_instance(instance).unparse()
    try:
        result = _call_lookup(lookup, companion)
    except KerberosLookupError:
        raise
    except Exception as e:
        raise KerberosLookupError(f"Cannot look up {companion}: {e}") from e

    if result is LookupResult.FOUND or result is True:
        return True
    if result is LookupResult.NOT_FOUND or result is False:
        return False
    raise format_error(ErrorKind.KERBEROS_LOOKUP, "Cannot determine whether %s exists", companion)


def resolve_target(config: SyncConfig, lookup, principal: Principal) -> Optional[Principal]:
    """
    Find the principal whose changes are propagated for this principal.

    Returns:
        The in-scope target principal, or None if the principal is not
        synchronized

    Raises:
        KerberosLookupError: If the database cannot answer
    """
    instances = config.instance_list

    if principal.extra_components:
        logger.debug(f"Ignoring {principal}: too many components")
        return None

    if principal.instance is not None:
        if principal.instance in instances:
            return principal
        logger.debug(f"Ignoring {principal}: instance {principal.instance} is not synchronized")
        return None

    for instance in instances:
        if instance_exists(lookup, principal, instance):
            return principal.with_instance(instance)

    logger.debug(f"Ignoring {principal}: no synchronized instance exists")
    return None
