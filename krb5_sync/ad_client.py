"""
Active Directory client for propagating Kerberos changes.

This module binds to Active Directory with the configured service
credentials, locates the account for a principal by sAMAccountName under
the configured base DN, and sets its password or its enabled flag.
Failures are classified into AuthError, NotFoundError and RemoteError;
no retries are attempted here.
"""

import logging
import ssl
from typing import Optional

from ldap3 import Server, Connection, SUBTREE, Tls, SASL, KERBEROS, SIMPLE, MODIFY_REPLACE
from ldap3.core.exceptions import LDAPException, LDAPSocketOpenError, LDAPBindError
from ldap3.utils.conv import escape_filter_chars

from krb5_sync.config import SyncConfig
from krb5_sync.errors import AuthError, ErrorKind, NotFoundError, RemoteError, format_error
from krb5_sync.principal import Principal, as_principal

logger = logging.getLogger(__name__)

# userAccountControl flag for a disabled account
UF_ACCOUNTDISABLE = 0x0002

# LDAP result code for noSuchObject
NO_SUCH_OBJECT = 32


class ADClient:
    """
    Client for the Active Directory side of the synchronization.

    Used as a context manager, the client connects on entry and always
    unbinds on exit.
    """

    def __init__(self, config: SyncConfig):
        """
        Initialize the client with configuration.

        Args:
            config: Synchronization configuration
        """
        self.config = config
        self.server_url = config.ad_admin_server
        if '://' not in self.server_url:
            self.server_url = f"ldaps://{self.server_url}"
        self.base_dn = config.ad_ldap_base

        # SSL/TLS configuration
        self.use_ssl = config.ad_use_ssl
        if self.use_ssl is None:
            self.use_ssl = self.server_url.lower().startswith('ldaps://')
        self.start_tls = config.ad_start_tls
        self.verify_ssl = config.ad_verify_ssl
        self.ca_cert_file = config.ad_ca_cert_file
        self.connection_timeout = config.ad_connect_timeout

        self.server = None
        self.connection = None
        self._connected = False

    def connect(self) -> None:
        """
        Connect and bind to Active Directory.

        Raises:
            AuthError: If the service bind fails
            RemoteError: If the server cannot be reached
        """
        try:
            self.server = Server(
                self.server_url,
                use_ssl=self.use_ssl,
                tls=self._create_tls_config(),
                connect_timeout=self.connection_timeout
            )
            self.connection = Connection(
                self.server,
                auto_bind=False,
                receive_timeout=self.connection_timeout,
                **self._bind_arguments()
            )

            if not self.connection.open():
                raise RemoteError(f"Failed to open connection: {self.connection.result}")

            if self.start_tls and not self.use_ssl:
                if not self.connection.start_tls():
                    raise RemoteError(f"Failed to start TLS: {self.connection.result}")
                logger.debug("StartTLS negotiation successful")

            if not self.connection.bind():
                raise AuthError(f"Bind to {self.server_url} as {self.config.bind_principal} "
                                f"failed: {self.connection.result.get('description')}")

        except (AuthError, RemoteError):
            self._close()
            raise
        except LDAPBindError as e:
            self._close()
            raise AuthError(f"Bind to {self.server_url} failed: {e}") from e
        except LDAPSocketOpenError as e:
            self._close()
            raise RemoteError(f"Cannot connect to {self.server_url}: {e}") from e
        except LDAPException as e:
            self._close()
            raise RemoteError(f"LDAP error connecting to {self.server_url}: {e}") from e

        self._connected = True
        logger.debug(f"Connected and bound to Active Directory server {self.server_url}")

    def _bind_arguments(self) -> dict:
        """Connection arguments for a simple bind or a keytab-based GSSAPI bind."""
        if self.config.ad_bind_password:
            return {
                'user': self.config.bind_principal,
                'password': self.config.ad_bind_password,
                'authentication': SIMPLE,
            }
        return {
            'authentication': SASL,
            'sasl_mechanism': KERBEROS,
            'sasl_credentials': (None, None, self._kerberos_credentials()),
        }

    def _kerberos_credentials(self):
        """Acquire initiator credentials for the service principal from the keytab."""
        import gssapi

        try:
            name = gssapi.Name(self.config.bind_principal, gssapi.NameType.kerberos_principal)
            return gssapi.Credentials(
                name=name,
                usage='initiate',
                store={
                    'client_keytab': self.config.ad_keytab,
                    'ccache': 'MEMORY:krb5-sync',
                }
            )
        except gssapi.exceptions.GSSError as e:
            raise AuthError(f"Cannot get credentials for {self.config.bind_principal} "
                            f"from {self.config.ad_keytab}: {e}") from e

    def _create_tls_config(self) -> Optional[Tls]:
        """
        Create TLS configuration for the connection.

        Returns:
            Tls configuration object or None if not needed
        """
        if not (self.use_ssl or self.start_tls):
            return None

        tls_config = {}

        if not self.verify_ssl:
            tls_config['validate'] = ssl.CERT_NONE
            logger.warning("SSL certificate verification disabled")
        else:
            tls_config['validate'] = ssl.CERT_REQUIRED

        if self.ca_cert_file:
            tls_config['ca_certs_file'] = self.ca_cert_file

        try:
            return Tls(**tls_config)
        except LDAPException as e:
            raise RemoteError(f"Failed to create TLS configuration: {e}") from e

    def _close(self):
        if self.connection is not None:
            try:
                self.connection.unbind()
            except LDAPException as e:
                logger.debug(f"Error closing Active Directory connection: {e}")
        self.connection = None
        self._connected = False

    def disconnect(self):
        """Close the connection."""
        if self.connection and self._connected:
            logger.debug("Active Directory connection closed")
        self._close()

    def _require_connection(self):
        if not self._connected:
            raise RemoteError("Not connected to Active Directory")

    def _result_error(self, action: str, target: str):
        """Turn a failed operation result into NotFoundError or RemoteError."""
        result = self.connection.result or {}
        kind = ErrorKind.NOT_FOUND if result.get('result') == NO_SUCH_OBJECT else ErrorKind.REMOTE
        detail = ' '.join(str(part) for part in (result.get('description'), result.get('message')) if part)
        return format_error(kind, "%s for %s failed: %s", action, target, detail)

    def find_user(self, principal: Principal):
        """
        Find the Active Directory entry for a principal.

        Returns:
            The ldap3 entry, with userAccountControl loaded

        Raises:
            NotFoundError: If no account matches the principal's base name
            RemoteError: If the search fails
        """
        self._require_connection()
        search_filter = f"(sAMAccountName={escape_filter_chars(principal.name)})"
        logger.debug(f"Searching with filter: {search_filter} in base: {self.base_dn}")

        try:
            self.connection.search(
                search_base=self.base_dn,
                search_filter=search_filter,
                search_scope=SUBTREE,
                attributes=['userAccountControl']
            )
        except LDAPException as e:
            raise RemoteError(f"Search for {principal.name} failed: {e}") from e

        if self.connection.entries:
            return self.connection.entries[0]

        result_code = (self.connection.result or {}).get('result')
        if result_code in (0, NO_SUCH_OBJECT):
            raise NotFoundError(f"No Active Directory account {principal.name} under {self.base_dn}")
        raise self._result_error('Search', principal.name)

    def set_password(self, principal, password: str) -> None:
        """
        Set the Active Directory password for a principal.

        Raises:
            NotFoundError, RemoteError
        """
        principal = as_principal(principal)
        entry = self.find_user(principal)
        dn = entry.entry_dn

        try:
            success = self.connection.extend.microsoft.modify_password(dn, password)
        except LDAPException as e:
            raise RemoteError(f"Password change for {principal.name} failed: {e}") from e
        if not success:
            raise self._result_error('Password change', principal.name)

        logger.info(f"Updated Active Directory password for {principal.name}")

    def set_enabled(self, principal, enabled: bool) -> None:
        """
        Enable or disable the Active Directory account for a principal.

        Only the ACCOUNTDISABLE bit of userAccountControl is changed, and
        nothing is written when it already has the requested value.

        Raises:
            NotFoundError, RemoteError
        """
        principal = as_principal(principal)
        entry = self.find_user(principal)
        dn = entry.entry_dn

        current = int(entry.userAccountControl.value or 0)
        if enabled:
            wanted = current & ~UF_ACCOUNTDISABLE
        else:
            wanted = current | UF_ACCOUNTDISABLE

        state = 'enabled' if enabled else 'disabled'
        if wanted == current:
            logger.info(f"Active Directory account {principal.name} already {state}")
            return

        try:
            success = self.connection.modify(dn, {'userAccountControl': [(MODIFY_REPLACE, [str(wanted)])]})
        except LDAPException as e:
            raise RemoteError(f"Status change for {principal.name} failed: {e}") from e
        if not success:
            raise self._result_error('Status change', principal.name)

        logger.info(f"Active Directory account {principal.name} {state}")

    def __enter__(self):
        """Context manager entry, connects to the server."""
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.disconnect()
