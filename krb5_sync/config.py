"""
Configuration loading and management for krb5-sync.

This module loads the krb5-sync section of a YAML configuration file,
applies per-realm overrides and environment variables, validates the
Active Directory settings and returns an immutable SyncConfig snapshot.
"""

import os
import re
import yaml
import logging
from typing import Dict, Any, List, NamedTuple, Optional, Tuple

from krb5_sync.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = '/etc/krb5-sync.yaml'
DEFAULT_QUEUE_DIR = '/var/spool/krb5-sync'
SECTION = 'krb5-sync'

NOT_FOUND_IGNORE = 'ignore'
NOT_FOUND_QUEUE = 'queue'

_TRUE_STRINGS = ('true', 'yes', 'on', '1')
_FALSE_STRINGS = ('false', 'no', 'off', '0')


class SyncConfig(NamedTuple):
    """Read-only snapshot of the settings used by the synchronization engine."""
    ad_admin_server: Optional[str] = None
    ad_base_instance: Optional[str] = None
    ad_instances: Tuple[str, ...] = ()
    ad_keytab: Optional[str] = None
    ad_ldap_base: Optional[str] = None
    ad_principal: Optional[str] = None
    ad_bind_password: Optional[str] = None
    ad_queue_only: bool = False
    ad_realm: Optional[str] = None
    ad_not_found: str = NOT_FOUND_IGNORE
    ad_use_ssl: Optional[bool] = None
    ad_start_tls: bool = False
    ad_verify_ssl: bool = True
    ad_ca_cert_file: Optional[str] = None
    ad_connect_timeout: int = 10
    queue_dir: str = DEFAULT_QUEUE_DIR
    syslog: bool = True
    logging_config: Optional[Dict[str, Any]] = None

    @property
    def ad_configured(self) -> bool:
        """True when Active Directory synchronization is enabled."""
        return self.ad_admin_server is not None

    @property
    def instance_list(self) -> List[str]:
        """Instances subject to synchronization, base instance first."""
        instances = []
        if self.ad_base_instance:
            instances.append(self.ad_base_instance)
        for instance in self.ad_instances:
            if instance not in instances:
                instances.append(instance)
        return instances

    @property
    def bind_principal(self) -> Optional[str]:
        """The service principal qualified with the AD realm."""
        if self.ad_principal and self.ad_realm and '@' not in self.ad_principal:
            return f"{self.ad_principal}@{self.ad_realm}"
        return self.ad_principal


def split_multi(value: str, seps: str = ' \t,') -> List[str]:
    """
    Split a string on any of a set of separator characters.

    Adjacent separators collapse and leading or trailing separators are
    ignored, so the result never contains empty strings.
    """
    if not seps:
        return [value] if value else []
    return [item for item in re.split('[' + re.escape(seps) + ']+', value) if item]


class ConfigLoader:
    """Handles loading and validation of the krb5-sync configuration."""

    STRING_KEYS = (
        'ad_admin_server', 'ad_base_instance', 'ad_keytab', 'ad_ldap_base',
        'ad_principal', 'ad_bind_password', 'ad_realm', 'ad_ca_cert_file',
        'ad_not_found', 'queue_dir',
    )

    # Keys whose presence means AD synchronization was intended
    AD_KEYS = (
        'ad_admin_server', 'ad_base_instance', 'ad_instances', 'ad_keytab',
        'ad_ldap_base', 'ad_principal', 'ad_realm',
    )

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'ad_bind_password': 'AD_BIND_PASSWORD',
    }

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses KRB5_SYNC_CONFIG env var
                or /etc/krb5-sync.yaml
        """
        self.config_path = config_path or os.getenv('KRB5_SYNC_CONFIG', DEFAULT_CONFIG_PATH)
        self.settings = {}

    def load(self) -> SyncConfig:
        """
        Load configuration from file and apply environment overrides.

        Returns:
            Validated configuration snapshot

        Raises:
            ConfigError: If config file not found or validation fails
        """
        try:
            with open(self.config_path, 'r') as f:
                document = yaml.safe_load(f)
        except FileNotFoundError:
            raise ConfigError(f"Configuration file not found: {self.config_path}")
        except OSError as e:
            raise ConfigError(f"Cannot read configuration file {self.config_path}: {e}")
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in config file: {e}")

        config = self.from_mapping(document)
        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return config

    def from_mapping(self, document: Any) -> SyncConfig:
        """Build a SyncConfig from an already parsed YAML document."""
        if document is None:
            document = {}
        if not isinstance(document, dict):
            raise ConfigError("Configuration must be a mapping")

        section = document.get(SECTION) or {}
        if not isinstance(section, dict):
            raise ConfigError(f"Section {SECTION} must be a mapping")

        self.settings = self._apply_realm_overrides(dict(section))
        self._apply_env_overrides()
        values = self._convert()
        self._validate(values)
        return SyncConfig(**values)

    def _apply_realm_overrides(self, section: Dict[str, Any]) -> Dict[str, Any]:
        """Let realms.<local realm> override keys of the section."""
        realms = section.pop('realms', None) or {}
        local_realm = section.pop('realm', None)
        if not isinstance(realms, dict):
            raise ConfigError("realms must be a mapping of realm name to settings")
        if local_realm and local_realm in realms:
            overrides = realms[local_realm] or {}
            if not isinstance(overrides, dict):
                raise ConfigError(f"Settings for realm {local_realm} must be a mapping")
            section.update(overrides)
            logger.debug(f"Applied configuration overrides for realm {local_realm}")
        return section

    def _apply_env_overrides(self):
        """Apply environment variable overrides for sensitive fields."""
        for config_key, env_var in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value:
                self.settings[config_key] = env_value
                logger.debug(f"Applied environment override for {config_key}")

    def _string(self, key: str) -> Optional[str]:
        value = self.settings.get(key)
        if value is None:
            return None
        if not isinstance(value, str):
            raise ConfigError(f"Setting {key} must be a string, not {type(value).__name__}")
        if '\0' in value or '\n' in value:
            raise ConfigError(f"Setting {key} contains invalid characters")
        return value or None

    def _boolean(self, key: str, default: Optional[bool]) -> Optional[bool]:
        value = self.settings.get(key)
        if value is None:
            return default
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            if value.lower() in _TRUE_STRINGS:
                return True
            if value.lower() in _FALSE_STRINGS:
                return False
        raise ConfigError(f"Setting {key} must be a boolean, not {value!r}")

    def _list(self, key: str) -> Tuple[str, ...]:
        value = self.settings.get(key)
        if value is None:
            return ()
        if isinstance(value, str):
            return tuple(split_multi(value))
        if isinstance(value, list) and all(isinstance(item, str) for item in value):
            items = []
            for item in value:
                items.extend(split_multi(item))
            return tuple(items)
        raise ConfigError(f"Cannot parse {key}: expected a list of instance names")

    def _convert(self) -> Dict[str, Any]:
        """Convert raw settings into typed values with defaults applied."""
        values = {key: self._string(key) for key in self.STRING_KEYS}
        values['ad_instances'] = self._list('ad_instances')
        values['ad_queue_only'] = self._boolean('ad_queue_only', False)
        values['ad_start_tls'] = self._boolean('ad_start_tls', False)
        values['ad_verify_ssl'] = self._boolean('ad_verify_ssl', True)
        values['ad_use_ssl'] = self._boolean('ad_use_ssl', None)
        values['syslog'] = self._boolean('syslog', True)

        values['queue_dir'] = values['queue_dir'] or DEFAULT_QUEUE_DIR
        values['ad_not_found'] = (values['ad_not_found'] or NOT_FOUND_IGNORE).lower()

        timeout = self.settings.get('ad_connect_timeout', 10)
        if isinstance(timeout, bool) or not isinstance(timeout, int) or timeout <= 0:
            raise ConfigError(f"Setting ad_connect_timeout must be a positive integer, not {timeout!r}")
        values['ad_connect_timeout'] = timeout

        logging_config = self.settings.get('logging')
        if logging_config is not None and not isinstance(logging_config, dict):
            raise ConfigError("Setting logging must be a mapping")
        values['logging_config'] = dict(logging_config) if logging_config else None
        return values

    def _validate(self, values: Dict[str, Any]):
        """Validate the Active Directory settings as a whole."""
        errors = []

        if values['ad_not_found'] not in (NOT_FOUND_IGNORE, NOT_FOUND_QUEUE):
            errors.append(f"ad_not_found must be '{NOT_FOUND_IGNORE}' or '{NOT_FOUND_QUEUE}'")

        configured = any(values.get(key) for key in self.AD_KEYS)
        if configured:
            for field in ('ad_admin_server', 'ad_base_instance', 'ad_ldap_base', 'ad_principal'):
                if not values.get(field):
                    errors.append(f"Missing required AD setting: {field}")
            if not values.get('ad_keytab') and not values.get('ad_bind_password'):
                errors.append("Missing required AD setting: ad_keytab (or ad_bind_password)")

        if errors:
            raise ConfigError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

        if not configured:
            logger.debug("No Active Directory settings, synchronization disabled")


def load_config(config_path: Optional[str] = None) -> SyncConfig:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to config file

    Returns:
        Loaded configuration snapshot
    """
    loader = ConfigLoader(config_path)
    return loader.load()
