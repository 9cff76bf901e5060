"""
Logging setup for krb5-sync.

The plugin runs inside kadmind, so diagnostics normally go to syslog with
the auth facility.  A rotating log file and console output can be enabled
for the queue backend and for debugging.  Every handler carries a filter
that scrubs password material from messages.
"""

import os
import re
import logging
import logging.handlers
from typing import Dict, Any, Optional

LOGGER_NAME = 'krb5_sync'
SYSLOG_IDENT = 'krb5-sync: '


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub password material from log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'bind_password', 'ad_bind_password', 'newpassword',
        'unicodePwd', 'secret', 'credential', 'pwd',
    ]

    def filter(self, record):
        """Filter out sensitive data from log records."""
        if hasattr(record, 'msg'):
            msg = record.getMessage() if hasattr(record, 'args') and record.args else str(record.msg)

            # Pattern for key=value and key: value
            for keyword in self.SENSITIVE_KEYWORDS:
                msg = re.sub(rf'({keyword}\s*[=:]\s*)[^\s,}}\]]+', r'\1****', msg, flags=re.IGNORECASE)

            # Pattern for "key": "value" in JSON
            for keyword in self.SENSITIVE_KEYWORDS:
                msg = re.sub(rf'("{keyword}"\s*:\s*")[^"]*(")', r'\1****\2', msg, flags=re.IGNORECASE)

            record.msg = msg
            record.args = None

        return True


class LoggingManager:
    """
    Manages logging configuration for krb5-sync.

    Handlers are attached to the krb5_sync logger rather than the root
    logger, since the plugin shares its process with the host.
    """

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7

    def setup_logging(self, config: Optional[Dict[str, Any]] = None, syslog: bool = True) -> None:
        """
        Set up logging based on configuration.

        Args:
            config: Logging configuration dictionary (level, log_dir,
                retention_days, console_output, console_level, syslog_address)
            syslog: Whether to log to syslog
        """
        if self.configured:
            return

        logging_config = config if config else {}

        log_level = str(logging_config.get('level', 'INFO')).upper()
        self.log_dir = logging_config.get('log_dir')
        self.retention_days = logging_config.get('retention_days', 7)
        console_enabled = logging_config.get('console_output', False)
        console_level = str(logging_config.get('console_level', 'WARNING')).upper()

        package_logger = logging.getLogger(LOGGER_NAME)
        package_logger.setLevel(getattr(logging, log_level, logging.INFO))

        sensitive_filter = SensitiveDataFilter()

        if syslog:
            syslog_handler = self._create_syslog_handler(logging_config.get('syslog_address'))
            if syslog_handler is not None:
                syslog_handler.setFormatter(logging.Formatter(SYSLOG_IDENT + '%(message)s'))
                syslog_handler.addFilter(sensitive_filter)
                package_logger.addHandler(syslog_handler)

        if self.log_dir:
            file_handler = self._create_file_handler()
            if file_handler is not None:
                file_handler.setFormatter(logging.Formatter(
                    '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s',
                    datefmt='%Y-%m-%d %H:%M:%S'
                ))
                file_handler.addFilter(sensitive_filter)
                package_logger.addHandler(file_handler)

        if console_enabled:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(getattr(logging, console_level, logging.WARNING))
            console_handler.setFormatter(logging.Formatter(
                '%(asctime)s [%(levelname)s] %(message)s',
                datefmt='%H:%M:%S'
            ))
            console_handler.addFilter(sensitive_filter)
            package_logger.addHandler(console_handler)

        self.configured = True

        logger = logging.getLogger(__name__)
        logger.debug(f"Logging configured: level={log_level}, syslog={syslog}, "
                     f"dir={self.log_dir}, console={console_enabled}")

    def _create_syslog_handler(self, address=None) -> Optional[logging.Handler]:
        """Create a syslog handler on the auth facility, or None if syslog is unreachable."""
        if address is None:
            address = '/dev/log' if os.path.exists('/dev/log') else ('localhost', 514)
        try:
            return logging.handlers.SysLogHandler(
                address=address,
                facility=logging.handlers.SysLogHandler.LOG_AUTH
            )
        except OSError as e:
            logging.getLogger(__name__).warning(f"Cannot open syslog at {address}: {e}")
            return None

    def _create_file_handler(self) -> Optional[logging.Handler]:
        """Create a daily rotating file handler in the log directory."""
        try:
            os.makedirs(self.log_dir, exist_ok=True)
            handler = logging.handlers.TimedRotatingFileHandler(
                filename=os.path.join(self.log_dir, 'krb5-sync.log'),
                when='midnight',
                interval=1,
                backupCount=self.retention_days,
                encoding='utf-8'
            )
            handler.suffix = '%Y-%m-%d'
            return handler
        except OSError as e:
            logging.getLogger(__name__).warning(f"Cannot open log directory {self.log_dir}: {e}")
            return None

    def reset(self) -> None:
        """Remove the handlers installed by setup_logging."""
        package_logger = logging.getLogger(LOGGER_NAME)
        for handler in list(package_logger.handlers):
            package_logger.removeHandler(handler)
            handler.close()
        self.configured = False


# Global logging manager instance
_logging_manager = LoggingManager()


def setup_logging(config: Optional[Dict[str, Any]] = None, syslog: bool = True) -> None:
    """
    Convenience function to set up logging.

    Args:
        config: Logging configuration dictionary
        syslog: Whether to log to syslog
    """
    _logging_manager.setup_logging(config, syslog)


def reset_logging() -> None:
    """Undo setup_logging, used at plugin shutdown."""
    _logging_manager.reset()
