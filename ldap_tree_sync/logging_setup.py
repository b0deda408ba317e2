"""
Logging setup and configuration for LDAP Tree Sync.

Console output goes to stderr so that dry-run LDIF on stdout stays clean.
Its level follows the command-line verbosity; a rotating file log is added
when a log directory is configured.
"""

import os
import re
import logging
import logging.handlers
from typing import Dict, Any, Optional


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub credentials from log messages."""

    SENSITIVE_KEYWORDS = [
        'bind_password', 'password', 'userPassword', 'secret', 'credential', 'pwd'
    ]

    def filter(self, record):
        """Mask values following sensitive keywords."""
        if hasattr(record, 'msg'):
            msg = str(record.msg)

            # key=value
            for keyword in self.SENSITIVE_KEYWORDS:
                pattern = rf'({keyword}\s*=\s*)[^\s,}}\]]+(\s|,|$)'
                msg = re.sub(pattern, r'\1****\2', msg, flags=re.IGNORECASE)

            # 'key': 'value' as printed for dictionaries, and "key": "value" in JSON
            for keyword in self.SENSITIVE_KEYWORDS:
                pattern = rf'''(['"]{keyword}['"]\s*:\s*['"])[^'"]*(['"])'''
                msg = re.sub(pattern, r'\1****\2', msg, flags=re.IGNORECASE)

            # LDIF attribute lines, e.g. "userPassword: {SSHA}..."
            msg = re.sub(r'(^|\n)(userPassword::?\s*)\S+', r'\1\2****', msg, flags=re.IGNORECASE)

            record.msg = msg

        return True


def verbosity_level(verbose: int = 0, debug: bool = False) -> int:
    """
    Map command-line verbosity to a console log level.

    No flag shows warnings and errors, one ``-v`` adds progress and the
    per-record summary, two ``-v`` or ``-d`` add the engine's classification.
    """
    if debug or verbose >= 2:
        return logging.DEBUG
    if verbose == 1:
        return logging.INFO
    return logging.WARNING


class LoggingManager:
    """
    Manages logging configuration for the LDAP Tree Sync application.

    Calling :meth:`setup_logging` again replaces the handlers installed by
    the previous call.
    """

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7

    def setup_logging(self, config: Optional[Dict[str, Any]], console_level: Optional[int] = None) -> None:
        """
        Set up logging based on configuration.

        Args:
            config: Logging configuration dictionary
            console_level: Console level overriding ``console_level`` from config
        """
        logging_config = config if config else {}

        file_level = getattr(logging, str(logging_config.get('level', 'INFO')).upper(), logging.INFO)
        if console_level is None:
            console_level = getattr(logging, str(logging_config.get('console_level', 'WARNING')).upper(),
                                    logging.WARNING)
        self.log_dir = logging_config.get('log_dir')
        self.retention_days = logging_config.get('retention_days', 7)
        rotation = logging_config.get('rotation', 'daily')

        root_logger = logging.getLogger()
        root_logger.handlers.clear()

        sensitive_filter = SensitiveDataFilter()

        console_handler = logging.StreamHandler()
        console_handler.setLevel(console_level)
        console_handler.setFormatter(logging.Formatter('%(levelname)s: %(message)s'))
        console_handler.addFilter(sensitive_filter)
        root_logger.addHandler(console_handler)

        levels = [console_level]
        if self.log_dir and self._ensure_log_directory():
            file_handler = self._create_file_handler(rotation)
            file_handler.setLevel(file_level)
            file_handler.setFormatter(logging.Formatter(
                '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            ))
            file_handler.addFilter(sensitive_filter)
            root_logger.addHandler(file_handler)
            levels.append(file_level)

        root_logger.setLevel(min(levels))
        self.configured = True

        logger = logging.getLogger(__name__)
        logger.debug(f"Logging configured: console={logging.getLevelName(console_level)}, "
                     f"file={self.log_dir or 'disabled'}, retention={self.retention_days} days")

    def _ensure_log_directory(self) -> bool:
        """Create the log directory; report failure instead of aborting the run."""
        try:
            os.makedirs(self.log_dir, exist_ok=True)
            return True
        except OSError as e:
            logging.getLogger(__name__).warning(f"Could not create log directory {self.log_dir}: {e}")
            self.log_dir = None
            return False

    def _create_file_handler(self, rotation: str) -> logging.Handler:
        """
        Create appropriate file handler based on rotation setting.

        Args:
            rotation: Rotation setting ('daily', 'midnight', or 'none')

        Returns:
            Configured logging handler
        """
        log_file = os.path.join(self.log_dir, 'ldap-tree-sync.log')

        if str(rotation).lower() in ['daily', 'midnight']:
            handler = logging.handlers.TimedRotatingFileHandler(
                filename=log_file,
                when='midnight',
                interval=1,
                backupCount=self.retention_days,
                encoding='utf-8'
            )
            handler.suffix = '%Y-%m-%d'
        else:
            handler = logging.FileHandler(log_file, encoding='utf-8')

        return handler


# Global logging manager instance
_logging_manager = LoggingManager()


def setup_logging(config: Optional[Dict[str, Any]], console_level: Optional[int] = None) -> None:
    """
    Convenience function to set up logging.

    Args:
        config: Logging configuration dictionary
        console_level: Optional console level, usually from :func:`verbosity_level`
    """
    _logging_manager.setup_logging(config, console_level)
